"""Sequential hardening run: prerequisites, then each component in dependency order."""
from __future__ import annotations

import logging
from typing import Callable, List, Optional, Sequence, Tuple

from devguard.core.checkpoint_manager import CheckpointManager
from devguard.core.command_runner import CommandRunner
from devguard.core.config import Settings
from devguard.core.connectivity import ConnectivityChecker
from devguard.core.errors import (
    DevguardError,
    LockoutRisk,
    OperatorDeclined,
    PrerequisiteError,
    ValidationError,
)
from devguard.core.firewall import FirewallReconciler
from devguard.core.intrusion_prevention import IntrusionPreventionConfigurator
from devguard.core.logging_manager import LoggingManager, get_logging_manager
from devguard.core.plan_gate import PlanGate
from devguard.core.prerequisites import BinaryAvailable, ElevatedPrivileges, OsFamily, Requirement, validate
from devguard.core.reporter import ResultReporter
from devguard.core.ssh_hardening import SshHardeningStateMachine
from devguard.core.vpn_killswitch import KillSwitchGenerator
from devguard.models.changes import OperationResult, StepStatus
from devguard.models.intent import HardeningIntent
from devguard.models.report import HardeningReport


logger = logging.getLogger(__name__)

# A failure in one of these leaves the host in a state later steps must not build on.
CRITICAL_STEPS = frozenset({"firewall", "ssh", "killswitch"})
# Errors that stop the run no matter which step raised them.
FATAL_ERRORS = (PrerequisiteError, LockoutRisk, OperatorDeclined)


class HardeningRun:
    """Run every hardening component once, in order, and report the outcome."""

    def __init__(
        self,
        intent: HardeningIntent,
        settings: Settings,
        *,
        gate: Optional[PlanGate] = None,
        runner: Optional[CommandRunner] = None,
        checkpoints: Optional[CheckpointManager] = None,
        reporter: Optional[ResultReporter] = None,
        requirements: Optional[Sequence[Requirement]] = None,
        connectivity: Optional[ConnectivityChecker] = None,
        logging_manager: Optional[LoggingManager] = None,
    ) -> None:
        self.intent = intent
        self.settings = settings
        self.logging_manager = logging_manager or get_logging_manager()
        self.runner = runner or CommandRunner()
        self.gate = gate or PlanGate(logging_manager=self.logging_manager)
        self.checkpoints = checkpoints or CheckpointManager(settings.state_dir)
        self.reporter = reporter or ResultReporter()
        self._requirements = requirements
        self.firewall = FirewallReconciler(self.runner, self.gate)
        self.intrusion_prevention = IntrusionPreventionConfigurator(self.runner, self.gate, settings)
        self.ssh = SshHardeningStateMachine(
            self.runner, self.gate, settings, self.checkpoints, logging_manager=self.logging_manager
        )
        self.killswitch = KillSwitchGenerator(self.runner, self.gate)
        self.connectivity = connectivity or ConnectivityChecker(self.runner, settings)

    def requirements(self) -> List[Requirement]:
        if self._requirements is not None:
            return list(self._requirements)

        binaries = ["ufw", "systemctl", "fail2ban-client", self.settings.sshd_binary]
        if self.intent.killswitch_requested:
            binaries.extend(["iptables", "ip6tables"])
        requirements: List[Requirement] = [BinaryAvailable(name) for name in binaries]
        requirements.append(ElevatedPrivileges())
        requirements.append(OsFamily(self.settings.supported_os))
        return requirements

    def steps(self) -> List[Tuple[str, Callable[[OperationResult], object]]]:
        intent = self.intent
        return [
            (self.firewall.step, lambda result: self.firewall.reconcile(intent, result)),
            (self.intrusion_prevention.step, lambda result: self.intrusion_prevention.configure(intent, result)),
            (self.ssh.step, lambda result: self.ssh.harden(intent, result)),
            (self.killswitch.step, self._run_killswitch),
            (self.connectivity.step, self._run_connectivity),
        ]

    def run(self) -> HardeningReport:
        logger.info(
            "Starting hardening run (mode=%s, port=%s, killswitch=%s)",
            self.gate.mode.value,
            self.intent.management_port,
            self.intent.killswitch_requested,
        )
        self.logging_manager.log_app_event("INFO", f"Starting hardening run in {self.gate.mode.value} mode")

        results: List[OperationResult] = []
        prerequisites = OperationResult(step="prerequisites")
        results.append(prerequisites)
        aborted_by: Optional[str] = None
        try:
            validate(self.requirements())
        except PrerequisiteError as exc:
            for problem in exc.missing:
                prerequisites.fail(problem, error_type=type(exc).__name__)
            prerequisites.next_steps.append(exc.remediation)
            aborted_by = prerequisites.step
        self.logging_manager.log_step_result(prerequisites)

        for name, action in self.steps():
            result = OperationResult(step=name)
            if aborted_by is not None:
                result.skip(f"Not run: the {aborted_by} step stopped the run")
            else:
                if self._execute(name, action, result):
                    aborted_by = name
                if self.gate.dry_run and result.status is StepStatus.SUCCEEDED:
                    result.status = StepStatus.PLANNED
            self.logging_manager.log_step_result(result)
            results.append(result)

        report = self.reporter.build(results, dry_run=self.gate.dry_run)
        self.logging_manager.log_app_event("INFO", f"Hardening run finished with status {report.status}")
        return report

    def _execute(self, name: str, action: Callable[[OperationResult], object], result: OperationResult) -> bool:
        """Run one step, applying the propagation policy. Returns ``True`` if the run must stop."""

        try:
            action(result)
        except ValidationError as exc:
            # The step restored its own previous state before raising.
            logger.error("%s validation failed: %s", name, exc.message)
            result.fail(exc.message, error_type=type(exc).__name__, next_step=exc.remediation)
            return False
        except FATAL_ERRORS as exc:
            logger.error("%s stopped the run: %s", name, exc.message)
            result.fail(exc.message, error_type=type(exc).__name__, next_step=exc.remediation)
            return True
        except DevguardError as exc:
            return self._handle_step_error(name, result, exc.message, type(exc).__name__, exc.remediation)
        except OSError as exc:
            return self._handle_step_error(
                name, result, str(exc), type(exc).__name__, "Check file permissions and disk space on the host."
            )
        return False

    def _handle_step_error(self, name: str, result: OperationResult, message: str, error_type: str, remediation: str) -> bool:
        if name in CRITICAL_STEPS:
            logger.error("Critical step %s failed: %s", name, message)
            result.fail(message, error_type=error_type, next_step=remediation)
            return True
        logger.warning("Non-critical step %s failed: %s", name, message)
        result.warn(message, next_step=remediation)
        return False

    def _run_killswitch(self, result: OperationResult) -> None:
        if not self.intent.killswitch_requested:
            result.skip("No tunnel config supplied; kill switch not requested")
            return
        self.killswitch.enforce(self.intent, result)

    def _run_connectivity(self, result: OperationResult) -> None:
        if self.gate.dry_run:
            result.skip("Dry-run: nothing changed, so there is nothing to verify")
            return
        self.connectivity.check(self.intent, result)


__all__ = ["CRITICAL_STEPS", "HardeningRun"]
