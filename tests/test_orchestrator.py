from __future__ import annotations

from io import StringIO

import pytest
from rich.console import Console

from devguard.core.connectivity import ConnectivityChecker
from devguard.core.orchestrator import HardeningRun
from devguard.core.plan_gate import GateMode, PlanGate
from devguard.core.prerequisites import BinaryAvailable
from devguard.core.reporter import ResultReporter
from devguard.models.changes import StepStatus
from devguard.models.intent import HardeningIntent

STEPS = ["prerequisites", "firewall", "intrusion-prevention", "ssh", "killswitch", "connectivity"]


class FakeSocket:
    def __init__(self, banner: bytes) -> None:
        self.banner = banner

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def recv(self, size: int) -> bytes:
        return self.banner[:size]


def _ssh_banner(address, timeout=None):
    return FakeSocket(b"SSH-2.0-OpenSSH_9.6p1 Ubuntu-3ubuntu13\r\n")


def _refused(address, timeout=None):
    raise ConnectionRefusedError(111, "Connection refused")


@pytest.fixture
def make_run(runner, settings, checkpoints, gate, logging_manager):
    def factory(intent=None, *, run_gate=None, connect=_ssh_banner, requirements=()):
        return HardeningRun(
            intent or HardeningIntent(),
            settings,
            gate=run_gate or gate,
            runner=runner,
            checkpoints=checkpoints,
            reporter=ResultReporter(Console(file=StringIO())),
            requirements=list(requirements),
            connectivity=ConnectivityChecker(runner, settings, connect=connect),
            logging_manager=logging_manager,
        )
    return factory


def _statuses(report) -> dict:
    return {step.step: step.status for step in report.steps}


def test_missing_public_key_fails_ssh_but_earlier_steps_succeed(make_run, fake_ufw, fake_sshd, settings) -> None:
    before = settings.sshd_config.read_bytes()

    report = make_run().run()

    statuses = _statuses(report)
    assert [step.step for step in report.steps] == STEPS
    assert statuses["firewall"] is StepStatus.SUCCEEDED
    assert statuses["intrusion-prevention"] is StepStatus.SUCCEEDED
    assert statuses["ssh"] is StepStatus.FAILED
    assert report.step("ssh").error_type == "LockoutRisk"
    assert statuses["killswitch"] is StepStatus.SKIPPED
    assert statuses["connectivity"] is StepStatus.SKIPPED
    assert report.status == "Failed"
    assert any("authorized_keys" in hint for hint in report.next_steps)
    assert settings.sshd_config.read_bytes() == before


def test_full_run_with_kill_switch_succeeds(
    make_run, runner, fake_ufw, fake_sshd, fake_iptables, authorized_key, wg_config
) -> None:
    runner.on("curl", stdout="203.0.113.9\n")

    report = make_run(HardeningIntent(tunnel_config=wg_config)).run()

    assert report.status == "Succeeded", report.failures
    assert all(status is StepStatus.SUCCEEDED for status in _statuses(report).values())
    assert fake_ufw.rules == ["allow in 22/tcp"]
    assert fake_iptables["iptables"].chains["DEVGUARD-KS-OUT"][-1] == "-j DROP"
    assert any("Public IP through wg0: 203.0.113.9" in note for note in report.step("connectivity").diagnostics)
    curl = runner.commands("curl")[0]
    assert curl[curl.index("--interface") + 1] == "wg0"


def test_unmet_prerequisites_stop_before_any_mutation(make_run, runner) -> None:
    requirements = [BinaryAvailable("ufw", which=lambda name: None), BinaryAvailable("sshd", which=lambda name: None)]

    report = make_run(requirements=requirements).run()

    prerequisites = report.step("prerequisites")
    assert prerequisites.status is StepStatus.FAILED
    assert len(prerequisites.failures) == 2
    assert all(step.status is StepStatus.SKIPPED for step in report.steps[1:])
    assert runner.calls == []
    assert report.status == "Failed"


def test_validation_failure_is_reported_and_run_continues(
    make_run, runner, fake_ufw, fake_iptables, settings, authorized_key, wg_config
) -> None:
    before = settings.sshd_config.read_bytes()
    runner.on("sshd", "-t", stderr="Bad configuration option", exit_code=255)
    runner.on("curl", stdout="203.0.113.9\n")

    report = make_run(HardeningIntent(tunnel_config=wg_config)).run()

    statuses = _statuses(report)
    assert statuses["ssh"] is StepStatus.FAILED
    assert report.step("ssh").error_type == "ValidationError"
    assert statuses["killswitch"] is StepStatus.SUCCEEDED
    assert settings.sshd_config.read_bytes() == before
    assert ["systemctl", "restart", "ssh"] not in runner.calls
    assert report.status == "Failed"


def test_incomplete_tunnel_config_fails_closed(make_run, runner, fake_ufw, fake_sshd, fake_iptables, authorized_key, tmp_path) -> None:
    config = tmp_path / "wg0.conf"
    config.write_text("[Interface]\nAddress = 10.66.0.2/32\n", encoding="utf-8")

    report = make_run(HardeningIntent(tunnel_config=config)).run()

    statuses = _statuses(report)
    assert statuses["killswitch"] is StepStatus.FAILED
    assert report.step("killswitch").error_type == "ParseError"
    assert statuses["connectivity"] is StepStatus.SKIPPED
    assert runner.commands("iptables") == []
    assert runner.commands("ip6tables") == []


def test_non_critical_step_error_becomes_warning(make_run, fake_ufw, fake_sshd, settings, authorized_key, tmp_path) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("", encoding="utf-8")
    run = make_run()
    run.intrusion_prevention.settings = settings.model_copy(update={"jail_path": blocker / "jail.local"})

    report = run.run()

    statuses = _statuses(report)
    assert statuses["intrusion-prevention"] is StepStatus.WARNING
    assert statuses["ssh"] is StepStatus.SUCCEEDED
    assert report.status == "Succeeded"


def test_critical_command_failure_aborts_the_run(make_run, runner, fake_sshd, authorized_key) -> None:
    runner.on("ufw", "--force", "enable", stderr="ERROR: problem running iptables", exit_code=1)

    report = make_run().run()

    statuses = _statuses(report)
    assert statuses["firewall"] is StepStatus.FAILED
    assert report.step("firewall").error_type == "CommandExecutionError"
    assert statuses["intrusion-prevention"] is StepStatus.SKIPPED
    assert "Not run: the firewall step stopped the run" in report.step("ssh").diagnostics


def test_dry_run_plans_everything_and_changes_nothing(make_run, runner, settings, authorized_key, logging_manager) -> None:
    before = settings.sshd_config.read_bytes()
    dry_gate = PlanGate(GateMode.DRY_RUN, logging_manager=logging_manager)

    report = make_run(run_gate=dry_gate).run()

    statuses = _statuses(report)
    assert report.status == "Planned"
    assert statuses["firewall"] is StepStatus.PLANNED
    assert statuses["intrusion-prevention"] is StepStatus.PLANNED
    assert statuses["ssh"] is StepStatus.PLANNED
    assert statuses["connectivity"] is StepStatus.SKIPPED
    assert report.applied_changes == []
    assert len(report.planned_changes) == 5 + 3 + 3
    assert runner.calls == []
    assert settings.sshd_config.read_bytes() == before
    assert not settings.jail_path.exists()


def test_declined_change_stops_the_run(make_run, runner, logging_manager) -> None:
    confirm_gate = PlanGate(GateMode.CONFIRM, confirm=lambda change: False, logging_manager=logging_manager)

    report = make_run(run_gate=confirm_gate).run()

    assert report.step("firewall").error_type == "OperatorDeclined"
    assert all(step.status is StepStatus.SKIPPED for step in report.steps[2:])
    assert runner.calls == []


def test_unreachable_ssh_is_only_a_warning(make_run, fake_ufw, fake_sshd, authorized_key) -> None:
    report = make_run(connect=_refused).run()

    assert _statuses(report)["connectivity"] is StepStatus.WARNING
    assert report.status == "Succeeded"
    assert any("ss -ltnp" in hint for hint in report.next_steps)


def test_default_requirements_include_tunnel_tools_only_when_needed(make_run, wg_config) -> None:
    plain = HardeningRun(HardeningIntent(), make_run().settings).requirements()
    tunnel = HardeningRun(HardeningIntent(tunnel_config=wg_config), make_run().settings).requirements()

    assert _binaries(plain) == {"ufw", "systemctl", "fail2ban-client", "sshd"}
    assert _binaries(tunnel) == _binaries(plain) | {"iptables", "ip6tables"}


def _binaries(requirements) -> set:
    return {req.name for req in requirements if isinstance(req, BinaryAvailable)}
