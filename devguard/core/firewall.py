"""Reconcile the host packet filter to a default-deny baseline."""
from __future__ import annotations

import logging
from typing import List

from devguard.core.command_runner import CommandRunner
from devguard.core.plan_gate import PlanGate
from devguard.models.changes import OperationResult, PlannedChange
from devguard.models.firewall import FirewallRule, FirewallRuleSet
from devguard.models.intent import HardeningIntent


logger = logging.getLogger(__name__)

UFW = "ufw"
RESET_WINDOW_NOTICE = (
    "Firewall reset briefly removes all existing rules before the baseline is re-added; "
    "keep an out-of-band console available while the run is in progress."
)


def build_baseline_ruleset(intent: HardeningIntent) -> FirewallRuleSet:
    """Default-deny inbound with exactly one opening: the management port."""

    return FirewallRuleSet(
        rules=[
            FirewallRule(
                name="management-ssh",
                direction="in",
                port=intent.management_port,
                protocol="tcp",
            )
        ],
        default_incoming=intent.default_incoming,
        default_outgoing=intent.default_outgoing,
    )


def ufw_rule_args(rule: FirewallRule) -> List[str]:
    """Translate a port rule into ``ufw`` arguments, e.g. ``allow in 22/tcp``."""

    if rule.conntrack or rule.interface or rule.destination or rule.port is None:
        raise ValueError(f"rule {rule.name!r} is not a plain port rule")
    if rule.direction == "both":
        raise ValueError(f"rule {rule.name!r} must name a single direction for ufw")
    return [rule.action, rule.direction, f"{rule.port}/{rule.protocol}"]


def ufw_commands(ruleset: FirewallRuleSet) -> List[List[str]]:
    """Full ordered argument lists that realise ``ruleset`` from an empty filter."""

    commands = [
        ["--force", "reset"],
        ["default", ruleset.default_incoming, "incoming"],
        ["default", ruleset.default_outgoing, "outgoing"],
    ]
    commands.extend(ufw_rule_args(rule) for rule in ruleset.rules)
    commands.append(["--force", "enable"])
    return commands


class FirewallReconciler:
    """Reset, apply defaults, open the management port, then enable.

    A failing step aborts the remaining ones. Nothing is rolled back: the
    allow rule is always in place before enforcement is switched on, which
    is what keeps the administrator's session reachable.
    """

    step = "firewall"

    def __init__(self, runner: CommandRunner, gate: PlanGate) -> None:
        self.runner = runner
        self.gate = gate

    def reconcile(self, intent: HardeningIntent, result: OperationResult) -> FirewallRuleSet:
        ruleset = build_baseline_ruleset(intent)
        if ruleset.effective_policy("in") == "allow":
            raise ValueError("baseline firewall must deny unmatched inbound traffic")

        result.diagnostics.append(RESET_WINDOW_NOTICE)
        logger.warning(RESET_WINDOW_NOTICE)

        for args in ufw_commands(ruleset):
            change = PlannedChange(
                target="ufw",
                operation=self._operation_for(args),
                rationale=self._rationale_for(args, intent),
                command=[UFW, *args],
            )
            self.gate.submit(result, change, lambda args=args: self.runner.execute(UFW, args))

        if not self.gate.dry_run:
            self._verify(ruleset, result)

        result.diagnostics.extend(ruleset.describe())
        return ruleset

    def _verify(self, ruleset: FirewallRuleSet, result: OperationResult) -> None:
        status = self.runner.execute(UFW, ["status", "verbose"], allow_failure=True)
        text = status.stdout.lower()
        if "status: active" not in text:
            result.warn("ufw did not report an active status after enable", next_step="Check 'ufw status verbose' on the host.")
        elif f"{ruleset.default_incoming} (incoming)" not in text:
            result.warn(
                f"ufw status does not show default {ruleset.default_incoming} for incoming traffic",
                next_step="Check 'ufw status verbose' on the host.",
            )

    @staticmethod
    def _operation_for(args: List[str]) -> str:
        if args[-1] == "reset":
            return "reset"
        if args[-1] == "enable":
            return "enable"
        if args[0] == "default":
            return "set"
        return "append"

    @staticmethod
    def _rationale_for(args: List[str], intent: HardeningIntent) -> str:
        if args[-1] == "reset":
            return "Start from a known-empty packet filter. " + RESET_WINDOW_NOTICE
        if args[-1] == "enable":
            return "Enforce the policy now that the management port is allowed"
        if args[0] == "default":
            return f"Explicit default policy for {args[2]} traffic"
        return f"Keep remote administration reachable on port {intent.management_port}/tcp"


__all__ = ["FirewallReconciler", "build_baseline_ruleset", "ufw_commands", "ufw_rule_args"]
