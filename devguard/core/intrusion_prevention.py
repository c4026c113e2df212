"""fail2ban jail for the remote-login service."""
from __future__ import annotations

import logging

from devguard.core.command_runner import CommandRunner
from devguard.core.config import Settings
from devguard.core.errors import CommandExecutionError
from devguard.core.files import atomic_write
from devguard.core.plan_gate import PlanGate
from devguard.models.changes import OperationResult, PlannedChange
from devguard.models.intent import HardeningIntent


logger = logging.getLogger(__name__)

JAIL_NAME = "sshd"


def render_jail(intent: HardeningIntent, settings: Settings) -> str:
    """Complete jail file content. The file is rewritten, never merged."""

    ban = intent.ban
    lines = [
        "# Managed by devguard. This file is rewritten on every run; local edits are lost.",
        f"[{JAIL_NAME}]",
        "enabled   = true",
        f"port      = {intent.management_port}",
        "filter    = sshd",
        "banaction = ufw",
        f"logpath   = {settings.ssh_log_path}",
        f"maxretry  = {ban.max_retry}",
        f"findtime  = {ban.find_time}",
        f"bantime   = {ban.ban_time}",
    ]
    return "\n".join(lines) + "\n"


class IntrusionPreventionConfigurator:
    """Write the ban policy, then enable and restart fail2ban.

    Service management failures are downgraded to warnings: the ban policy
    is defense in depth, the firewall and sshd settings are the real
    access control.
    """

    step = "intrusion-prevention"

    def __init__(self, runner: CommandRunner, gate: PlanGate, settings: Settings) -> None:
        self.runner = runner
        self.gate = gate
        self.settings = settings

    def configure(self, intent: HardeningIntent, result: OperationResult) -> None:
        jail_path = self.settings.jail_path
        content = render_jail(intent, self.settings).encode("utf-8")

        current = jail_path.read_bytes() if jail_path.exists() else None
        if current == content:
            result.diagnostics.append(f"{jail_path} already matches the ban policy")
        else:
            change = PlannedChange(
                target=str(jail_path),
                operation="write",
                rationale=(
                    f"Ban after {intent.ban.max_retry} failures within {intent.ban.find_time}s "
                    f"for {intent.ban.ban_time}s on port {intent.management_port}"
                ),
            )
            self.gate.submit(result, change, lambda: atomic_write(jail_path, content, mode=0o644))

        service = self.settings.fail2ban_service
        for verb in ("enable", "restart"):
            change = PlannedChange(
                target=f"service:{service}",
                operation="enable" if verb == "enable" else "restart",
                rationale="Load the ban policy" if verb == "restart" else "Start the ban service at boot",
                command=["systemctl", verb, service],
            )
            try:
                self.gate.submit(result, change, lambda verb=verb: self.runner.execute("systemctl", [verb, service]))
            except CommandExecutionError as exc:
                logger.warning("fail2ban %s failed: %s", verb, exc)
                result.warn(
                    f"systemctl {verb} {service} failed: {exc.message}",
                    next_step=f"Run 'systemctl {verb} {service}' and check 'journalctl -u {service}'.",
                )


__all__ = ["IntrusionPreventionConfigurator", "render_jail"]
