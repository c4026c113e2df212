"""Advisory post-hardening reachability checks."""
from __future__ import annotations

import ipaddress
import logging
import socket
from typing import Callable

from devguard.core.command_runner import CommandRunner
from devguard.core.config import Settings
from devguard.core.errors import CommandExecutionError
from devguard.models.changes import OperationResult
from devguard.models.intent import HardeningIntent


logger = logging.getLogger(__name__)


class ConnectivityChecker:
    """Probe the management port and the tunnel's public address.

    Every probe is bounded by ``settings.connectivity_timeout`` and only
    ever produces warnings; nothing here can fail the run.
    """

    step = "connectivity"

    def __init__(
        self,
        runner: CommandRunner,
        settings: Settings,
        *,
        connect: Callable[..., socket.socket] = socket.create_connection,
    ) -> None:
        self.runner = runner
        self.settings = settings
        self._connect = connect

    def check(self, intent: HardeningIntent, result: OperationResult) -> None:
        self._check_ssh(intent, result)
        if intent.killswitch_requested:
            self._check_public_ip(intent, result)

    def _check_ssh(self, intent: HardeningIntent, result: OperationResult) -> None:
        address = ("127.0.0.1", intent.management_port)
        try:
            with self._connect(address, timeout=self.settings.connectivity_timeout) as sock:
                banner = sock.recv(64).decode("ascii", "replace").strip()
        except OSError as exc:
            logger.warning("Management port %s did not answer: %s", intent.management_port, exc)
            result.warn(
                f"sshd did not answer on port {intent.management_port}: {exc}",
                next_step=(
                    f"Verify 'ss -ltnp' shows sshd on port {intent.management_port} before closing this session."
                ),
            )
            return

        if banner.startswith("SSH-"):
            result.diagnostics.append(f"sshd answered on port {intent.management_port} ({banner})")
        else:
            result.warn(f"Port {intent.management_port} answered without an SSH banner")

    def _check_public_ip(self, intent: HardeningIntent, result: OperationResult) -> None:
        interface = intent.interface_name
        try:
            probe = self.runner.execute(
                "curl",
                [
                    "--silent",
                    "--show-error",
                    "--max-time",
                    f"{self.settings.connectivity_timeout:g}",
                    "--interface",
                    interface,
                    self.settings.public_ip_url,
                ],
                timeout=self.settings.connectivity_timeout + 1,
            )
        except CommandExecutionError as exc:
            result.warn(
                f"No public IP through {interface}: {exc.message}",
                next_step=f"Bring the tunnel up with 'wg-quick up {interface}'; traffic outside it stays blocked.",
            )
            return

        reported = probe.stdout.strip()
        try:
            ipaddress.ip_address(reported)
        except ValueError:
            result.warn(f"Public IP probe through {interface} returned an unexpected answer")
            return
        result.diagnostics.append(f"Public IP through {interface}: {reported}")


__all__ = ["ConnectivityChecker"]
