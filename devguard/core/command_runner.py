"""Argument-list command execution for devguard components."""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import Sequence

from devguard.core.errors import CommandExecutionError, CommandTimeout


logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Lightweight container for command execution results."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class CommandRunner:
    """Run external commands without ever going through a shell.

    Commands are always given as a program name plus an argument list so
    values parsed out of configuration files can never be interpreted as
    shell syntax. There is no retry: OS configuration commands are not
    safely repeatable, so failures propagate to the caller.
    """

    def execute(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        allow_failure: bool = False,
        timeout: float | None = None,
    ) -> CommandResult:
        argv = [command, *[str(arg) for arg in args]]
        logger.debug("Executing %s", argv)

        try:
            completed = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            logger.error("Command not found: %s", command)
            if allow_failure:
                return CommandResult(stdout="", stderr=str(exc), exit_code=127)
            raise CommandExecutionError(command, args, 127, str(exc)) from exc
        except subprocess.TimeoutExpired as exc:
            logger.warning("Command %s timed out after %ss", command, timeout)
            raise CommandTimeout(command, args, timeout or 0) from exc

        result = CommandResult(stdout=completed.stdout or "", stderr=completed.stderr or "", exit_code=completed.returncode)
        if not result.succeeded:
            logger.debug("Command %s exited with %s", command, result.exit_code)
            if not allow_failure:
                raise CommandExecutionError(command, args, result.exit_code, result.stderr)
        return result


__all__ = ["CommandRunner", "CommandResult"]
