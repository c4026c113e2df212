"""Exception hierarchy for devguard hardening runs."""
from __future__ import annotations

from typing import List, Sequence


class DevguardError(Exception):
    """Base class for every failure raised by a hardening component.

    ``remediation`` is the operator-facing next step the reporter shows for
    this failure. Subclasses provide a sensible default.
    """

    default_remediation = ""

    def __init__(self, message: str, *, remediation: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.remediation = remediation if remediation is not None else self.default_remediation


class PrerequisiteError(DevguardError):
    """One or more environment preconditions are unmet."""

    default_remediation = "Resolve the unmet prerequisites listed above and re-run."

    def __init__(self, missing: Sequence[str], *, remediation: str | None = None) -> None:
        self.missing: List[str] = list(missing)
        super().__init__(
            "Unmet prerequisites: " + "; ".join(self.missing),
            remediation=remediation,
        )


class CommandExecutionError(DevguardError):
    """An external command exited non-zero."""

    default_remediation = "Inspect the command output above and correct the host state before re-running."

    def __init__(
        self,
        command: str,
        args: Sequence[str],
        exit_code: int,
        stderr: str,
        *,
        remediation: str | None = None,
    ) -> None:
        self.command = command
        self.args_list: List[str] = list(args)
        self.exit_code = exit_code
        self.stderr = stderr
        rendered = " ".join([command, *self.args_list])
        detail = stderr.strip()
        message = f"Command '{rendered}' failed with exit code {exit_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, remediation=remediation)


class CommandTimeout(CommandExecutionError):
    """An external command did not finish within its timeout."""

    def __init__(self, command: str, args: Sequence[str], timeout: float) -> None:
        self.timeout = timeout
        super().__init__(command, args, -1, f"timed out after {timeout:g}s")


class ValidationError(DevguardError):
    """A rewritten configuration failed its post-edit check."""

    default_remediation = "Review the daemon's syntax check output; the previous configuration was restored."


class LockoutRisk(DevguardError):
    """A change would remove the only viable remote access path."""

    default_remediation = (
        "Add a public key to the login user's ~/.ssh/authorized_keys before "
        "disabling password authentication, then re-run."
    )


class ParseError(DevguardError):
    """A required field could not be extracted from an input configuration."""

    default_remediation = "Fix the configuration file so every required field is present, then re-run."

    def __init__(self, message: str, *, missing: Sequence[str] = (), remediation: str | None = None) -> None:
        self.missing: List[str] = list(missing)
        super().__init__(message, remediation=remediation)


class OperatorDeclined(DevguardError):
    """The operator refused a change in confirmation mode."""

    default_remediation = "Re-run with --dry-run to review the plan, then confirm the changes you want."


__all__ = [
    "DevguardError",
    "PrerequisiteError",
    "CommandExecutionError",
    "CommandTimeout",
    "ValidationError",
    "LockoutRisk",
    "ParseError",
    "OperatorDeclined",
]
