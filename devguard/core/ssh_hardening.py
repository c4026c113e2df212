"""Backup, rewrite, validate and apply the remote-login daemon configuration.

The transitions are::

    Pending -> BackedUp -> Rewritten -> Validated -> Applied
                                     \\-> ValidationFailed -> Restored

A file that already carries every directive skips straight from
``Pending`` to validation, so a re-run still restarts on it.

The service is only restarted from ``Validated``. Before any rewrite that
disables password authentication, the lockout guard must find at least one
registered public key for an account that can still log in; otherwise the
run stops with :class:`LockoutRisk` and the live file is never touched.
"""
from __future__ import annotations

import logging
import re
from collections import OrderedDict
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from devguard.core.checkpoint_manager import CheckpointManager, ConfigBackup
from devguard.core.command_runner import CommandRunner
from devguard.core.config import Settings
from devguard.core.errors import CommandExecutionError, LockoutRisk, PrerequisiteError, ValidationError
from devguard.core.files import atomic_write
from devguard.core.logging_manager import LoggingManager, get_logging_manager
from devguard.core.plan_gate import PlanGate
from devguard.models.changes import OperationResult, PlannedChange
from devguard.models.intent import HardeningIntent


logger = logging.getLogger(__name__)

_DIRECTIVE_RE = re.compile(r"^\s*([A-Za-z][A-Za-z0-9]*)(?:\s*=\s*|\s+)\S")
_MATCH_RE = re.compile(r"^\s*Match\s", re.IGNORECASE)
_KEY_RE = re.compile(
    r"(?:^|\s)(?:ssh-(?:rsa|dss|ed25519)|ecdsa-sha2-nistp(?:256|384|521)"
    r"|sk-(?:ssh-ed25519|ecdsa-sha2-nistp256)@openssh\.com)\s+AAAA[A-Za-z0-9+/]+=*"
)
_NOLOGIN_SHELLS = ("nologin", "false", "sync", "shutdown", "halt")


class SshState(str, Enum):
    PENDING = "Pending"
    BACKED_UP = "BackedUp"
    REWRITTEN = "Rewritten"
    VALIDATED = "Validated"
    APPLIED = "Applied"
    VALIDATION_FAILED = "ValidationFailed"
    RESTORED = "Restored"


def desired_directives(intent: HardeningIntent) -> "OrderedDict[str, str]":
    """Directive values the hardened daemon must end up with, in write order."""

    directives: "OrderedDict[str, str]" = OrderedDict()
    directives["Port"] = str(intent.management_port)
    directives["PubkeyAuthentication"] = "yes"
    if intent.disable_password_auth:
        directives["PasswordAuthentication"] = "no"
        directives["KbdInteractiveAuthentication"] = "no"
    directives["PermitRootLogin"] = "no"
    directives["PermitUserEnvironment"] = "no"
    if intent.allowed_user:
        directives["AllowUsers"] = intent.allowed_user
    return directives


def _directive_name(line: str) -> Optional[str]:
    stripped = line.lstrip()
    if not stripped or stripped.startswith("#"):
        return None
    match = _DIRECTIVE_RE.match(line)
    return match.group(1).lower() if match else None


def _global_section_end(lines: List[str]) -> int:
    for index, line in enumerate(lines):
        if _MATCH_RE.match(line):
            return index
    return len(lines)


def rewrite_config(text: str, directives: Dict[str, str]) -> str:
    """Set each directive in the global section of an sshd config.

    The first active occurrence is replaced and later duplicates in the
    global section are dropped, so repeated runs converge on one line per
    directive. Missing directives are inserted before the first ``Match``
    block, where they still apply globally. Comments are left untouched.
    """

    lines = text.splitlines(keepends=True)
    if lines and not lines[-1].endswith("\n"):
        lines[-1] += "\n"

    for key, value in directives.items():
        wanted = f"{key} {value}\n"
        boundary = _global_section_end(lines)
        hits = [i for i in range(boundary) if _directive_name(lines[i]) == key.lower()]
        if hits:
            lines[hits[0]] = wanted
            for index in reversed(hits[1:]):
                del lines[index]
        else:
            lines.insert(boundary, wanted)

    return "".join(lines)


def parse_effective_config(output: str) -> Dict[str, List[str]]:
    """Parse ``sshd -T`` output into lower-cased keyword -> values."""

    values: Dict[str, List[str]] = {}
    for line in output.splitlines():
        parts = line.strip().split(None, 1)
        if len(parts) != 2:
            continue
        values.setdefault(parts[0].lower(), []).append(parts[1].strip())
    return values


class AuthorizedKeyProbe:
    """Find public keys that still grant access once the hardening applies.

    Root's keys never count because ``PermitRootLogin no`` is part of the
    same rewrite. With a restricted login user only that user's keys count.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def candidate_paths(self, intent: HardeningIntent) -> List[Path]:
        if self.settings.authorized_keys_paths:
            return list(self.settings.authorized_keys_paths)

        paths: List[Path] = []
        for user, home in self._login_accounts():
            if intent.allowed_user and user != intent.allowed_user:
                continue
            ssh_dir = Path(home) / ".ssh"
            paths.extend([ssh_dir / "authorized_keys", ssh_dir / "authorized_keys2"])
        return paths

    def find_keys(self, intent: HardeningIntent) -> Dict[Path, int]:
        """Return ``{path: key_count}`` for every candidate file holding at least one key."""

        found: Dict[Path, int] = {}
        for path in self.candidate_paths(intent):
            try:
                text = path.read_text(encoding="utf-8", errors="replace")
            except (FileNotFoundError, NotADirectoryError):
                continue
            except PermissionError:
                logger.warning("Cannot read %s while looking for public keys", path)
                continue
            count = sum(
                1 for line in text.splitlines()
                if line.strip() and not line.lstrip().startswith("#") and _KEY_RE.search(line)
            )
            if count:
                found[path] = count
        return found

    def _login_accounts(self) -> List[tuple]:
        accounts = []
        try:
            lines = self.settings.passwd_path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            logger.warning("%s not found; no login accounts to inspect", self.settings.passwd_path)
            return accounts

        for line in lines:
            fields = line.split(":")
            if len(fields) < 7 or line.startswith("#"):
                continue
            user, uid, home, shell = fields[0], fields[2], fields[5], fields[6]
            if user == "root" or not uid.isdigit():
                continue
            if shell.rsplit("/", 1)[-1] in _NOLOGIN_SHELLS:
                continue
            accounts.append((user, home))
        return accounts


class SshHardeningStateMachine:
    """Harden the sshd configuration without ever restarting on an unvalidated file."""

    step = "ssh"

    def __init__(
        self,
        runner: CommandRunner,
        gate: PlanGate,
        settings: Settings,
        checkpoints: CheckpointManager,
        *,
        key_probe: Optional[AuthorizedKeyProbe] = None,
        logging_manager: Optional[LoggingManager] = None,
    ) -> None:
        self.runner = runner
        self.gate = gate
        self.settings = settings
        self.checkpoints = checkpoints
        self.key_probe = key_probe or AuthorizedKeyProbe(settings)
        self.logging_manager = logging_manager or get_logging_manager()
        self.state = SshState.PENDING
        self.backup: Optional[ConfigBackup] = None

    def harden(self, intent: HardeningIntent, result: OperationResult) -> SshState:
        config = self.settings.sshd_config
        if not config.is_file():
            raise PrerequisiteError([f"sshd configuration {config} does not exist"])

        original = config.read_bytes()
        directives = desired_directives(intent)
        text = original.decode("utf-8", "surrogateescape")
        rewritten = rewrite_config(text, directives).encode("utf-8", "surrogateescape")

        if intent.disable_password_auth:
            self._guard_lockout(intent, result)

        if rewritten == original:
            result.diagnostics.append(
                f"{config} already carries every hardened directive; revalidating and restarting without a rewrite"
            )
            if not self.gate.dry_run:
                self._revalidate(config, directives, result)
        else:
            self._rewrite(config, rewritten, directives, result)

        restart = PlannedChange(
            target=f"service:{self.settings.ssh_service}",
            operation="restart",
            rationale="Load the validated configuration",
            command=["systemctl", "restart", self.settings.ssh_service],
        )
        try:
            self.gate.submit(
                result, restart, lambda: self.runner.execute("systemctl", ["restart", self.settings.ssh_service])
            )
        except CommandExecutionError as exc:
            service = self.settings.ssh_service
            exc.remediation = (
                f"sshd may not be running: keep this session open, check 'systemctl status {service}' "
                f"and 'journalctl -u {service}', then re-run to restart on the validated configuration."
            )
            raise
        if not self.gate.dry_run:
            self._transition(SshState.APPLIED, result)
            if self.backup is not None:
                result.diagnostics.append(
                    f"Pre-hardening copy kept as checkpoint {self.backup.id}; "
                    f"restore with 'devguard rollback {self.backup.id}'"
                )
        return self.state

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _rewrite(
        self, config: Path, rewritten: bytes, directives: Dict[str, str], result: OperationResult
    ) -> None:
        self.gate.submit(
            result,
            PlannedChange(target=str(config), operation="backup", rationale="Timestamped snapshot before any edit"),
            lambda: self._take_backup(config),
        )
        if not self.gate.dry_run:
            self._transition(SshState.BACKED_UP, result)

        self.gate.submit(
            result,
            PlannedChange(
                target=str(config),
                operation="replace",
                rationale="Set " + ", ".join(f"{k} {v}" for k, v in directives.items()),
            ),
            lambda: atomic_write(config, rewritten),
        )
        if self.gate.dry_run:
            result.diagnostics.append(
                f"Would validate with '{self.settings.sshd_binary} -t' and restore {config} on failure"
            )
        else:
            self._transition(SshState.REWRITTEN, result)
            self._validate_or_restore(config, directives, result)

    def _revalidate(self, config: Path, directives: Dict[str, str], result: OperationResult) -> None:
        """Validate a file that needed no rewrite; a previous run may never have restarted on it."""

        try:
            self._validate(config, directives)
        except ValidationError as exc:
            self._transition(SshState.VALIDATION_FAILED, result)
            exc.remediation = (
                f"{config} was not modified and the service was not restarted; "
                "fix the reported problem and re-run."
            )
            raise
        self._transition(SshState.VALIDATED, result)

    def _guard_lockout(self, intent: HardeningIntent, result: OperationResult) -> None:
        keys = self.key_probe.find_keys(intent)
        if keys:
            summary = ", ".join(f"{path} ({count})" for path, count in keys.items())
            result.diagnostics.append(f"Public keys registered: {summary}")
            return

        who = f"user '{intent.allowed_user}'" if intent.allowed_user else "any non-root login account"
        raise LockoutRisk(
            f"No public key is registered for {who}; disabling password authentication would lock out remote access",
            remediation=(
                f"No public key found for {who}: add one to ~/.ssh/authorized_keys "
                "before re-running with password authentication disabled."
            ),
        )

    def _take_backup(self, config: Path) -> ConfigBackup:
        self.backup = self.checkpoints.create_backup(config)
        self.logging_manager.log_backup_created(self.backup.id, config, self.backup.backup_path)
        return self.backup

    def _validate_or_restore(self, config: Path, directives: Dict[str, str], result: OperationResult) -> None:
        try:
            self._validate(config, directives)
        except ValidationError:
            self._transition(SshState.VALIDATION_FAILED, result)
            self._restore(config, result)
            raise
        self._transition(SshState.VALIDATED, result)

    def _validate(self, config: Path, directives: Dict[str, str]) -> None:
        binary = self.settings.sshd_binary
        syntax = self.runner.execute(binary, ["-t", "-f", str(config)], allow_failure=True)
        if not syntax.succeeded:
            raise ValidationError(
                f"'{binary} -t' rejected the rewritten configuration: {syntax.stderr.strip() or 'no output'}"
            )

        effective = self.runner.execute(binary, ["-T", "-f", str(config)], allow_failure=True)
        if not effective.succeeded:
            raise ValidationError(
                f"'{binary} -T' could not evaluate the rewritten configuration: {effective.stderr.strip() or 'no output'}"
            )

        values = parse_effective_config(effective.stdout)
        mismatched = [
            f"{key} (effective: {', '.join(values.get(key.lower(), [])) or 'unset'})"
            for key, value in directives.items()
            if value.lower() not in [v.lower() for v in values.get(key.lower(), [])]
        ]
        if mismatched:
            raise ValidationError(
                "Hardened directives did not take effect: " + "; ".join(mismatched),
                remediation=(
                    "An earlier Include (for example under /etc/ssh/sshd_config.d/) overrides these settings; "
                    "remove the conflicting lines and re-run. The previous configuration was restored."
                ),
            )

    def _restore(self, config: Path, result: OperationResult) -> None:
        backup = self.backup
        change = PlannedChange(
            target=str(config),
            operation="restore",
            rationale=f"Validation failed; restoring checkpoint {backup.id} verbatim",
        )
        try:
            self.gate.recover(result, change, lambda: self.checkpoints.restore_backup(backup))
        except Exception:
            self.logging_manager.log_backup_restored(backup.id, config, False)
            raise
        self.logging_manager.log_backup_restored(backup.id, config, True)
        self._transition(SshState.RESTORED, result)

    def _transition(self, state: SshState, result: OperationResult) -> None:
        logger.info("sshd hardening: %s -> %s", self.state.value, state.value)
        self.state = state
        result.diagnostics.append(f"state: {state.value}")


__all__ = [
    "AuthorizedKeyProbe",
    "SshHardeningStateMachine",
    "SshState",
    "desired_directives",
    "parse_effective_config",
    "rewrite_config",
]
