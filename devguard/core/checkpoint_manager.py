"""Configuration backups with an encrypted checkpoint journal."""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from cryptography.fernet import Fernet, InvalidToken

from devguard.core.errors import DevguardError
from devguard.core.files import atomic_write


logger = logging.getLogger(__name__)

DEFAULT_BASE_DIR = Path.home() / ".devguard"


class BackupIntegrityError(DevguardError):
    """A stored backup no longer matches the digest recorded when it was taken."""

    default_remediation = "Restore the file manually from a known-good copy; the stored backup is corrupt."


def _normalise_name(name: str) -> str:
    """Return a filesystem-safe representation of ``name``."""

    return "".join(ch if ch.isalnum() or ch in {"-", "_", "."} else "-" for ch in name)


def _load_or_create_key(path: Path) -> bytes:
    """Load an encryption key from ``path`` or create one if missing."""

    if path.exists():
        key = path.read_bytes()
        logger.debug("Loaded existing checkpoint key from %s", path)
        return key

    path.parent.mkdir(parents=True, exist_ok=True)
    key = Fernet.generate_key()
    atomic_write(path, key, mode=0o600)
    logger.info("Generated new checkpoint encryption key at %s", path)
    return key


@dataclass(frozen=True)
class ConfigBackup:
    """Byte-for-byte snapshot of a configuration file, already on stable storage."""

    id: str
    source: Path
    backup_path: Path
    sha256: str
    timestamp: datetime

    def read_bytes(self) -> bytes:
        data = self.backup_path.read_bytes()
        if hashlib.sha256(data).hexdigest() != self.sha256:
            raise BackupIntegrityError(f"Backup {self.backup_path} does not match its recorded sha256")
        return data


class CheckpointManager:
    """Take, list, restore and delete configuration backups.

    Each backup is a plain copy under ``<base_dir>/backups`` plus an
    encrypted checkpoint record under ``<base_dir>/checkpoints`` that pins
    the copy's digest.
    """

    def __init__(self, base_dir: Path | None = None, *, encryption_key: bytes | None = None) -> None:
        self._base_dir = base_dir or DEFAULT_BASE_DIR
        self._checkpoint_dir = self._base_dir / "checkpoints"
        self._backup_dir = self._base_dir / "backups"
        self._checkpoint_dir.mkdir(parents=True, exist_ok=True)
        self._backup_dir.mkdir(parents=True, exist_ok=True)

        key_path = self._base_dir / "session.key"
        key = encryption_key or _load_or_create_key(key_path)
        self._cipher = Fernet(key)

    # ------------------------------------------------------------------
    # Public API
    def create_backup(self, source: Path) -> ConfigBackup:
        """Snapshot ``source`` to stable storage and return the backup."""

        data = source.read_bytes()
        timestamp = datetime.now(tz=timezone.utc)
        safe_name = _normalise_name(source.name)
        checkpoint_id = f"{timestamp.strftime('%Y%m%dT%H%M%S%fZ')}-{safe_name}"
        backup_path = self._backup_dir / f"{safe_name}.{timestamp.strftime('%Y%m%dT%H%M%S%fZ')}.bak"

        atomic_write(backup_path, data, mode=0o600)
        backup = ConfigBackup(
            id=checkpoint_id,
            source=source,
            backup_path=backup_path,
            sha256=hashlib.sha256(data).hexdigest(),
            timestamp=timestamp,
        )

        record = {
            "id": backup.id,
            "source": str(backup.source),
            "backup_path": str(backup.backup_path),
            "sha256": backup.sha256,
            "timestamp": timestamp.isoformat(),
        }
        payload = json.dumps(record, separators=(",", ":")).encode("utf-8")
        atomic_write(self._checkpoint_path(checkpoint_id), self._cipher.encrypt(payload), mode=0o600)

        logger.info("Backed up %s to %s (checkpoint %s)", source, backup_path, checkpoint_id)
        return backup

    def load_checkpoint(self, checkpoint_id: str) -> Optional[ConfigBackup]:
        """Return the backup recorded under ``checkpoint_id`` if available."""

        path = self._checkpoint_path(checkpoint_id)
        if not path.exists():
            logger.warning("Checkpoint %s not found", checkpoint_id)
            return None

        try:
            decrypted = self._cipher.decrypt(path.read_bytes())
            payload = json.loads(decrypted.decode("utf-8"))
            return ConfigBackup(
                id=payload["id"],
                source=Path(payload["source"]),
                backup_path=Path(payload["backup_path"]),
                sha256=payload["sha256"],
                timestamp=datetime.fromisoformat(payload["timestamp"]),
            )
        except InvalidToken:
            logger.error(
                "Failed to decrypt checkpoint %s; the encryption key may be incorrect or the file is corrupt",
                checkpoint_id,
            )
        except (ValueError, KeyError, json.JSONDecodeError) as exc:
            logger.exception("Malformed checkpoint %s: %s", checkpoint_id, exc)

        return None

    def restore_backup(self, backup: ConfigBackup) -> None:
        """Write the snapshot back over its source verbatim."""

        data = backup.read_bytes()
        atomic_write(backup.source, data)
        logger.info("Restored %s from checkpoint %s", backup.source, backup.id)

    def list_checkpoints(self) -> List[str]:
        """Return the identifiers of all stored checkpoints sorted by timestamp."""

        ids = [p.stem for p in self._checkpoint_dir.glob("*.kcp") if p.is_file()]
        return sorted(ids)

    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        """Remove ``checkpoint_id`` and its backup copy. Returns ``True`` when deleted."""

        path = self._checkpoint_path(checkpoint_id)
        if not path.exists():
            logger.debug("Attempted to delete nonexistent checkpoint %s", checkpoint_id)
            return False

        backup = self.load_checkpoint(checkpoint_id)
        if backup is not None and backup.backup_path.exists():
            backup.backup_path.unlink()
        path.unlink()
        logger.info("Deleted checkpoint %s", checkpoint_id)
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    def _checkpoint_path(self, checkpoint_id: str) -> Path:
        return self._checkpoint_dir / f"{checkpoint_id}.kcp"


__all__ = ["BackupIntegrityError", "CheckpointManager", "ConfigBackup"]
