"""Structured logging management for devguard runs."""
from __future__ import annotations

import json
import logging
import logging.handlers
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from devguard.models.changes import OperationResult, PlannedChange


def _utc_timestamp() -> str:
    return datetime.now(tz=timezone.utc).isoformat().replace("+00:00", "Z")


class LogEntry(BaseModel):
    """Structured journal entry for devguard operations."""

    timestamp: str
    level: str
    step: Optional[str] = None
    action: Optional[str] = None  # planned, applied, declined, failed, backup, restore, result
    target: Optional[str] = None
    operation: Optional[str] = None
    status: str  # success, failure, skipped, pending
    cmd: Optional[str] = None
    detail: Optional[str] = None
    user: Optional[str] = None
    session_id: str
    message: str


class LoggingManager:
    """Centralized logging manager with a JSON operations journal and rotation."""

    def __init__(self, log_dir: Optional[Path] = None):
        default_dir = os.getenv("DEVGUARD_LOG_DIR")
        self.log_dir = log_dir or (Path(default_dir) if default_dir else Path.home() / ".devguard" / "logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.session_id = str(uuid.uuid4())
        self.user = os.getenv("SUDO_USER") or os.getenv("USER") or "unknown"

        self.structured_logger = self._setup_structured_logger()
        self.app_logger = self._setup_app_logger()

    @property
    def journal_path(self) -> Path:
        return self.log_dir / "devguard-operations.jsonl"

    def _setup_structured_logger(self) -> logging.Logger:
        """Set up JSON structured logger with rotation."""
        logger = logging.getLogger("devguard.structured")
        logger.setLevel(logging.INFO)

        # Clear any existing handlers to avoid duplicates
        for handler in list(logger.handlers):
            handler.close()
        logger.handlers.clear()

        json_handler = logging.handlers.RotatingFileHandler(
            self.journal_path,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding="utf-8"
        )
        json_handler.setLevel(logging.INFO)
        json_handler.setFormatter(JsonFormatter())

        logger.addHandler(json_handler)
        logger.propagate = False

        return logger

    def _setup_app_logger(self) -> logging.Logger:
        """Set up application logger with standard formatting."""
        logger = logging.getLogger("devguard.app")
        logger.setLevel(logging.INFO)

        for handler in list(logger.handlers):
            handler.close()
        logger.handlers.clear()

        app_handler = logging.handlers.RotatingFileHandler(
            self.log_dir / "devguard-app.log",
            maxBytes=5 * 1024 * 1024,  # 5MB
            backupCount=3,
            encoding="utf-8"
        )
        app_handler.setLevel(logging.INFO)
        app_handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))

        logger.addHandler(app_handler)
        logger.propagate = False

        return logger

    def log_event(
        self,
        level: str,
        step: Optional[str] = None,
        action: Optional[str] = None,
        target: Optional[str] = None,
        operation: Optional[str] = None,
        status: str = "info",
        cmd: Optional[str] = None,
        detail: Optional[str] = None,
        message: str = "",
        **kwargs: Any
    ) -> None:
        """Write one structured entry to the operations journal."""

        entry = LogEntry(
            timestamp=_utc_timestamp(),
            level=level,
            step=step,
            action=action,
            target=target,
            operation=operation,
            status=status,
            cmd=cmd,
            detail=detail,
            user=self.user,
            session_id=self.session_id,
            message=message
        )

        log_data = entry.model_dump(exclude_none=True)
        log_data.update(kwargs)

        self.structured_logger.info("", extra={"structured_data": log_data})

    def log_app_event(self, level: str, message: str, **kwargs: Any) -> None:
        """Log an application event to the standard logger."""
        log_level = getattr(logging, level.upper(), logging.INFO)
        self.app_logger.log(log_level, message, extra=kwargs)

    def log_change(self, step: str, change: PlannedChange, action: str, status: str, detail: Optional[str] = None) -> None:
        """Record a planned change moving through the gate."""
        self.log_event(
            level="ERROR" if status == "failure" else "INFO",
            step=step,
            action=action,
            target=change.target,
            operation=change.operation,
            status=status,
            cmd=" ".join(change.command) if change.command else None,
            detail=detail,
            message=f"{action.capitalize()} change: {change.describe()}"
        )

    def log_backup_created(self, checkpoint_id: str, source: Path, backup_path: Path) -> None:
        self.log_event(
            level="INFO",
            action="backup",
            target=str(source),
            status="success",
            detail=str(backup_path),
            message=f"Backup {checkpoint_id} of {source} written to {backup_path}"
        )

    def log_backup_restored(self, checkpoint_id: str, source: Path, success: bool) -> None:
        self.log_event(
            level="INFO" if success else "ERROR",
            action="restore",
            target=str(source),
            status="success" if success else "failure",
            message=f"Restore of {source} from {checkpoint_id} {'succeeded' if success else 'failed'}"
        )

    def log_step_result(self, result: OperationResult) -> None:
        """Record the final status of a hardening step."""
        self.log_event(
            level="ERROR" if result.status.value == "failed" else "INFO",
            step=result.step,
            action="result",
            status=result.status.value,
            detail="; ".join(result.failures) or None,
            message=f"Step {result.step} finished with status {result.status.value}"
        )

    def get_session_logs(self) -> List[Dict[str, Any]]:
        """Retrieve all journal entries for the current session."""
        return [entry for entry in self._read_journal() if entry.get("session_id") == self.session_id]

    def get_step_history(self, step: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Get the most recent journal entries for ``step`` across sessions."""
        logs = [entry for entry in self._read_journal() if entry.get("step") == step]
        return logs[-limit:]

    def _read_journal(self) -> List[Dict[str, Any]]:
        if not self.journal_path.exists():
            return []

        for handler in self.structured_logger.handlers:
            handler.flush()

        entries: List[Dict[str, Any]] = []
        with open(self.journal_path, "r", encoding="utf-8") as f:
            for line in f:
                try:
                    entries.append(json.loads(line.strip()))
                except json.JSONDecodeError:
                    continue
        return entries


class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record):
        if hasattr(record, 'structured_data'):
            return json.dumps(record.structured_data, ensure_ascii=False)

        # Fallback for non-structured log records
        return json.dumps({
            'timestamp': _utc_timestamp(),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }, ensure_ascii=False)


# Global logging manager instance
_logging_manager: Optional[LoggingManager] = None


def get_logging_manager() -> LoggingManager:
    """Get the global logging manager instance."""
    global _logging_manager
    if _logging_manager is None:
        _logging_manager = LoggingManager()
    return _logging_manager


def setup_logging(log_dir: Optional[Path] = None) -> LoggingManager:
    """Set up the global logging manager."""
    global _logging_manager
    _logging_manager = LoggingManager(log_dir)
    return _logging_manager


__all__ = ["LoggingManager", "LogEntry", "get_logging_manager", "setup_logging"]
