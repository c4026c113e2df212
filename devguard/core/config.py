"""Host resource locations and intent loading."""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaError

from devguard.core.errors import DevguardError
from devguard.models.intent import HardeningIntent


logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path.home() / ".devguard"


class IntentLoadError(DevguardError):
    """The operator-supplied intent could not be read or did not validate."""

    default_remediation = "Correct the intent file or command-line options and re-run."


class Settings(BaseModel):
    """Named OS resources a hardening run touches.

    Everything a component reads or writes on the host is reachable from
    here, so tests can point a run at a temporary directory.
    """
    model_config = ConfigDict(frozen=True)

    sshd_config: Path = Path("/etc/ssh/sshd_config")
    sshd_binary: str = "sshd"
    ssh_service: str = "ssh"
    jail_path: Path = Path("/etc/fail2ban/jail.d/devguard-sshd.local")
    fail2ban_service: str = "fail2ban"
    ssh_log_path: str = "/var/log/auth.log"
    passwd_path: Path = Path("/etc/passwd")
    authorized_keys_paths: List[Path] = Field(default_factory=list)
    state_dir: Path = DEFAULT_STATE_DIR
    supported_os: List[str] = Field(default_factory=lambda: ["debian", "ubuntu"])
    connectivity_timeout: float = 5.0
    public_ip_url: str = "https://ifconfig.me"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from ``DEVGUARD_*`` environment variables."""

        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        mapping = {
            "DEVGUARD_SSHD_CONFIG": "sshd_config",
            "DEVGUARD_SSHD_BINARY": "sshd_binary",
            "DEVGUARD_SSH_SERVICE": "ssh_service",
            "DEVGUARD_JAIL_PATH": "jail_path",
            "DEVGUARD_FAIL2BAN_SERVICE": "fail2ban_service",
            "DEVGUARD_SSH_LOG_PATH": "ssh_log_path",
            "DEVGUARD_STATE_DIR": "state_dir",
            "DEVGUARD_CONNECTIVITY_TIMEOUT": "connectivity_timeout",
            "DEVGUARD_PUBLIC_IP_URL": "public_ip_url",
        }
        for variable, field_name in mapping.items():
            if env.get(variable):
                values[field_name] = env[variable]

        keys = env.get("DEVGUARD_AUTHORIZED_KEYS")
        if keys:
            values["authorized_keys_paths"] = [Path(p) for p in keys.split(os.pathsep) if p]

        return cls.model_validate(values)


def load_intent(path: Path | None = None, overrides: Mapping[str, Any] | None = None) -> HardeningIntent:
    """Build the run's intent from an optional JSON file plus explicit overrides.

    Overrides whose value is ``None`` are ignored so unset CLI options do
    not mask values from the file.
    """

    payload: Dict[str, Any] = {}
    if path is not None:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise IntentLoadError(f"Cannot read intent file {path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise IntentLoadError(f"Intent file {path} is not valid JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise IntentLoadError(f"Intent file {path} must contain a JSON object, got {type(raw).__name__}")
        payload.update(raw)
        logger.info("Loaded intent from %s", path)

    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if key == "ban" and isinstance(value, Mapping):
            ban = dict(payload.get("ban") or {})
            ban.update({k: v for k, v in value.items() if v is not None})
            payload["ban"] = ban
        else:
            payload[key] = value

    try:
        return HardeningIntent.model_validate(payload)
    except SchemaError as exc:
        raise IntentLoadError(f"Invalid hardening intent: {exc}") from exc


__all__ = ["IntentLoadError", "Settings", "load_intent"]
