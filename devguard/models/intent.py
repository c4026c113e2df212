"""
Pydantic models describing the declared hardening target state
"""
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

USERNAME_PATTERN = r"^[a-z_][a-z0-9_-]{0,31}$"
INTERFACE_PATTERN = r"^[A-Za-z0-9_.=+-]{1,15}$"


class BanPolicy(BaseModel):
    """Brute-force ban thresholds for the remote-login jail."""
    model_config = ConfigDict(frozen=True)

    max_retry: int = Field(default=5, ge=1, le=100)
    find_time: int = Field(default=600, ge=1, description="Lookback window in seconds")
    ban_time: int = Field(default=3600, ge=1, description="Ban duration in seconds")


class HardeningIntent(BaseModel):
    """Target state for one hardening run. Constructed once, never mutated."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    management_port: int = Field(default=22, ge=1, le=65535)
    allowed_user: str | None = Field(default=None, pattern=USERNAME_PATTERN)
    default_incoming: Literal["deny", "reject"] = "deny"
    default_outgoing: Literal["allow", "deny"] = "allow"
    ban: BanPolicy = Field(default_factory=BanPolicy)
    disable_password_auth: bool = True
    tunnel_config: Path | None = None
    tunnel_interface: str | None = Field(default=None, pattern=INTERFACE_PATTERN)

    @field_validator("tunnel_config")
    @classmethod
    def _expand_tunnel_path(cls, value: Path | None) -> Path | None:
        return value.expanduser() if value is not None else None

    @property
    def killswitch_requested(self) -> bool:
        return self.tunnel_config is not None

    @property
    def interface_name(self) -> str | None:
        """Tunnel interface, defaulting to the config file stem (``wg0.conf`` -> ``wg0``)."""
        if self.tunnel_interface:
            return self.tunnel_interface
        if self.tunnel_config is not None:
            return self.tunnel_config.stem
        return None
