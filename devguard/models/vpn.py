"""
Pydantic model for a parsed peer-tunnel configuration
"""
from typing import List

from pydantic import BaseModel, ConfigDict, Field


class VpnPeerConfig(BaseModel):
    """Fields extracted from a tunnel config.

    The object is produced even when extraction fails so the caller can
    report exactly what is missing; rules may only be generated from it
    when ``valid`` is true.
    """
    model_config = ConfigDict(frozen=True)

    interface: str
    local_address: str | None = None
    endpoint_host: str | None = None
    endpoint_port: int | None = Field(default=None, ge=1, le=65535)
    errors: List[str] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors and bool(self.local_address) and bool(self.endpoint_host)

    @property
    def missing(self) -> List[str]:
        fields = []
        if not self.local_address:
            fields.append("Interface.Address")
        if not self.endpoint_host:
            fields.append("Peer.Endpoint")
        return fields
