"""
Pydantic models for packet-filter rule sets
"""
from typing import List, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

Direction = Literal["in", "out", "both"]
Policy = Literal["allow", "deny", "reject"]
Protocol = Literal["tcp", "udp", "any"]


class FirewallRule(BaseModel):
    """One allow/deny rule. Unset match fields mean "any"."""
    model_config = ConfigDict(frozen=True)

    name: str
    action: Literal["allow", "deny"] = "allow"
    direction: Direction = "in"
    interface: str | None = None
    destination: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    protocol: Protocol = "any"
    conntrack: List[Literal["ESTABLISHED", "RELATED"]] = Field(default_factory=list)

    @model_validator(mode="after")
    def _port_needs_protocol(self) -> "FirewallRule":
        if self.port is not None and self.protocol == "any":
            raise ValueError("a port match requires tcp or udp")
        return self

    def applies_to(self, direction: Literal["in", "out"]) -> bool:
        return self.direction in (direction, "both")

    def describe(self) -> str:
        parts = [self.action, self.direction]
        if self.interface:
            parts.append(f"on {self.interface}")
        if self.destination:
            parts.append(f"to {self.destination}")
        if self.port is not None:
            parts.append(f"port {self.port}/{self.protocol}")
        if self.conntrack:
            parts.append("state " + ",".join(self.conntrack))
        return " ".join(parts)


class FirewallRuleSet(BaseModel):
    """Ordered rules terminated by explicit default policies for each direction."""
    model_config = ConfigDict(frozen=True)

    rules: List[FirewallRule] = Field(default_factory=list)
    default_incoming: Policy
    default_outgoing: Policy

    def rules_for(self, direction: Literal["in", "out"]) -> List[FirewallRule]:
        return [rule for rule in self.rules if rule.applies_to(direction)]

    def effective_policy(self, direction: Literal["in", "out"]) -> Policy:
        """Verdict for traffic that no rule in ``direction`` matches."""
        return self.default_incoming if direction == "in" else self.default_outgoing

    def describe(self) -> List[str]:
        lines = [rule.describe() for rule in self.rules]
        lines.append(f"default incoming {self.default_incoming}")
        lines.append(f"default outgoing {self.default_outgoing}")
        return lines
