"""Fail-closed VPN kill switch derived from a WireGuard peer configuration."""
from __future__ import annotations

import ipaddress
import logging
import re
from pathlib import Path
from typing import List, Literal, Optional, Tuple

from devguard.core.command_runner import CommandRunner
from devguard.core.errors import ParseError
from devguard.core.plan_gate import PlanGate
from devguard.models.changes import OperationResult, PlannedChange
from devguard.models.firewall import FirewallRule, FirewallRuleSet
from devguard.models.intent import INTERFACE_PATTERN, HardeningIntent
from devguard.models.vpn import VpnPeerConfig


logger = logging.getLogger(__name__)

_SECTION_RE = re.compile(r"^\s*\[\s*([A-Za-z]+)\s*\]\s*$")
_KEY_VALUE_RE = re.compile(r"^\s*([A-Za-z][A-Za-z0-9]*)\s*=\s*(.*?)\s*$")
_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)(?!-)[A-Za-z0-9-]{1,63}(?<!-)(?:\.(?!-)[A-Za-z0-9-]{1,63}(?<!-))*\.?$"
)
_INTERFACE_RE = re.compile(INTERFACE_PATTERN)

CHAINS = {"in": ("INPUT", "DEVGUARD-KS-IN"), "out": ("OUTPUT", "DEVGUARD-KS-OUT")}
STAGE_SUFFIX = "-NEW"


def _split_endpoint(value: str) -> Tuple[str, Optional[str]]:
    """Split ``host:port`` or ``[v6]:port`` into its parts without validating them."""

    if value.startswith("["):
        host, _, rest = value[1:].partition("]")
        return host, rest[1:] if rest.startswith(":") else None
    if value.count(":") == 1:
        host, _, port = value.partition(":")
        return host, port
    # A bare IPv6 literal has several colons and no port.
    return value, None


def _valid_host(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        return bool(_HOSTNAME_RE.match(host))


def parse_peer_config(text: str, interface: str) -> VpnPeerConfig:
    """Extract the local tunnel address and the peer endpoint.

    The two fields are extracted independently; each missing or malformed
    field is recorded so the caller can refuse to act on a partial result.
    Only keys are inspected; key material such as ``PrivateKey`` is never
    retained or logged.
    """

    section: Optional[str] = None
    address: Optional[str] = None
    endpoints: List[str] = []

    for raw in text.splitlines():
        line = raw.split("#", 1)[0]
        header = _SECTION_RE.match(line)
        if header:
            section = header.group(1).lower()
            continue
        pair = _KEY_VALUE_RE.match(line)
        if not pair or not pair.group(2):
            continue
        key, value = pair.group(1).lower(), pair.group(2)
        if section == "interface" and key == "address" and address is None:
            address = value.split(",")[0].strip()
        elif section == "peer" and key == "endpoint":
            endpoints.append(value.strip())

    errors: List[str] = []
    if not _INTERFACE_RE.match(interface):
        errors.append(f"tunnel interface name {interface!r} is not a valid interface name")

    if address is not None:
        try:
            ipaddress.ip_interface(address)
        except ValueError:
            errors.append("Interface.Address is not a valid IP address")
            address = None

    host: Optional[str] = None
    port: Optional[int] = None
    if endpoints:
        if len(endpoints) > 1:
            logger.warning("Tunnel config lists %s peer endpoints; only the first is allowed through", len(endpoints))
        candidate, raw_port = _split_endpoint(endpoints[0])
        if not _valid_host(candidate):
            errors.append("Peer.Endpoint host is not a valid hostname or IP address")
        else:
            host = candidate
        if raw_port is not None:
            if raw_port.isdigit() and 1 <= int(raw_port) <= 65535:
                port = int(raw_port)
            else:
                errors.append("Peer.Endpoint port is not a valid port number")

    return VpnPeerConfig(
        interface=interface,
        local_address=address,
        endpoint_host=host,
        endpoint_port=port,
        errors=errors,
    )


def generate_killswitch_rules(peer: VpnPeerConfig) -> FirewallRuleSet:
    """Allow-list for a tunnel; anything unmatched is denied.

    Raises :class:`ParseError` instead of returning a partial rule set when
    the peer configuration is incomplete.
    """

    if not peer.valid:
        problems = [f"missing {name}" for name in peer.missing] + peer.errors
        raise ParseError(
            "Refusing to build a kill switch from an incomplete tunnel config: " + "; ".join(problems),
            missing=peer.missing,
            remediation=(
                "Make sure the tunnel config has 'Address' under [Interface] and 'Endpoint = host:port' "
                "under [Peer]; no kill-switch rules were installed."
            ),
        )

    endpoint = FirewallRule(
        name="vpn-endpoint",
        direction="out",
        destination=peer.endpoint_host,
        port=peer.endpoint_port,
        protocol="udp" if peer.endpoint_port else "any",
    )
    return FirewallRuleSet(
        rules=[
            FirewallRule(name="loopback", direction="both", interface="lo"),
            FirewallRule(name="tunnel", direction="both", interface=peer.interface),
            endpoint,
            FirewallRule(name="established-related", direction="both", conntrack=["ESTABLISHED", "RELATED"]),
        ],
        default_incoming="deny",
        default_outgoing="deny",
    )


def _rule_family(rule: FirewallRule) -> Optional[int]:
    """IP version a destination pins the rule to; ``None`` means both families."""

    if not rule.destination:
        return None
    try:
        return ipaddress.ip_address(rule.destination).version
    except ValueError:
        return 4


def iptables_rule_args(rule: FirewallRule, direction: Literal["in", "out"]) -> List[str]:
    args: List[str] = []
    if rule.interface:
        args.extend(["-i" if direction == "in" else "-o", rule.interface])
    if rule.destination:
        args.extend(["-d", rule.destination])
    if rule.protocol != "any":
        args.extend(["-p", rule.protocol])
    if rule.port is not None:
        args.extend(["--dport", str(rule.port)])
    if rule.conntrack:
        args.extend(["-m", "conntrack", "--ctstate", ",".join(rule.conntrack)])
    args.extend(["-j", "ACCEPT" if rule.action == "allow" else "DROP"])
    return args


def chain_contents(ruleset: FirewallRuleSet, direction: Literal["in", "out"], family: int) -> List[List[str]]:
    """Rule argument lists for one direction and IP family, ending in the explicit default.

    Inbound ends in ``RETURN``: the baseline ufw policy that follows is
    default-deny and still admits the management port. Outbound ends in
    ``DROP``, which is what makes the switch fail closed.
    """

    contents = [
        iptables_rule_args(rule, direction)
        for rule in ruleset.rules_for(direction)
        if _rule_family(rule) in (None, family)
    ]
    if direction == "in":
        contents.append(["-j", "RETURN"])
    else:
        contents.append(["-j", "ACCEPT" if ruleset.default_outgoing == "allow" else "DROP"])
    return contents


class KillSwitchGenerator:
    """Parse the tunnel config and install the kill switch into netfilter.

    Each chain is rebuilt under a staging name, hooked in, and only then
    swapped for the previous chain, so a re-run never leaves a gap where
    outbound traffic bypasses the switch.
    """

    step = "killswitch"
    binaries = {4: "iptables", 6: "ip6tables"}

    def __init__(self, runner: CommandRunner, gate: PlanGate) -> None:
        self.runner = runner
        self.gate = gate

    def load(self, intent: HardeningIntent) -> VpnPeerConfig:
        path: Path = intent.tunnel_config
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ParseError(
                f"Cannot read tunnel config {path}: {exc.strerror or exc}",
                missing=["Interface.Address", "Peer.Endpoint"],
            ) from exc
        return parse_peer_config(text, intent.interface_name or path.stem)

    def enforce(self, intent: HardeningIntent, result: OperationResult) -> FirewallRuleSet:
        peer = self.load(intent)
        ruleset = generate_killswitch_rules(peer)
        result.diagnostics.append(
            f"Tunnel {peer.interface}: local {peer.local_address}, endpoint {peer.endpoint_host}"
            + (f":{peer.endpoint_port}" if peer.endpoint_port else "")
        )

        for family, binary in self.binaries.items():
            self._install_family(ruleset, family, binary, result)

        result.diagnostics.extend(ruleset.describe())
        return ruleset

    def _install_family(self, ruleset: FirewallRuleSet, family: int, binary: str, result: OperationResult) -> None:
        listing = self.runner.execute(binary, ["-S"]).stdout.splitlines()
        existing_chains = {line.split()[1] for line in listing if line.startswith("-N ")}

        for direction, (builtin, chain) in CHAINS.items():
            stage = chain + STAGE_SUFFIX
            steps: List[Tuple[str, List[str], str]] = []

            if stage in existing_chains:
                steps.append(("replace", ["-F", stage], "Empty a leftover staging chain"))
            else:
                steps.append(("set", ["-N", stage], "Create the staging chain"))
            for args in chain_contents(ruleset, direction, family):
                steps.append(("append", ["-A", stage, *args], f"Kill-switch rule ({direction}bound)"))
            stage_hooks = [line for line in listing if line.split() == ["-A", builtin, "-j", stage]]
            if stage_hooks:
                for _ in stage_hooks[1:]:
                    steps.append(("replace", ["-D", builtin, "-j", stage], "Drop a duplicate staging hook"))
            else:
                steps.append(("insert", ["-I", builtin, "1", "-j", stage], f"Hook the kill switch into {builtin}"))

            old_hooks = [line for line in listing if line.split() == ["-A", builtin, "-j", chain]]
            for _ in old_hooks:
                steps.append(("replace", ["-D", builtin, "-j", chain], "Unhook the previous kill switch"))
            if chain in existing_chains:
                steps.append(("replace", ["-F", chain], "Empty the previous kill switch"))
                steps.append(("replace", ["-X", chain], "Delete the previous kill switch"))
            steps.append(("set", ["-E", stage, chain], "Promote the staged kill switch"))

            for operation, args, rationale in steps:
                change = PlannedChange(
                    target=f"{binary}:{builtin}",
                    operation=operation,
                    rationale=rationale,
                    command=[binary, *args],
                )
                self.gate.submit(result, change, lambda binary=binary, args=args: self.runner.execute(binary, args))


__all__ = [
    "KillSwitchGenerator",
    "chain_contents",
    "generate_killswitch_rules",
    "iptables_rule_args",
    "parse_peer_config",
]
