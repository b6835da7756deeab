"""Declarative firewall rules and their flattened form.

A ``FirewallRule`` is what operators edit: comma lists of ports and
addresses plus the "Any" wildcard. Flattening expands it into
``FlatFirewallRule`` entries that each map onto exactly one netfilter
rule. ``match_rule`` is the single predicate deciding whether a flat
rule applies to a packet; the compiler and the trace simulator both
build on the same flattening so the two cannot drift apart.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from fleetfw.core.exceptions import ValidationError
from fleetfw.core.validation import (
    ANY,
    MAX_USER_PRIORITY,
    validate_address_list,
    validate_ipv4,
    validate_port,
    validate_port_ranges,
    validate_priority,
)
from fleetfw.services.addressing import CIDRRange, IPv4Address


TERMINAL_PRIORITY = MAX_USER_PRIORITY + 1


class Direction(str, Enum):
    """Rule direction relative to a zone."""
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class Protocol(str, Enum):
    """Protocols a rule can name."""
    ANY = "Any"
    TCP = "TCP"
    UDP = "UDP"
    ICMP = "ICMP"

    @property
    def nft_name(self) -> str:
        return self.value.lower()


class Action(str, Enum):
    """Rule verdict."""
    ALLOW = "Allow"
    DENY = "Deny"


def _parse_enum(enum_type, value, what: str):
    try:
        return enum_type(value)
    except ValueError:
        choices = ", ".join(m.value for m in enum_type)
        raise ValidationError(
            f"Invalid {what}: '{value}'",
            hint=f"Use one of: {choices}",
        )


@dataclass
class FirewallRule:
    """A declarative rule in a zone's inbound or outbound list.

    Priorities are unique per (host, direction) and evaluated ascending,
    first match wins.
    """
    priority: int
    destination_port_ranges: str = ANY
    protocol: Protocol = Protocol.ANY
    source: str = ANY
    destination: str = ANY
    action: Action = Action.ALLOW
    comment: str = ""

    def validate(self, *, allow_terminal: bool = False) -> "FirewallRule":
        """Check every field, raising ValidationError on the first problem."""
        if not (allow_terminal and self.priority == TERMINAL_PRIORITY):
            validate_priority(self.priority)
        validate_port_ranges(self.destination_port_ranges)
        validate_address_list(self.source)
        validate_address_list(self.destination)
        if self.protocol == Protocol.ICMP and self.destination_port_ranges != ANY:
            raise ValidationError(
                "ICMP rules cannot restrict destination ports",
                hint="Set the port ranges to 'Any'",
            )
        return self

    def to_dict(self) -> dict:
        """Convert to dictionary for YAML serialization."""
        d = {
            "priority": self.priority,
            "destination_port_ranges": self.destination_port_ranges,
            "protocol": self.protocol.value,
            "source": self.source,
            "destination": self.destination,
            "action": self.action.value,
        }
        if self.comment:
            d["comment"] = self.comment
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "FirewallRule":
        """Create from dictionary (YAML deserialization)."""
        return cls(
            priority=int(d["priority"]),
            destination_port_ranges=str(d.get("destination_port_ranges", ANY)),
            protocol=_parse_enum(Protocol, d.get("protocol", ANY), "protocol"),
            source=str(d.get("source", ANY)),
            destination=str(d.get("destination", ANY)),
            action=_parse_enum(Action, d.get("action", Action.ALLOW.value), "action"),
            comment=d.get("comment", "") or "",
        )

    def __str__(self) -> str:
        parts = [f"#{self.priority}", self.action.value, self.protocol.value]
        if self.destination_port_ranges != ANY:
            parts.append(f"port {self.destination_port_ranges}")
        if self.source != ANY:
            parts.append(f"from {self.source}")
        if self.destination != ANY:
            parts.append(f"to {self.destination}")
        if self.comment:
            parts.append(f"({self.comment})")
        return " ".join(parts)


@dataclass
class PortForwardingRule:
    """DNAT from a port on the host's external address to an internal target.

    Unique per (protocol, port). Forwards only apply to packets arriving
    on external interfaces. ``external_zone_only`` is stored for existing
    state files but always treated as true.
    """
    protocol: Protocol
    port: int
    target_address: str
    target_port: int
    external_zone_only: bool = True
    comment: str = ""

    @property
    def key(self) -> tuple[Protocol, int]:
        return (self.protocol, self.port)

    @property
    def target(self) -> IPv4Address:
        return IPv4Address.parse(self.target_address)

    def validate(self) -> "PortForwardingRule":
        if self.protocol not in (Protocol.TCP, Protocol.UDP):
            raise ValidationError(
                f"Invalid port forwarding protocol: {self.protocol.value}",
                hint="Port forwarding supports TCP and UDP only",
            )
        validate_port(self.port)
        validate_port(self.target_port)
        validate_ipv4(self.target_address)
        return self

    def to_dict(self) -> dict:
        d = {
            "protocol": self.protocol.value,
            "port": self.port,
            "target_address": self.target_address,
            "target_port": self.target_port,
            "external_zone_only": self.external_zone_only,
        }
        if self.comment:
            d["comment"] = self.comment
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "PortForwardingRule":
        return cls(
            protocol=_parse_enum(Protocol, d["protocol"], "protocol"),
            port=int(d["port"]),
            target_address=str(d["target_address"]),
            target_port=int(d["target_port"]),
            external_zone_only=bool(d.get("external_zone_only", True)),
            comment=d.get("comment", "") or "",
        )

    def __str__(self) -> str:
        return (
            f"{self.protocol.value}/{self.port} -> "
            f"{self.target_address}:{self.target_port}"
        )


@dataclass(frozen=True)
class PortRange:
    """Inclusive destination port range."""
    first: int
    last: int

    @classmethod
    def parse(cls, token: str) -> Optional["PortRange"]:
        """Parse "N" or "N-M"; "Any" yields None."""
        token = token.strip()
        if token == ANY:
            return None
        bounds = token.split("-")
        first = int(bounds[0])
        last = int(bounds[1]) if len(bounds) == 2 else first
        return cls(first, last)

    @property
    def is_single(self) -> bool:
        return self.first == self.last

    def includes(self, port: int) -> bool:
        return self.first <= port <= self.last

    def __str__(self) -> str:
        if self.is_single:
            return str(self.first)
        return f"{self.first}-{self.last}"


@dataclass(frozen=True)
class FlatFirewallRule:
    """A single-protocol, single-range rule; maps to one netfilter rule."""
    action: Action
    protocol: Protocol
    port_range: Optional[PortRange] = None
    source: Optional[CIDRRange] = None
    destination: Optional[CIDRRange] = None
    priority: int = 0


def _parse_address_token(token: str) -> Optional[CIDRRange]:
    token = token.strip()
    if token == ANY:
        return None
    # bare addresses become /32
    return CIDRRange.parse(token)


def _expand_protocols(protocol: Protocol, port_range: Optional[PortRange]) -> list[Protocol]:
    if protocol != Protocol.ANY:
        return [protocol]
    if port_range is None:
        return [Protocol.TCP, Protocol.UDP, Protocol.ICMP]
    # ICMP has no ports
    return [Protocol.TCP, Protocol.UDP]


def flatten_rule(rule: FirewallRule) -> list[FlatFirewallRule]:
    """Expand a rule into the cross product port x source x destination x protocol."""
    result = []
    ports = [PortRange.parse(p) for p in rule.destination_port_ranges.split(",")]
    sources = [_parse_address_token(s) for s in rule.source.split(",")]
    destinations = [_parse_address_token(d) for d in rule.destination.split(",")]

    for port_range in ports:
        for source in sources:
            for destination in destinations:
                for protocol in _expand_protocols(rule.protocol, port_range):
                    result.append(FlatFirewallRule(
                        action=rule.action,
                        protocol=protocol,
                        port_range=port_range,
                        source=source,
                        destination=destination,
                        priority=rule.priority,
                    ))
    return result


def flatten_rules(rules: Iterable[FirewallRule]) -> list[FlatFirewallRule]:
    """Flatten rules in evaluation order (ascending priority)."""
    flat = []
    for rule in sort_rules(rules):
        flat.extend(flatten_rule(rule))
    return flat


def sort_rules(rules: Iterable[FirewallRule]) -> list[FirewallRule]:
    return sorted(rules, key=lambda r: r.priority)


def terminal_rule(direction: Direction) -> FirewallRule:
    """The implicit last rule: deny inbound, allow outbound."""
    action = Action.DENY if direction == Direction.INBOUND else Action.ALLOW
    return FirewallRule(
        priority=TERMINAL_PRIORITY,
        protocol=Protocol.ANY,
        action=action,
        comment="implicit rule",
    )


def with_terminal_rule(rules: Iterable[FirewallRule], direction: Direction) -> list[FirewallRule]:
    """User rules sorted by priority followed by the implicit terminal rule."""
    result = [r for r in sort_rules(rules) if r.priority != TERMINAL_PRIORITY]
    result.append(terminal_rule(direction))
    return result


@dataclass
class Packet:
    """A hypothetical packet for rule evaluation."""
    protocol: Protocol
    source: IPv4Address
    destination: IPv4Address
    port: Optional[int] = None


def match_rule(rule: FlatFirewallRule, packet: Packet) -> bool:
    """Whether ``rule`` applies to ``packet``."""
    if rule.protocol != packet.protocol:
        return False
    if rule.port_range is not None:
        if packet.port is None or not rule.port_range.includes(packet.port):
            return False
    if rule.source is not None and not rule.source.includes(packet.source):
        return False
    if rule.destination is not None and not rule.destination.includes(packet.destination):
        return False
    return True


def evaluate_rules(rules: Iterable[FirewallRule], packet: Packet) -> Optional[FlatFirewallRule]:
    """First flat rule matching ``packet`` in ascending priority, or None."""
    for flat in flatten_rules(rules):
        if match_rule(flat, packet):
            return flat
    return None
