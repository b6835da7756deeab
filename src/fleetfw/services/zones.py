"""Firewall zone model and zone assembly.

A host's network interfaces are classified into named zones. Built-in
zones (external, trusted, container and VM NICs) are recognized by
naming conventions; everything else is delegated to registered zone
data providers. Each zone's rules are then fetched from the provider
owning the zone name prefix and assembled into a
``FirewallZoneCollection``, rebuilt from scratch on every query.
"""

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from fleetfw.core.context import ExecutionContext
from fleetfw.core.exceptions import ConfigurationError, UnknownZoneError
from fleetfw.services.addressing import CIDRRange, IPv4Address
from fleetfw.services.rules import (
    Direction,
    FirewallRule,
    PortForwardingRule,
    with_terminal_rule,
)


EXTERNAL_ZONE = "external"
TRUSTED_ZONE = "trusted"

# Zones with their own fields in the collection or no rules at all
NON_CUSTOM_ZONES = frozenset({
    EXTERNAL_ZONE,
    TRUSTED_ZONE,
    "docker-container-nic",
    "qemu-vm-nic",
    "docker_gwbridge",
    "docker0",
})

# NICs created for our own network resources; resolved by providers
MANAGED_NIC_PREFIX = "fw-"
STATIC_IP_NIC_PREFIX = "fwsip-"


def chain_safe_name(zone_name: str) -> str:
    """Zone name usable inside a netfilter chain name."""
    return zone_name.replace("-", "_")


@dataclass
class FirewallZoneData:
    """What a provider returns for one zone."""
    address_space: Optional[CIDRRange] = None
    inbound_rules: list[FirewallRule] = field(default_factory=list)
    outbound_rules: list[FirewallRule] = field(default_factory=list)
    port_forwarding_rules: list[PortForwardingRule] = field(default_factory=list)


@dataclass
class FirewallZone:
    """A custom zone tied to one network segment."""
    name: str
    address_space: CIDRRange
    interface_names: list[str]
    inbound_rules: list[FirewallRule]
    outbound_rules: list[FirewallRule]

    @property
    def enter_chain(self) -> str:
        return f"ENTER_zone_{chain_safe_name(self.name)}"

    @property
    def exit_chain(self) -> str:
        return f"EXIT_zone_{chain_safe_name(self.name)}"

    @property
    def bridge_chain(self) -> str:
        return f"zone_{chain_safe_name(self.name)}"


@dataclass
class ExternalZone:
    """Internet-facing NICs of a host."""
    interface_names: list[str] = field(default_factory=list)
    inbound_rules: list[FirewallRule] = field(default_factory=list)
    outbound_rules: list[FirewallRule] = field(default_factory=list)
    port_forwarding_rules: list[PortForwardingRule] = field(default_factory=list)

    enter_chain = "ENTER_zone_external"
    exit_chain = "EXIT_zone_external"


@dataclass
class TrustedZone:
    interface_names: list[str] = field(default_factory=list)


@dataclass
class FirewallZoneCollection:
    """All zones of one host at one instant."""
    custom_zones: list[FirewallZone] = field(default_factory=list)
    external: ExternalZone = field(default_factory=ExternalZone)
    trusted: TrustedZone = field(default_factory=TrustedZone)

    def find_zone_for_address(self, address: IPv4Address) -> Optional[FirewallZone]:
        for zone in self.custom_zones:
            if zone.address_space.includes(address):
                return zone
        return None

    def zone(self, name: str) -> Optional[FirewallZone]:
        for zone in self.custom_zones:
            if zone.name == name:
                return zone
        return None


class FirewallZoneDataProvider(Protocol):
    """A pluggable source of zone membership and rules.

    ``matching_zone_prefix`` is the zone name prefix the provider owns.
    ``provide_data`` is called on every assembly and must not cache, so
    edits are visible immediately.
    """

    matching_zone_prefix: str

    def match_network_interface_name(self, nic_name: str) -> Optional[str]:
        ...

    def provide_data(self, host_id: str, zone_name: str) -> FirewallZoneData:
        ...


class InterfaceInventory(Protocol):
    def query_all_network_interfaces(self, host_id: str) -> list[str]:
        ...


def check_overlapping_address_spaces(spaces: list[tuple[str, CIDRRange]]) -> None:
    """Reject custom zones of one host whose address spaces overlap.

    Port forward targets are resolved by address, so overlapping zones
    would make the target zone ambiguous.

    Raises:
        ConfigurationError: On the first overlapping pair
    """
    for i, (name, space) in enumerate(spaces):
        for other_name, other_space in spaces[i + 1:]:
            if space.overlaps(other_space):
                raise ConfigurationError(
                    f"Zones '{name}' and '{other_name}' have overlapping address spaces",
                    details=[f"{name}: {space}", f"{other_name}: {other_space}"],
                    hint="Give every virtual network and VPN gateway a distinct address space",
                )


class ZoneChangeBus:
    """Per-host change notifications.

    ``notify(host_id)`` runs every subscriber in subscription order while
    holding that host's lock, so two changes for the same host never
    interleave. Different hosts proceed concurrently. The lock is
    reentrant: a subscriber may notify its own host again.
    """

    def __init__(self) -> None:
        self._subscribers: list[Callable[[str], None]] = []
        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def subscribe(self, callback: Callable[[str], None]) -> None:
        self._subscribers.append(callback)

    def lock_for(self, host_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(host_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[host_id] = lock
            return lock

    def notify(self, host_id: str) -> None:
        with self.lock_for(host_id):
            for callback in list(self._subscribers):
                callback(host_id)


class ZoneAssembly:
    """Resolves a host's NICs into zones and aggregates their rules.

    Providers are kept as an ordered list of (prefix, provider) pairs;
    the first pair whose prefix starts the zone name wins.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        inventory: InterfaceInventory,
        bus: Optional[ZoneChangeBus] = None,
    ) -> None:
        self.ctx = ctx
        self.inventory = inventory
        self.bus = bus or ZoneChangeBus()
        self._providers: list[tuple[str, FirewallZoneDataProvider]] = []

    @property
    def providers(self) -> list[tuple[str, FirewallZoneDataProvider]]:
        return list(self._providers)

    def register_provider(self, provider: FirewallZoneDataProvider) -> None:
        """Register a provider. Does not emit a change notification."""
        self._providers.append((provider.matching_zone_prefix, provider))

    def subscribe_for_changes(self, callback: Callable[[str], None]) -> None:
        self.bus.subscribe(callback)

    def zone_data_changed(self, host_id: str) -> None:
        self.ctx.console.debug("Zone data changed", host=host_id)
        self.bus.notify(host_id)

    def classify_interface(self, nic_name: str) -> str:
        """Zone name of a network interface.

        Raises:
            UnknownZoneError: If no naming convention or provider matches
        """
        if nic_name == "lo":
            return TRUSTED_ZONE
        if nic_name.startswith("en") or nic_name.startswith("eth"):
            return EXTERNAL_ZONE
        if nic_name.startswith("vnet"):
            return "qemu-vm-nic"
        if nic_name.startswith("dh-"):
            return "docker-container-nic"
        if nic_name in ("docker0", "docker_gwbridge"):
            return nic_name
        if nic_name.startswith(STATIC_IP_NIC_PREFIX):
            return "container-static-ip"
        if nic_name.startswith(MANAGED_NIC_PREFIX):
            for _, provider in self._providers:
                zone_name = provider.match_network_interface_name(nic_name)
                if zone_name is not None:
                    return zone_name

        raise UnknownZoneError(
            f"Unknown network interface type: {nic_name}",
            hint="No zone data provider recognizes this interface name",
        )

    def find_provider(self, zone_name: str) -> FirewallZoneDataProvider:
        """Provider owning ``zone_name``.

        Raises:
            UnknownZoneError: If no registered prefix matches
        """
        for prefix, provider in self._providers:
            if zone_name.startswith(prefix):
                return provider

        known = ", ".join(prefix for prefix, _ in self._providers) or "none"
        raise UnknownZoneError(
            f"Could not find zone '{zone_name}'",
            details=[f"Known prefixes: {known}"],
        )

    def fetch_zone_data(self, host_id: str, zone_name: str) -> FirewallZoneData:
        return self.find_provider(zone_name).provide_data(host_id, zone_name)

    def query_zones(self, host_id: str) -> FirewallZoneCollection:
        """Assemble the zone collection for a host.

        Zones are ordered by name and interface names sorted, so the
        result is deterministic for a given inventory. Every rule list
        ends with its implicit terminal rule.

        Raises:
            UnknownZoneError: If a NIC or zone cannot be resolved
            ConfigurationError: If custom zone address spaces overlap
        """
        grouped: dict[str, list[str]] = defaultdict(list)
        for nic in self.inventory.query_all_network_interfaces(host_id):
            grouped[self.classify_interface(nic)].append(nic)

        external_data = self.fetch_zone_data(host_id, EXTERNAL_ZONE)

        custom_zones = []
        for zone_name in sorted(grouped):
            if zone_name in NON_CUSTOM_ZONES:
                continue
            custom_zones.append(self._build_zone(host_id, zone_name, sorted(grouped[zone_name])))

        check_overlapping_address_spaces([(z.name, z.address_space) for z in custom_zones])

        return FirewallZoneCollection(
            custom_zones=custom_zones,
            external=ExternalZone(
                interface_names=sorted(grouped.get(EXTERNAL_ZONE, [])),
                inbound_rules=with_terminal_rule(external_data.inbound_rules, Direction.INBOUND),
                outbound_rules=with_terminal_rule(external_data.outbound_rules, Direction.OUTBOUND),
                port_forwarding_rules=sorted(
                    external_data.port_forwarding_rules,
                    key=lambda r: (r.protocol.value, r.port),
                ),
            ),
            trusted=TrustedZone(interface_names=sorted(grouped.get(TRUSTED_ZONE, []))),
        )

    def _build_zone(self, host_id: str, zone_name: str, interface_names: list[str]) -> FirewallZone:
        data = self.fetch_zone_data(host_id, zone_name)
        if data.address_space is None:
            raise ConfigurationError(
                f"Zone '{zone_name}' on host {host_id} has no address space",
            )
        return FirewallZone(
            name=zone_name,
            address_space=data.address_space,
            interface_names=interface_names,
            inbound_rules=with_terminal_rule(data.inbound_rules, Direction.INBOUND),
            outbound_rules=with_terminal_rule(data.outbound_rules, Direction.OUTBOUND),
        )
