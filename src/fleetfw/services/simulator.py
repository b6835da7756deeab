"""Packet trace simulator.

Answers "where would a packet with this protocol and port end up, and
would it be admitted?" without sending traffic. The simulator walks the
same zone data the compiler uses and decides admission with the shared
rule matching from ``fleetfw.services.rules``. It never changes state.

Unreachable destinations are not errors: the trace simply ends with a
line saying where the packet was lost.
"""

from dataclasses import dataclass, field, replace
from typing import Optional, Union

from fleetfw.core.context import ExecutionContext
from fleetfw.core.exceptions import FirewallError
from fleetfw.services.addressing import CIDRRange, IPv4Address
from fleetfw.services.interfaces import InterfaceInventoryService
from fleetfw.services.rules import (
    TERMINAL_PRIORITY,
    Action,
    Direction,
    FirewallRule,
    Packet,
    Protocol,
    evaluate_rules,
    with_terminal_rule,
)
from fleetfw.services.vnet import VNetZoneProvider
from fleetfw.services.zones import EXTERNAL_ZONE, ZoneAssembly


# DNAT can redirect a packet at most this often before we give up
MAX_HOPS = 8


@dataclass(frozen=True)
class HostLocation:
    """The external address of a managed host."""
    host_id: str
    address: IPv4Address

    def __str__(self) -> str:
        return f"host {self.host_id}"


@dataclass(frozen=True)
class VNetLocation:
    """An address inside a virtual network."""
    host_id: str
    zone_name: str
    address: IPv4Address

    def __str__(self) -> str:
        return f"{self.zone_name} on host {self.host_id}"


@dataclass(frozen=True)
class HostsNetLocation:
    """Any address outside managed hosts and virtual networks."""
    address: IPv4Address

    def __str__(self) -> str:
        return "hosts-net"


PacketLocation = Union[HostLocation, VNetLocation, HostsNetLocation]


@dataclass
class SimulationResult:
    log: list[str] = field(default_factory=list)
    admitted: bool = False


class PacketTraceSimulator:
    """Simulates packet delivery through hosts, forwards and zones."""

    def __init__(
        self,
        ctx: ExecutionContext,
        assembly: ZoneAssembly,
        inventory: InterfaceInventoryService,
        vnets: VNetZoneProvider,
    ) -> None:
        self.ctx = ctx
        self.assembly = assembly
        self.inventory = inventory
        self.vnets = vnets

    # =========================================================================
    # Locations
    # =========================================================================

    def external_addresses(self) -> dict[str, IPv4Address]:
        """External IPv4 address of every host that has one."""
        addresses = {}
        for host in self.ctx.fleet.hosts:
            try:
                addresses[host.id] = self.inventory.query_external_ipv4_subnet(host.id).address
            except FirewallError as e:
                self.ctx.console.debug(f"Skipping host: {e}", host=host.id)
        return addresses

    def resolve_location(
        self,
        address: IPv4Address,
        external_addresses: Optional[dict[str, IPv4Address]] = None,
    ) -> PacketLocation:
        if external_addresses is None:
            external_addresses = self.external_addresses()

        for host_id, host_address in external_addresses.items():
            if host_address == address:
                return HostLocation(host_id, address)

        for vnet in self.ctx.fleet.vnets:
            if CIDRRange.parse(vnet.address_space).includes(address):
                return VNetLocation(vnet.host, vnet.zone_name, address)

        return HostsNetLocation(address)

    # =========================================================================
    # Simulation
    # =========================================================================

    def simulate(
        self,
        host_id: str,
        source: IPv4Address,
        protocol: Protocol,
        port: Optional[int],
        target: Optional[IPv4Address] = None,
    ) -> SimulationResult:
        """Trace a packet sent from ``source`` to ``target``.

        ``target`` defaults to the external address of ``host_id``.

        Raises:
            FirewallError: If ``host_id`` has no external address
        """
        addresses = self.external_addresses()
        if target is None:
            if host_id not in addresses:
                raise FirewallError(f"Host {host_id} has no external IPv4 address")
            target = addresses[host_id]

        result = SimulationResult()
        packet = Packet(protocol=protocol, source=source, destination=target, port=port)
        result.log.append(f"Packet originates from {self.resolve_location(source, addresses)}")
        result.log.append(f"Packet arrived at host {host_id}")

        result.admitted = self._route(
            host_id, packet, self.resolve_location(target, addresses), addresses, result.log, MAX_HOPS,
        )
        return result

    def _route(
        self,
        host_id: str,
        packet: Packet,
        location: PacketLocation,
        addresses: dict[str, IPv4Address],
        log: list[str],
        hops: int,
    ) -> bool:
        if hops <= 0:
            log.append("Packet exceeded the hop limit. Simulation ended.")
            return False

        if isinstance(location, HostLocation):
            if location.host_id != host_id:
                log.append(f"Packet is routed to host {location.host_id}")
                log.append(f"Packet arrived at host {location.host_id}")
            return self._enter_external_zone(location.host_id, packet, addresses, log, hops)

        return self._route_on_host(host_id, packet, log)

    def _enter_external_zone(
        self,
        host_id: str,
        packet: Packet,
        addresses: dict[str, IPv4Address],
        log: list[str],
        hops: int,
    ) -> bool:
        log.append(f"Packet trying to enter zone: {EXTERNAL_ZONE}")
        zones = self.assembly.query_zones(host_id)
        # PREROUTING only translates packets arriving on external NICs
        from_external = zones.find_zone_for_address(packet.source) is None
        forwards = zones.external.port_forwarding_rules if from_external else []

        for forward in forwards:
            if forward.protocol != packet.protocol or forward.port != packet.port:
                continue

            log.append(f"Packet is being DNATed to: {forward.target_address}:{forward.target_port}")
            translated = replace(packet, destination=forward.target, port=forward.target_port)
            return self._route(
                host_id,
                translated,
                self.resolve_location(translated.destination, addresses),
                addresses,
                log,
                hops - 1,
            )

        if not self._enter_firewall(packet, zones.external.inbound_rules, log):
            return False
        log.append(f"Packet successfully entered zone: {EXTERNAL_ZONE}")
        log.append("Packet successfully delivered to host")
        return True

    def _route_on_host(self, host_id: str, packet: Packet, log: list[str]) -> bool:
        """Deliver through the host interface whose subnet holds the target."""
        for iface in self.inventory.query_all_network_interfaces_with_addresses(host_id):
            info = iface.ipv4()
            if info is None:
                continue
            subnet = CIDRRange.from_ip(IPv4Address.parse(info.local), info.prefixlen)
            if not subnet.includes(packet.destination):
                continue

            zone_name = self.vnets.match_network_interface_name(iface.ifname)
            if zone_name is not None:
                return self._enter_zone(host_id, zone_name, packet, log)

            log.append(f"Packet left host {host_id} through {iface.ifname}. Simulation ended.")
            return False

        log.append("Packet sent to default gateway. Simulation ended.")
        return False

    def _enter_zone(self, host_id: str, zone_name: str, packet: Packet, log: list[str]) -> bool:
        log.append(f"Packet trying to enter zone: {zone_name}")
        data = self.assembly.fetch_zone_data(host_id, zone_name)
        rules = with_terminal_rule(data.inbound_rules, Direction.INBOUND)
        if not self._enter_firewall(packet, rules, log):
            return False
        log.append(f"Packet successfully entered zone: {zone_name}")
        return True

    @staticmethod
    def _enter_firewall(packet: Packet, rules: list[FirewallRule], log: list[str]) -> bool:
        matched = evaluate_rules(rules, packet)
        if matched is None or (matched.priority == TERMINAL_PRIORITY and matched.action == Action.DENY):
            log.append("Packet was blocked by implicit deny rule")
            return False
        if matched.action == Action.ALLOW:
            log.append(f"Packet was allowed by rule: {matched.priority}")
            return True
        log.append(f"Packet was blocked by rule: {matched.priority}")
        return False
