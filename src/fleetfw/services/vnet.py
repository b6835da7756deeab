"""Zone data providers for virtual networks and VPN gateways.

Each virtual network is bridged on its host as ``fw-vbr<id>`` and forms
the zone ``vnet-<id>``; each VPN gateway's tunnel ``fw-tun<id>`` forms
the zone ``vpn-<id>``. Address spaces come from the fleet
configuration, rules from the state store.
"""

from abc import abstractmethod
from pathlib import Path
from typing import Optional, Union

from fleetfw.core.config import (
    VNET_BRIDGE_PREFIX,
    VPN_TUNNEL_PREFIX,
    VNetConfig,
    VPNGatewayConfig,
)
from fleetfw.core.exceptions import ConfigurationError, UnknownZoneError
from fleetfw.core.validation import ANY
from fleetfw.services.addressing import CIDRRange
from fleetfw.services.host_firewall import ZoneRuleEditor
from fleetfw.services.rules import Action, FirewallRule, Protocol
from fleetfw.services.state import ZoneRuleState
from fleetfw.services.zones import FirewallZoneData


VNET_ZONE_PREFIX = "vnet-"
VPN_ZONE_PREFIX = "vpn-"


def default_vnet_rules(vnet: VNetConfig) -> ZoneRuleState:
    """Rules a new virtual network starts with.

    DNS and DHCP are required by VMs and containers whenever the network
    runs its own DHCP server.
    """
    state = ZoneRuleState()
    if vnet.enable_dhcp:
        state.inbound_rules += [
            FirewallRule(priority=100, destination_port_ranges="53", comment="DNS"),
            FirewallRule(priority=101, destination_port_ranges="68", comment="DHCP client"),
        ]
        state.outbound_rules += [
            FirewallRule(priority=100, destination_port_ranges="53", comment="DNS"),
            FirewallRule(priority=101, destination_port_ranges="67", comment="DHCP server"),
        ]

    state.inbound_rules += [
        FirewallRule(priority=102, protocol=Protocol.ICMP, comment="Ping, for diagnosis"),
        FirewallRule(
            priority=103,
            destination_port_ranges="22",
            protocol=Protocol.TCP,
            comment="SSH, for diagnosis",
        ),
        FirewallRule(
            priority=1000,
            destination_port_ranges=ANY,
            source=vnet.address_space,
            destination=vnet.address_space,
            action=Action.ALLOW,
            comment="Communication inside the network",
        ),
    ]
    return state


class _ConfiguredZoneProvider(ZoneRuleEditor):
    """Provider for zones declared in the fleet configuration.

    ``matching_zone_prefix`` names the zone (``<prefix><id>``) and
    ``nic_prefix`` the interface (``<nic_prefix><id>``).
    """

    matching_zone_prefix: str
    nic_prefix: str

    @abstractmethod
    def _resource(self, resource_id: int) -> Union[VNetConfig, VPNGatewayConfig]:
        """Configured resource with the given id."""

    def _parse_id(self, zone_name: str) -> int:
        suffix = zone_name[len(self.matching_zone_prefix):]
        if not zone_name.startswith(self.matching_zone_prefix) or not suffix.isdigit():
            raise UnknownZoneError(f"Could not find zone '{zone_name}'")
        return int(suffix)

    def resource_for_zone(self, zone_name: str) -> Union[VNetConfig, VPNGatewayConfig]:
        """Configured resource behind a zone name.

        Raises:
            UnknownZoneError: If the zone name is malformed or not configured
        """
        try:
            return self._resource(self._parse_id(zone_name))
        except ConfigurationError as e:
            raise UnknownZoneError(f"Could not find zone '{zone_name}'", details=[e.message]) from e

    def _locate(self, scope: str) -> tuple[str, Path]:
        return self.resource_for_zone(scope).host, self.store.zone_path(scope)

    def match_network_interface_name(self, nic_name: str) -> Optional[str]:
        if not nic_name.startswith(self.nic_prefix):
            return None
        suffix = nic_name[len(self.nic_prefix):]
        if not suffix.isdigit():
            return None
        return f"{self.matching_zone_prefix}{int(suffix)}"

    def provide_data(self, host_id: str, zone_name: str) -> FirewallZoneData:
        resource = self.resource_for_zone(zone_name)
        state = self.load_state(zone_name)
        return FirewallZoneData(
            address_space=CIDRRange.parse(resource.address_space),
            inbound_rules=list(state.inbound_rules),
            outbound_rules=list(state.outbound_rules),
        )


class VNetZoneProvider(_ConfiguredZoneProvider):
    """Zones of virtual networks (``vnet-<id>`` on bridge ``fw-vbr<id>``)."""

    matching_zone_prefix = VNET_ZONE_PREFIX
    nic_prefix = VNET_BRIDGE_PREFIX

    def _resource(self, resource_id: int) -> VNetConfig:
        return self.ctx.fleet.vnet(resource_id)

    def _default_state(self, scope: str) -> ZoneRuleState:
        return default_vnet_rules(self.resource_for_zone(scope))

    def zones_on_host(self, host_id: str) -> list[str]:
        return [v.zone_name for v in self.ctx.fleet.vnets if v.host == host_id]


class VPNZoneProvider(_ConfiguredZoneProvider):
    """Zones of VPN gateways (``vpn-<id>`` on tunnel ``fw-tun<id>``).

    A gateway without stored rules admits nothing inbound.
    """

    matching_zone_prefix = VPN_ZONE_PREFIX
    nic_prefix = VPN_TUNNEL_PREFIX

    def _resource(self, resource_id: int) -> VPNGatewayConfig:
        return self.ctx.fleet.vpn_gateway(resource_id)

    def zones_on_host(self, host_id: str) -> list[str]:
        return [g.zone_name for g in self.ctx.fleet.vpn_gateways if g.host == host_id]
