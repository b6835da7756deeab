"""Unit tests for interface classification and zone assembly."""

from typing import Optional

import pytest

from fleetfw.core.exceptions import ConfigurationError, UnknownZoneError
from fleetfw.services.addressing import CIDRRange, IPv4Address
from fleetfw.services.rules import TERMINAL_PRIORITY, Action, FirewallRule, PortForwardingRule, Protocol
from fleetfw.services.zones import (
    EXTERNAL_ZONE,
    FirewallZoneData,
    ZoneAssembly,
    ZoneChangeBus,
    chain_safe_name,
    check_overlapping_address_spaces,
)


class StaticInventory:
    def __init__(self, nics):
        self.nics = nics

    def query_all_network_interfaces(self, host_id):
        return list(self.nics)


class StaticProvider:
    """Provider answering from a fixed table of zones."""

    def __init__(self, prefix, nic_prefix=None, zones=None):
        self.matching_zone_prefix = prefix
        self.nic_prefix = nic_prefix
        self.zones = zones or {}
        self.calls = []

    def match_network_interface_name(self, nic_name) -> Optional[str]:
        if self.nic_prefix and nic_name.startswith(self.nic_prefix):
            return self.matching_zone_prefix + nic_name[len(self.nic_prefix):]
        return None

    def provide_data(self, host_id, zone_name):
        self.calls.append((host_id, zone_name))
        return self.zones.get(zone_name, FirewallZoneData())


def make_assembly(ctx, nics, *providers):
    assembly = ZoneAssembly(ctx, StaticInventory(nics))
    for provider in providers:
        assembly.register_provider(provider)
    return assembly


class TestClassifyInterface:
    """Tests for NIC name heuristics."""

    @pytest.fixture
    def assembly(self, ctx):
        return make_assembly(ctx, [], StaticProvider("external"), StaticProvider("vnet-", "fw-vbr"))

    @pytest.mark.parametrize("nic,zone", [
        ("lo", "trusted"),
        ("eth0", "external"),
        ("enp3s0", "external"),
        ("vnet12", "qemu-vm-nic"),
        ("dh-abc123", "docker-container-nic"),
        ("docker0", "docker0"),
        ("docker_gwbridge", "docker_gwbridge"),
        ("fwsip-4", "container-static-ip"),
        ("fw-vbr3", "vnet-3"),
    ])
    def test_classification(self, assembly, nic, zone):
        """Should map interface names to zones."""
        assert assembly.classify_interface(nic) == zone

    def test_unknown_nic(self, assembly):
        """Should fail loudly for unrecognized names."""
        with pytest.raises(UnknownZoneError):
            assembly.classify_interface("wlan0")

    def test_unclaimed_managed_nic(self, assembly):
        """Should fail when no provider claims a managed NIC."""
        with pytest.raises(UnknownZoneError):
            assembly.classify_interface("fw-tun1")


class TestFindProvider:
    """Tests for prefix dispatch."""

    def test_first_match_wins(self, ctx):
        """Should pick the first registered prefix that matches."""
        broad = StaticProvider("vnet")
        narrow = StaticProvider("vnet-")
        assembly = make_assembly(ctx, [], broad, narrow)
        assert assembly.find_provider("vnet-1") is broad

    def test_unknown_zone(self, ctx):
        """Should list the known prefixes when nothing matches."""
        assembly = make_assembly(ctx, [], StaticProvider("external"))
        with pytest.raises(UnknownZoneError) as exc:
            assembly.find_provider("vpn-1")
        assert "external" in exc.value.details[0]

    def test_registration_does_not_notify(self, ctx):
        """Should not emit a change event when a provider registers."""
        assembly = make_assembly(ctx, [])
        seen = []
        assembly.subscribe_for_changes(seen.append)
        assembly.register_provider(StaticProvider("external"))
        assert seen == []


class TestQueryZones:
    """Tests for assembling the zone collection."""

    def test_collection(self, ctx):
        """Should route NICs to the dedicated fields and custom zones."""
        external = StaticProvider("external", zones={
            "external": FirewallZoneData(
                inbound_rules=[FirewallRule(priority=100, destination_port_ranges="22", protocol=Protocol.TCP)],
                port_forwarding_rules=[PortForwardingRule(Protocol.TCP, 8080, "10.1.0.5", 80)],
            ),
        })
        vnets = StaticProvider("vnet-", "fw-vbr", zones={
            "vnet-1": FirewallZoneData(address_space=CIDRRange.parse("10.1.0.0/24")),
        })
        assembly = make_assembly(ctx, ["lo", "eth1", "eth0", "fw-vbr1", "docker0"], external, vnets)

        zones = assembly.query_zones("node1")

        assert zones.trusted.interface_names == ["lo"]
        assert zones.external.interface_names == ["eth0", "eth1"]
        assert [z.name for z in zones.custom_zones] == ["vnet-1"]
        assert zones.custom_zones[0].interface_names == ["fw-vbr1"]
        assert len(zones.external.port_forwarding_rules) == 1

    def test_terminal_rules_appended(self, ctx):
        """Should end every rule list with its implicit rule."""
        assembly = make_assembly(
            ctx, ["fw-vbr1"],
            StaticProvider("external"),
            StaticProvider("vnet-", "fw-vbr", zones={
                "vnet-1": FirewallZoneData(address_space=CIDRRange.parse("10.1.0.0/24")),
            }),
        )
        zones = assembly.query_zones("node1")
        zone = zones.custom_zones[0]

        assert zones.external.inbound_rules[-1].priority == TERMINAL_PRIORITY
        assert zone.inbound_rules[-1].action == Action.DENY
        assert zone.outbound_rules[-1].action == Action.ALLOW

    def test_provider_asked_on_every_query(self, ctx):
        """Should not cache provider data between queries."""
        external = StaticProvider("external")
        assembly = make_assembly(ctx, ["eth0"], external)
        assembly.query_zones("node1")
        assembly.query_zones("node1")
        assert external.calls == [("node1", EXTERNAL_ZONE), ("node1", EXTERNAL_ZONE)]

    def test_static_ip_zone_without_provider(self, ctx):
        """Should fail the whole host when a zone has no provider."""
        assembly = make_assembly(ctx, ["eth0", "fwsip-1"], StaticProvider("external"))
        with pytest.raises(UnknownZoneError):
            assembly.query_zones("node1")

    def test_zone_without_address_space(self, ctx):
        """Should reject custom zones without an address space."""
        assembly = make_assembly(ctx, ["fw-vbr1"], StaticProvider("external"), StaticProvider("vnet-", "fw-vbr"))
        with pytest.raises(ConfigurationError):
            assembly.query_zones("node1")

    def test_overlapping_zones_rejected(self, ctx):
        """Should reject custom zones with overlapping address spaces."""
        vnets = StaticProvider("vnet-", "fw-vbr", zones={
            "vnet-1": FirewallZoneData(address_space=CIDRRange.parse("10.1.0.0/16")),
            "vnet-2": FirewallZoneData(address_space=CIDRRange.parse("10.1.4.0/24")),
        })
        assembly = make_assembly(ctx, ["fw-vbr1", "fw-vbr2"], StaticProvider("external"), vnets)
        with pytest.raises(ConfigurationError) as exc:
            assembly.query_zones("node1")
        assert "overlapping" in exc.value.message

    def test_find_zone_for_address(self, ctx):
        """Should locate the custom zone containing an address."""
        vnets = StaticProvider("vnet-", "fw-vbr", zones={
            "vnet-1": FirewallZoneData(address_space=CIDRRange.parse("10.1.0.0/24")),
        })
        zones = make_assembly(ctx, ["fw-vbr1"], StaticProvider("external"), vnets).query_zones("node1")
        assert zones.find_zone_for_address(IPv4Address.parse("10.1.0.5")).name == "vnet-1"
        assert zones.find_zone_for_address(IPv4Address.parse("10.2.0.5")) is None


class TestCheckOverlappingAddressSpaces:
    """Tests for the overlap check on a host's custom zones."""

    def test_disjoint(self):
        """Should accept disjoint and adjacent ranges."""
        check_overlapping_address_spaces([
            ("vnet-1", CIDRRange.parse("10.1.0.0/24")),
            ("vnet-2", CIDRRange.parse("10.1.1.0/24")),
            ("vpn-7", CIDRRange.parse("10.8.0.0/24")),
        ])

    def test_names_both_zones(self):
        """Should name both zones and their ranges."""
        with pytest.raises(ConfigurationError) as exc:
            check_overlapping_address_spaces([
                ("vnet-1", CIDRRange.parse("10.1.0.0/24")),
                ("vpn-7", CIDRRange.parse("10.0.0.0/8")),
            ])
        assert "'vnet-1' and 'vpn-7'" in exc.value.message
        assert exc.value.details == ["vnet-1: 10.1.0.0/24", "vpn-7: 10.0.0.0/8"]
        assert exc.value.exit_code == 2


class TestZoneChangeBus:
    """Tests for per-host change notification."""

    def test_subscribers_in_order(self):
        """Should call subscribers in subscription order."""
        bus = ZoneChangeBus()
        seen = []
        bus.subscribe(lambda host: seen.append(("a", host)))
        bus.subscribe(lambda host: seen.append(("b", host)))
        bus.notify("node1")
        assert seen == [("a", "node1"), ("b", "node1")]

    def test_lock_per_host(self):
        """Should hand out one lock per host."""
        bus = ZoneChangeBus()
        assert bus.lock_for("node1") is bus.lock_for("node1")
        assert bus.lock_for("node1") is not bus.lock_for("node2")

    def test_reentrant_notify(self):
        """Should allow a subscriber to notify its own host again."""
        bus = ZoneChangeBus()
        seen = []

        def subscriber(host):
            seen.append(host)
            if len(seen) == 1:
                bus.notify(host)

        bus.subscribe(subscriber)
        bus.notify("node1")
        assert seen == ["node1", "node1"]


def test_chain_safe_name():
    """Should replace hyphens for chain names."""
    assert chain_safe_name("vnet-app") == "vnet_app"
