"""Unit tests for the nftables adapter and ad-hoc NAT."""

import json

import pytest

from fleetfw.core.exceptions import ConfigurationError, FirewallError
from fleetfw.services.addressing import CIDRRange
from fleetfw.services.nat import HostNATService, matches_source_range, snat_rule
from fleetfw.services.interfaces import InterfaceInventoryService
from fleetfw.services.netfilter import Chain, Rule, Table, Accept, Masquerade, Payload, Prefix, match
from fleetfw.services.nftables import NftablesService

from conftest import FakeExecutor, default_outputs, make_context


NAT_RULESET = {"nftables": [
    {"table": {"family": "ip", "name": "fleetfw_nat"}},
    {"chain": {
        "family": "ip", "table": "fleetfw_nat", "name": "POSTROUTING",
        "type": "nat", "hook": "postrouting", "prio": 100, "policy": "accept",
    }},
    {"rule": {
        "family": "ip", "table": "fleetfw_nat", "chain": "POSTROUTING", "handle": 42,
        "expr": [
            {"match": {"op": "==", "left": {"meta": {"key": "oifname"}}, "right": "eth0"}},
            {"match": {
                "op": "==",
                "left": {"payload": {"protocol": "ip", "field": "saddr"}},
                "right": {"prefix": {"addr": "10.8.0.0", "len": 24}},
            }},
            {"masquerade": None},
        ],
    }},
    {"table": {"family": "ip", "name": "docker"}},
]}


def executor_with_ruleset(document=None, **extra):
    outputs = default_outputs()
    outputs["nft -j list ruleset"] = json.dumps(document or NAT_RULESET)
    outputs.update(extra)
    return FakeExecutor(outputs)


class TestReading:
    """Tests for reading live state."""

    def test_read_active_rule_set(self, ctx):
        """Should parse the live ruleset without mutating."""
        executor = executor_with_ruleset()
        tables = NftablesService(ctx, executor).read_active_rule_set("node1")
        assert [t.name for t in tables] == ["fleetfw_nat", "docker"]
        assert executor.calls[0].mutating is False

    def test_read_empty(self, ctx, executor):
        """Should treat empty output as an empty ruleset."""
        assert NftablesService(ctx, executor).read_active_rule_set("node1") == []

    def test_read_garbage(self, ctx):
        """Should raise FirewallError on invalid JSON."""
        executor = FakeExecutor({"nft -j list ruleset": "not json"})
        with pytest.raises(FirewallError):
            NftablesService(ctx, executor).read_active_rule_set("node1")

    def test_version(self, ctx, executor):
        """Should parse major and minor from nft --version."""
        assert NftablesService(ctx, executor).read_netfilter_version("node1") == (1, 0)

    def test_old_version(self, ctx):
        """Should parse pre-1.0 versions."""
        executor = FakeExecutor({"nft --version": "nftables v0.9.8 (E.D.S.)"})
        assert NftablesService(ctx, executor).read_netfilter_version("node1") == (0, 9)

    def test_unparseable_version(self, ctx):
        """Should fail when no version is found."""
        executor = FakeExecutor({"nft --version": "command not found"})
        with pytest.raises(FirewallError):
            NftablesService(ctx, executor).read_netfilter_version("node1")

    def test_unknown_host(self, ctx, executor):
        """Should reject hosts missing from the configuration."""
        with pytest.raises(ConfigurationError):
            NftablesService(ctx, executor).read_active_rule_set("ghost")

    def test_find_rule(self, ctx):
        """Should locate a rule by structure."""
        tables = NftablesService(ctx, executor_with_ruleset()).read_active_rule_set("node1")
        found = NftablesService.find_rule(
            tables, "ip", "fleetfw_nat", "POSTROUTING",
            lambda rule: matches_source_range(rule, CIDRRange.parse("10.8.0.0/24")),
        )
        assert found is not None and found.handle == 42
        assert NftablesService.find_rule(tables, "ip", "missing", "POSTROUTING", lambda r: True) is None
        assert NftablesService.find_rule(tables, "ip", "fleetfw_nat", "missing", lambda r: True) is None


class TestWriting:
    """Tests for ruleset replacement and persistence."""

    def test_write_rule_set(self, ctx, executor):
        """Should replace tables in one nft -f transaction."""
        tables = [Table(name="fleetfw_filter", family="ip", chains=[
            Chain(name="INPUT", hook="input", prio="filter", policy="drop", type="filter", rules=[
                Rule(policy=Accept()),
            ]),
        ])]
        NftablesService(ctx, executor).write_rule_set("node1", tables)

        call = executor.find("nft -f -")[0]
        assert "delete table ip fleetfw_filter" in call.input
        assert "counter accept" in call.input

    def test_update_permanent_rules(self, ctx):
        """Should write only our tables to the boot file."""
        executor = executor_with_ruleset()
        NftablesService(ctx, executor).update_permanent_rules("node1")

        tee = executor.find("tee /etc/nftables.conf")[0]
        assert tee.input.startswith("#!/usr/sbin/nft -f")
        assert "flush ruleset" in tee.input
        assert "fleetfw_nat" in tee.input
        assert "docker" not in tee.input
        assert executor.find("systemctl enable") == []

    def test_update_enables_service(self, ctx):
        """Should enable the boot service when it is disabled."""
        executor = executor_with_ruleset()
        executor.return_codes["systemctl is-enabled --quiet nftables"] = 1
        NftablesService(ctx, executor).update_permanent_rules("node1")
        assert executor.commands()[-1] == "systemctl enable nftables"

    def test_dry_run_version(self, tmp_path):
        """Should assume nft 1.0 when dry-run returns nothing."""
        ctx = make_context(tmp_path, dry_run=True)
        executor = FakeExecutor({})
        assert NftablesService(ctx, executor).read_netfilter_version("node1") == (1, 0)


class TestSourceNAT:
    """Tests for ad-hoc masquerade rules."""

    @pytest.fixture
    def nat(self, ctx):
        executor = executor_with_ruleset()
        nftables = NftablesService(ctx, executor)
        return HostNATService(ctx, nftables, InterfaceInventoryService(ctx, executor)), executor

    def test_snat_rule(self):
        """Should masquerade the range on the interface."""
        rule = snat_rule("eth0", CIDRRange.parse("10.8.0.0/24"))
        assert rule.policy == Masquerade()
        assert matches_source_range(rule, CIDRRange.parse("10.8.0.0/24"))
        assert not matches_source_range(rule, CIDRRange.parse("10.9.0.0/24"))

    def test_destination_prefix_is_not_a_source_match(self):
        """Should only match the range on the source address."""
        rule = Rule(
            conditions=[match(Payload("ip", "daddr"), Prefix("10.8.0.0", 24))],
            policy=Masquerade(),
        )
        assert not matches_source_range(rule, CIDRRange.parse("10.8.0.0/24"))

    def test_add(self, nat):
        """Should add the rule live and persist."""
        service, executor = nat
        service.add_source_nat_rule("node1", CIDRRange.parse("10.8.0.0/24"))
        commands = executor.commands()
        assert (
            'nft add rule ip fleetfw_nat POSTROUTING meta oifname "eth0" '
            "ip saddr 10.8.0.0/24 counter masquerade"
        ) in commands
        assert "tee /etc/nftables.conf" in commands

    def test_remove_by_handle(self, nat):
        """Should delete the matching rule by handle and persist."""
        service, executor = nat
        assert service.remove_source_nat_rule("node1", CIDRRange.parse("10.8.0.0/24")) is True
        assert "nft delete rule ip fleetfw_nat POSTROUTING handle 42" in executor.commands()
        assert "tee /etc/nftables.conf" in executor.commands()

    def test_remove_missing(self, nat):
        """Should report a missing rule and still persist."""
        service, executor = nat
        assert service.remove_source_nat_rule("node1", CIDRRange.parse("10.9.0.0/24")) is False
        assert executor.find("nft delete") == []
        assert "tee /etc/nftables.conf" in executor.commands()

    def test_remove_without_handle(self, nat, monkeypatch):
        """Should not report a rule without a handle as removed."""
        service, executor = nat
        cidr = CIDRRange.parse("10.8.0.0/24")
        monkeypatch.setattr(service, "find_source_nat_rule", lambda host_id, c: snat_rule("eth0", c))
        assert service.remove_source_nat_rule("node1", cidr) is False
        assert executor.find("nft delete") == []

    def test_no_external_interface(self, ctx):
        """Should fail on hosts without an external NIC."""
        executor = FakeExecutor({"ip -j link show": json.dumps([{"ifname": "lo"}])})
        service = HostNATService(ctx, NftablesService(ctx, executor), InterfaceInventoryService(ctx, executor))
        with pytest.raises(FirewallError):
            service.add_source_nat_rule("node1", CIDRRange.parse("10.8.0.0/24"))
