"""Ad-hoc source NAT outside of ruleset compilation.

Masquerade rules added here go straight into the live POSTROUTING chain
of our nat table and are then persisted to the boot file. They survive
until the next full recompilation of the host replaces the table.
"""

from typing import Optional

from fleetfw.core.context import ExecutionContext
from fleetfw.core.exceptions import FirewallError
from fleetfw.services.addressing import CIDRRange
from fleetfw.services.interfaces import InterfaceInventoryService
from fleetfw.services.netfilter import (
    Masquerade,
    Meta,
    Payload,
    Prefix,
    Rule,
    Value,
    match,
)
from fleetfw.services.nftables import NftablesService


SNAT_CHAIN = "POSTROUTING"


def snat_rule(interface: str, cidr: CIDRRange) -> Rule:
    """Masquerade traffic from ``cidr`` leaving through ``interface``."""
    return Rule(
        conditions=[
            match(Meta("oifname"), Value(interface)),
            match(Payload("ip", "saddr"), Prefix(str(cidr.net_address), cidr.length)),
        ],
        policy=Masquerade(),
    )


def matches_source_range(rule: Rule, cidr: CIDRRange) -> bool:
    """Whether ``rule`` selects packets by ``ip saddr == cidr``."""
    wanted = match(Payload("ip", "saddr"), Prefix(str(cidr.net_address), cidr.length))
    return wanted in rule.conditions


class HostNATService:
    """Adds and removes masquerade rules on a live host ruleset."""

    def __init__(
        self,
        ctx: ExecutionContext,
        nftables: NftablesService,
        inventory: InterfaceInventoryService,
    ) -> None:
        self.ctx = ctx
        self.nftables = nftables
        self.inventory = inventory

    @property
    def nat_table(self) -> str:
        return f"{self.nftables.netfilter.table_prefix}nat"

    def _external_interface(self, host_id: str) -> str:
        interface = self.inventory.find_external_network_interface(host_id)
        if interface is None:
            raise FirewallError(
                f"Host {host_id} has no external network interface",
                table=self.nat_table,
                chain=SNAT_CHAIN,
            )
        return interface

    def add_source_nat_rule(self, host_id: str, cidr: CIDRRange) -> None:
        """Masquerade ``cidr`` behind the host's external interface.

        Raises:
            FirewallError: If the host has no external interface
        """
        interface = self._external_interface(host_id)
        self.nftables.add_nat_rule(host_id, "ip", self.nat_table, SNAT_CHAIN, snat_rule(interface, cidr))
        self.nftables.update_permanent_rules(host_id)

    def find_source_nat_rule(self, host_id: str, cidr: CIDRRange) -> Optional[Rule]:
        return self.nftables.find_rule(
            self.nftables.read_active_rule_set(host_id),
            "ip",
            self.nat_table,
            SNAT_CHAIN,
            lambda rule: matches_source_range(rule, cidr),
        )

    def remove_source_nat_rule(self, host_id: str, cidr: CIDRRange) -> bool:
        """Delete the masquerade rule for ``cidr``, if present.

        The boot file is rewritten either way.

        Returns:
            True if a rule was deleted
        """
        found = self.find_source_nat_rule(host_id, cidr)
        deleted = found is not None and found.handle is not None
        if deleted:
            self.nftables.delete_nat_rule(host_id, "ip", self.nat_table, SNAT_CHAIN, found.handle)
        elif found is not None:
            self.ctx.console.warn(f"Source NAT rule for {cidr} has no handle; not deleted", host=host_id)
        else:
            self.ctx.console.verbose(f"No source NAT rule for {cidr}", host=host_id)

        self.nftables.update_permanent_rules(host_id)
        return deleted
