"""Firewall manager: recompiles and applies a host's ruleset on change.

Every zone data change (rule edits, tracing toggles, apply requests)
leads to the same path: assemble the host's zones, compile the whole
table set, replace the host's tables in one transaction and persist
the result for the next boot. There is no incremental path.
"""

from dataclasses import dataclass
from typing import Optional

from fleetfw.core.audit import AuditEventType, AuditLogger, AuditTarget, get_audit_logger
from fleetfw.core.context import ExecutionContext
from fleetfw.core.executor import CommandExecutor
from fleetfw.services.compiler import RulesetCompiler
from fleetfw.services.host_firewall import HostFirewallService
from fleetfw.services.interfaces import InterfaceInventoryService
from fleetfw.services.netfilter import Table
from fleetfw.services.nftables import NftablesService
from fleetfw.services.state import FirewallStateStore
from fleetfw.services.systemd import SystemdService
from fleetfw.services.tracing import TracingController
from fleetfw.services.vnet import VNetZoneProvider, VPNZoneProvider
from fleetfw.services.zones import ZoneAssembly, ZoneChangeBus


class FirewallManager:
    """Applies compiled rulesets, serialized per host.

    Call ``start()`` once to subscribe to zone change notifications.
    Notifications for one host run under that host's lock, so two
    full-ruleset replacements never interleave.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        assembly: ZoneAssembly,
        compiler: RulesetCompiler,
        nftables: NftablesService,
        tracing: TracingController,
        audit: Optional[AuditLogger] = None,
        persist: bool = True,
    ) -> None:
        self.ctx = ctx
        self.assembly = assembly
        self.compiler = compiler
        self.nftables = nftables
        self.tracing = tracing
        self.audit = audit or get_audit_logger()
        self.persist = persist

    def start(self) -> None:
        self.assembly.subscribe_for_changes(self.apply_rule_set)

    def compile(self, host_id: str) -> list[Table]:
        """Compile the current table set of a host without applying it.

        Raises:
            UnknownZoneError: If a NIC or zone cannot be resolved
            DanglingTargetError: If a port forward targets no custom zone
        """
        zones = self.assembly.query_zones(host_id)
        version = self.nftables.read_netfilter_version(host_id)
        return self.compiler.compile(zones, self.tracing.get_settings(host_id), version)

    def apply_rule_set(self, host_id: str) -> list[Table]:
        """Recompile and replace the host's tables.

        Nothing is written when compilation fails, so the host keeps its
        previous, consistent ruleset.
        """
        with self.assembly.bus.lock_for(host_id), self.audit.audited(
            AuditEventType.RULESET_APPLY, host_id, AuditTarget.HOST, host_id, dry_run=self.ctx.dry_run,
        ) as record:
            tables = self.compile(host_id)
            self.nftables.write_rule_set(host_id, tables)
            if self.persist:
                self.nftables.update_permanent_rules(host_id)

            record.message = f"{sum(len(c.rules) for t in tables for c in t.chains)} rules"
            if not self.ctx.dry_run:
                self.ctx.console.verbose("Ruleset applied", host=host_id)
            return tables


@dataclass
class FirewallServices:
    """The wired service graph of one process."""
    executor: CommandExecutor
    bus: ZoneChangeBus
    inventory: InterfaceInventoryService
    assembly: ZoneAssembly
    store: FirewallStateStore
    host_firewall: HostFirewallService
    vnets: VNetZoneProvider
    vpn_gateways: VPNZoneProvider
    nftables: NftablesService
    tracing: TracingController
    compiler: RulesetCompiler
    manager: FirewallManager


def build_services(ctx: ExecutionContext, *, auto_apply: bool = True) -> FirewallServices:
    """Wire the firewall services for a context.

    With ``auto_apply`` every rule change and tracing toggle is applied
    to the affected host immediately.
    """
    executor = CommandExecutor(ctx)
    bus = ZoneChangeBus()
    inventory = InterfaceInventoryService(ctx, executor)
    assembly = ZoneAssembly(ctx, inventory, bus)
    store = FirewallStateStore(ctx)

    host_firewall = HostFirewallService(ctx, store, assembly)
    vnets = VNetZoneProvider(ctx, store, assembly)
    vpn_gateways = VPNZoneProvider(ctx, store, assembly)
    for provider in (host_firewall, vnets, vpn_gateways):
        assembly.register_provider(provider)

    netfilter = ctx.netfilter
    nftables = NftablesService(ctx, executor, SystemdService(ctx, executor), netfilter)
    tracing = TracingController(ctx, executor, bus, ctx.config.tracing)
    compiler = RulesetCompiler(netfilter.table_prefix)
    manager = FirewallManager(ctx, assembly, compiler, nftables, tracing)
    if auto_apply:
        manager.start()

    return FirewallServices(
        executor=executor,
        bus=bus,
        inventory=inventory,
        assembly=assembly,
        store=store,
        host_firewall=host_firewall,
        vnets=vnets,
        vpn_gateways=vpn_gateways,
        nftables=nftables,
        tracing=tracing,
        compiler=compiler,
        manager=manager,
    )
