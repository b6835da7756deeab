"""Ruleset compiler.

Turns a host's ``FirewallZoneCollection`` plus its tracing settings into
the complete set of nftables tables for that host. The output is always
the whole configuration, never a delta, and is a pure function of its
inputs: compiling the same zones twice yields identical tables.

Table layout (``<prefix>`` is the configured table prefix):
- bridge <prefix>filter: zone-internal L2 forwarding
- ip <prefix>filter: INPUT/FORWARD/OUTPUT plus ENTER_/EXIT_ zone chains
- ip <prefix>nat: port forwarding DNAT and per-zone masquerade
- ip6 <prefix>filter: drops everything
"""

from typing import Optional

from fleetfw.core.exceptions import DanglingTargetError, FirewallError
from fleetfw.services.netfilter import (
    Accept,
    Chain,
    Condition,
    Ct,
    DNat,
    Drop,
    Jump,
    Mangle,
    Masquerade,
    Meta,
    Payload,
    Policy,
    Prefix,
    Range,
    Reject,
    Rule,
    Table,
    Value,
    Values,
    match,
)
from fleetfw.services.rules import (
    TERMINAL_PRIORITY,
    Action,
    FirewallRule,
    FlatFirewallRule,
    PortForwardingRule,
    Protocol,
    flatten_rule,
    sort_rules,
)
from fleetfw.services.tracing import TraceHook, TracingSettings
from fleetfw.services.zones import FirewallZone, FirewallZoneCollection


DEFAULT_TABLE_PREFIX = "fleetfw_"

# Bridge-family connection tracking needs nft >= 1.0
MIN_BRIDGE_CT_MAJOR = 1

ESTABLISHED_OR_RELATED = Values(("established", "related"))


def _ct_state(right) -> Condition:
    op = "in" if isinstance(right, Values) else "=="
    return match(Ct("state"), right, op)


def _interface(key: str, names: list[str]) -> Condition:
    """iifname/oifname condition for one or several interfaces."""
    if len(names) == 1:
        return match(Meta(key), Value(names[0]))
    return match(Meta(key), Values(tuple(names)))


def _address(field: str, cidr) -> Condition:
    return match(Payload("ip", field), Prefix(str(cidr.net_address), cidr.length))


def _verdict(action: Action) -> Policy:
    return Accept() if action == Action.ALLOW else Drop()


def flat_rule_conditions(flat: FlatFirewallRule) -> list[Condition]:
    """Match conditions equivalent to one flat rule."""
    conditions = []
    if flat.protocol == Protocol.ICMP:
        conditions.append(match(Meta("l4proto"), Value("icmp")))
    elif flat.port_range is None:
        conditions.append(match(Meta("l4proto"), Value(flat.protocol.nft_name)))
    else:
        dport = Payload(flat.protocol.nft_name, "dport")
        if flat.port_range.is_single:
            conditions.append(match(dport, Value(flat.port_range.first)))
        else:
            conditions.append(match(dport, Range(flat.port_range.first, flat.port_range.last)))

    if flat.source is not None:
        conditions.append(_address("saddr", flat.source))
    if flat.destination is not None:
        conditions.append(_address("daddr", flat.destination))
    return conditions


def convert_flat_rule(flat: FlatFirewallRule, policy: Optional[Policy] = None) -> Rule:
    return Rule(
        conditions=flat_rule_conditions(flat),
        policy=policy if policy is not None else _verdict(flat.action),
    )


def compile_rules(rules: list[FirewallRule]) -> list[Rule]:
    """Compile a zone rule list; the implicit terminal rule becomes an
    unconditional verdict at the end."""
    compiled = []
    terminal: Optional[FirewallRule] = None
    for rule in sort_rules(rules):
        if rule.priority == TERMINAL_PRIORITY:
            terminal = rule
            continue
        compiled.extend(convert_flat_rule(flat) for flat in flatten_rule(rule))
    if terminal is not None:
        compiled.append(Rule(policy=_verdict(terminal.action)))
    return compiled


def _user_rules(rules: list[FirewallRule]) -> list[Rule]:
    return compile_rules([r for r in rules if r.priority != TERMINAL_PRIORITY])


def _terminated(rules: list[FirewallRule], fallback: Policy) -> list[Rule]:
    """Compiled rules ending in an unconditional verdict."""
    compiled = compile_rules(rules)
    if not compiled or compiled[-1].conditions:
        compiled.append(Rule(policy=fallback))
    return compiled


def _base_chain(name: str, hook: str, rules: list[Rule], *, prio: str = "filter",
                type: str = "filter", policy: Optional[str] = "drop") -> Chain:
    return Chain(name=name, rules=rules, hook=hook, prio=prio, policy=policy, type=type)


class RulesetCompiler:
    """Compiles zone collections into nftables tables."""

    def __init__(self, table_prefix: str = DEFAULT_TABLE_PREFIX) -> None:
        self.table_prefix = table_prefix

    @property
    def filter_table(self) -> str:
        return f"{self.table_prefix}filter"

    @property
    def nat_table(self) -> str:
        return f"{self.table_prefix}nat"

    def compile(
        self,
        zones: FirewallZoneCollection,
        tracing: Optional[TracingSettings] = None,
        netfilter_version: tuple[int, int] = (1, 0),
    ) -> list[Table]:
        """Compile the full table set for one host.

        Raises:
            DanglingTargetError: If a port forward targets no custom zone
            FirewallError: If port forwards exist but the host has no external NIC
        """
        tracing = tracing or TracingSettings()
        forward_targets = self._resolve_forward_targets(zones)

        if zones.external.port_forwarding_rules and not zones.external.interface_names:
            raise FirewallError(
                "Port forwarding rules require an external network interface",
                table=self.nat_table,
                chain="PREROUTING",
            )

        return [
            self._bridge_filter_table(zones, tracing, netfilter_version),
            self._ip_filter_table(zones, tracing, forward_targets),
            self._ip_nat_table(zones),
            self._ip6_filter_table(),
        ]

    # =========================================================================
    # Helpers
    # =========================================================================

    def _resolve_forward_targets(
        self, zones: FirewallZoneCollection
    ) -> list[tuple[PortForwardingRule, FirewallZone]]:
        resolved = []
        for forward in zones.external.port_forwarding_rules:
            zone = zones.find_zone_for_address(forward.target)
            if zone is None:
                raise DanglingTargetError(
                    f"Port forwarding target {forward.target_address} is not in any zone",
                    table=self.nat_table,
                    chain="PREROUTING",
                    details=[f"Rule: {forward}"],
                    hint="Forward only to addresses inside a virtual network or VPN gateway",
                )
            resolved.append((forward, zone))
        return resolved

    @staticmethod
    def _tracing_rules(tracing: TracingSettings, hook: TraceHook) -> list[Rule]:
        """nftrace marking rules; must come first in the hook's chain."""
        if not tracing.is_enabled(hook):
            return []
        mark = Mangle(Meta("nftrace"), 1)
        return [convert_flat_rule(flat, mark) for flat in flatten_rule(tracing.conditions.to_rule())]

    # =========================================================================
    # bridge <prefix>filter
    # =========================================================================

    def _bridge_filter_table(
        self,
        zones: FirewallZoneCollection,
        tracing: TracingSettings,
        netfilter_version: tuple[int, int],
    ) -> Table:
        table = Table(name=self.filter_table, family="bridge")
        if netfilter_version[0] < MIN_BRIDGE_CT_MAJOR:
            return table

        for zone in zones.custom_zones:
            rules = _user_rules(zone.outbound_rules) + _user_rules(zone.inbound_rules)
            terminal = [r for r in zone.inbound_rules if r.priority == TERMINAL_PRIORITY]
            if terminal:
                rules.append(Rule(policy=_verdict(terminal[0].action)))
            table.chains.append(Chain(name=zone.bridge_chain, rules=rules))

        forward_rules = self._tracing_rules(tracing, TraceHook.BRIDGE_FORWARD)
        forward_rules.append(Rule([_ct_state(ESTABLISHED_OR_RELATED)], Accept()))
        forward_rules.append(Rule([match(Payload("ether", "type"), Value("arp"))], Accept()))
        for zone in zones.custom_zones:
            forward_rules.append(Rule(
                [_address("saddr", zone.address_space), _address("daddr", zone.address_space)],
                Jump(zone.bridge_chain),
            ))
        table.chains.append(_base_chain("FORWARD", "forward", forward_rules))
        return table

    # =========================================================================
    # ip <prefix>filter
    # =========================================================================

    def _ip_filter_table(
        self,
        zones: FirewallZoneCollection,
        tracing: TracingSettings,
        forward_targets: list[tuple[PortForwardingRule, FirewallZone]],
    ) -> Table:
        external = zones.external
        chains = [
            Chain(name=external.enter_chain, rules=_terminated(external.inbound_rules, Drop())),
            Chain(name=external.exit_chain, rules=_terminated(external.outbound_rules, Accept())),
        ]
        for zone in zones.custom_zones:
            chains.append(Chain(
                name=zone.enter_chain,
                rules=_terminated(zone.inbound_rules, Drop()),
            ))
            # custom zones are internal networks of the host
            chains.append(Chain(
                name=zone.exit_chain,
                rules=_terminated(zone.outbound_rules, Accept()),
            ))

        chains.append(_base_chain("INPUT", "input", self._input_rules(zones, tracing)))
        chains.append(_base_chain("FORWARD", "forward", self._forward_rules(zones, tracing, forward_targets)))
        chains.append(_base_chain("OUTPUT", "output", self._output_rules(zones, tracing)))
        return Table(name=self.filter_table, family="ip", chains=chains)

    def _input_rules(self, zones: FirewallZoneCollection, tracing: TracingSettings) -> list[Rule]:
        rules = self._tracing_rules(tracing, TraceHook.INPUT)
        rules.append(Rule([_ct_state(Value("invalid"))], Drop()))
        rules.append(Rule([_ct_state(ESTABLISHED_OR_RELATED)], Accept()))
        for nic in zones.trusted.interface_names:
            rules.append(Rule([_interface("iifname", [nic])], Accept()))
        for nic in zones.external.interface_names:
            rules.append(Rule([_interface("iifname", [nic])], Jump(zones.external.enter_chain)))
        # ingress on a zone's own NIC asks whether the zone may talk to us
        for zone in zones.custom_zones:
            for nic in zone.interface_names:
                rules.append(Rule([_interface("iifname", [nic])], Jump(zone.exit_chain)))
        rules.append(Rule(policy=Reject("port-unreachable")))
        return rules

    def _output_rules(self, zones: FirewallZoneCollection, tracing: TracingSettings) -> list[Rule]:
        rules = self._tracing_rules(tracing, TraceHook.OUTPUT)
        rules.append(Rule([_ct_state(ESTABLISHED_OR_RELATED)], Accept()))
        for nic in zones.trusted.interface_names:
            rules.append(Rule([_interface("oifname", [nic])], Accept()))
        for nic in zones.external.interface_names:
            rules.append(Rule([_interface("oifname", [nic])], Jump(zones.external.exit_chain)))
        for zone in zones.custom_zones:
            for nic in zone.interface_names:
                rules.append(Rule([_interface("oifname", [nic])], Jump(zone.enter_chain)))
        return rules

    def _forward_rules(
        self,
        zones: FirewallZoneCollection,
        tracing: TracingSettings,
        forward_targets: list[tuple[PortForwardingRule, FirewallZone]],
    ) -> list[Rule]:
        rules = self._tracing_rules(tracing, TraceHook.FORWARD)
        rules.append(Rule([_ct_state(ESTABLISHED_OR_RELATED)], Accept()))

        # only the first packet of a forwarded flow is checked against the zone
        for forward, zone in forward_targets:
            rules.append(Rule(
                [
                    _interface("iifname", zones.external.interface_names),
                    _interface("oifname", zone.interface_names),
                    match(Payload("ip", "daddr"), Value(forward.target_address)),
                    match(Payload(forward.protocol.nft_name, "dport"), Value(forward.target_port)),
                    _ct_state(Value("new")),
                ],
                Jump(zone.enter_chain),
            ))

        for zone in zones.custom_zones:
            for nic in zone.interface_names:
                rules.append(Rule(
                    [
                        _interface("oifname", [nic]),
                        _address("daddr", zone.address_space),
                        _ct_state(ESTABLISHED_OR_RELATED),
                    ],
                    Accept(),
                ))
        for zone in zones.custom_zones:
            for nic in zone.interface_names:
                rules.append(Rule(
                    [_interface("iifname", [nic]), _address("saddr", zone.address_space)],
                    Jump(zone.exit_chain),
                ))

        rules.append(Rule(policy=Reject("port-unreachable")))
        return rules

    # =========================================================================
    # ip <prefix>nat
    # =========================================================================

    def _ip_nat_table(self, zones: FirewallZoneCollection) -> Table:
        external_nics = zones.external.interface_names

        prerouting = []
        for forward in zones.external.port_forwarding_rules:
            prerouting.append(Rule(
                [
                    _interface("iifname", external_nics),
                    match(Payload(forward.protocol.nft_name, "dport"), Value(forward.port)),
                ],
                DNat(forward.target_address, forward.target_port),
            ))

        postrouting = []
        if external_nics:
            for zone in zones.custom_zones:
                postrouting.append(Rule(
                    [_interface("oifname", external_nics), _address("saddr", zone.address_space)],
                    Masquerade(),
                ))

        return Table(name=self.nat_table, family="ip", chains=[
            _base_chain("PREROUTING", "prerouting", prerouting, prio="dstnat", type="nat", policy=None),
            _base_chain("POSTROUTING", "postrouting", postrouting, prio="srcnat", type="nat", policy=None),
        ])

    # =========================================================================
    # ip6 <prefix>filter
    # =========================================================================

    def _ip6_filter_table(self) -> Table:
        """IPv6 is unsupported; every hook drops."""
        return Table(name=self.filter_table, family="ip6", chains=[
            _base_chain("INPUT", "input", []),
            _base_chain("FORWARD", "forward", []),
            _base_chain("OUTPUT", "output", []),
        ])
