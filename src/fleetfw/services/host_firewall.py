"""Host-level firewall rules: the ``external`` zone.

Rules of a host's internet-facing interfaces and its port forwards are
stored per host in the state store. ``HostFirewallService`` is both the
editing surface for those rules and the zone data provider that feeds
them into zone assembly.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from fleetfw.core.context import ExecutionContext
from fleetfw.core.exceptions import FirewallError
from fleetfw.services.rules import (
    Direction,
    FirewallRule,
    PortForwardingRule,
    Protocol,
)
from fleetfw.services.state import FirewallStateStore, ZoneRuleState
from fleetfw.services.zones import (
    EXTERNAL_ZONE,
    FirewallZoneData,
    ZoneAssembly,
)


def default_host_rules() -> ZoneRuleState:
    """Rules of a freshly managed host: management access must survive."""
    state = ZoneRuleState()
    state.inbound_rules += [
        FirewallRule(
            priority=100,
            destination_port_ranges="22",
            protocol=Protocol.TCP,
            comment="SSH, required for host management",
        ),
        FirewallRule(priority=101, protocol=Protocol.ICMP, comment="Ping, for diagnosis"),
    ]
    return state


class ZoneRuleEditor(ABC):
    """Rule CRUD shared by every store-backed zone.

    Subclasses map a scope (host id, zone name) to the state file and to
    the host whose ruleset depends on it. Every mutation is saved and
    then announced through zone assembly, which recompiles that host.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        store: FirewallStateStore,
        assembly: ZoneAssembly,
    ) -> None:
        self.ctx = ctx
        self.store = store
        self.assembly = assembly

    @abstractmethod
    def _locate(self, scope: str) -> tuple[str, Path]:
        """(host id to notify, state file) of a scope."""

    @abstractmethod
    def zones_on_host(self, host_id: str) -> list[str]:
        """Names of the zones this editor owns on a host."""

    def _default_state(self, scope: str) -> ZoneRuleState:
        return ZoneRuleState()

    def load_state(self, scope: str) -> ZoneRuleState:
        _, path = self._locate(scope)
        if not self.store.exists(path):
            return self._default_state(scope)
        return self.store.load(path)

    def _commit(self, scope: str, state: ZoneRuleState) -> None:
        host_id, path = self._locate(scope)
        self.store.save(path, state)
        self.assembly.zone_data_changed(host_id)

    def list_rules(self, scope: str, direction: Direction) -> list[FirewallRule]:
        return list(self.load_state(scope).rules(direction))

    def set_rule(self, scope: str, direction: Direction, rule: FirewallRule) -> bool:
        """Insert or replace the rule with the same priority.

        Returns:
            True if an existing rule was replaced

        Raises:
            ValidationError: If the rule is invalid
        """
        rule.validate()
        state = self.load_state(scope)
        replaced = state.set_rule(direction, rule)
        self._commit(scope, state)
        return replaced

    def delete_rule(self, scope: str, direction: Direction, priority: int) -> None:
        """Delete a rule by priority.

        Raises:
            FirewallError: If no rule has this priority
        """
        state = self.load_state(scope)
        if not state.delete_rule(direction, priority):
            raise FirewallError(
                f"No {direction.value} rule with priority {priority} in {scope}",
                hint="List rules with 'fleetfw firewall rules list'",
            )
        self._commit(scope, state)


class HostFirewallService(ZoneRuleEditor):
    """Rules and port forwards of a host's external zone."""

    matching_zone_prefix = EXTERNAL_ZONE

    def _locate(self, scope: str) -> tuple[str, Path]:
        self.ctx.host(scope)
        return scope, self.store.host_path(scope)

    def _default_state(self, scope: str) -> ZoneRuleState:
        return default_host_rules()

    def zones_on_host(self, host_id: str) -> list[str]:
        return [EXTERNAL_ZONE]

    # =========================================================================
    # Zone data provider
    # =========================================================================

    def match_network_interface_name(self, nic_name: str) -> Optional[str]:
        # External NICs are classified by name before providers are asked
        return None

    def provide_data(self, host_id: str, zone_name: str) -> FirewallZoneData:
        state = self.load_state(host_id)
        return FirewallZoneData(
            inbound_rules=list(state.inbound_rules),
            outbound_rules=list(state.outbound_rules),
            port_forwarding_rules=list(state.port_forwarding_rules),
        )

    # =========================================================================
    # Port forwarding
    # =========================================================================

    def list_port_forwards(self, host_id: str) -> list[PortForwardingRule]:
        return list(self.load_state(host_id).port_forwarding_rules)

    def set_port_forward(self, host_id: str, rule: PortForwardingRule) -> bool:
        """Insert or replace the forward with the same (protocol, port).

        The target must lie in one of the host's custom zones by the time
        the ruleset is compiled, otherwise compilation fails.

        Raises:
            ValidationError: If the rule is invalid
        """
        rule.validate()
        state = self.load_state(host_id)
        replaced = state.set_port_forward(rule)
        self._commit(host_id, state)
        return replaced

    def delete_port_forward(self, host_id: str, protocol: Protocol, port: int) -> None:
        """Delete a forward by (protocol, port).

        Raises:
            FirewallError: If no such forward exists
        """
        state = self.load_state(host_id)
        if not state.delete_port_forward(protocol, port):
            raise FirewallError(
                f"No port forward for {protocol.value}/{port} on host {host_id}",
                hint="List forwards with 'fleetfw firewall forwards list'",
            )
        self._commit(host_id, state)
