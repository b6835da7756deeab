"""Firewall rule state storage.

Rules change at runtime and are kept as YAML documents under the state
directory, one per host (the host's external zone) and one per managed
zone (virtual networks, VPN gateways):

    <state_dir>/hosts/<host_id>.yaml
    <state_dir>/zones/<zone_name>.yaml

The store is the source of truth; compiled rulesets are derived from
it and never stored here.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

import yaml

from fleetfw.core.context import ExecutionContext
from fleetfw.core.exceptions import ConfigurationError, FleetError
from fleetfw.services.rules import (
    Direction,
    FirewallRule,
    PortForwardingRule,
    Protocol,
    sort_rules,
)


STATE_VERSION = 1


@dataclass
class ZoneRuleState:
    """Stored rules of one zone."""
    version: int = STATE_VERSION
    last_modified: Optional[str] = None
    inbound_rules: list[FirewallRule] = field(default_factory=list)
    outbound_rules: list[FirewallRule] = field(default_factory=list)
    port_forwarding_rules: list[PortForwardingRule] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for YAML serialization."""
        return {
            "version": self.version,
            "last_modified": self.last_modified,
            "inbound_rules": [r.to_dict() for r in self.inbound_rules],
            "outbound_rules": [r.to_dict() for r in self.outbound_rules],
            "port_forwarding_rules": [r.to_dict() for r in self.port_forwarding_rules],
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ZoneRuleState":
        """Create from dictionary (YAML deserialization)."""
        return cls(
            version=d.get("version", STATE_VERSION),
            last_modified=d.get("last_modified"),
            inbound_rules=[FirewallRule.from_dict(r) for r in d.get("inbound_rules") or []],
            outbound_rules=[FirewallRule.from_dict(r) for r in d.get("outbound_rules") or []],
            port_forwarding_rules=[
                PortForwardingRule.from_dict(r) for r in d.get("port_forwarding_rules") or []
            ],
        )

    def rules(self, direction: Direction) -> list[FirewallRule]:
        if direction == Direction.INBOUND:
            return self.inbound_rules
        return self.outbound_rules

    def set_rule(self, direction: Direction, rule: FirewallRule) -> bool:
        """Insert or replace the rule with the same priority.

        Returns:
            True if an existing rule was replaced
        """
        rules = self.rules(direction)
        replaced = False
        for i, existing in enumerate(rules):
            if existing.priority == rule.priority:
                rules[i] = rule
                replaced = True
                break
        else:
            rules.append(rule)

        rules[:] = sort_rules(rules)
        return replaced

    def delete_rule(self, direction: Direction, priority: int) -> bool:
        rules = self.rules(direction)
        for i, existing in enumerate(rules):
            if existing.priority == priority:
                rules.pop(i)
                return True
        return False

    def set_port_forward(self, rule: PortForwardingRule) -> bool:
        """Insert or replace the forward with the same (protocol, port)."""
        for i, existing in enumerate(self.port_forwarding_rules):
            if existing.key == rule.key:
                self.port_forwarding_rules[i] = rule
                return True
        self.port_forwarding_rules.append(rule)
        self.port_forwarding_rules.sort(key=lambda r: (r.protocol.value, r.port))
        return False

    def delete_port_forward(self, protocol: Protocol, port: int) -> bool:
        for i, existing in enumerate(self.port_forwarding_rules):
            if existing.key == (protocol, port):
                self.port_forwarding_rules.pop(i)
                return True
        return False


class FirewallStateStore:
    """Loads and saves ``ZoneRuleState`` documents.

    Writes respect dry-run mode. Access is serialized per process.
    """

    def __init__(self, ctx: ExecutionContext, state_dir: Optional[Path] = None) -> None:
        self.ctx = ctx
        self.state_dir = state_dir or ctx.config.state_dir
        self._lock = threading.Lock()

    def _path(self, kind: str, name: str) -> Path:
        return self.state_dir / kind / f"{name}.yaml"

    def host_path(self, host_id: str) -> Path:
        return self._path("hosts", host_id)

    def zone_path(self, zone_name: str) -> Path:
        return self._path("zones", zone_name)

    def exists(self, path: Path) -> bool:
        return path.exists()

    def load(self, path: Path) -> ZoneRuleState:
        """Load a state document; a missing file is an empty state.

        Raises:
            ConfigurationError: If the file exists but cannot be parsed
        """
        with self._lock:
            if not path.exists():
                return ZoneRuleState()
            try:
                with open(path) as f:
                    data = yaml.safe_load(f) or {}
                return ZoneRuleState.from_dict(data)
            except (yaml.YAMLError, OSError) as e:
                raise ConfigurationError(
                    f"Could not read firewall state: {path}",
                    details=[str(e)],
                ) from e
            except (KeyError, ValueError, FleetError) as e:
                raise ConfigurationError(
                    f"Invalid firewall state: {path}",
                    details=[str(e)],
                ) from e

    def save(self, path: Path, state: ZoneRuleState) -> None:
        state.last_modified = datetime.now().isoformat()

        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg(f"Save firewall state to {path}")
            return

        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".yaml.tmp")
            with open(tmp, "w") as f:
                yaml.dump(state.to_dict(), f, default_flow_style=False, sort_keys=False)
            tmp.replace(path)

        self.ctx.console.debug(f"State saved to {path}")
