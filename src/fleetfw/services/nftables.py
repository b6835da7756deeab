"""nftables adapter for managed hosts.

Provides:
- Reading the live ruleset (``nft -j list ruleset``) into the IR
- Atomic full replacement of our own tables in one ``nft -f`` transaction
- Single-rule add/delete by handle for ad-hoc NAT management
- Persisting our tables to the boot-time ruleset file
- Querying the nft version
"""

import json
import re
from typing import Callable, Optional

from fleetfw.core.config import HostConfig, NetfilterConfig
from fleetfw.core.context import ExecutionContext
from fleetfw.core.exceptions import FirewallError
from fleetfw.core.executor import CommandExecutor
from fleetfw.services.netfilter import (
    Rule,
    Table,
    find_table,
    parse_ruleset,
    render_rule,
    render_ruleset,
)
from fleetfw.services.systemd import SystemdService


NFT_VERSION_PATTERN = re.compile(r"v(\d+)\.(\d+)")


class NftablesService:
    """Reads and writes nftables state on managed hosts.

    All operations respect dry-run mode through the executor; reads run
    even in dry-run mode.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        systemd: Optional[SystemdService] = None,
        netfilter: Optional[NetfilterConfig] = None,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.systemd = systemd or SystemdService(ctx, executor)
        self.netfilter = netfilter or ctx.netfilter

    def _host(self, host_id: str) -> HostConfig:
        return self.ctx.host(host_id)

    # =========================================================================
    # Reading
    # =========================================================================

    def read_active_rule_set(self, host_id: str) -> list[Table]:
        """Parse the live ruleset of a host, including rule handles.

        Raises:
            FirewallError: If nft output is not valid JSON
        """
        result = self.executor.run(
            ["nft", "-j", "list", "ruleset"],
            host=self._host(host_id),
            mutating=False,
        )
        if not result.stdout.strip():
            return []
        try:
            document = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise FirewallError(
                f"Cannot parse nft ruleset of host {host_id}",
                details=[str(e)],
            ) from e
        return parse_ruleset(document)

    def read_netfilter_version(self, host_id: str) -> tuple[int, int]:
        """(major, minor) of the host's nft binary.

        Raises:
            FirewallError: If the version string cannot be parsed
        """
        result = self.executor.run(
            ["nft", "--version"],
            host=self._host(host_id),
            mutating=False,
        )
        found = NFT_VERSION_PATTERN.search(result.stdout)
        if found is None:
            if self.ctx.dry_run and not result.stdout:
                return (1, 0)
            raise FirewallError(
                f"Cannot determine nft version on host {host_id}",
                details=[f"Output: {result.stdout.strip()}"],
            )
        return (int(found.group(1)), int(found.group(2)))

    @staticmethod
    def find_rule(
        tables: list[Table],
        family: str,
        table_name: str,
        chain_name: str,
        predicate: Callable[[Rule], bool],
    ) -> Optional[Rule]:
        """First rule in a chain satisfying ``predicate``."""
        table = find_table(tables, family, table_name)
        if table is None:
            return None
        chain = table.chain(chain_name)
        if chain is None:
            return None
        for rule in chain.rules:
            if predicate(rule):
                return rule
        return None

    # =========================================================================
    # Writing
    # =========================================================================

    def write_rule_set(self, host_id: str, tables: list[Table]) -> None:
        """Replace our tables on a host in a single transaction.

        Each table is declared, deleted and recreated inside one ``nft -f``
        invocation, so the host never sees a half-applied ruleset.
        Tables of other software (docker, libvirt) are untouched.
        """
        script = render_ruleset(tables, replace=True)
        self.ctx.console.debug(f"Ruleset:\n{script}", host=host_id)
        self.executor.run(
            ["nft", "-f", "-"],
            host=self._host(host_id),
            input=script,
            description=f"Applying ruleset on {host_id}",
        )

    def add_nat_rule(self, host_id: str, family: str, table: str, chain: str, rule: Rule) -> None:
        """Append a rule to the live ruleset; lost on reboot unless persisted."""
        self.executor.run(
            ["nft", "add", "rule", family, table, chain, *render_rule(rule).split()],
            host=self._host(host_id),
            description=f"Adding rule to {family} {table} {chain} on {host_id}",
        )

    def delete_nat_rule(self, host_id: str, family: str, table: str, chain: str, handle: int) -> None:
        """Delete a rule from the live ruleset by handle."""
        self.executor.run(
            ["nft", "delete", "rule", family, table, chain, "handle", str(handle)],
            host=self._host(host_id),
            description=f"Deleting rule {handle} from {family} {table} {chain} on {host_id}",
        )

    def render_permanent_rules(self, tables: list[Table]) -> str:
        """Boot file content: flush, then every table carrying our prefix."""
        ours = [t for t in tables if t.name.startswith(self.netfilter.table_prefix)]
        return render_ruleset(ours, shebang=True)

    def update_permanent_rules(self, host_id: str) -> None:
        """Persist the live ruleset to the boot file and enable its service.

        A rule is not durable until this completes.
        """
        host = self._host(host_id)
        content = self.render_permanent_rules(self.read_active_rule_set(host_id))

        self.executor.run(
            ["tee", str(self.netfilter.config_path)],
            host=host,
            input=content,
            description=f"Writing {self.netfilter.config_path} on {host_id}",
        )

        self.systemd.ensure_enabled(self.netfilter.service, host)
