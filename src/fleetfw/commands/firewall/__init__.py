"""Firewall management commands.

Provides zone based nftables management for managed hosts:
- Compiling and applying complete rulesets
- Inbound/outbound rules per zone (external, virtual networks, VPN gateways)
- Port forwarding from a host's external address into a zone
- Packet trace simulation and live tracing
- Ad-hoc source NAT
"""

import json
from typing import Annotated, Optional

import typer
from rich.table import Table

from fleetfw.core import (
    FleetError,
    ValidationError,
    get_audit_logger,
    AuditEventType,
    AuditTarget,
)
from fleetfw.core.validation import ANY
from fleetfw.commands.firewall.common import (
    ConfigOption,
    DirectionOption,
    DryRunOption,
    HostArgument,
    NoColorOption,
    VerboseOption,
    YesOption,
    ZoneOption,
    get_firewall_services,
    handle_error,
    parse_direction,
    parse_protocol,
    zone_editor,
)
from fleetfw.services.netfilter import render_ruleset, ruleset_to_json
from fleetfw.services.rules import (
    Action,
    FirewallRule,
    PortForwardingRule,
    TERMINAL_PRIORITY,
)
from fleetfw.services.zones import EXTERNAL_ZONE


# Create the firewall Typer app
app = typer.Typer(
    name="firewall",
    help="Manage zone firewalls of managed hosts.",
    no_args_is_help=True,
)

rules_app = typer.Typer(
    name="rules",
    help="Manage inbound and outbound zone rules.",
    no_args_is_help=True,
)
app.add_typer(rules_app, name="rules")

forwards_app = typer.Typer(
    name="forwards",
    help="Manage port forwarding of a host's external address.",
    no_args_is_help=True,
)
app.add_typer(forwards_app, name="forwards")


def _parse_action(action: str) -> Action:
    for candidate in Action:
        if candidate.value.lower() == action.lower():
            return candidate
    raise ValidationError(
        f"Invalid action: {action}",
        hint="Valid actions: Allow, Deny",
    )


# =============================================================================
# Compile / Apply
# =============================================================================

@app.command("compile")
def firewall_compile(
    host: HostArgument,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print nft JSON instead of nft script"),
    ] = False,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Show the complete ruleset a host would get, without applying it.

    [bold]Examples:[/bold]

        fleetfw firewall compile node1
        fleetfw firewall compile node1 --json > node1.json
    """
    ctx, services = get_firewall_services(verbose=verbose, no_color=no_color, config=config)

    try:
        tables = services.manager.compile(host)

        if as_json:
            ctx.console.print(json.dumps(ruleset_to_json(tables), indent=2), markup=False)
        else:
            ctx.console.nft(render_ruleset(tables), title=f"Ruleset for {host}")

    except FleetError as e:
        handle_error(e)


@app.command("apply")
def firewall_apply(
    host: HostArgument,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Recompile and apply a host's ruleset now.

    The host's tables are replaced in one transaction and persisted
    to the boot-time ruleset file.

    [bold]Examples:[/bold]

        fleetfw firewall apply node1 --dry-run
        fleetfw firewall apply node1
    """
    ctx, services = get_firewall_services(
        dry_run=dry_run, verbose=verbose, no_color=no_color, config=config,
    )

    try:
        ctx.console.step(f"Applying ruleset on {host}")
        tables = services.manager.apply_rule_set(host)

        if ctx.is_verbose:
            ctx.console.nft(render_ruleset(tables), title=f"Ruleset for {host}")

        if not ctx.dry_run:
            ctx.console.success(f"Ruleset applied on {host}")

    except FleetError as e:
        handle_error(e)


# =============================================================================
# Rules
# =============================================================================

@rules_app.command("list")
def rules_list(
    host: HostArgument,
    zone: ZoneOption = EXTERNAL_ZONE,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """List the rules of a zone, including the implicit last rule.

    [bold]Examples:[/bold]

        fleetfw firewall rules list node1
        fleetfw firewall rules list node1 --zone vnet-1
    """
    ctx, services = get_firewall_services(verbose=verbose, no_color=no_color, config=config)

    try:
        editor, scope = zone_editor(services, host, zone)
        state = editor.load_state(scope)

        for direction, rules in (("Inbound", state.inbound_rules), ("Outbound", state.outbound_rules)):
            table = Table(title=f"{direction} rules of {zone} on {host}")
            table.add_column("Priority", justify="right")
            table.add_column("Ports")
            table.add_column("Protocol")
            table.add_column("Source")
            table.add_column("Destination")
            table.add_column("Action")
            table.add_column("Comment", style="dim")

            for rule in rules:
                action_style = "green" if rule.action == Action.ALLOW else "red"
                table.add_row(
                    str(rule.priority),
                    rule.destination_port_ranges,
                    rule.protocol.value,
                    rule.source,
                    rule.destination,
                    f"[{action_style}]{rule.action.value}[/{action_style}]",
                    rule.comment,
                )

            implicit = "Deny" if direction == "Inbound" else "Allow"
            table.add_row(str(TERMINAL_PRIORITY), ANY, ANY, ANY, ANY, implicit, "implicit rule", style="dim")

            ctx.console.print(table)
            ctx.console.print()

    except FleetError as e:
        handle_error(e)


@rules_app.command("set")
def rules_set(
    host: HostArgument,
    priority: Annotated[
        int,
        typer.Option("--priority", "-p", help="Rule priority (1-65534), lower is evaluated first"),
    ],
    direction: DirectionOption = "inbound",
    zone: ZoneOption = EXTERNAL_ZONE,
    ports: Annotated[
        str,
        typer.Option("--ports", help="Destination ports: Any, N, N-M or a comma list"),
    ] = ANY,
    protocol: Annotated[
        str,
        typer.Option("--protocol", help="Any, TCP, UDP or ICMP"),
    ] = ANY,
    source: Annotated[
        str,
        typer.Option("--source", help="Any, or a comma list of addresses/CIDRs"),
    ] = ANY,
    destination: Annotated[
        str,
        typer.Option("--destination", help="Any, or a comma list of addresses/CIDRs"),
    ] = ANY,
    action: Annotated[
        str,
        typer.Option("--action", "-a", help="Allow or Deny"),
    ] = "Allow",
    comment: Annotated[
        str,
        typer.Option("--comment", help="Free text shown in listings"),
    ] = "",
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Add a rule, or replace the rule with the same priority.

    The host's ruleset is recompiled and applied right away.

    [bold]Examples:[/bold]

        fleetfw firewall rules set node1 -p 200 --ports 80,443 --protocol TCP
        fleetfw firewall rules set node1 -p 300 --source 198.51.100.0/24 -a Deny
        fleetfw firewall rules set node1 -z vnet-1 -p 110 --ports 5432 --protocol TCP
    """
    ctx, services = get_firewall_services(
        dry_run=dry_run, verbose=verbose, no_color=no_color, config=config,
    )
    audit = get_audit_logger()

    try:
        rule = FirewallRule(
            priority=priority,
            destination_port_ranges=ports,
            protocol=parse_protocol(protocol),
            source=source,
            destination=destination,
            action=_parse_action(action),
            comment=comment,
        )
        rule_direction = parse_direction(direction)
        editor, scope = zone_editor(services, host, zone)

        with audit.audited(
            AuditEventType.FIREWALL_RULE_SET, host, AuditTarget.ZONE, zone, dry_run=ctx.dry_run,
        ) as record:
            replaced = editor.set_rule(scope, rule_direction, rule)
            record.message = f"{rule_direction.value} {rule}"

        verb = "Replaced" if replaced else "Added"
        ctx.console.success(f"{verb} {rule_direction.value} rule in {zone}: {rule}", host=host)

    except FleetError as e:
        handle_error(e)


@rules_app.command("delete")
def rules_delete(
    host: HostArgument,
    priority: Annotated[
        int,
        typer.Option("--priority", "-p", help="Priority of the rule to delete"),
    ],
    direction: DirectionOption = "inbound",
    zone: ZoneOption = EXTERNAL_ZONE,
    dry_run: DryRunOption = False,
    yes: YesOption = False,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Delete a rule by priority.

    [bold]Examples:[/bold]

        fleetfw firewall rules delete node1 -p 200
        fleetfw firewall rules delete node1 -z vnet-1 -d outbound -p 101 -y
    """
    ctx, services = get_firewall_services(
        dry_run=dry_run, yes=yes, verbose=verbose, no_color=no_color, config=config,
    )
    audit = get_audit_logger()

    try:
        rule_direction = parse_direction(direction)
        editor, scope = zone_editor(services, host, zone)

        if not ctx.confirm(f"Delete {rule_direction.value} rule {priority} of {zone} on {host}?"):
            ctx.console.warn("Operation cancelled")
            raise typer.Exit(0)

        with audit.audited(
            AuditEventType.FIREWALL_RULE_DELETE, host, AuditTarget.ZONE, zone, dry_run=ctx.dry_run,
        ) as record:
            editor.delete_rule(scope, rule_direction, priority)
            record.message = f"{rule_direction.value} priority {priority}"

        ctx.console.success(f"Deleted {rule_direction.value} rule {priority} of {zone}", host=host)

    except FleetError as e:
        handle_error(e)


# =============================================================================
# Port forwarding
# =============================================================================

@forwards_app.command("list")
def forwards_list(
    host: HostArgument,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """List port forwards of a host."""
    ctx, services = get_firewall_services(verbose=verbose, no_color=no_color, config=config)

    try:
        forwards = services.host_firewall.list_port_forwards(host)

        if not forwards:
            ctx.console.info(f"No port forwards on {host}")
            return

        ctx.console.table(
            f"Port forwards on {host}",
            ["Protocol", "Port", "Target", "Comment"],
            [
                [
                    f.protocol.value,
                    str(f.port),
                    f"{f.target_address}:{f.target_port}",
                    f.comment,
                ]
                for f in forwards
            ],
        )

    except FleetError as e:
        handle_error(e)


@forwards_app.command("set")
def forwards_set(
    host: HostArgument,
    port: Annotated[int, typer.Option("--port", help="Port on the host's external address")],
    target: Annotated[str, typer.Option("--target", help="Target address inside a zone")],
    target_port: Annotated[
        Optional[int],
        typer.Option("--target-port", help="Target port (default: same as --port)"),
    ] = None,
    protocol: Annotated[str, typer.Option("--protocol", help="TCP or UDP")] = "TCP",
    comment: Annotated[str, typer.Option("--comment", help="Free text")] = "",
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Forward a port of the host's external address into a zone.

    [bold]Examples:[/bold]

        fleetfw firewall forwards set node1 --port 8080 --target 10.1.0.5 --target-port 80
        fleetfw firewall forwards set node1 --port 51820 --protocol UDP --target 10.1.0.9
    """
    ctx, services = get_firewall_services(
        dry_run=dry_run, verbose=verbose, no_color=no_color, config=config,
    )
    audit = get_audit_logger()

    try:
        rule = PortForwardingRule(
            protocol=parse_protocol(protocol, allow_any=False),
            port=port,
            target_address=target,
            target_port=target_port if target_port is not None else port,
            comment=comment,
        )

        with audit.audited(
            AuditEventType.PORT_FORWARD_SET, host, AuditTarget.HOST, host, dry_run=ctx.dry_run,
        ) as record:
            replaced = services.host_firewall.set_port_forward(host, rule)
            record.message = str(rule)

        verb = "Replaced" if replaced else "Added"
        ctx.console.success(f"{verb} port forward: {rule}", host=host)

    except FleetError as e:
        handle_error(e)


@forwards_app.command("delete")
def forwards_delete(
    host: HostArgument,
    port: Annotated[int, typer.Option("--port", help="Forwarded port")],
    protocol: Annotated[str, typer.Option("--protocol", help="TCP or UDP")] = "TCP",
    dry_run: DryRunOption = False,
    yes: YesOption = False,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Delete a port forward."""
    ctx, services = get_firewall_services(
        dry_run=dry_run, yes=yes, verbose=verbose, no_color=no_color, config=config,
    )
    audit = get_audit_logger()

    try:
        forward_protocol = parse_protocol(protocol, allow_any=False)

        if not ctx.confirm(f"Delete port forward {forward_protocol.value}/{port} on {host}?"):
            ctx.console.warn("Operation cancelled")
            raise typer.Exit(0)

        with audit.audited(
            AuditEventType.PORT_FORWARD_DELETE, host, AuditTarget.HOST, host, dry_run=ctx.dry_run,
        ) as record:
            services.host_firewall.delete_port_forward(host, forward_protocol, port)
            record.message = f"{forward_protocol.value}/{port}"

        ctx.console.success(f"Deleted port forward {forward_protocol.value}/{port}", host=host)

    except FleetError as e:
        handle_error(e)


# =============================================================================
# Tracing and NAT commands
# =============================================================================

from fleetfw.commands.firewall.trace import simulate as simulate_command
from fleetfw.commands.firewall.trace import app as trace_app
from fleetfw.commands.firewall.nat import app as nat_app

app.command("simulate")(simulate_command)
app.add_typer(trace_app, name="trace")
app.add_typer(nat_app, name="nat")
