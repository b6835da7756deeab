"""Ad-hoc source NAT commands."""

from typing import Annotated

import typer

from fleetfw.core import (
    FleetError,
    get_audit_logger,
    AuditEventType,
    AuditTarget,
)
from fleetfw.commands.firewall.common import (
    ConfigOption,
    DryRunOption,
    HostArgument,
    NoColorOption,
    VerboseOption,
    YesOption,
    get_firewall_services,
    handle_error,
)
from fleetfw.services.addressing import CIDRRange
from fleetfw.services.nat import HostNATService


app = typer.Typer(
    name="nat",
    help="Masquerade address ranges behind a host's external interface.",
    no_args_is_help=True,
)

CIDRArgument = Annotated[
    str,
    typer.Argument(help="Source address range, e.g. 10.8.0.0/24"),
]


@app.command("add")
def nat_add(
    host: HostArgument,
    cidr: CIDRArgument,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Masquerade a source range on the host's external interface.

    The rule is added to the live ruleset and persisted. It lasts until
    the host's ruleset is next recompiled.

    [bold]Examples:[/bold]

        fleetfw firewall nat add node1 10.8.0.0/24
    """
    ctx, services = get_firewall_services(
        dry_run=dry_run, verbose=verbose, no_color=no_color, config=config,
    )
    audit = get_audit_logger()

    try:
        source_range = CIDRRange.parse(cidr)
        nat = HostNATService(ctx, services.nftables, services.inventory)

        with audit.audited(
            AuditEventType.NAT_ADD, host, AuditTarget.CIDR, str(source_range), dry_run=ctx.dry_run,
        ):
            nat.add_source_nat_rule(host, source_range)

        if not ctx.dry_run:
            ctx.console.success(f"Masquerading {source_range}", host=host)

    except FleetError as e:
        handle_error(e)


@app.command("remove")
def nat_remove(
    host: HostArgument,
    cidr: CIDRArgument,
    dry_run: DryRunOption = False,
    yes: YesOption = False,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Remove the masquerade rule for a source range.

    [bold]Examples:[/bold]

        fleetfw firewall nat remove node1 10.8.0.0/24 -y
    """
    ctx, services = get_firewall_services(
        dry_run=dry_run, yes=yes, verbose=verbose, no_color=no_color, config=config,
    )
    audit = get_audit_logger()

    try:
        source_range = CIDRRange.parse(cidr)
        nat = HostNATService(ctx, services.nftables, services.inventory)

        if not ctx.confirm(f"Stop masquerading {source_range} on {host}?"):
            ctx.console.warn("Operation cancelled")
            raise typer.Exit(0)

        with audit.audited(
            AuditEventType.NAT_REMOVE, host, AuditTarget.CIDR, str(source_range), dry_run=ctx.dry_run,
        ) as record:
            removed = nat.remove_source_nat_rule(host, source_range)
            if not removed and not ctx.dry_run:
                record.skip()

        if ctx.dry_run:
            return
        if removed:
            ctx.console.success(f"Stopped masquerading {source_range}", host=host)
        else:
            ctx.console.warn(f"No masquerade rule for {source_range}", host=host)

    except FleetError as e:
        handle_error(e)
