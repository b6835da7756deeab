"""Shared helpers for firewall commands."""

from pathlib import Path
from typing import Annotated, Optional

import typer

from fleetfw.core import (
    FleetError,
    ValidationError,
    console,
    ExecutionContext,
    create_context,
)
from fleetfw.core.audit import configure_audit_logger
from fleetfw.services.firewall import FirewallServices, build_services
from fleetfw.services.host_firewall import ZoneRuleEditor
from fleetfw.services.rules import Direction, Protocol
from fleetfw.services.zones import EXTERNAL_ZONE


# Type aliases for common options
DryRunOption = Annotated[
    bool,
    typer.Option("--dry-run", help="Preview changes without executing"),
]

YesOption = Annotated[
    bool,
    typer.Option("--yes", "-y", help="Skip confirmation prompts"),
]

VerboseOption = Annotated[
    int,
    typer.Option("--verbose", "-v", count=True, help="Increase verbosity"),
]

NoColorOption = Annotated[
    bool,
    typer.Option("--no-color", help="Disable colored output"),
]

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to configuration file", dir_okay=False),
]

HostArgument = Annotated[
    str,
    typer.Argument(help="Host id from the configuration"),
]

ZoneOption = Annotated[
    str,
    typer.Option("--zone", "-z", help="Zone name (external, vnet-<id>, vpn-<id>)"),
]

DirectionOption = Annotated[
    str,
    typer.Option("--direction", "-d", help="Rule direction: inbound or outbound"),
]


def get_firewall_services(
    dry_run: bool = False,
    yes: bool = False,
    verbose: int = 0,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> tuple[ExecutionContext, FirewallServices]:
    """Create context and wired firewall services."""
    ctx = create_context(
        dry_run=dry_run,
        yes=yes,
        verbose=verbose,
        no_color=no_color,
        config=config,
    )
    configure_audit_logger(log_path=ctx.config.audit_log)
    return ctx, build_services(ctx)


def handle_error(error: FleetError) -> None:
    """Handle a FleetError by printing formatted error and exiting."""
    console.error(error.message)

    if error.details:
        for detail in error.details:
            console.print(f"  [dim]{detail}[/dim]")

    if error.hint:
        console.hint(error.hint)

    raise typer.Exit(error.exit_code)


def parse_direction(direction: str) -> Direction:
    try:
        return Direction(direction.lower())
    except ValueError:
        raise ValidationError(
            f"Invalid direction: {direction}",
            hint="Valid directions: inbound, outbound",
        )


def parse_protocol(protocol: str, *, allow_any: bool = True) -> Protocol:
    """Parse a protocol name case-insensitively.

    Raises:
        ValidationError: If protocol is invalid
    """
    choices = [p for p in Protocol if allow_any or p != Protocol.ANY]
    for candidate in choices:
        if candidate.value.lower() == protocol.lower():
            return candidate
    raise ValidationError(
        f"Invalid protocol: {protocol}",
        hint=f"Valid protocols: {', '.join(p.value for p in choices)}",
    )


def zone_editor(
    services: FirewallServices, host_id: str, zone: str
) -> tuple[ZoneRuleEditor, str]:
    """Editor and scope for a zone's rules on a host.

    Raises:
        ValidationError: If the zone does not belong to the host
    """
    if zone == EXTERNAL_ZONE:
        return services.host_firewall, host_id

    provider = services.assembly.find_provider(zone)
    if not isinstance(provider, ZoneRuleEditor):
        raise ValidationError(f"Rules of zone '{zone}' cannot be edited")

    if zone not in provider.zones_on_host(host_id):
        raise ValidationError(
            f"Zone '{zone}' is not on host {host_id}",
            hint="Check the 'host' of the virtual network or VPN gateway in the configuration",
        )
    return provider, zone
