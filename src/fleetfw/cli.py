"""Root ``fleetfw`` command.

Registers the ``firewall`` group and holds the small ``config`` group
for inspecting and bootstrapping the fleet description.
"""

from collections import defaultdict
from typing import Annotated

import typer
from rich.console import Console

from fleetfw import __version__
from fleetfw.core import FleetError, create_context
from fleetfw.core.config import (
    VNET_BRIDGE_PREFIX,
    VPN_TUNNEL_PREFIX,
    FleetConfig,
    get_example_config,
    init_config,
)
from fleetfw.commands.firewall import app as firewall_app
from fleetfw.commands.firewall.common import (
    ConfigOption,
    NoColorOption,
    VerboseOption,
    handle_error,
)
from fleetfw.services.addressing import CIDRRange
from fleetfw.services.zones import check_overlapping_address_spaces


app = typer.Typer(
    name="fleetfw",
    help="Zone based nftables management for a fleet of hosts.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
)

config_app = typer.Typer(
    name="config",
    help="Inspect and bootstrap the fleet configuration.",
    no_args_is_help=True,
)

app.add_typer(config_app, name="config")
app.add_typer(firewall_app, name="firewall")


ForceOption = Annotated[
    bool,
    typer.Option("--force", "-f", help="Overwrite an existing file"),
]


def version_callback(value: bool) -> None:
    if value:
        Console().print(f"fleetfw {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """Fleet firewall controller.

    Compiles each host's zones (external, virtual networks, VPN gateways)
    into one nftables ruleset and loads it atomically.

    [bold]Examples:[/bold]
        fleetfw firewall compile node1
        fleetfw firewall rules set node1 -p 200 --ports 443 --protocol TCP
        fleetfw firewall simulate node1 --source 198.51.100.7 --port 8080
        fleetfw config show
    """


def fleet_rows(fleet: FleetConfig) -> list[list[str]]:
    """One row per zone-bearing resource: host, zone, interface, range."""
    rows = []
    for host in fleet.hosts:
        rows.append([host.id, "external", "-", host.address or "local"])
        for vnet in fleet.vnets:
            if vnet.host == host.id:
                rows.append([host.id, vnet.zone_name, f"{VNET_BRIDGE_PREFIX}{vnet.id}", vnet.address_space])
        for gateway in fleet.vpn_gateways:
            if gateway.host == host.id:
                rows.append([host.id, gateway.zone_name, f"{VPN_TUNNEL_PREFIX}{gateway.id}", gateway.address_space])
    return rows


def check_fleet_address_spaces(fleet: FleetConfig) -> None:
    """Reject hosts whose custom zones overlap.

    Raises:
        ConfigurationError: On the first host with overlapping zones
    """
    spaces: dict[str, list[tuple[str, CIDRRange]]] = defaultdict(list)
    for vnet in fleet.vnets:
        spaces[vnet.host].append((vnet.zone_name, CIDRRange.parse(vnet.address_space)))
    for gateway in fleet.vpn_gateways:
        spaces[gateway.host].append((gateway.zone_name, CIDRRange.parse(gateway.address_space)))

    for host_id in sorted(spaces):
        try:
            check_overlapping_address_spaces(spaces[host_id])
        except FleetError as e:
            e.details.insert(0, f"Host: {host_id}")
            raise


@config_app.command("show")
def config_show(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Show the fleet's hosts and zones.

    With -v the full configuration is printed as YAML as well.
    """
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        app_config = ctx.config

        ctx.console.print(f"[bold]Configuration file:[/bold] {ctx.config_path}")
        ctx.console.table("Fleet", ["Host", "Zone", "Interface", "Address"], fleet_rows(ctx.fleet))

        if ctx.is_verbose:
            ctx.console.yaml(ctx.fleet.to_yaml())

        ctx.console.summary("Paths", {
            "State directory": app_config.state_dir,
            "Audit log": app_config.audit_log,
            "Persisted ruleset": ctx.netfilter.config_path,
        })

    except FleetError as e:
        handle_error(e)


@config_app.command("init")
def config_init(
    config: ConfigOption = None,
    force: ForceOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Write an example configuration file."""
    ctx = create_context(no_color=no_color, config=config)

    try:
        init_config(ctx.config_path, force=force)
        ctx.console.success(f"Configuration file created: {ctx.config_path}")
        ctx.console.info("Describe your hosts, virtual networks and VPN gateways in it.")

    except FleetError as e:
        handle_error(e)


@config_app.command("validate")
def config_validate(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Validate the configuration file.

    Besides schema checks, custom zones sharing a host must not have
    overlapping address spaces.
    """
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        fleet = FleetConfig.load(ctx.config_path)
        check_fleet_address_spaces(fleet)

        ctx.console.success(f"Configuration is valid: {ctx.config_path}")
        if ctx.is_verbose:
            ctx.console.table("Fleet", ["Host", "Zone", "Interface", "Address"], fleet_rows(fleet))
        if not fleet.hosts:
            ctx.console.warn("No hosts configured")

    except FleetError as e:
        handle_error(e)


@config_app.command("example")
def config_example() -> None:
    """Print an example configuration file."""
    typer.echo(get_example_config(), nl=False)


if __name__ == "__main__":
    app()
