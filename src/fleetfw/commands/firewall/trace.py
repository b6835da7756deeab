"""Packet tracing commands.

``simulate`` predicts how a packet would be handled from the stored
zone rules. ``trace watch`` marks matching packets on a live host and
streams what the kernel did with them.
"""

import time
from typing import Annotated, Optional

import typer
from rich.table import Table

from fleetfw.core import (
    FleetError,
    ValidationError,
    get_audit_logger,
    AuditEventType,
    AuditResult,
    AuditTarget,
)
from fleetfw.commands.firewall.common import (
    ConfigOption,
    HostArgument,
    NoColorOption,
    VerboseOption,
    get_firewall_services,
    handle_error,
    parse_protocol,
)
from fleetfw.services.addressing import IPv4Address
from fleetfw.services.rules import Protocol
from fleetfw.services.simulator import PacketTraceSimulator
from fleetfw.services.tracing import PacketCaptureInfo, TraceConditions, TraceHook, TracingSettings


app = typer.Typer(
    name="trace",
    help="Live packet tracing on managed hosts.",
    no_args_is_help=True,
)


def simulate(
    host: HostArgument,
    source: Annotated[str, typer.Option("--source", "-s", help="Source IPv4 address of the packet")],
    port: Annotated[int, typer.Option("--port", "-p", help="Destination port")],
    protocol: Annotated[str, typer.Option("--protocol", help="TCP or UDP")] = "TCP",
    target: Annotated[
        Optional[str],
        typer.Option("--target", "-t", help="Destination address (default: the host's external address)"),
    ] = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Simulate where a packet would end up and whether it is admitted.

    Nothing is sent and nothing is changed.

    [bold]Examples:[/bold]

        fleetfw firewall simulate node1 --source 198.51.100.7 --port 22
        fleetfw firewall simulate node1 -s 198.51.100.7 -p 8080
    """
    ctx, services = get_firewall_services(verbose=verbose, no_color=no_color, config=config)

    try:
        simulator = PacketTraceSimulator(ctx, services.assembly, services.inventory, services.vnets)
        result = simulator.simulate(
            host,
            IPv4Address.parse(source),
            parse_protocol(protocol, allow_any=False),
            port,
            IPv4Address.parse(target) if target else None,
        )

        ctx.console.print()
        for line in result.log:
            ctx.console.step(line)
        ctx.console.print()

        if result.admitted:
            ctx.console.success("Packet would be admitted")
        else:
            ctx.console.warn("Packet would not be admitted")

    except FleetError as e:
        handle_error(e)


def _entries_table(entries: list[PacketCaptureInfo]) -> Table:
    table = Table(box=None)
    table.add_column("Trace id", style="dim")
    table.add_column("Family")
    table.add_column("Table")
    table.add_column("Chain")
    table.add_column("Type")
    table.add_column("Info")
    table.add_column("Verdict")
    for entry in entries:
        table.add_row(
            entry.correlation_id,
            entry.family,
            entry.table,
            entry.chain,
            entry.entry_type,
            entry.info,
            entry.verdict,
        )
    return table


@app.command("watch")
def trace_watch(
    host: HostArgument,
    hooks: Annotated[
        Optional[list[TraceHook]],
        typer.Option("--hook", help="Hook chain to trace (repeatable, default: INPUT)"),
    ] = None,
    protocol: Annotated[str, typer.Option("--protocol", help="TCP, UDP or ICMP")] = "TCP",
    port: Annotated[Optional[int], typer.Option("--port", "-p", help="Destination port")] = None,
    source: Annotated[
        Optional[str], typer.Option("--source", "-s", help="Source address or CIDR")
    ] = None,
    destination: Annotated[
        Optional[str], typer.Option("--destination", help="Destination address or CIDR")
    ] = None,
    duration: Annotated[
        int, typer.Option("--duration", help="Stop after this many seconds (0 = until Ctrl+C)")
    ] = 0,
    interval: Annotated[float, typer.Option("--interval", help="Poll interval in seconds")] = 1.0,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Trace matching packets on a host until stopped.

    Trace marking rules are added to the selected hook chains and
    removed again when the command ends.

    [bold]Examples:[/bold]

        fleetfw firewall trace watch node1 --port 22
        fleetfw firewall trace watch node1 --hook FORWARD --hook INPUT --source 198.51.100.7
    """
    ctx, services = get_firewall_services(verbose=verbose, no_color=no_color, config=config)
    audit = get_audit_logger()

    try:
        selected = set(hooks or [TraceHook.INPUT])
        trace_protocol = parse_protocol(protocol, allow_any=False)
        if port is not None and trace_protocol not in (Protocol.TCP, Protocol.UDP):
            raise ValidationError("Only TCP and UDP packets can be traced by port")

        settings = TracingSettings(
            hook_bridge_forward=TraceHook.BRIDGE_FORWARD in selected,
            hook_forward=TraceHook.FORWARD in selected,
            hook_input=TraceHook.INPUT in selected,
            hook_output=TraceHook.OUTPUT in selected,
            conditions=TraceConditions(
                protocol=trace_protocol,
                destination_address_range=destination,
                destination_port=port,
                source_address_range=source,
            ),
        )
        settings.conditions.to_rule().validate()

        with audit.correlation("trace_watch"):
            services.tracing.enable_tracing(host, settings)
            audit.log_result(
                AuditEventType.TRACING_ENABLE,
                AuditResult.SUCCESS,
                host,
                AuditTarget.HOST,
                host,
                operation="trace_watch",
                parameters={
                    "hooks": [h.value for h in settings.enabled_hooks],
                    "protocol": trace_protocol.value,
                    "port": port,
                    "source": source,
                    "destination": destination,
                },
            )

            ctx.console.info("Tracing, press Ctrl+C to stop")
            deadline = time.monotonic() + duration if duration > 0 else None
            try:
                while deadline is None or time.monotonic() < deadline:
                    time.sleep(interval)
                    entries = services.tracing.drain_captured_data(host)
                    if entries:
                        ctx.console.print(_entries_table(entries))
            except KeyboardInterrupt:
                ctx.console.print()
            finally:
                services.tracing.disable_tracing(host)
                audit.log_result(AuditEventType.TRACING_DISABLE, AuditResult.SUCCESS, host, AuditTarget.HOST, host)

        ctx.console.success("Tracing stopped", host=host)

    except FleetError as e:
        handle_error(e)
