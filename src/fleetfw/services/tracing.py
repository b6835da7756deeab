"""Live packet tracing.

Tracing marks matching packets with ``meta nftrace set 1`` at the start
of selected hook chains, then streams ``nft monitor trace`` output from
the host into a bounded per-host buffer. The buffer is parsed lazily:
each read parses only the newly completed lines.

State per host: Disabled -> Enabled(settings) -> Disabled. At most one
monitor session exists per host.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from fleetfw.core.config import TracingConfig
from fleetfw.core.context import ExecutionContext
from fleetfw.core.exceptions import ExecutionError, FirewallError
from fleetfw.core.executor import CommandExecutor, LiveSession
from fleetfw.core.output import console
from fleetfw.core.validation import ANY
from fleetfw.services.rules import Action, FirewallRule, Protocol
from fleetfw.services.zones import ZoneChangeBus


TRACE_MONITOR_COMMAND = ["nft", "monitor", "trace"]


class TraceHook(str, Enum):
    """Hook chains that can carry trace marking rules."""
    BRIDGE_FORWARD = "BRIDGE_FORWARD"
    FORWARD = "FORWARD"
    INPUT = "INPUT"
    OUTPUT = "OUTPUT"


@dataclass
class TraceConditions:
    """Which packets to trace. Unset fields mean "Any"."""
    protocol: Protocol = Protocol.TCP
    destination_address_range: Optional[str] = None
    destination_port: Optional[int] = None
    source_address_range: Optional[str] = None

    def to_rule(self) -> FirewallRule:
        """The predicate as an Allow rule, so it flattens like any other."""
        return FirewallRule(
            priority=0,
            destination_port_ranges=ANY if self.destination_port is None else str(self.destination_port),
            protocol=self.protocol,
            source=self.source_address_range or ANY,
            destination=self.destination_address_range or ANY,
            action=Action.ALLOW,
            comment="trace",
        )


@dataclass
class TracingSettings:
    hook_bridge_forward: bool = False
    hook_forward: bool = False
    hook_input: bool = False
    hook_output: bool = False
    conditions: TraceConditions = field(default_factory=TraceConditions)

    def is_enabled(self, hook: TraceHook) -> bool:
        return {
            TraceHook.BRIDGE_FORWARD: self.hook_bridge_forward,
            TraceHook.FORWARD: self.hook_forward,
            TraceHook.INPUT: self.hook_input,
            TraceHook.OUTPUT: self.hook_output,
        }[hook]

    @property
    def enabled_hooks(self) -> list[TraceHook]:
        return [hook for hook in TraceHook if self.is_enabled(hook)]


@dataclass
class PacketCaptureInfo:
    """One parsed line of ``nft monitor trace`` output."""
    correlation_id: str
    family: str
    table: str
    chain: str
    entry_type: str
    info: str
    verdict: str


def _parse_bracketed_verdict(tokens: list[str], line: str) -> str:
    """Pop a trailing "(verdict X)" or "(verdict jump X)" off ``tokens``."""
    if not tokens:
        raise FirewallError(f"Syntax error in trace line: '{line}'")
    verdict = tokens.pop().rstrip(")")
    if tokens and tokens[-1] == "jump":
        tokens.pop()
        verdict = f"jump {verdict}"
    if not tokens or tokens[-1] != "(verdict":
        raise FirewallError(f"Syntax error in trace line: '{line}'")
    tokens.pop()
    return verdict


def parse_trace_line(line: str) -> PacketCaptureInfo:
    """Parse "trace id <id> <family> <table> <chain> <type> ...".

    Raises:
        FirewallError: If the line is not a trace entry
    """
    parts = line.split(" ")
    if len(parts) < 7 or parts[0] != "trace" or parts[1] != "id":
        raise FirewallError(f"Syntax error in trace line: '{line}'")

    entry_type = parts[6]
    data = parts[7:]
    if entry_type == "packet:":
        kind, verdict = "New packet", ""
    elif entry_type == "rule":
        kind, verdict = "Match rule", _parse_bracketed_verdict(data, line)
    elif entry_type in ("policy", "verdict"):
        kind, verdict = "Verdict", data[0] if data else ""
        data = []
    elif entry_type == "unknown":
        kind, verdict = "Unknown rule", _parse_bracketed_verdict(data, line)
    else:
        raise FirewallError(f"Unknown trace entry type '{entry_type}': '{line}'")

    return PacketCaptureInfo(
        correlation_id=parts[2],
        family=parts[3],
        table=parts[4],
        chain=parts[5],
        entry_type=kind,
        info=" ".join(data),
        verdict=verdict,
    )


class TraceBuffer:
    """Captured trace text for one host.

    Parsed entries live in a ring buffer of ``max_entries``; unparsed
    text is capped at ``max_pending_bytes`` characters by parsing early
    and, for a runaway partial line, discarding it.
    """

    def __init__(self, max_entries: int, max_pending_bytes: int) -> None:
        self.entries: deque[PacketCaptureInfo] = deque(maxlen=max_entries)
        self.max_pending_bytes = max_pending_bytes
        self._pending = ""
        self._lock = threading.Lock()
        self.dropped_bytes = 0

    def append(self, data: str) -> None:
        with self._lock:
            self._pending += data
            if len(self._pending) > self.max_pending_bytes:
                self._parse_complete_lines()
                if len(self._pending) > self.max_pending_bytes:
                    self.dropped_bytes += len(self._pending)
                    self._pending = ""

    def read(self) -> list[PacketCaptureInfo]:
        with self._lock:
            self._parse_complete_lines()
            return list(self.entries)

    def drain(self) -> list[PacketCaptureInfo]:
        """Parsed entries, removing them from the buffer."""
        with self._lock:
            self._parse_complete_lines()
            entries = list(self.entries)
            self.entries.clear()
            return entries

    @property
    def pending(self) -> str:
        return self._pending

    def _parse_complete_lines(self) -> None:
        complete, sep, remainder = self._pending.rpartition("\n")
        if not sep:
            return
        self._pending = remainder
        for line in complete.split("\n"):
            line = line.strip()
            if not line:
                continue
            try:
                self.entries.append(parse_trace_line(line))
            except FirewallError as e:
                console.warn(f"Skipping trace output: {e}")


class TracingController:
    """Registry of per-host tracing sessions.

    Enabling or disabling notifies the change bus so the host's ruleset
    is recompiled with or without the trace marking rules.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        bus: ZoneChangeBus,
        limits: Optional[TracingConfig] = None,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.bus = bus
        self.limits = limits or TracingConfig()
        self._settings: dict[str, TracingSettings] = {}
        self._sessions: dict[str, LiveSession] = {}
        self._buffers: dict[str, TraceBuffer] = {}
        self._lock = threading.Lock()

    def get_settings(self, host_id: str) -> TracingSettings:
        """Current settings; TCP with every hook off when disabled."""
        with self._lock:
            settings = self._settings.get(host_id)
        return settings if settings is not None else TracingSettings()

    def get_conditions(self, host_id: str) -> Optional[TraceConditions]:
        with self._lock:
            settings = self._settings.get(host_id)
        return settings.conditions if settings is not None else None

    def is_tracing_enabled(self, host_id: str, hook: Optional[TraceHook] = None) -> bool:
        with self._lock:
            settings = self._settings.get(host_id)
        if settings is None:
            return False
        if hook is None:
            return True
        return settings.is_enabled(hook)

    def enable_tracing(self, host_id: str, settings: TracingSettings) -> None:
        """Start tracing on a host, replacing any previous session.

        Raises:
            ExecutionError: If the monitor session cannot be started
        """
        self.disable_tracing(host_id)

        with self._lock:
            self._settings[host_id] = settings
        self.ctx.console.info(
            f"Enabling packet tracing "
            f"({', '.join(h.value for h in settings.enabled_hooks) or 'no hooks'})",
            host=host_id,
        )
        self.bus.notify(host_id)

        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg("Start trace monitor", host=host_id)
            return

        host = self.ctx.host(host_id)
        try:
            session = self.executor.spawn(
                TRACE_MONITOR_COMMAND,
                lambda data: self._buffer_for(host_id).append(data),
                host=host,
                on_error=lambda text: self.ctx.console.warn(text.strip(), host=host_id),
            )
        except ExecutionError:
            self.disable_tracing(host_id)
            raise

        with self._lock:
            self._sessions[host_id] = session

    def disable_tracing(self, host_id: str) -> None:
        """Stop tracing; a no-op for hosts that are not traced."""
        with self._lock:
            was_enabled = self._settings.pop(host_id, None) is not None
            session = self._sessions.pop(host_id, None)

        if was_enabled:
            self.ctx.console.info("Disabling packet tracing", host=host_id)
            self.bus.notify(host_id)

        if session is not None:
            session.close()

    def clear_captured_data(self, host_id: str) -> None:
        """Discard buffered entries; the session keeps running."""
        with self._lock:
            self._buffers.pop(host_id, None)

    def read_captured_data(self, host_id: str) -> list[PacketCaptureInfo]:
        with self._lock:
            buffer = self._buffers.get(host_id)
        if buffer is None:
            return []
        return buffer.read()

    def drain_captured_data(self, host_id: str) -> list[PacketCaptureInfo]:
        """Entries captured since the previous drain."""
        with self._lock:
            buffer = self._buffers.get(host_id)
        if buffer is None:
            return []
        return buffer.drain()

    def _buffer_for(self, host_id: str) -> TraceBuffer:
        with self._lock:
            buffer = self._buffers.get(host_id)
            if buffer is None:
                buffer = TraceBuffer(self.limits.max_entries, self.limits.max_pending_bytes)
                self._buffers[host_id] = buffer
            return buffer
