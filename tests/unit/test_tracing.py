"""Unit tests for trace parsing, buffering and the tracing controller."""

import pytest

from fleetfw.core.config import TracingConfig
from fleetfw.core.exceptions import FirewallError
from fleetfw.services.rules import Protocol
from fleetfw.services.tracing import (
    TraceBuffer,
    TraceConditions,
    TraceHook,
    TracingController,
    TracingSettings,
    parse_trace_line,
)
from fleetfw.services.zones import ZoneChangeBus

from conftest import FakeExecutor, make_context


PACKET_LINE = 'trace id 9e8f1a2b ip fleetfw_filter INPUT packet: iif "eth0" ip saddr 198.51.100.7 tcp dport 22'
JUMP_LINE = (
    'trace id 9e8f1a2b ip fleetfw_filter INPUT rule meta iifname "eth0" counter '
    "jump ENTER_zone_external (verdict jump ENTER_zone_external)"
)
ACCEPT_LINE = (
    "trace id 9e8f1a2b ip fleetfw_filter ENTER_zone_external rule tcp dport 22 counter accept (verdict accept)"
)
POLICY_LINE = "trace id 9e8f1a2b ip fleetfw_filter INPUT policy drop"


class TestParseTraceLine:
    """Tests for single trace line parsing."""

    def test_new_packet(self):
        """Should keep the packet description as info."""
        entry = parse_trace_line(PACKET_LINE)
        assert entry.correlation_id == "9e8f1a2b"
        assert (entry.family, entry.table, entry.chain) == ("ip", "fleetfw_filter", "INPUT")
        assert entry.entry_type == "New packet"
        assert entry.info.startswith('iif "eth0"')
        assert entry.verdict == ""

    def test_rule_with_jump(self):
        """Should split the bracketed jump verdict off the rule text."""
        entry = parse_trace_line(JUMP_LINE)
        assert entry.entry_type == "Match rule"
        assert entry.verdict == "jump ENTER_zone_external"
        assert entry.info == 'meta iifname "eth0" counter jump ENTER_zone_external'

    def test_rule_with_accept(self):
        """Should parse a plain bracketed verdict."""
        entry = parse_trace_line(ACCEPT_LINE)
        assert entry.chain == "ENTER_zone_external"
        assert entry.verdict == "accept"

    def test_policy(self):
        """Should report chain policies as verdicts."""
        entry = parse_trace_line(POLICY_LINE)
        assert entry.entry_type == "Verdict"
        assert entry.verdict == "drop"
        assert entry.info == ""

    @pytest.mark.parametrize("line", [
        "hello world",
        "trace id 1 ip t c",
        "trace id 1 ip t c bogus x",
        "trace id 1 ip t c rule tcp dport 22",
    ])
    def test_malformed(self, line):
        """Should reject lines that are not trace entries."""
        with pytest.raises(FirewallError):
            parse_trace_line(line)


class TestTraceBuffer:
    """Tests for TraceBuffer."""

    def test_partial_lines(self):
        """Should parse a line only once it is complete."""
        buffer = TraceBuffer(max_entries=10, max_pending_bytes=4096)
        buffer.append(POLICY_LINE[:20])
        assert buffer.read() == []
        buffer.append(POLICY_LINE[20:] + "\n")
        entries = buffer.read()
        assert len(entries) == 1
        assert entries[0].verdict == "drop"
        assert buffer.pending == ""

    def test_ring_bound(self):
        """Should keep only the newest entries."""
        buffer = TraceBuffer(max_entries=2, max_pending_bytes=4096)
        buffer.append("\n".join([PACKET_LINE, JUMP_LINE, POLICY_LINE]) + "\n")
        assert [e.entry_type for e in buffer.read()] == ["Match rule", "Verdict"]

    def test_runaway_partial_line_dropped(self):
        """Should discard unparsed text beyond the pending cap."""
        buffer = TraceBuffer(max_entries=10, max_pending_bytes=16)
        buffer.append("x" * 40)
        assert buffer.pending == ""
        assert buffer.dropped_bytes == 40

    def test_bad_lines_skipped(self):
        """Should skip unparseable lines and keep the rest."""
        buffer = TraceBuffer(max_entries=10, max_pending_bytes=4096)
        buffer.append("garbage\n" + POLICY_LINE + "\n")
        assert len(buffer.read()) == 1

    def test_drain(self):
        """Should hand out each entry once."""
        buffer = TraceBuffer(max_entries=10, max_pending_bytes=4096)
        buffer.append(PACKET_LINE + "\n" + POLICY_LINE + "\n")
        assert len(buffer.drain()) == 2
        assert buffer.drain() == []


class TestTraceConditions:
    """Tests for the trace predicate."""

    def test_to_rule(self):
        """Should express unset fields as Any."""
        rule = TraceConditions(protocol=Protocol.UDP, destination_port=53).to_rule()
        assert rule.protocol == Protocol.UDP
        assert rule.destination_port_ranges == "53"
        assert rule.source == "Any"
        assert rule.destination == "Any"

    def test_enabled_hooks(self):
        """Should list enabled hooks in declaration order."""
        settings = TracingSettings(hook_output=True, hook_bridge_forward=True)
        assert settings.enabled_hooks == [TraceHook.BRIDGE_FORWARD, TraceHook.OUTPUT]


class TestTracingController:
    """Tests for TracingController."""

    @pytest.fixture
    def bus(self):
        bus = ZoneChangeBus()
        bus.seen = []
        bus.subscribe(bus.seen.append)
        return bus

    @pytest.fixture
    def executor(self):
        return FakeExecutor({})

    @pytest.fixture
    def controller(self, ctx, executor, bus):
        return TracingController(ctx, executor, bus)

    def test_disabled_by_default(self, controller):
        """Should report default settings for untraced hosts."""
        settings = controller.get_settings("node1")
        assert settings.enabled_hooks == []
        assert settings.conditions.protocol == Protocol.TCP
        assert controller.get_conditions("node1") is None
        assert not controller.is_tracing_enabled("node1")

    def test_enable(self, controller, executor, bus):
        """Should notify the bus and start one monitor session."""
        controller.enable_tracing("node1", TracingSettings(hook_input=True))

        assert bus.seen == ["node1"]
        assert len(executor.sessions) == 1
        assert controller.is_tracing_enabled("node1")
        assert controller.is_tracing_enabled("node1", TraceHook.INPUT)
        assert not controller.is_tracing_enabled("node1", TraceHook.FORWARD)

    def test_capture(self, controller, executor):
        """Should buffer monitor output for the host."""
        controller.enable_tracing("node1", TracingSettings(hook_input=True))
        executor.sessions[0].emit(PACKET_LINE + "\n" + POLICY_LINE + "\n")

        assert len(controller.read_captured_data("node1")) == 2
        assert controller.read_captured_data("node2") == []

    def test_clear(self, controller, executor):
        """Should discard buffered entries."""
        controller.enable_tracing("node1", TracingSettings(hook_input=True))
        executor.sessions[0].emit(POLICY_LINE + "\n")
        controller.clear_captured_data("node1")
        assert controller.read_captured_data("node1") == []

    def test_drain(self, controller, executor):
        """Should return only entries since the last drain."""
        controller.enable_tracing("node1", TracingSettings(hook_input=True))
        executor.sessions[0].emit(PACKET_LINE + "\n")
        assert len(controller.drain_captured_data("node1")) == 1
        executor.sessions[0].emit(POLICY_LINE + "\n")
        assert [e.verdict for e in controller.drain_captured_data("node1")] == ["drop"]

    def test_disable(self, controller, executor, bus):
        """Should close the session and notify the bus."""
        controller.enable_tracing("node1", TracingSettings(hook_input=True))
        controller.disable_tracing("node1")

        assert executor.sessions[0].closed
        assert bus.seen == ["node1", "node1"]
        assert not controller.is_tracing_enabled("node1")

    def test_disable_untraced_host(self, controller, bus):
        """Should do nothing for hosts that are not traced."""
        controller.disable_tracing("node1")
        assert bus.seen == []

    def test_enable_replaces_session(self, controller, executor):
        """Should keep at most one session per host."""
        controller.enable_tracing("node1", TracingSettings(hook_input=True))
        controller.enable_tracing("node1", TracingSettings(hook_forward=True))

        assert len(executor.sessions) == 2
        assert executor.sessions[0].closed
        assert not executor.sessions[1].closed
        assert controller.is_tracing_enabled("node1", TraceHook.FORWARD)
        assert not controller.is_tracing_enabled("node1", TraceHook.INPUT)

    def test_dry_run_skips_monitor(self, tmp_path, executor, bus):
        """Should record settings without starting a monitor in dry-run."""
        controller = TracingController(make_context(tmp_path, dry_run=True), executor, bus)
        controller.enable_tracing("node1", TracingSettings(hook_input=True))

        assert executor.sessions == []
        assert controller.is_tracing_enabled("node1")
        assert bus.seen == ["node1"]

    def test_limits(self, ctx, executor, bus):
        """Should size buffers from the tracing limits."""
        controller = TracingController(ctx, executor, bus, TracingConfig(max_entries=1))
        controller.enable_tracing("node1", TracingSettings(hook_input=True))
        executor.sessions[0].emit(PACKET_LINE + "\n" + POLICY_LINE + "\n")
        assert [e.entry_type for e in controller.read_captured_data("node1")] == ["Verdict"]
