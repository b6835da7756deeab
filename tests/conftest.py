"""Shared fixtures: an in-memory fleet and a scripted command executor."""

import json
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, Optional

import pytest

from fleetfw.core.audit import configure_audit_logger
from fleetfw.core.config import (
    AppConfig,
    FleetConfig,
    HostConfig,
    PathSettings,
    VNetConfig,
    VPNGatewayConfig,
)
from fleetfw.core.context import ExecutionContext
from fleetfw.core.executor import CommandResult
from fleetfw.services import firewall


LINKS = [{"ifname": "lo"}, {"ifname": "eth0"}, {"ifname": "fw-vbr1"}]

ADDRESSES = [
    {"ifname": "lo", "addr_info": [{"family": "inet", "local": "127.0.0.1", "prefixlen": 8}]},
    {"ifname": "eth0", "addr_info": [
        {"family": "inet", "local": "203.0.113.10", "prefixlen": 24},
        {"family": "inet6", "local": "2001:db8::10", "prefixlen": 64},
    ]},
    {"ifname": "fw-vbr1", "addr_info": [{"family": "inet", "local": "10.1.0.1", "prefixlen": 24}]},
]

NODE2_LINKS = [{"ifname": "lo"}, {"ifname": "eth0"}, {"ifname": "fw-tun7"}]

NODE2_ADDRESSES = [
    {"ifname": "eth0", "addr_info": [{"family": "inet", "local": "203.0.113.11", "prefixlen": 24}]},
    {"ifname": "fw-tun7", "addr_info": [{"family": "inet", "local": "10.8.0.1", "prefixlen": 24}]},
]


class FakeSession:
    """Stands in for a LiveSession; tests push monitor output through ``emit``."""

    def __init__(self, on_data: Callable[[str], None]) -> None:
        self.on_data = on_data
        self.closed = False

    def emit(self, data: str) -> None:
        self.on_data(data)

    @property
    def alive(self) -> bool:
        return not self.closed

    def close(self, timeout: float = 5.0) -> None:
        self.closed = True


class FakeExecutor:
    """Records commands and answers them from canned output.

    ``outputs`` maps the space-joined command to its stdout and
    ``return_codes`` to its exit status (default 0). A key prefixed with
    "<host id>:" applies to that host only and wins over the plain key.
    """

    def __init__(self, outputs: Optional[dict] = None, return_codes: Optional[dict] = None) -> None:
        self.outputs = outputs if outputs is not None else default_outputs()
        self.return_codes = return_codes or {}
        self.calls: list[SimpleNamespace] = []
        self.sessions: list[FakeSession] = []

    def run(
        self,
        command,
        *,
        host=None,
        description=None,
        check=True,
        mutating=True,
        input=None,
        timeout=None,
    ) -> CommandResult:
        key = " ".join(command)
        self.calls.append(SimpleNamespace(command=list(command), host=host, input=input, mutating=mutating))
        scoped = f"{host.id}:{key}" if host is not None else key
        return CommandResult(
            command=list(command),
            return_code=self.return_codes.get(scoped, self.return_codes.get(key, 0)),
            stdout=self.outputs.get(scoped, self.outputs.get(key, "")),
            stderr="",
        )

    def spawn(self, command, on_data, *, host=None, on_error=None) -> FakeSession:
        session = FakeSession(on_data)
        self.sessions.append(session)
        return session

    def commands(self) -> list[str]:
        return [" ".join(call.command) for call in self.calls]

    def find(self, prefix: str) -> list[SimpleNamespace]:
        return [call for call in self.calls if " ".join(call.command).startswith(prefix)]


def default_outputs() -> dict:
    return {
        "ip -j link show": json.dumps(LINKS),
        "ip -j addr show": json.dumps(ADDRESSES),
        "nft --version": "nftables v1.0.6 (Lester Gooch #5)",
        "node2:ip -j link show": json.dumps(NODE2_LINKS),
        "node2:ip -j addr show": json.dumps(NODE2_ADDRESSES),
    }


def make_fleet() -> FleetConfig:
    return FleetConfig(
        hosts=[HostConfig(id="node1"), HostConfig(id="node2", address="203.0.113.11")],
        vnets=[VNetConfig(id=1, host="node1", address_space="10.1.0.0/24")],
        vpn_gateways=[VPNGatewayConfig(id=7, host="node2", address_space="10.8.0.0/24")],
    )


def make_context(tmp_path: Path, *, dry_run: bool = False, fleet: Optional[FleetConfig] = None) -> ExecutionContext:
    app_config = AppConfig(
        config_path=tmp_path / "config.yaml",
        config=fleet or make_fleet(),
        paths=PathSettings(state_dir=tmp_path / "state", audit_log=tmp_path / "audit.log"),
    )
    return ExecutionContext(dry_run=dry_run, config_path=tmp_path / "config.yaml", _config=app_config)


@pytest.fixture
def ctx(tmp_path):
    """Context over the in-memory fleet with state under tmp_path."""
    return make_context(tmp_path)


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture(autouse=True)
def audit(tmp_path):
    """Global audit logger writing under tmp_path."""
    return configure_audit_logger(tmp_path / "audit.log")


def make_services(ctx: ExecutionContext, executor: FakeExecutor, monkeypatch, *, auto_apply: bool = False):
    """``build_services`` with the fake executor in place of a real one."""
    monkeypatch.setattr(firewall, "CommandExecutor", lambda _ctx: executor)
    return firewall.build_services(ctx, auto_apply=auto_apply)


@pytest.fixture
def services(ctx, executor, monkeypatch):
    """Wired services that do not apply changes automatically."""
    return make_services(ctx, executor, monkeypatch)
