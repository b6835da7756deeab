"""Network interface inventory of managed hosts.

Reads ``ip -j link`` / ``ip -j addr`` output, which is stable JSON on
every iproute2 release we support.
"""

import json
from dataclasses import dataclass, field
from typing import Optional

from fleetfw.core.context import ExecutionContext
from fleetfw.core.exceptions import ExecutionError, FirewallError
from fleetfw.core.executor import CommandExecutor
from fleetfw.services.addressing import CIDRRange, IPv4Address


@dataclass
class AddressInfo:
    family: str
    local: str
    prefixlen: int


@dataclass
class InterfaceAddresses:
    ifname: str
    addr_info: list[AddressInfo] = field(default_factory=list)

    def ipv4(self) -> Optional[AddressInfo]:
        for info in self.addr_info:
            if info.family == "inet":
                return info
        return None


@dataclass
class ExternalSubnet:
    """Address of the host's external NIC and the subnet it sits in."""
    interface: str
    address: IPv4Address
    subnet: CIDRRange


def _is_external_nic(name: str) -> bool:
    return name.startswith("en") or name.startswith("eth")


class InterfaceInventoryService:
    """Queries interfaces and addresses of a host through the executor."""

    def __init__(self, ctx: ExecutionContext, executor: CommandExecutor) -> None:
        self.ctx = ctx
        self.executor = executor

    def _ip_json(self, host_id: str, args: list[str]) -> list[dict]:
        host = self.ctx.host(host_id)
        result = self.executor.run(
            ["ip", "-j", *args],
            host=host,
            mutating=False,
        )
        try:
            data = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as e:
            raise ExecutionError(
                f"Cannot parse 'ip -j {' '.join(args)}' output from {host_id}",
                details=[str(e)],
            ) from e
        return data

    def query_all_network_interfaces(self, host_id: str) -> list[str]:
        return [entry["ifname"] for entry in self._ip_json(host_id, ["link", "show"])]

    def query_all_network_interfaces_with_addresses(self, host_id: str) -> list[InterfaceAddresses]:
        interfaces = []
        for entry in self._ip_json(host_id, ["addr", "show"]):
            interfaces.append(InterfaceAddresses(
                ifname=entry["ifname"],
                addr_info=[
                    AddressInfo(
                        family=info.get("family", ""),
                        local=info.get("local", ""),
                        prefixlen=int(info.get("prefixlen", 0)),
                    )
                    for info in entry.get("addr_info", [])
                ],
            ))
        return interfaces

    def find_external_network_interface(self, host_id: str) -> Optional[str]:
        for name in self.query_all_network_interfaces(host_id):
            if _is_external_nic(name):
                return name
        return None

    def query_external_ipv4_subnet(self, host_id: str) -> ExternalSubnet:
        """IPv4 address and subnet of the host's first external NIC.

        Raises:
            FirewallError: If no external NIC carries an IPv4 address
        """
        for iface in self.query_all_network_interfaces_with_addresses(host_id):
            if not _is_external_nic(iface.ifname):
                continue
            info = iface.ipv4()
            if info is None:
                continue
            address = IPv4Address.parse(info.local)
            return ExternalSubnet(
                interface=iface.ifname,
                address=address,
                subnet=CIDRRange.from_ip(address, info.prefixlen),
            )

        raise FirewallError(
            f"Host {host_id} has no external network interface with an IPv4 address",
        )
