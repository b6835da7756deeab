"""Firewall services: zone model, ruleset compiler and host adapters."""

from fleetfw.services.compiler import RulesetCompiler
from fleetfw.services.firewall import FirewallManager, FirewallServices, build_services
from fleetfw.services.nftables import NftablesService
from fleetfw.services.systemd import SystemdService
from fleetfw.services.tracing import TracingController
from fleetfw.services.zones import ZoneAssembly

__all__ = [
    "FirewallManager",
    "FirewallServices",
    "NftablesService",
    "RulesetCompiler",
    "SystemdService",
    "TracingController",
    "ZoneAssembly",
    "build_services",
]
