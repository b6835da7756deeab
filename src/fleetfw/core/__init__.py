"""Core framework components for the fleet firewall controller."""

from fleetfw.core.exceptions import (
    FleetError,
    ConfigurationError,
    ValidationError,
    ExecutionError,
    ServiceError,
    FirewallError,
    UnknownZoneError,
    DanglingTargetError,
)

from fleetfw.core.context import ExecutionContext, create_context
from fleetfw.core.output import console, Console, Verbosity
from fleetfw.core.config import AppConfig, FleetConfig, HostConfig
from fleetfw.core.audit import AuditLogger, AuditEvent, AuditEventType, AuditResult, AuditTarget, get_audit_logger
from fleetfw.core.executor import CommandExecutor, CommandResult, LiveSession

__all__ = [
    # Exceptions
    "FleetError",
    "ConfigurationError",
    "ValidationError",
    "ExecutionError",
    "ServiceError",
    "FirewallError",
    "UnknownZoneError",
    "DanglingTargetError",
    # Context
    "ExecutionContext",
    "create_context",
    # Output
    "console",
    "Console",
    "Verbosity",
    # Config
    "AppConfig",
    "FleetConfig",
    "HostConfig",
    # Audit
    "AuditLogger",
    "AuditEvent",
    "AuditEventType",
    "AuditResult",
    "AuditTarget",
    "get_audit_logger",
    # Executor
    "CommandExecutor",
    "CommandResult",
    "LiveSession",
]
