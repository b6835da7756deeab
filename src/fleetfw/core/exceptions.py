"""Exceptions for the fleet firewall controller.

Every error carries a message, an optional hint and detail lines, and
the exit code the CLI terminates with.
"""

from typing import Optional


class FleetError(Exception):
    """Base exception for all fleetfw errors.

    Attributes:
        message: Human-readable error description
        hint: Suggested action to resolve the error
        details: Additional lines shown below the message
        exit_code: Shell exit code (1-127)
    """

    exit_code: int = 1

    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = list(details or [])

    def __str__(self) -> str:
        return self.message


class ConfigurationError(FleetError):
    """Fleet configuration is missing, unreadable or inconsistent.

    Also raised for hosts and networks that are not in the fleet, and
    for custom zones whose address spaces overlap.
    """
    exit_code = 2


class ValidationError(FleetError):
    """Malformed operator input: addresses, ports, keywords, priorities."""
    exit_code = 3


class ExecutionError(FleetError):
    """A command on a managed host failed, timed out or printed garbage."""
    exit_code = 5

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        host: Optional[str] = None,
        return_code: Optional[int] = None,
        stderr: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        details = list(details or [])
        if host is not None:
            details.append(f"Host: {host}")
        if return_code is not None:
            details.append(f"Exit code: {return_code}")
        if stderr:
            details.append(f"Error output: {stderr.strip()}")
        super().__init__(message, hint=hint, details=details)
        self.command = command
        self.host = host
        self.return_code = return_code
        self.stderr = stderr


class ServiceError(FleetError):
    """The boot-time netfilter service could not be enabled."""
    exit_code = 13


class FirewallError(FleetError):
    """Ruleset compilation, nft parsing or rule lookup failed.

    ``table``/``chain`` name where in the ruleset the problem sits.
    """
    exit_code = 15

    def __init__(
        self,
        message: str,
        *,
        table: Optional[str] = None,
        chain: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        details = list(details or [])
        if table is not None:
            location = f"{table} {chain}" if chain else table
            details.append(f"In: {location}")
        super().__init__(message, hint=hint, details=details)
        self.table = table
        self.chain = chain


class UnknownZoneError(FirewallError):
    """No zone data provider claims a zone, or a NIC cannot be classified.

    Fatal to the host's recompilation: applying a partial ruleset would
    silently weaken the host's policy.
    """
    exit_code = 16


class DanglingTargetError(FirewallError):
    """A port forwarding target lies outside every custom zone."""
    exit_code = 17
