"""Audit log of firewall changes.

Every operator-triggered change to a host's firewall (rule and forward
edits, ruleset applies, ad-hoc NAT, tracing sessions) is appended to a
JSON-lines file. Lines are written under an exclusive ``flock`` so
concurrent fleetfw processes never interleave, and the file is rotated
by size.

Typical use wraps the change in ``audited()``, which records success,
dry-run or failure depending on how the block ends::

    with audit.audited(AuditEventType.NAT_ADD, host, AuditTarget.CIDR, cidr, dry_run=ctx.dry_run):
        nat.add_source_nat_rule(host, cidr)
"""

import fcntl
import json
import os
import pwd
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from fleetfw.core.config import DEFAULT_AUDIT_LOG
from fleetfw.core.exceptions import FleetError
from fleetfw.core.output import console


DEFAULT_MAX_SIZE_MB = 100
DEFAULT_BACKUP_COUNT = 10


class AuditEventType(Enum):
    RULESET_APPLY = "ruleset.apply"

    FIREWALL_RULE_SET = "firewall.rule_set"
    FIREWALL_RULE_DELETE = "firewall.rule_delete"
    PORT_FORWARD_SET = "firewall.forward_set"
    PORT_FORWARD_DELETE = "firewall.forward_delete"

    NAT_ADD = "nat.add"
    NAT_REMOVE = "nat.remove"

    TRACING_ENABLE = "tracing.enable"
    TRACING_DISABLE = "tracing.disable"


class AuditTarget(Enum):
    """What an event changed on the host."""
    HOST = "host"    # the host's whole ruleset or its external zone
    ZONE = "zone"    # one zone's rule list
    CIDR = "cidr"    # an ad-hoc masquerade rule


class AuditResult(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    DRY_RUN = "dry_run"


# Substrings of parameter names whose values never reach the log file
SENSITIVE_KEYS = ("password", "secret", "token", "credential", "passwd", "api_key", "private_key")
REDACTED = "***REDACTED***"


def redact(data: Any) -> Any:
    """Copy of ``data`` with secret-looking keys masked at any depth."""
    if isinstance(data, dict):
        return {
            key: REDACTED if any(s in key.lower() for s in SENSITIVE_KEYS) else redact(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [redact(item) for item in data]
    return data


@dataclass(frozen=True)
class Actor:
    """The local user running fleetfw, and who they sudo'ed from."""
    uid: int
    username: str
    sudo_user: Optional[str] = None

    @classmethod
    def current(cls) -> "Actor":
        uid = os.getuid()
        return cls(uid, pwd.getpwuid(uid).pw_name, os.environ.get("SUDO_USER"))


@dataclass
class AuditEvent:
    """One line of the audit log."""
    event_type: AuditEventType
    result: AuditResult
    host_id: Optional[str] = None
    target_type: Optional[AuditTarget] = None
    target_name: Optional[str] = None
    operation: Optional[str] = None
    parameters: dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # Filled in by the logger
    actor: Optional[Actor] = None
    session_id: Optional[str] = None
    correlation_id: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps({
            "event_type": self.event_type.value,
            "result": self.result.value,
            "timestamp": self.timestamp.isoformat(),
            "actor": asdict(self.actor) if self.actor else None,
            "host": self.host_id,
            "target": {
                "type": self.target_type.value if self.target_type else None,
                "name": self.target_name,
            },
            "operation": self.operation,
            "parameters": redact(self.parameters),
            "message": self.message,
            "error": self.error,
            "session_id": self.session_id,
            "correlation_id": self.correlation_id,
        }, default=str)


@dataclass
class AuditRecord:
    """Handle yielded by ``AuditLogger.audited``.

    Set ``message`` to describe what changed. ``skip()`` suppresses the
    success entry, for operations that turned out to change nothing.
    """
    message: Optional[str] = None
    parameters: dict[str, Any] = field(default_factory=dict)
    skipped: bool = False

    def skip(self) -> None:
        self.skipped = True


class AuditLogger:
    """Append-only JSON audit log with file locking and rotation.

    The log keeps ``backup_count`` rotated files next to it, named by
    replacing the suffix with ``.1`` (newest) up to ``.<backup_count>``.
    """

    def __init__(
        self,
        log_path: Optional[Path] = None,
        max_size_mb: int = DEFAULT_MAX_SIZE_MB,
        backup_count: int = DEFAULT_BACKUP_COUNT,
        enabled: bool = True,
    ) -> None:
        self.log_path = log_path or DEFAULT_AUDIT_LOG
        self.max_bytes = max_size_mb * 1024 * 1024
        self.backup_count = backup_count
        self.enabled = enabled

        self.actor = Actor.current()
        self.session_id = str(uuid.uuid4())
        self._correlation_ids: list[str] = []

    def log(self, event: AuditEvent) -> None:
        """Append ``event``.

        Write failures never interrupt the audited operation; they are
        reported at debug level.
        """
        if not self.enabled:
            return

        event.actor = self.actor
        event.session_id = self.session_id
        event.correlation_id = self._correlation_ids[-1] if self._correlation_ids else None

        try:
            self.log_path.parent.mkdir(mode=0o750, parents=True, exist_ok=True)
            with self._locked_append() as f:
                f.write(event.to_json() + "\n")
        except OSError as e:
            console.debug(f"Audit log not written ({self.log_path}): {e}")
            return

        try:
            if self.log_path.stat().st_size > self.max_bytes:
                self._rotate()
        except OSError as e:
            console.debug(f"Audit log not rotated ({self.log_path}): {e}")

    @contextmanager
    def _locked_append(self) -> Iterator:
        fd = os.open(self.log_path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o640)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            f = os.fdopen(fd, "a")
        except OSError:
            os.close(fd)
            raise
        # closing the file releases the lock
        with f:
            yield f
            f.flush()
            os.fsync(f.fileno())

    def _backup(self, n: int) -> Path:
        return self.log_path.with_suffix(f".{n}")

    def _rotate(self) -> None:
        self._backup(self.backup_count).unlink(missing_ok=True)
        for n in reversed(range(1, self.backup_count)):
            if self._backup(n).exists():
                self._backup(n).rename(self._backup(n + 1))
        self.log_path.rename(self._backup(1))
        self.log_path.touch(mode=0o640)

    @contextmanager
    def correlation(self, operation: str) -> Iterator[str]:
        """Give every event logged inside the block the same correlation id.

        Used where one command produces several events, e.g. enabling and
        later disabling tracing in ``trace watch``.
        """
        correlation_id = f"{operation}_{uuid.uuid4().hex[:12]}"
        self._correlation_ids.append(correlation_id)
        try:
            yield correlation_id
        finally:
            self._correlation_ids.pop()

    @contextmanager
    def audited(
        self,
        event_type: AuditEventType,
        host_id: str,
        target_type: AuditTarget,
        target_name: str,
        *,
        dry_run: bool = False,
        operation: Optional[str] = None,
    ) -> Iterator[AuditRecord]:
        """Record the outcome of the change made inside the block.

        A ``FleetError`` escaping the block is logged as a failure and
        re-raised. Otherwise the block is logged as a dry run or a
        success, unless the record was skipped.
        """
        record = AuditRecord()
        try:
            yield record
        except FleetError as e:
            self.log_result(
                event_type, AuditResult.FAILURE, host_id, target_type, target_name,
                operation=operation, parameters=record.parameters, error=str(e),
            )
            raise

        if not record.skipped:
            self.log_result(
                event_type,
                AuditResult.DRY_RUN if dry_run else AuditResult.SUCCESS,
                host_id,
                target_type,
                target_name,
                operation=operation,
                parameters=record.parameters,
                message=record.message,
            )

    def log_result(
        self,
        event_type: AuditEventType,
        result: AuditResult,
        host_id: Optional[str],
        target_type: AuditTarget,
        target_name: str,
        *,
        operation: Optional[str] = None,
        parameters: Optional[dict[str, Any]] = None,
        message: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        self.log(AuditEvent(
            event_type, result, host_id, target_type, target_name,
            operation=operation,
            parameters=dict(parameters or {}),
            message=message,
            error=error,
        ))


_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Process-wide audit logger, created on first use."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def configure_audit_logger(log_path: Optional[Path] = None, enabled: bool = True) -> AuditLogger:
    """Replace the process-wide audit logger, e.g. to honor FLEETFW_AUDIT_LOG."""
    global _audit_logger
    _audit_logger = AuditLogger(log_path=log_path, enabled=enabled)
    return _audit_logger
