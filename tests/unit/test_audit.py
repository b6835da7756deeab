"""Unit tests for the audit log."""

import json

import pytest

from fleetfw.core.audit import AuditEventType, AuditLogger, AuditResult, AuditTarget
from fleetfw.core.exceptions import FirewallError


def read_events(path):
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


@pytest.fixture
def log_path(tmp_path):
    return tmp_path / "logs" / "audit.log"


@pytest.fixture
def audit_logger(log_path):
    return AuditLogger(log_path=log_path)


class TestAudited:
    """Tests for the audited() context manager."""

    def test_success(self, audit_logger, log_path):
        """Should log a success with the record's message."""
        with audit_logger.audited(AuditEventType.NAT_ADD, "node1", AuditTarget.CIDR, "10.8.0.0/24") as record:
            record.message = "masquerade"

        event = read_events(log_path)[-1]
        assert event["event_type"] == "nat.add"
        assert event["result"] == "success"
        assert event["host"] == "node1"
        assert event["target"] == {"type": "cidr", "name": "10.8.0.0/24"}
        assert event["message"] == "masquerade"

    def test_failure_reraises(self, audit_logger, log_path):
        """Should log the error and let it propagate."""
        with pytest.raises(FirewallError):
            with audit_logger.audited(AuditEventType.FIREWALL_RULE_DELETE, "node1", AuditTarget.ZONE, "vnet-1"):
                raise FirewallError("No inbound rule with priority 7 in vnet-1")

        event = read_events(log_path)[-1]
        assert event["result"] == "failure"
        assert "priority 7" in event["error"]

    def test_dry_run(self, audit_logger, log_path):
        """Should log dry runs as such."""
        with audit_logger.audited(
            AuditEventType.RULESET_APPLY, "node2", AuditTarget.HOST, "node2", dry_run=True,
        ):
            pass
        assert read_events(log_path)[-1]["result"] == AuditResult.DRY_RUN.value

    def test_skip(self, audit_logger, log_path):
        """Should write nothing when the record is skipped."""
        with audit_logger.audited(AuditEventType.NAT_REMOVE, "node1", AuditTarget.CIDR, "10.9.0.0/24") as record:
            record.skip()
        assert not log_path.exists() or read_events(log_path) == []

    def test_other_exceptions_pass_through(self, audit_logger, log_path):
        """Should not record errors that are not fleetfw errors."""
        with pytest.raises(KeyboardInterrupt):
            with audit_logger.audited(AuditEventType.NAT_ADD, "node1", AuditTarget.CIDR, "10.8.0.0/24"):
                raise KeyboardInterrupt
        assert not log_path.exists() or read_events(log_path) == []


class TestAuditLogger:
    """Tests for event writing, correlation and rotation."""

    def test_correlation(self, audit_logger, log_path):
        """Should share one correlation id inside the block only."""
        with audit_logger.correlation("trace_watch") as correlation_id:
            audit_logger.log_result(
                AuditEventType.TRACING_ENABLE, AuditResult.SUCCESS, "node1", AuditTarget.HOST, "node1",
            )
            audit_logger.log_result(
                AuditEventType.TRACING_DISABLE, AuditResult.SUCCESS, "node1", AuditTarget.HOST, "node1",
            )
        audit_logger.log_result(
            AuditEventType.RULESET_APPLY, AuditResult.SUCCESS, "node1", AuditTarget.HOST, "node1",
        )

        events = read_events(log_path)
        assert correlation_id.startswith("trace_watch_")
        assert [e["correlation_id"] for e in events] == [correlation_id, correlation_id, None]
        assert len({e["session_id"] for e in events}) == 1

    def test_redacts_sensitive_parameters(self, audit_logger, log_path):
        """Should never write secrets."""
        audit_logger.log_result(
            AuditEventType.RULESET_APPLY, AuditResult.SUCCESS, "node1", AuditTarget.HOST, "node1",
            parameters={"ssh": {"private_key": "-----BEGIN"}, "port": 22},
        )
        parameters = read_events(log_path)[-1]["parameters"]
        assert parameters == {"ssh": {"private_key": "***REDACTED***"}, "port": 22}

    def test_disabled(self, log_path):
        """Should not touch the file system when disabled."""
        audit_logger = AuditLogger(log_path=log_path, enabled=False)
        audit_logger.log_result(
            AuditEventType.RULESET_APPLY, AuditResult.SUCCESS, "node1", AuditTarget.HOST, "node1",
        )
        assert not log_path.exists()

    def test_rotation(self, log_path):
        """Should move a full log aside and start a new one."""
        audit_logger = AuditLogger(log_path=log_path, max_size_mb=0, backup_count=2)
        for _ in range(3):
            audit_logger.log_result(
                AuditEventType.RULESET_APPLY, AuditResult.SUCCESS, "node1", AuditTarget.HOST, "node1",
            )

        assert log_path.exists()
        assert log_path.read_text() == ""
        assert log_path.with_suffix(".1").exists()
        assert log_path.with_suffix(".2").exists()
        assert not log_path.with_suffix(".3").exists()
