"""
Tests for the AuditLog model and service.

Verifies:
- AuditLogModel structure and to_dict()
- AuditService logging methods (create, update, status_change)
- AuditService query methods (by entity, recent)
"""

from datetime import datetime, timezone

import pytest

from aidev_pipeline.db.audit_models import AuditLogModel
from aidev_pipeline.db.audit_service import AuditService, generate_ulid
from aidev_pipeline.pipeline.enums import ActorKind


class TestAuditLogModel:
    """Tests for AuditLogModel structure."""

    def test_model_has_required_columns(self):
        """Verify all required columns exist."""
        columns = {c.name for c in AuditLogModel.__table__.columns}
        required = {
            "id", "ts", "actor_kind", "actor_id", "action",
            "entity_kind", "entity_id", "before", "after",
            "note", "trace_id",
        }
        assert required.issubset(columns)

    def test_to_dict_output(self, db_session):
        """Verify to_dict() returns expected structure."""
        entry = AuditLogModel(
            id="test-id-123",
            ts=datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc),
            actor_kind=ActorKind.HUMAN,
            actor_id="alice",
            action="status_changed",
            entity_kind="Request",
            entity_id="7",
            before={"status": "ArchitectReview"},
            after={"status": "Approved"},
            note="Proposal approved",
        )

        result = entry.to_dict()

        assert result["id"] == "test-id-123"
        assert result["ts"] == "2026-03-02T12:00:00+00:00"
        assert result["actor_kind"] == "human"
        assert result["action"] == "status_changed"
        assert result["entity_kind"] == "Request"
        assert result["before"] == {"status": "ArchitectReview"}
        assert result["after"] == {"status": "Approved"}
        assert result["trace_id"] is None


class TestGenerateUlid:
    def test_ulids_are_unique_and_sortable_length(self):
        ids = {generate_ulid() for _ in range(50)}
        assert len(ids) == 50
        assert all(len(i) == 26 for i in ids)


class TestAuditServiceLogging:
    """Entries are staged on the session and only persist on commit."""

    def test_log_create(self, db_session):
        audit = AuditService(db_session)

        entry = audit.log_create(
            "IntakeVerdict", 3, {"request_id": 1, "decision": "Approve"},
            actor_kind="agent", actor_id="intake",
        )
        db_session.commit()

        assert entry.action == "created"
        assert entry.entity_id == "3"
        assert entry.before is None
        assert entry.actor_kind == ActorKind.AGENT

    def test_log_update(self, db_session):
        entry = AuditService(db_session).log_update(
            "Request", 1, {"implementation_status": "Pending"}, {"implementation_status": "Working"},
            actor_id="pr_monitor",
        )
        db_session.commit()

        assert entry.action == "updated"
        assert entry.actor_kind == ActorKind.SYSTEM
        assert entry.after == {"implementation_status": "Working"}

    def test_log_status_change_default_note(self, db_session):
        entry = AuditService(db_session).log_status_change(
            "Request", 1, "New", "Triaged", actor_kind=ActorKind.AGENT, actor_id="intake"
        )
        db_session.commit()

        assert entry.before == {"status": "New"}
        assert entry.after == {"status": "Triaged"}
        assert entry.note == "Status changed: New -> Triaged"

    def test_rollback_discards_entry(self, db_session):
        AuditService(db_session).log_status_change("Request", 1, "New", "Triaged", actor_id="intake")
        db_session.rollback()

        assert db_session.query(AuditLogModel).count() == 0

    def test_unknown_actor_kind_rejected(self, db_session):
        with pytest.raises(ValueError):
            AuditService(db_session).log_create("Request", 1, {}, actor_kind="robot")


class TestAuditServiceQuery:
    def test_query_by_entity(self, db_session):
        audit = AuditService(db_session)
        audit.log_status_change("Request", 1, "New", "Triaged", actor_id="intake")
        audit.log_status_change("Request", 1, "Triaged", "ArchitectReview", actor_id="architect")
        audit.log_status_change("Request", 2, "New", "Rejected", actor_id="intake")
        db_session.commit()

        entries = audit.query_by_entity("Request", 1)

        assert len(entries) == 2
        assert {e.entity_id for e in entries} == {"1"}

    def test_query_recent_limit(self, db_session):
        audit = AuditService(db_session)
        for i in range(5):
            audit.log_create("Project", i, {"name": f"p{i}"}, actor_id="api")
        db_session.commit()

        assert len(audit.query_recent(limit=3)) == 3
