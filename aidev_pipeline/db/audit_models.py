"""
Audit Log Database Models.

Every status transition, review row and operator action performed by the
pipeline is recorded with before/after snapshots and actor information.
"""

from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Column,
    Enum,
    Index,
    String,
    Text,
)

from ..pipeline.enums import ActorKind
from .base import Base, UTCDateTime, utcnow


audit_actor_kind_enum = Enum(
    ActorKind,
    name="audit_actor_kind",
    values_callable=lambda kinds: [k.value for k in kinds],
    native_enum=False,
)

audit_action_enum = Enum(
    "created",
    "updated",
    "status_changed",
    name="audit_action",
    native_enum=False,
)


class AuditLogModel(Base):
    """Audit log entry.

    Rows are written in the same session commit as the change they describe,
    so a status never moves without its audit entry.
    """

    __tablename__ = "audit_log"

    # ULID, sortable by creation time
    id = Column(String(36), primary_key=True)
    ts = Column(UTCDateTime(), nullable=False, default=utcnow, index=True)

    actor_kind = Column(audit_actor_kind_enum, nullable=False)
    actor_id = Column(String(128), nullable=False, index=True)

    action = Column(audit_action_enum, nullable=False, index=True)

    entity_kind = Column(String(50), nullable=False, index=True)
    entity_id = Column(String(128), nullable=False, index=True)

    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)
    note = Column(Text, nullable=True)

    trace_id = Column(String(36), nullable=True, index=True)

    __table_args__ = (
        Index("ix_audit_log_entity", "entity_kind", "entity_id"),
        Index("ix_audit_log_entity_ts", "entity_kind", "entity_id", "ts"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "ts": self.ts.isoformat() if self.ts else None,
            "actor_kind": self.actor_kind.value if self.actor_kind else None,
            "actor_id": self.actor_id,
            "action": self.action,
            "entity_kind": self.entity_kind,
            "entity_id": self.entity_id,
            "before": self.before,
            "after": self.after,
            "note": self.note,
            "trace_id": self.trace_id,
        }
