"""
Audit Log Service.

Records audit events for requests and review rows. Entries are added to the
caller's session and committed together with the change they describe.
"""

from typing import Any, Dict, List, Optional, Union

from sqlalchemy import desc
from sqlalchemy.orm import Session
from ulid import ULID

from ..pipeline.enums import ActorKind
from .audit_models import AuditLogModel
from .base import utcnow


def generate_ulid() -> str:
    """Generate a ULID for audit log entries."""
    return str(ULID())


class AuditService:
    """Service for managing audit log entries.

    Usage:
        audit = AuditService(db_session)
        audit.log_status_change("Request", request.id, "New", "Triaged", actor_id="intake")
        db_session.commit()
    """

    def __init__(self, db: Session):
        self.db = db

    def _add(
        self,
        action: str,
        entity_kind: str,
        entity_id: Union[int, str],
        before: Optional[Dict[str, Any]],
        after: Optional[Dict[str, Any]],
        actor_kind: Union[ActorKind, str],
        actor_id: str,
        note: Optional[str],
        trace_id: Optional[str],
    ) -> AuditLogModel:
        entry = AuditLogModel(
            id=generate_ulid(),
            ts=utcnow(),
            actor_kind=ActorKind(actor_kind),
            actor_id=actor_id,
            action=action,
            entity_kind=entity_kind,
            entity_id=str(entity_id),
            before=before,
            after=after,
            note=note,
            trace_id=trace_id,
        )
        self.db.add(entry)
        return entry

    def log_create(
        self,
        entity_kind: str,
        entity_id: Union[int, str],
        after: Dict[str, Any],
        actor_kind: Union[ActorKind, str] = ActorKind.SYSTEM,
        actor_id: str = "unknown",
        note: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> AuditLogModel:
        """Log the creation of an entity.

        Args:
            entity_kind: Type of entity (e.g., "IntakeVerdict", "MergeReview")
            entity_id: ID of the entity
            after: State of the entity after creation
            actor_kind: Type of actor ("human", "agent", "system")
            actor_id: ID of the actor
            note: Optional human-readable note
            trace_id: Optional trace ID for correlation

        Returns:
            The pending AuditLogModel
        """
        return self._add(
            "created", entity_kind, entity_id, None, after,
            actor_kind, actor_id, note, trace_id,
        )

    def log_update(
        self,
        entity_kind: str,
        entity_id: Union[int, str],
        before: Dict[str, Any],
        after: Dict[str, Any],
        actor_kind: Union[ActorKind, str] = ActorKind.SYSTEM,
        actor_id: str = "unknown",
        note: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> AuditLogModel:
        """Log a field-level update that is not a status change."""
        return self._add(
            "updated", entity_kind, entity_id, before, after,
            actor_kind, actor_id, note, trace_id,
        )

    def log_status_change(
        self,
        entity_kind: str,
        entity_id: Union[int, str],
        old_status: str,
        new_status: str,
        actor_kind: Union[ActorKind, str] = ActorKind.SYSTEM,
        actor_id: str = "unknown",
        note: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> AuditLogModel:
        """Log a status change on an entity.

        Args:
            entity_kind: Type of entity (e.g., "Request")
            entity_id: ID of the entity
            old_status: Previous status value
            new_status: New status value
            actor_kind: Type of actor ("human", "agent", "system")
            actor_id: ID of the actor
            note: Optional human-readable note
            trace_id: Optional trace ID for correlation

        Returns:
            The pending AuditLogModel
        """
        return self._add(
            "status_changed",
            entity_kind,
            entity_id,
            {"status": old_status},
            {"status": new_status},
            actor_kind,
            actor_id,
            note or f"Status changed: {old_status} -> {new_status}",
            trace_id,
        )

    def query_by_entity(
        self,
        entity_kind: str,
        entity_id: Union[int, str],
        limit: int = 100,
    ) -> List[AuditLogModel]:
        """Get audit entries for an entity, newest first."""
        return (
            self.db.query(AuditLogModel)
            .filter(
                AuditLogModel.entity_kind == entity_kind,
                AuditLogModel.entity_id == str(entity_id),
            )
            .order_by(desc(AuditLogModel.ts), desc(AuditLogModel.id))
            .limit(limit)
            .all()
        )

    def query_recent(self, limit: int = 100) -> List[AuditLogModel]:
        """Get the most recent audit entries across all entities."""
        return (
            self.db.query(AuditLogModel)
            .order_by(desc(AuditLogModel.ts), desc(AuditLogModel.id))
            .limit(limit)
            .all()
        )
