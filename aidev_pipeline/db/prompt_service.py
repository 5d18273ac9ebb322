"""
System Prompt Service.

Operators edit the LLM stages' system prompts through the ``system_prompts``
table. Rows are seeded from the built-in defaults in ``llm.prompts``; a row
nobody has edited (``updated_by`` is null) keeps following the default, so a
new release's prompt wording reaches unedited rows without a migration.

Reviewers read prompts through ``get()``, which answers from a process cache.
Edits made in this process invalidate the cached key at once; other processes
see them when their entry expires or on a cache reload.
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session, sessionmaker

from ..llm.prompts import DEFAULT_PROMPTS
from ..pipeline.cache import ProcessCache
from ..pipeline.enums import ActorKind
from .audit_service import AuditService
from .base import get_session_local, utcnow
from .models import SystemPromptModel

logger = logging.getLogger(__name__)

ENTITY_KIND = "SystemPrompt"


def _summary(row: SystemPromptModel) -> dict:
    return {"updated_by": row.updated_by, "prompt_chars": len(row.prompt_text or "")}


class SystemPromptService:
    """Reads, edits and seeds the operator-editable system prompts."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        cache_ttl_seconds: Optional[float] = 300,
    ):
        self.session_factory = session_factory
        self.cache = ProcessCache("system-prompts", ttl_seconds=cache_ttl_seconds)

    def get(self, key: str) -> str:
        """The prompt text a reviewer should use for ``key``."""
        if key not in DEFAULT_PROMPTS:
            raise KeyError(f"Unknown system prompt: {key}")
        return self.cache.get_or_load(key, lambda: self._load(key))

    def _load(self, key: str) -> str:
        factory = self.session_factory or get_session_local()
        db = factory()
        try:
            row = self._row(db, key)
        finally:
            db.close()
        if row is None or row.updated_by is None:
            return DEFAULT_PROMPTS[key].text
        return row.prompt_text

    @staticmethod
    def _row(db: Session, key: str) -> Optional[SystemPromptModel]:
        return db.query(SystemPromptModel).filter(SystemPromptModel.key == key).first()

    def list_all(self, db: Session) -> List[SystemPromptModel]:
        """Every prompt, seeding missing rows first, ordered by display name."""
        self.seed_defaults(db)
        return db.query(SystemPromptModel).order_by(SystemPromptModel.display_name.asc()).all()

    def get_prompt(self, db: Session, key: str) -> Optional[SystemPromptModel]:
        if key not in DEFAULT_PROMPTS:
            return None
        self.seed_defaults(db)
        return self._row(db, key)

    def update(self, db: Session, key: str, prompt_text: str, updated_by: str) -> Optional[SystemPromptModel]:
        """Replace a prompt's text. Returns None for an unknown key."""
        row = self.get_prompt(db, key)
        if row is None:
            return None
        before = _summary(row)
        row.prompt_text = prompt_text
        row.updated_by = updated_by
        row.updated_at = utcnow()
        AuditService(db).log_update(
            ENTITY_KIND, key, before, _summary(row),
            actor_kind=ActorKind.HUMAN, actor_id=updated_by,
        )
        db.commit()
        self.cache.invalidate(key)
        logger.info(f"System prompt {key} updated by {updated_by} ({len(prompt_text)} chars)")
        return row

    def reset_to_default(self, db: Session, key: str, updated_by: str) -> Optional[SystemPromptModel]:
        """Restore the built-in text. The row still counts as operator-owned."""
        default = DEFAULT_PROMPTS.get(key)
        if default is None:
            return None
        return self.update(db, key, default.text, updated_by)

    def _create(self, db: Session, key: str) -> SystemPromptModel:
        default = DEFAULT_PROMPTS[key]
        now = utcnow()
        row = SystemPromptModel(
            key=key,
            display_name=default.display_name,
            description=default.description,
            prompt_text=default.text,
            created_at=now,
            updated_at=now,
        )
        db.add(row)
        db.flush()
        return row

    def seed_defaults(self, db: Session) -> int:
        """Add missing prompts and refresh unedited ones. Returns rows written."""
        written = 0
        for key, default in DEFAULT_PROMPTS.items():
            row = self._row(db, key)
            if row is None:
                self._create(db, key)
                logger.info(f"Seeded default system prompt: {key}")
                written += 1
            elif row.updated_by is None and (
                row.prompt_text != default.text
                or row.display_name != default.display_name
                or row.description != default.description
            ):
                row.prompt_text = default.text
                row.display_name = default.display_name
                row.description = default.description
                row.updated_at = utcnow()
                logger.info(f"Refreshed unedited system prompt: {key}")
                written += 1
        if written:
            db.commit()
        return written

    def reload(self) -> None:
        self.cache.invalidate()
        logger.info("System prompt cache cleared, will reload on next access")
