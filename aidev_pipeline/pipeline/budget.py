"""
Token budget guard.

Consulted once before a cycle starts. Usage is summed from the stage's own
review table since 00:00 UTC today and since the 1st of the month. The check
is advisory: two cycles can both pass before either writes its usage, so a
modest overshoot is possible.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db.base import utcnow
from ..db.models import IntakeVerdictModel, MergeReviewModel, SolutionProposalModel
from ..errors import BudgetExceededError

logger = logging.getLogger(__name__)


@dataclass
class BudgetUsage:
    """Token usage against the configured caps. A cap <= 0 means unlimited."""

    daily_used: int
    monthly_used: int
    daily_cap: int
    monthly_cap: int

    @property
    def daily_exceeded(self) -> bool:
        return self.daily_cap > 0 and self.daily_used >= self.daily_cap

    @property
    def monthly_exceeded(self) -> bool:
        return self.monthly_cap > 0 and self.monthly_used >= self.monthly_cap

    @property
    def exceeded(self) -> bool:
        return self.daily_exceeded or self.monthly_exceeded

    def to_dict(self) -> dict:
        return {
            "daily_used": self.daily_used,
            "daily_cap": self.daily_cap,
            "monthly_used": self.monthly_used,
            "monthly_cap": self.monthly_cap,
            "exceeded": self.exceeded,
        }


def day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def month_start(now: datetime) -> datetime:
    return day_start(now).replace(day=1)


class BudgetGuard:
    """Daily/monthly token cap for one LLM-calling stage."""

    def __init__(
        self,
        name: str,
        token_columns: Sequence[Any],
        created_column: Any,
        daily_cap: int = 0,
        monthly_cap: int = 0,
    ):
        self.name = name
        self.token_columns = list(token_columns)
        self.created_column = created_column
        self.daily_cap = daily_cap
        self.monthly_cap = monthly_cap

    @classmethod
    def for_stage(cls, stage: str, settings: Optional[Settings] = None) -> "BudgetGuard":
        """Build the guard for ``intake``, ``architect`` or ``code_review``."""
        settings = settings or get_settings()
        if stage == "intake":
            return cls(
                "intake",
                [IntakeVerdictModel.prompt_tokens, IntakeVerdictModel.completion_tokens],
                IntakeVerdictModel.created_at,
                settings.intake_daily_token_budget,
                settings.intake_monthly_token_budget,
            )
        if stage == "architect":
            return cls(
                "architect",
                [
                    SolutionProposalModel.step1_prompt_tokens,
                    SolutionProposalModel.step1_completion_tokens,
                    SolutionProposalModel.step2_prompt_tokens,
                    SolutionProposalModel.step2_completion_tokens,
                ],
                SolutionProposalModel.created_at,
                settings.architect_daily_token_budget,
                settings.architect_monthly_token_budget,
            )
        if stage == "code_review":
            return cls(
                "code_review",
                [MergeReviewModel.prompt_tokens, MergeReviewModel.completion_tokens],
                MergeReviewModel.created_at,
                settings.code_review_daily_token_budget,
                settings.code_review_monthly_token_budget,
            )
        raise ValueError(f"Unknown budget stage: {stage}")

    def _tokens_since(self, db: Session, since: datetime) -> int:
        total = self.token_columns[0]
        for column in self.token_columns[1:]:
            total = total + column
        value = (
            db.query(func.coalesce(func.sum(total), 0))
            .filter(self.created_column >= since)
            .scalar()
        )
        return int(value or 0)

    def usage(self, db: Session, now: Optional[datetime] = None) -> BudgetUsage:
        """Current usage. Skips the queries for caps that are unlimited."""
        now = now or utcnow()
        daily = self._tokens_since(db, day_start(now)) if self.daily_cap > 0 else 0
        monthly = self._tokens_since(db, month_start(now)) if self.monthly_cap > 0 else 0
        return BudgetUsage(daily, monthly, self.daily_cap, self.monthly_cap)

    def allows_cycle(self, db: Session, now: Optional[datetime] = None) -> bool:
        """False when either cap is reached; the whole cycle must then be skipped."""
        if self.daily_cap <= 0 and self.monthly_cap <= 0:
            return True
        usage = self.usage(db, now)
        if usage.daily_exceeded:
            logger.warning(
                f"{self.name} daily token budget exceeded: {usage.daily_used}/{usage.daily_cap}"
            )
        elif usage.monthly_exceeded:
            logger.warning(
                f"{self.name} monthly token budget exceeded: {usage.monthly_used}/{usage.monthly_cap}"
            )
        return not usage.exceeded

    def ensure_available(self, db: Session, now: Optional[datetime] = None) -> BudgetUsage:
        """Raise ``BudgetExceededError`` for operator-triggered cycles over the cap."""
        usage = self.usage(db, now)
        if usage.exceeded:
            raise BudgetExceededError(
                f"{self.name} token budget exceeded "
                f"(daily {usage.daily_used}/{usage.daily_cap}, "
                f"monthly {usage.monthly_used}/{usage.monthly_cap})"
            )
        return usage
