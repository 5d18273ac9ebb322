"""
Periodic claim-and-advance worker.

Every stage worker runs the same loop:

1. Wait ``initial_delay`` seconds, then tick every ``interval`` seconds.
2. Optionally consult the budget guard; a failed check skips the whole tick.
3. Claim up to ``batch_size`` rows with the stage's status predicate.
4. Handle each row in turn. The handler commits its own unit of work; an
   exception rolls the session back and the row is retried next tick.

Workers share nothing but the database and a ``threading.Event`` that carries
shutdown.
"""

import threading
from datetime import datetime
from typing import Any, Callable, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.orm import Session, sessionmaker

from ..db.base import get_session_local, utcnow
from ..errors import WorkerBusyError
from ..pipeline.budget import BudgetGuard

logger = structlog.get_logger()

ClaimFn = Callable[[Session, datetime, int], List[Any]]
HandleFn = Callable[[Session, Any, datetime], None]


def repo_of(request) -> Optional[Tuple[str, str]]:
    """The ``(owner, repo)`` a request's project lives in, if it has one."""
    project = request.project
    if project is None or not project.owner or not project.repo:
        return None
    return project.owner, project.repo


class PeriodicWorker:
    """Interval loop with per-row failure isolation.

    Subclasses override ``claim`` and ``handle``; alternatively pass ``claim``
    and ``handle`` callables to the constructor.
    """

    name = "worker"

    def __init__(
        self,
        name: Optional[str] = None,
        interval_seconds: float = 60,
        initial_delay_seconds: float = 0,
        batch_size: int = 10,
        claim: Optional[ClaimFn] = None,
        handle: Optional[HandleFn] = None,
        budget: Optional[BudgetGuard] = None,
        session_factory: Optional[sessionmaker] = None,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.name = name or self.name
        self.interval_seconds = interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.batch_size = batch_size
        self._claim_fn = claim
        self._handle_fn = handle
        self.budget = budget
        self.session_factory = session_factory
        self.stop_event = stop_event or threading.Event()
        self.clock = clock
        self.logger = logger.bind(worker=self.name)
        self._tick_lock = threading.Lock()

        self.ticks = 0
        self.rows_processed = 0
        self.rows_failed = 0
        self.last_tick_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    def claim(self, db: Session, now: datetime, limit: int) -> List[Any]:
        if self._claim_fn is None:
            raise NotImplementedError(f"{self.name} has no claim function")
        return self._claim_fn(db, now, limit)

    def handle(self, db: Session, row: Any, now: datetime) -> None:
        if self._handle_fn is None:
            raise NotImplementedError(f"{self.name} has no row handler")
        self._handle_fn(db, row, now)

    def _open_session(self) -> Session:
        factory = self.session_factory or get_session_local()
        return factory()

    def tick(self, wait: bool = True) -> int:
        """Run one cycle now. Returns the number of rows handled successfully.

        Cycles of one worker never overlap. With ``wait=False`` a cycle already
        in progress raises ``WorkerBusyError`` instead of queueing behind it.
        """
        if not self._tick_lock.acquire(blocking=wait):
            raise WorkerBusyError(f"Worker {self.name} is already running a cycle")
        try:
            return self.run_cycle()
        finally:
            self._tick_lock.release()

    def run_cycle(self) -> int:
        now = self.clock()
        self.ticks += 1
        self.last_tick_at = now
        db = self._open_session()
        try:
            if self.budget is not None and not self.budget.allows_cycle(db, now):
                self.logger.warning("cycle_skipped_budget", stage=self.budget.name)
                return 0

            rows = self.claim(db, now, self.batch_size)
            if not rows:
                self.logger.debug("cycle_idle")
                return 0
            self.logger.info("cycle_claimed", count=len(rows))

            handled = 0
            for row in rows:
                if self.stop_event.is_set():
                    self.logger.info("cycle_interrupted", remaining=len(rows) - handled)
                    break
                row_id = getattr(row, "id", None)
                try:
                    self.handle(db, row, now)
                    handled += 1
                    self.rows_processed += 1
                except Exception as e:
                    db.rollback()
                    self.rows_failed += 1
                    self.last_error = f"{type(e).__name__}: {e}"
                    self.logger.exception("row_failed", request_id=row_id)
            return handled
        finally:
            db.close()

    def after_commit(self, description: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run an external side effect once the local commit is done.

        Not retried; a failure is logged and the row stays advanced.
        """
        try:
            return fn(*args, **kwargs)
        except Exception:
            self.logger.exception("side_effect_failed", action=description)
            return None

    def run(self) -> None:
        """Loop until the stop event is set."""
        self.logger.info(
            "worker_started",
            interval=self.interval_seconds,
            initial_delay=self.initial_delay_seconds,
        )
        if self.stop_event.wait(self.initial_delay_seconds):
            self.logger.info("worker_stopped")
            return
        while not self.stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                self.last_error = f"{type(e).__name__}: {e}"
                self.logger.exception("cycle_failed")
            self.stop_event.wait(self.interval_seconds)
        self.logger.info("worker_stopped")

    def get_status(self) -> dict:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "batch_size": self.batch_size,
            "ticks": self.ticks,
            "rows_processed": self.rows_processed,
            "rows_failed": self.rows_failed,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "last_error": self.last_error,
        }


class HostingWorker(PeriodicWorker):
    """A worker that mirrors its decisions onto the request's issue and PR."""

    def __init__(self, hosting, **kwargs):
        super().__init__(**kwargs)
        self.hosting = hosting

    def relabel(
        self,
        target: Tuple[str, str],
        issue_number: Optional[int],
        remove: Sequence[str] = (),
        add: Sequence[str] = (),
    ) -> None:
        if not issue_number:
            return
        owner, repo = target
        for label in remove:
            self.after_commit(
                f"remove_label:{label}",
                self.hosting.remove_label, owner, repo, issue_number, label,
            )
        if add:
            self.after_commit(
                "add_labels",
                self.hosting.add_labels, owner, repo, issue_number, list(add),
            )

    def notify(self, target: Tuple[str, str], issue_number: Optional[int], body: str) -> None:
        if not issue_number:
            return
        owner, repo = target
        self.after_commit(
            "post_comment",
            self.hosting.post_comment, owner, repo, issue_number, body,
        )

    def delete_merged_branch(self, db: Session, request, target: Tuple[str, str]) -> bool:
        """Delete a merged PR's head branch and remember that it is gone.

        Returns True once the branch is recorded as deleted. A failed delete
        leaves ``branch_deleted`` unset so the health worker retries it.
        """
        if not request.branch_name or request.branch_deleted:
            return False
        owner, repo = target
        if self.after_commit(
            "delete_branch", self.hosting.delete_branch, owner, repo, request.branch_name
        ):
            request.branch_deleted = True
            db.commit()
            return True
        return False
