# Delayed Dispatch Scheduler
# Delivers (kind, payload) pairs to the processor registered for the kind, no
# earlier than the requested delay, at least once. Backed by APScheduler with a
# persistent SQLAlchemy jobstore.

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional
import logging

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.background import BackgroundScheduler

from config.app_config import (
    SCHEDULER_JOBSTORE,
    VERIFY_MAX_ATTEMPTS,
    VERIFY_RETRY_BACKOFF_SECONDS,
    DISPATCH_REDELIVERY_SECONDS,
)
from database.models import generate_uuid
from services.exceptions import JobNotDue

logger = logging.getLogger(__name__)

VERIFY_ORDER_JOB = "verify_order"

Processor = Callable[[Dict[str, Any]], Any]


def build_jobstore(kind: str = SCHEDULER_JOBSTORE):
    if kind == "memory":
        return MemoryJobStore()
    from database.config import engine
    return SQLAlchemyJobStore(engine=engine, tablename="dispatch_jobs")


def run_dispatched_job(kind: str, payload: Dict[str, Any], attempt: int = 1):
    """APScheduler job function. Referenced by import path in persisted jobs."""
    return get_dispatch_scheduler().dispatch(kind, payload, attempt)


class DispatchScheduler:
    """
    Minimal delayed-dispatch contract for the pipeline.

    - One processor per job kind, registered once at startup.
    - A processor exception is retried with exponential backoff until
      max_attempts, then the job is abandoned and logged.
    - JobNotDue from a processor re-queues the job without using an attempt.
    - Before running a job a redelivery job is queued; it is removed once the
      run finishes, so a crash mid-run delivers the payload again.
    """

    def __init__(
        self,
        scheduler: Optional[BackgroundScheduler] = None,
        max_attempts: int = VERIFY_MAX_ATTEMPTS,
        retry_backoff_seconds: int = VERIFY_RETRY_BACKOFF_SECONDS,
        redelivery_seconds: int = DISPATCH_REDELIVERY_SECONDS,
        jobstore: Optional[str] = None,
    ):
        if scheduler is None:
            scheduler = BackgroundScheduler(
                jobstores={"default": build_jobstore(jobstore or SCHEDULER_JOBSTORE)},
                timezone=timezone.utc,
            )
        self.scheduler = scheduler
        self.max_attempts = max_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.redelivery_seconds = redelivery_seconds
        self._processors: Dict[str, Processor] = {}
        self.scheduler.add_listener(self._on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def register(self, kind: str, processor: Processor) -> None:
        if kind in self._processors:
            raise ValueError(f"A processor is already registered for job kind '{kind}'")
        self._processors[kind] = processor
        logger.info(f"[dispatch] Registered processor for '{kind}'")

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("[dispatch] Scheduler started")

    def shutdown(self, wait: bool = True) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("[dispatch] Scheduler stopped")

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def schedule(self, kind: str, payload: Dict[str, Any], delay_seconds: float, attempt: int = 1) -> str:
        """Queue payload for kind's processor no earlier than now + delay_seconds."""
        if kind not in self._processors:
            raise ValueError(f"No processor registered for job kind '{kind}'")

        job_id = generate_uuid()
        run_date = datetime.now(timezone.utc) + timedelta(seconds=max(0, delay_seconds))
        self.scheduler.add_job(
            run_dispatched_job,
            trigger="date",
            run_date=run_date,
            args=[kind, dict(payload), attempt],
            id=job_id,
            name=f"{kind}#{attempt}",
            misfire_grace_time=None,
            coalesce=False,
        )
        logger.debug(f"[dispatch] Scheduled {kind} job {job_id} (attempt {attempt}) for {run_date.isoformat()}")
        return job_id

    def dispatch(self, kind: str, payload: Dict[str, Any], attempt: int = 1) -> str:
        """
        Run one delivery. Returns the outcome: "completed", "deferred",
        "retrying", "abandoned" or "dropped".
        """
        processor = self._processors.get(kind)
        if processor is None:
            logger.error(f"[dispatch] No processor for job kind '{kind}', dropping {payload}")
            return "dropped"

        guard_id = self.schedule(kind, payload, self.redelivery_seconds, attempt=attempt + 1)

        try:
            processor(payload)
        except JobNotDue as e:
            self._remove_job(guard_id)
            self.schedule(kind, payload, e.retry_after_seconds, attempt=attempt)
            logger.info(f"[dispatch] {kind} {payload} delivered early; re-queued in {e.retry_after_seconds:.0f}s")
            return "deferred"
        except Exception as e:
            self._remove_job(guard_id)
            if attempt >= self.max_attempts:
                logger.error(f"[dispatch] {kind} {payload} abandoned after {attempt} attempts: {e}", exc_info=True)
                return "abandoned"
            delay = self.retry_backoff_seconds * 2 ** (attempt - 1)
            self.schedule(kind, payload, delay, attempt=attempt + 1)
            logger.warning(f"[dispatch] {kind} {payload} failed (attempt {attempt}/{self.max_attempts}): {e}; retrying in {delay}s")
            return "retrying"

        self._remove_job(guard_id)
        logger.info(f"[dispatch] {kind} {payload} completed (attempt {attempt})")
        return "completed"

    def pending_jobs(self):
        return self.scheduler.get_jobs()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _remove_job(self, job_id: Optional[str]) -> None:
        if not job_id:
            return
        if self.scheduler.get_job(job_id) is not None:
            self.scheduler.remove_job(job_id)

    def _on_job_event(self, event) -> None:
        if event.code == EVENT_JOB_ERROR:
            logger.error(f"[dispatch] Job {event.job_id} raised: {event.exception}")
        elif event.code == EVENT_JOB_MISSED:
            logger.warning(f"[dispatch] Job {event.job_id} missed its run time")
        else:
            logger.debug(f"[dispatch] Job {event.job_id} executed")


_dispatch_scheduler: Optional[DispatchScheduler] = None


def get_dispatch_scheduler() -> DispatchScheduler:
    """Process-wide scheduler; also used as a FastAPI dependency."""
    global _dispatch_scheduler
    if _dispatch_scheduler is None:
        _dispatch_scheduler = DispatchScheduler()
    return _dispatch_scheduler
