"""Pipeline scheduler: recurring, single-flight intake + assessment runs."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Callable

import schedule

from dmarcsieve.config import Config
from dmarcsieve.mailbox.intake import IntakeResult

logger = logging.getLogger(__name__)


@dataclass
class RunOutcome:
    """Result of one completed pipeline run."""
    status: str  # "success" | "error"
    started_at: datetime
    duration_ms: int
    analyzed: int = 0
    error: str | None = None
    source: str = "timer"
    overdue: bool = False


# --- Pipeline steps: each opens and closes its own connection ---

def run_intake(config: Config) -> IntakeResult:
    """Pull unseen report messages from the mailbox into the database."""
    from dmarcsieve.database import get_db, init_db
    from dmarcsieve.mailbox.client import ImapMailbox
    from dmarcsieve.mailbox.intake import IntakeEngine

    mailbox = ImapMailbox.from_config(config.imap)
    conn = get_db(config)
    init_db(conn)
    try:
        result = IntakeEngine(mailbox, conn).run()
    finally:
        conn.close()

    logger.info(
        "Intake finished: %d message(s), %d succeeded, %d failed, %d skipped, %d new report(s)",
        result.messages, result.succeeded, result.failed, result.skipped, result.reports_created,
    )
    return result


def run_assessment(config: Config) -> int:
    """Assess all unprocessed reports. Returns count analyzed."""
    from dmarcsieve.database import get_db, init_db
    from dmarcsieve.stages.assess import analyze_reports

    conn = get_db(config)
    init_db(conn)
    try:
        return analyze_reports(
            conn,
            model_spec=config.ai.model_spec,
            ai_config=config.ai.to_provider_dict(),
            postal_config=config.postal,
            request_delay_seconds=config.ai.request_delay_seconds,
        )
    finally:
        conn.close()


def run_pipeline(config: Config) -> int:
    """Intake, then assessment. Returns count of reports analyzed."""
    logger.info("Starting DMARC processing job")
    run_intake(config)
    analyzed = run_assessment(config)
    logger.info("DMARC processing job completed. Analyzed %d report(s)", analyzed)
    return analyzed


def _run_intake_only(config: Config) -> int:
    run_intake(config)
    return 0


# Manual one-shot entry points, by stage name
STAGES: dict[str, Callable[[Config], int]] = {
    "ingest": _run_intake_only,
    "analyze": run_assessment,
    "all": run_pipeline,
}


class PipelineScheduler:
    """Runs a pipeline callable every ``interval_minutes`` on a daemon thread.

    At most one run is in flight at a time. A trigger that arrives while a run
    is in progress is dropped, not queued.
    """

    def __init__(
        self,
        pipeline: Callable[[], int],
        interval_minutes: int = 10,
        run_timeout_seconds: int = 0,
        poll_seconds: float = 1.0,
    ):
        self.pipeline = pipeline
        self.interval_minutes = interval_minutes
        self.run_timeout_seconds = run_timeout_seconds
        self.poll_seconds = poll_seconds
        self.last_outcome: RunOutcome | None = None

        self._lock = threading.Lock()
        self._scheduler = schedule.Scheduler()
        self._job: schedule.Job | None = None
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._run_started: float | None = None

    @classmethod
    def from_config(cls, config: Config) -> PipelineScheduler:
        return cls(
            partial(run_pipeline, config),
            interval_minutes=config.scheduler.interval_minutes,
            run_timeout_seconds=config.scheduler.run_timeout_seconds,
        )

    @property
    def is_running(self) -> bool:
        """True while the recurring timer is armed."""
        return self._job is not None

    @property
    def is_processing(self) -> bool:
        return self._lock.locked()

    def trigger(
        self,
        source: str = "timer",
        pipeline: Callable[[], int] | None = None,
    ) -> RunOutcome | None:
        """Run the pipeline once unless a run is already in progress.

        ``pipeline`` replaces the configured callable for this run only (used
        by the intake-only / assessment-only manual triggers); it shares the
        same single-flight lock.

        Returns the outcome, or None when the trigger was dropped. Pipeline
        exceptions are recorded in the outcome, never raised.
        """
        if not self._lock.acquire(blocking=False):
            logger.warning("Previous job still running, skipping %s trigger", source)
            return None

        started_at = datetime.now(timezone.utc)
        start = time.monotonic()
        self._run_started = start
        try:
            try:
                analyzed = (pipeline or self.pipeline)()
                outcome = RunOutcome(
                    status="success",
                    started_at=started_at,
                    duration_ms=int((time.monotonic() - start) * 1000),
                    analyzed=analyzed or 0,
                    source=source,
                )
            except Exception as e:
                logger.exception("Error in DMARC processing job")
                outcome = RunOutcome(
                    status="error",
                    started_at=started_at,
                    duration_ms=int((time.monotonic() - start) * 1000),
                    error=str(e),
                    source=source,
                )

            if self.run_timeout_seconds and outcome.duration_ms > self.run_timeout_seconds * 1000:
                outcome.overdue = True
                logger.warning(
                    "Pipeline run took %d ms, longer than the %d s limit",
                    outcome.duration_ms, self.run_timeout_seconds,
                )
            self.last_outcome = outcome
        finally:
            self._run_started = None
            self._lock.release()

        return outcome

    def start(self, run_immediately: bool = True) -> None:
        """Arm the recurring timer and start the background thread."""
        if self.is_running:
            logger.warning("Scheduler already running")
            return

        logger.info("Starting scheduler with interval: every %d minute(s)", self.interval_minutes)
        self._stop.clear()
        self._job = self._scheduler.every(self.interval_minutes).minutes.do(self.trigger, source="timer")
        self._thread = threading.Thread(
            target=self._loop,
            args=(run_immediately,),
            name="dmarcsieve-scheduler",
            daemon=True,
        )
        self._thread.start()

    def _loop(self, run_immediately: bool) -> None:
        if run_immediately:
            logger.info("Running initial job on startup")
            self.trigger(source="startup")
        while not self._stop.is_set():
            self._scheduler.run_pending()
            self._stop.wait(self.poll_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        """Disarm the timer. A run already in progress is allowed to finish."""
        if not self.is_running:
            return
        self._stop.set()
        self._scheduler.clear()
        self._job = None
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None
        logger.info("Scheduler stopped")

    def run_forever(self, run_immediately: bool = True) -> None:
        """Start and block until interrupted."""
        self.start(run_immediately=run_immediately)
        try:
            while self._thread is not None and self._thread.is_alive():
                self._thread.join(self.poll_seconds)
        except KeyboardInterrupt:
            logger.info("Scheduler interrupted")
        finally:
            self.stop()

    def status(self) -> dict:
        outcome = self.last_outcome
        current_overdue = False
        started = self._run_started
        if started is not None and self.run_timeout_seconds:
            current_overdue = time.monotonic() - started > self.run_timeout_seconds

        next_run = self._job.next_run if self._job is not None else None
        return {
            "running": self.is_running,
            "is_currently_processing": self.is_processing,
            "interval_minutes": self.interval_minutes,
            "next_run_time": next_run.isoformat() if next_run else None,
            "current_run_overdue": current_overdue,
            "last_run_time": outcome.started_at.isoformat() if outcome else None,
            "last_run_status": outcome.status if outcome else None,
            "last_run_error": outcome.error if outcome else None,
            "last_run_analyzed": outcome.analyzed if outcome else None,
            "last_run_duration_ms": outcome.duration_ms if outcome else None,
        }
