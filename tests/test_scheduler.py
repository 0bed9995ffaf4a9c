"""Tests for the single-flight pipeline scheduler."""

import threading
from unittest.mock import MagicMock, patch

from dmarcsieve.config import Config
from dmarcsieve.scheduler import STAGES, PipelineScheduler, run_pipeline


def test_trigger_records_success():
    scheduler = PipelineScheduler(lambda: 3, interval_minutes=5)

    outcome = scheduler.trigger(source="test")

    assert outcome.status == "success"
    assert outcome.analyzed == 3
    assert outcome.error is None
    assert outcome.source == "test"
    status = scheduler.status()
    assert status["last_run_status"] == "success"
    assert status["last_run_analyzed"] == 3
    assert status["last_run_error"] is None
    assert status["last_run_duration_ms"] >= 0
    assert status["is_currently_processing"] is False


def test_trigger_captures_errors():
    def broken():
        raise RuntimeError("IMAP down")

    scheduler = PipelineScheduler(broken)
    outcome = scheduler.trigger()

    assert outcome.status == "error"
    assert outcome.error == "IMAP down"
    assert scheduler.status()["last_run_status"] == "error"
    assert scheduler.is_processing is False


def test_concurrent_trigger_is_dropped():
    """A trigger during an active run is dropped and never queued."""
    started = threading.Event()
    release = threading.Event()
    calls = []

    def slow_pipeline():
        calls.append(1)
        started.set()
        release.wait(5)
        return 1

    scheduler = PipelineScheduler(slow_pipeline)
    worker = threading.Thread(target=scheduler.trigger, kwargs={"source": "first"})
    worker.start()
    assert started.wait(5)

    assert scheduler.is_processing is True
    assert scheduler.status()["is_currently_processing"] is True
    assert scheduler.trigger(source="second") is None

    release.set()
    worker.join(5)

    assert len(calls) == 1
    assert scheduler.last_outcome.source == "first"
    assert scheduler.is_processing is False


def test_trigger_with_alternate_pipeline():
    default = MagicMock(return_value=5)
    scheduler = PipelineScheduler(default)

    outcome = scheduler.trigger(source="manual", pipeline=lambda: 0)

    default.assert_not_called()
    assert outcome.analyzed == 0


def test_overdue_run_flagged():
    scheduler = PipelineScheduler(lambda: 0, run_timeout_seconds=2)

    with patch("dmarcsieve.scheduler.time") as mock_time:
        mock_time.monotonic.side_effect = [100.0, 103.5]
        outcome = scheduler.trigger()

    assert outcome.overdue is True
    assert outcome.duration_ms == 3500


def test_status_before_any_run():
    status = PipelineScheduler(lambda: 0, interval_minutes=7).status()
    assert status == {
        "running": False,
        "is_currently_processing": False,
        "interval_minutes": 7,
        "next_run_time": None,
        "current_run_overdue": False,
        "last_run_time": None,
        "last_run_status": None,
        "last_run_error": None,
        "last_run_analyzed": None,
        "last_run_duration_ms": None,
    }


def test_start_runs_immediately_and_stop_disarms():
    ran = threading.Event()

    def pipeline():
        ran.set()
        return 0

    scheduler = PipelineScheduler(pipeline, interval_minutes=10, poll_seconds=0.01)
    scheduler.start(run_immediately=True)
    try:
        assert scheduler.is_running is True
        assert ran.wait(5)
        assert scheduler.status()["next_run_time"] is not None
    finally:
        scheduler.stop()

    assert scheduler.is_running is False
    assert scheduler.status()["running"] is False


def test_start_without_initial_run():
    pipeline = MagicMock(return_value=0)
    scheduler = PipelineScheduler(pipeline, poll_seconds=0.01)
    scheduler.start(run_immediately=False)
    scheduler.stop()
    pipeline.assert_not_called()


def test_from_config():
    config = Config()
    config.scheduler.interval_minutes = 3
    config.scheduler.run_timeout_seconds = 600

    scheduler = PipelineScheduler.from_config(config)

    assert scheduler.interval_minutes == 3
    assert scheduler.run_timeout_seconds == 600


def test_run_pipeline_runs_intake_before_assessment():
    order = []
    config = Config()
    with patch("dmarcsieve.scheduler.run_intake", side_effect=lambda c: order.append("intake")), \
         patch("dmarcsieve.scheduler.run_assessment", side_effect=lambda c: order.append("assess") or 2):
        assert run_pipeline(config) == 2
    assert order == ["intake", "assess"]


def test_intake_failure_skips_assessment():
    config = Config()
    scheduler = PipelineScheduler(lambda: run_pipeline(config))
    with patch("dmarcsieve.scheduler.run_assessment") as assess:
        outcome = scheduler.trigger()
    assert outcome.status == "error"
    assert "IMAP configuration missing" in outcome.error
    assess.assert_not_called()


def test_stage_names():
    assert set(STAGES) == {"ingest", "analyze", "all"}
