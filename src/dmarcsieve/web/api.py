"""REST API routes for health, scheduler status and manual pipeline runs."""

from __future__ import annotations

import sqlite3
from functools import partial

from fastapi import APIRouter, HTTPException, Request

from dmarcsieve.database import db_stats, get_db, init_db
from dmarcsieve.scheduler import STAGES

router = APIRouter(tags=["api"])


@router.get("/health")
def health(request: Request):
    """Service health: database counts, pending work, last intake, scheduler."""
    config = request.app.state.config
    scheduler = request.app.state.scheduler

    try:
        conn = get_db(config)
        try:
            init_db(conn)
            tables = db_stats(conn)
            pending = conn.execute(
                "SELECT COUNT(*) as cnt FROM dmarc_reports WHERE processed = 0"
            ).fetchone()["cnt"]
            last = conn.execute(
                """SELECT email_uid, status, processed_at, error_message
                   FROM processing_log ORDER BY id DESC LIMIT 1"""
            ).fetchone()
        finally:
            conn.close()
    except sqlite3.Error as e:
        raise HTTPException(503, f"Database unavailable: {e}")

    return {
        "status": "ok",
        "database": tables,
        "unprocessed_reports": pending,
        "last_intake": dict(last) if last else None,
        "scheduler": scheduler.status(),
    }


@router.get("/scheduler")
def scheduler_status(request: Request):
    """Current scheduler state and the outcome of the last run."""
    return request.app.state.scheduler.status()


@router.post("/pipeline/run/{stage}", status_code=202)
def run_pipeline_stage(stage: str, request: Request):
    """Trigger a one-shot run in the background.

    Rejected with 409 while another run is in progress.
    """
    if stage not in STAGES:
        raise HTTPException(400, f"Unknown stage: {stage}. Options: {list(STAGES.keys())}")

    scheduler = request.app.state.scheduler
    if scheduler.is_processing:
        raise HTTPException(409, "A pipeline run is already in progress")

    config = request.app.state.config
    request.app.state.executor.submit(
        scheduler.trigger,
        source=f"web:{stage}",
        pipeline=partial(STAGES[stage], config),
    )
    return {"status": "submitted", "stage": stage}
