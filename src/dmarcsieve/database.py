"""SQLite database connection, schema management and row operations."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path

from dmarcsieve.config import Config, load_config
from dmarcsieve.models import (
    Analysis,
    DetailRecord,
    Notification,
    ProcessingLogEntry,
    Report,
)

_SCHEMA_PATH = Path(__file__).parent / "schema.sql"

TABLES = [
    "dmarc_reports", "dmarc_records", "ai_analysis",
    "notifications", "processing_log",
]


def get_db(config: Config | None = None, db_path: str | None = None) -> sqlite3.Connection:
    """Return a configured SQLite connection.

    Uses WAL mode and row_factory=sqlite3.Row for dict-like access. The parent
    directory of the database file is created if missing.
    """
    if db_path is None:
        if config is None:
            config = load_config()
        db_path = config.storage.sqlite_path

    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    # check_same_thread=False: the scheduler thread and the web app may hand
    # a connection across threads, but never use one concurrently.
    conn = sqlite3.connect(db_path, timeout=10, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    """Create all tables from schema.sql."""
    schema = _SCHEMA_PATH.read_text()
    conn.executescript(schema)


def reset_db(config: Config | None = None) -> sqlite3.Connection:
    """Drop and recreate the database. Returns a fresh connection."""
    if config is None:
        config = load_config()

    db_path = Path(config.storage.sqlite_path)
    if db_path.exists():
        db_path.unlink()

    conn = get_db(config)
    init_db(conn)
    return conn


def db_stats(conn: sqlite3.Connection) -> dict[str, int]:
    """Return row counts for all tables."""
    stats = {}
    for table in TABLES:
        try:
            row = conn.execute(f"SELECT COUNT(*) as cnt FROM {table}").fetchone()
            stats[table] = row["cnt"]
        except sqlite3.OperationalError:
            stats[table] = -1  # table doesn't exist
    return stats


# --- Reports ---

def insert_report(db: sqlite3.Connection, report: Report) -> int:
    cursor = db.execute(
        """INSERT INTO dmarc_reports
           (report_id, org_name, email, date_begin, date_end, domain,
            policy_published, raw_xml)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            report.report_id, report.org_name, report.email,
            report.date_begin, report.date_end, report.domain,
            json.dumps(report.policy_published), report.raw_xml,
        ),
    )
    db.commit()
    return cursor.lastrowid


def get_report(db: sqlite3.Connection, report_pk: int) -> Report | None:
    row = db.execute("SELECT * FROM dmarc_reports WHERE id = ?", (report_pk,)).fetchone()
    return Report.from_row(row) if row else None


def get_report_by_report_id(db: sqlite3.Connection, report_id: str) -> Report | None:
    row = db.execute(
        "SELECT * FROM dmarc_reports WHERE report_id = ?", (report_id,)
    ).fetchone()
    return Report.from_row(row) if row else None


def get_unprocessed_reports(db: sqlite3.Connection) -> list[Report]:
    """Reports not yet assessed, oldest first."""
    rows = db.execute(
        """SELECT * FROM dmarc_reports
           WHERE processed = 0
           ORDER BY created_at ASC, id ASC"""
    ).fetchall()
    return [Report.from_row(r) for r in rows]


def mark_report_processed(db: sqlite3.Connection, report_pk: int) -> None:
    db.execute("UPDATE dmarc_reports SET processed = 1 WHERE id = ?", (report_pk,))
    db.commit()


# --- Detail records ---

def insert_record(db: sqlite3.Connection, report_pk: int, record: DetailRecord) -> int:
    cursor = db.execute(
        """INSERT INTO dmarc_records
           (report_id, source_ip, count, disposition, dkim, spf, header_from,
            envelope_from, dkim_domain, dkim_selector, spf_domain, country)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            report_pk, record.source_ip, record.count, record.disposition,
            record.dkim, record.spf, record.header_from, record.envelope_from,
            record.dkim_domain, record.dkim_selector, record.spf_domain,
            record.country,
        ),
    )
    db.commit()
    return cursor.lastrowid


def get_records_by_report_id(db: sqlite3.Connection, report_pk: int) -> list[DetailRecord]:
    """Detail records of one report, in the order they were stored."""
    rows = db.execute(
        "SELECT * FROM dmarc_records WHERE report_id = ? ORDER BY id ASC",
        (report_pk,),
    ).fetchall()
    return [DetailRecord.from_row(r) for r in rows]


# --- Analyses ---

def insert_analysis(db: sqlite3.Connection, analysis: Analysis) -> int:
    cursor = db.execute(
        """INSERT INTO ai_analysis
           (report_id, compliance_status, compliance_score, threats_detected,
            threat_level, trends, recommendations, summary, model_version)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            analysis.report_id, analysis.compliance_status,
            analysis.compliance_score, json.dumps(analysis.threats_detected),
            analysis.threat_level, json.dumps(analysis.trends),
            json.dumps(analysis.recommendations), analysis.summary,
            analysis.model_version,
        ),
    )
    db.commit()
    return cursor.lastrowid


def get_analysis(db: sqlite3.Connection, analysis_id: int) -> Analysis | None:
    row = db.execute("SELECT * FROM ai_analysis WHERE id = ?", (analysis_id,)).fetchone()
    return Analysis.from_row(row) if row else None


def get_analysis_by_report_id(db: sqlite3.Connection, report_pk: int) -> Analysis | None:
    row = db.execute(
        "SELECT * FROM ai_analysis WHERE report_id = ?", (report_pk,)
    ).fetchone()
    return Analysis.from_row(row) if row else None


def get_latest_unnotified_alert(db: sqlite3.Connection) -> Analysis | None:
    """Most recent HIGH/CRITICAL analysis with no notification row yet."""
    row = db.execute(
        """SELECT a.* FROM ai_analysis a
           LEFT JOIN notifications n ON n.analysis_id = a.id
           WHERE a.threat_level IN ('HIGH', 'CRITICAL') AND n.id IS NULL
           ORDER BY a.analyzed_at DESC, a.id DESC
           LIMIT 1"""
    ).fetchone()
    return Analysis.from_row(row) if row else None


# --- Notifications ---

def insert_notification(db: sqlite3.Connection, notification: Notification) -> int:
    cursor = db.execute(
        """INSERT INTO notifications
           (analysis_id, threat_level, postal_message_id, status, error_message)
           VALUES (?, ?, ?, ?, ?)""",
        (
            notification.analysis_id, notification.threat_level,
            notification.postal_message_id, notification.status,
            notification.error_message,
        ),
    )
    db.commit()
    return cursor.lastrowid


def get_notification_by_analysis_id(db: sqlite3.Connection, analysis_id: int) -> Notification | None:
    row = db.execute(
        "SELECT * FROM notifications WHERE analysis_id = ?", (analysis_id,)
    ).fetchone()
    if row is None:
        return None
    return Notification(
        id=row["id"],
        analysis_id=row["analysis_id"],
        threat_level=row["threat_level"],
        status=row["status"],
        postal_message_id=row["postal_message_id"],
        error_message=row["error_message"],
        sent_at=row["sent_at"],
    )


# --- Intake audit log ---

def insert_processing_log(db: sqlite3.Connection, entry: ProcessingLogEntry) -> int:
    cursor = db.execute(
        """INSERT INTO processing_log
           (email_uid, subject, from_address, attachment_count, status, error_message)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (
            entry.email_uid, entry.subject, entry.from_address,
            entry.attachment_count, entry.status, entry.error_message,
        ),
    )
    db.commit()
    return cursor.lastrowid
