"""Notification stage: alert email for HIGH/CRITICAL assessments."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone

from jinja2 import Environment, PackageLoader, select_autoescape

from dmarcsieve.config import PostalConfig
from dmarcsieve.database import (
    get_notification_by_analysis_id,
    get_report,
    insert_notification,
)
from dmarcsieve.errors import ConfigurationError
from dmarcsieve.models import Analysis, Notification, NotificationStatus, Report, ThreatLevel
from dmarcsieve.postal import PostalClient

logger = logging.getLogger(__name__)

_LEVEL_COLORS = {
    ThreatLevel.CRITICAL: {"fg": "#dc2626", "bg": "#fee2e2"},
    ThreatLevel.HIGH: {"fg": "#ea580c", "bg": "#ffedd5"},
}
_DEFAULT_COLORS = {"fg": "#f59e0b", "bg": "#fef3c7"}

_env = Environment(
    loader=PackageLoader("dmarcsieve", "templates"),
    autoescape=select_autoescape(["html"]),
    trim_blocks=False,
    keep_trailing_newline=True,
)


def _format_date(epoch: int) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).strftime("%Y-%m-%d")


def _template_context(analysis: Analysis, report: Report) -> dict:
    try:
        level = ThreatLevel(analysis.threat_level)
    except ValueError:
        level = None
    return {
        "analysis": analysis,
        "report": report,
        "threats": analysis.threats_detected,
        "recommendations": analysis.recommendations,
        "colors": _LEVEL_COLORS.get(level, _DEFAULT_COLORS),
        "date_begin": _format_date(report.date_begin),
        "date_end": _format_date(report.date_end),
        "compliance_line": f"{analysis.compliance_status} ({analysis.compliance_score}%)",
        "generated_at": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
    }


def build_subject(analysis: Analysis, report: Report) -> str:
    return f"[{analysis.threat_level}] DMARC Alert - {report.domain}"


def render_html(analysis: Analysis, report: Report) -> str:
    return _env.get_template("alert.html").render(**_template_context(analysis, report))


def render_plain(analysis: Analysis, report: Report) -> str:
    return _env.get_template("alert.txt").render(**_template_context(analysis, report))


def _is_alertable(threat_level: str) -> bool:
    try:
        return ThreatLevel(threat_level).is_alertable
    except ValueError:
        return False


def send_threat_notification(
    db: sqlite3.Connection,
    analysis: Analysis,
    report_id: int,
    postal_config: PostalConfig,
    client: PostalClient | None = None,
) -> bool:
    """Send one alert for an assessment and record the attempt.

    Returns False without writing anything when a notification row already
    exists for the analysis or its level is below HIGH. Otherwise exactly one
    notifications row is written: SENT with Postal's message id, or FAILED
    with the error text. Nothing is retried. A failure to write the row is
    logged, not raised.
    """
    existing = get_notification_by_analysis_id(db, analysis.id)
    if existing is not None:
        logger.info("Notification already recorded for analysis %s (%s)", analysis.id, existing.status)
        return False

    if not _is_alertable(analysis.threat_level):
        logger.debug("Skipping notification for %s threat level", analysis.threat_level)
        return False

    try:
        missing = postal_config.missing_fields()
        if missing:
            raise ConfigurationError(f"Postal configuration incomplete: missing {', '.join(missing)}")
        if client is None:
            client = PostalClient.from_config(postal_config)

        report = get_report(db, report_id)
        if report is None:
            raise LookupError(f"Report {report_id} not found")

        subject = build_subject(analysis, report)
        html_body = render_html(analysis, report)
        plain_body = render_plain(analysis, report)

        logger.info("Sending %s threat notification for report %s", analysis.threat_level, report_id)
        message_id = client.send_message(
            to=[postal_config.to_email],
            sender=postal_config.from_email,
            subject=subject,
            html_body=html_body,
            plain_body=plain_body,
        )
    except Exception as e:
        logger.error("Error sending notification for analysis %s: %s", analysis.id, e)
        try:
            insert_notification(db, Notification(
                analysis_id=analysis.id,
                threat_level=analysis.threat_level,
                status=NotificationStatus.FAILED.value,
                error_message=str(e),
            ))
        except sqlite3.Error as db_error:
            logger.error("Error saving failed notification for analysis %s: %s", analysis.id, db_error)
        return False

    logger.info("Notification sent successfully. Message ID: %s", message_id)
    try:
        insert_notification(db, Notification(
            analysis_id=analysis.id,
            threat_level=analysis.threat_level,
            status=NotificationStatus.SENT.value,
            postal_message_id=message_id,
        ))
    except sqlite3.Error as db_error:
        logger.error(
            "Error saving sent notification %s for analysis %s: %s",
            message_id, analysis.id, db_error,
        )
    return True
