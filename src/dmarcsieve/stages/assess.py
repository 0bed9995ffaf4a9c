"""Assessment stage: AI risk assessment of unassessed DMARC reports."""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from datetime import datetime, timezone
from typing import Callable

from dmarcsieve.ai.base import AIProvider
from dmarcsieve.ai.prompts import ANALYSIS_PROMPT, SYSTEM_PROMPT
from dmarcsieve.ai.schemas import AssessmentResponse, parse_assessment
from dmarcsieve.config import PostalConfig
from dmarcsieve.database import (
    get_analysis_by_report_id,
    get_records_by_report_id,
    get_unprocessed_reports,
    insert_analysis,
    mark_report_processed,
)
from dmarcsieve.errors import (
    AssessmentValidationError,
    ConfigurationError,
    TransportError,
)
from dmarcsieve.models import Analysis, DetailRecord, Report

logger = logging.getLogger(__name__)


def _iso(epoch: int) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def build_analysis_prompt(report: Report, records: list[DetailRecord]) -> str:
    """Render the assessment prompt. The raw XML is never included."""
    report_data = {
        "metadata": {
            "org_name": report.org_name,
            "email": report.email,
            "domain": report.domain,
            "date_begin": _iso(report.date_begin),
            "date_end": _iso(report.date_end),
        },
        "policy": report.policy_published,
        "records": [r.to_prompt_dict() for r in records],
    }
    return ANALYSIS_PROMPT.format(report_json=json.dumps(report_data, indent=2))


def _to_analysis(report: Report, response: AssessmentResponse, model_name: str) -> Analysis:
    dumped = response.model_dump(mode="json")
    return Analysis(
        report_id=report.id,
        compliance_status=dumped["compliance_status"],
        compliance_score=dumped["compliance_score"],
        threat_level=dumped["threat_level"],
        threats_detected=dumped["threats"],
        trends=dumped["trends"],
        recommendations=dumped["recommendations"],
        summary=dumped["summary"],
        model_version=model_name,
    )


def assess_report(
    db: sqlite3.Connection,
    provider: AIProvider,
    model_name: str,
    report: Report,
    records: list[DetailRecord],
) -> Analysis:
    """Request, validate and persist the assessment of one report.

    Raises AssessmentValidationError when the reply fails schema checks; in
    that case nothing is written.
    """
    logger.info("Analyzing report %s with %s...", report.report_id, model_name)
    prompt = build_analysis_prompt(report, records)
    response_text = provider.complete(
        prompt=prompt,
        model=model_name,
        system=SYSTEM_PROMPT,
        response_format="json",
    )

    response = parse_assessment(response_text)
    logger.info(
        "Analysis complete. Threat level: %s, Compliance: %s",
        response.threat_level.value, response.compliance_status.value,
    )

    analysis = _to_analysis(report, response, model_name)
    analysis.id = insert_analysis(db, analysis)
    logger.info("Saved analysis %s for report %s", analysis.id, report.id)
    return analysis


def _notify(db: sqlite3.Connection, analysis: Analysis, report: Report, postal_config: PostalConfig) -> bool:
    """Alert on a HIGH/CRITICAL analysis. Returns False if the report must stay unprocessed."""
    from dmarcsieve.stages.notify import send_threat_notification

    try:
        send_threat_notification(db, analysis, report.id, postal_config)
    except Exception:
        logger.exception("Failed to notify for report %s", report.report_id)
        return False
    return True


def analyze_reports(
    db: sqlite3.Connection,
    model_spec: str = "anthropic:claude-3-5-sonnet-20241022",
    ai_config: dict | None = None,
    postal_config: PostalConfig | None = None,
    request_delay_seconds: float = 1.0,
    provider: AIProvider | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Assess every unprocessed report, oldest first.

    Reports without detail records are marked processed and not counted.
    A reply that fails validation leaves its report unprocessed so the next
    run retries it. HIGH/CRITICAL assessments trigger a notification before
    the report is marked processed.

    Raises ConfigurationError / TransportError if the reasoning service is
    unusable; those abort the whole stage.

    Returns count of reports analyzed.
    """
    postal_config = postal_config or PostalConfig()
    reports = get_unprocessed_reports(db)

    if not reports:
        logger.info("No unprocessed reports to analyze")
        return 0

    logger.info("Found %d unprocessed report(s) to analyze", len(reports))

    model_name = model_spec.split(":", 1)[1] if ":" in model_spec else model_spec
    if provider is None:
        from dmarcsieve.ai import get_provider
        provider, model_name = get_provider(model_spec, config=ai_config)

    analyzed = 0
    requests_made = 0

    for report in reports:
        records = get_records_by_report_id(db, report.id)

        if not records:
            logger.warning("Report %s has no records, skipping", report.id)
            mark_report_processed(db, report.id)
            continue

        existing = get_analysis_by_report_id(db, report.id)
        if existing is not None:
            logger.warning("Report %s already has an analysis, marking processed", report.id)
            if _notify(db, existing, report, postal_config):
                mark_report_processed(db, report.id)
            continue

        if requests_made > 0 and request_delay_seconds > 0:
            sleep(request_delay_seconds)
        requests_made += 1

        try:
            analysis = assess_report(db, provider, model_name, report, records)
        except (ConfigurationError, TransportError):
            raise
        except AssessmentValidationError as e:
            logger.error("Failed to parse response for report %s: %s", report.report_id, e)
            logger.error("Raw response: %s", e.raw_response)
            continue
        except Exception:
            logger.exception("Failed to analyze report %s", report.report_id)
            continue

        if _notify(db, analysis, report, postal_config):
            mark_report_processed(db, report.id)
        analyzed += 1

    logger.info("Successfully analyzed %d out of %d reports", analyzed, len(reports))
    return analyzed
