"""Report parser: RFC 7489 aggregate report XML to stored report + records."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from bs4 import BeautifulSoup, Tag

from dmarcsieve.database import (
    get_report_by_report_id,
    insert_record,
    insert_report,
)
from dmarcsieve.errors import ParseError
from dmarcsieve.models import DetailRecord, Report

logger = logging.getLogger(__name__)

# policy_published children that are numeric in RFC 7489
_NUMERIC_POLICY_FIELDS = {"pct", "fo_num"}


@dataclass
class ParseResult:
    report_id: int
    external_id: str
    created: bool
    records: int = 0
    skipped: int = 0


def _child_text(parent: Tag | None, name: str) -> str | None:
    """Stripped text of the first direct child called name, or None."""
    if parent is None:
        return None
    child = parent.find(name, recursive=False)
    if child is None:
        return None
    text = child.get_text(strip=True)
    return text or None


def _to_int(value: str | None, field: str) -> int:
    if value is None:
        raise ParseError(f"Missing required field: {field}")
    try:
        return int(float(value))
    except ValueError as e:
        raise ParseError(f"Field {field} is not numeric: {value!r}") from e


def _policy_to_dict(policy: Tag) -> dict:
    """Flatten <policy_published> into a dict, coercing numeric fields."""
    result: dict = {}
    for child in policy.find_all(recursive=False):
        text = child.get_text(strip=True)
        if child.name in _NUMERIC_POLICY_FIELDS:
            try:
                result[child.name] = int(text)
                continue
            except ValueError:
                pass
        result[child.name] = text
    return result


def _first_auth_result(auth_results: Tag | None, mechanism: str) -> Tag | None:
    # Only the first entry per mechanism is kept; reports listing several
    # DKIM signatures or SPF checks lose the later ones.
    if auth_results is None:
        return None
    return auth_results.find(mechanism, recursive=False)


def _parse_record(rec: Tag) -> DetailRecord | None:
    """Build a DetailRecord from one <record>, or None if it is malformed."""
    row = rec.find("row", recursive=False)
    identifiers = rec.find("identifiers", recursive=False)
    if row is None or identifiers is None:
        return None

    source_ip = _child_text(row, "source_ip")
    header_from = _child_text(identifiers, "header_from")
    if not source_ip or not header_from:
        return None

    try:
        count = int(_child_text(row, "count") or 0)
    except ValueError:
        return None

    evaluated = row.find("policy_evaluated", recursive=False)
    auth_results = rec.find("auth_results", recursive=False)
    dkim = _first_auth_result(auth_results, "dkim")
    spf = _first_auth_result(auth_results, "spf")

    return DetailRecord(
        source_ip=source_ip,
        count=count,
        disposition=_child_text(evaluated, "disposition") or "",
        dkim=_child_text(evaluated, "dkim") or "",
        spf=_child_text(evaluated, "spf") or "",
        header_from=header_from,
        envelope_from=_child_text(identifiers, "envelope_from"),
        dkim_domain=_child_text(dkim, "domain"),
        dkim_selector=_child_text(dkim, "selector"),
        spf_domain=_child_text(spf, "domain"),
        country=None,
    )


def parse_report(db: sqlite3.Connection, xml: bytes | str) -> ParseResult:
    """Parse DMARC aggregate XML and store it unless already known.

    Returns a ParseResult whose ``created`` flag is False when a report with
    the same external report_id already exists; in that case nothing is
    written and ``report_id`` is the existing row's id.

    Raises ParseError if the document cannot be decoded or lacks the
    feedback / report_metadata / policy_published structure.
    """
    if isinstance(xml, bytes):
        raw_xml = xml.decode("utf-8", errors="replace")
    else:
        raw_xml = xml

    if not raw_xml.strip():
        raise ParseError("Empty document")

    try:
        soup = BeautifulSoup(raw_xml, "xml")
    except Exception as e:
        raise ParseError(f"Could not decode XML: {e}") from e

    feedback = soup.find("feedback")
    if feedback is None:
        raise ParseError("Invalid DMARC XML: missing feedback element")

    metadata = feedback.find("report_metadata", recursive=False)
    policy = feedback.find("policy_published", recursive=False)
    if metadata is None or policy is None:
        raise ParseError("Invalid DMARC XML: missing report_metadata or policy_published")

    external_id = _child_text(metadata, "report_id")
    if not external_id:
        raise ParseError("Invalid DMARC XML: missing report_id")

    existing = get_report_by_report_id(db, external_id)
    if existing is not None:
        logger.info("Report %s already exists, skipping", external_id)
        return ParseResult(report_id=existing.id, external_id=external_id, created=False)

    date_range = metadata.find("date_range", recursive=False)
    domain = _child_text(policy, "domain")
    if not domain:
        raise ParseError("Invalid DMARC XML: policy_published has no domain")

    report = Report(
        report_id=external_id,
        org_name=_child_text(metadata, "org_name") or "",
        email=_child_text(metadata, "email") or "",
        date_begin=_to_int(_child_text(date_range, "begin"), "date_range.begin"),
        date_end=_to_int(_child_text(date_range, "end"), "date_range.end"),
        domain=domain,
        policy_published=_policy_to_dict(policy),
        raw_xml=raw_xml,
    )
    report_pk = insert_report(db, report)
    logger.info("Inserted DMARC report: %s (ID: %s)", external_id, report_pk)

    stored = 0
    skipped = 0
    for rec in feedback.find_all("record", recursive=False):
        record = _parse_record(rec)
        if record is None:
            skipped += 1
            continue
        insert_record(db, report_pk, record)
        stored += 1

    logger.info(
        "Inserted %d DMARC records for report %s (%d malformed skipped)",
        stored, report_pk, skipped,
    )
    return ParseResult(
        report_id=report_pk,
        external_id=external_id,
        created=True,
        records=stored,
        skipped=skipped,
    )
