"""Dataclasses mirroring DB tables for type safety."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from enum import Enum


class ThreatLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _THREAT_RANK[self]

    @property
    def is_alertable(self) -> bool:
        return self.rank >= _THREAT_RANK[ThreatLevel.HIGH]


_THREAT_RANK = {
    ThreatLevel.LOW: 0,
    ThreatLevel.MEDIUM: 1,
    ThreatLevel.HIGH: 2,
    ThreatLevel.CRITICAL: 3,
}


class ComplianceStatus(str, Enum):
    PASS = "PASS"
    PARTIAL = "PARTIAL"
    FAIL = "FAIL"


class ThreatType(str, Enum):
    SPOOFING = "spoofing"
    PHISHING = "phishing"
    UNAUTHORIZED_SENDER = "unauthorized_sender"
    POLICY_VIOLATION = "policy_violation"
    OTHER = "other"


class NotificationStatus(str, Enum):
    SENT = "SENT"
    FAILED = "FAILED"


class IntakeStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass
class Report:
    report_id: str
    org_name: str
    email: str
    date_begin: int
    date_end: int
    domain: str
    policy_published: dict = field(default_factory=dict)
    raw_xml: str = ""
    created_at: str | None = None
    processed: bool = False
    id: int | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Report:
        return cls(
            id=row["id"],
            report_id=row["report_id"],
            org_name=row["org_name"],
            email=row["email"],
            date_begin=row["date_begin"],
            date_end=row["date_end"],
            domain=row["domain"],
            policy_published=json.loads(row["policy_published"] or "{}"),
            raw_xml=row["raw_xml"],
            created_at=row["created_at"],
            processed=bool(row["processed"]),
        )


@dataclass
class DetailRecord:
    source_ip: str
    count: int
    disposition: str
    dkim: str
    spf: str
    header_from: str
    envelope_from: str | None = None
    dkim_domain: str | None = None
    dkim_selector: str | None = None
    spf_domain: str | None = None
    country: str | None = None
    report_id: int | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> DetailRecord:
        return cls(
            id=row["id"],
            report_id=row["report_id"],
            source_ip=row["source_ip"],
            count=row["count"],
            disposition=row["disposition"],
            dkim=row["dkim"],
            spf=row["spf"],
            header_from=row["header_from"],
            envelope_from=row["envelope_from"],
            dkim_domain=row["dkim_domain"],
            dkim_selector=row["dkim_selector"],
            spf_domain=row["spf_domain"],
            country=row["country"],
        )

    def to_prompt_dict(self) -> dict:
        """Normalized field names sent to the reasoning service."""
        return {
            "source_ip": self.source_ip,
            "count": self.count,
            "disposition": self.disposition,
            "dkim": self.dkim,
            "spf": self.spf,
            "header_from": self.header_from,
            "envelope_from": self.envelope_from,
            "dkim_domain": self.dkim_domain,
            "dkim_selector": self.dkim_selector,
            "spf_domain": self.spf_domain,
        }


@dataclass
class Analysis:
    report_id: int
    compliance_status: str
    compliance_score: int
    threat_level: str
    threats_detected: list[dict] = field(default_factory=list)
    trends: dict = field(default_factory=dict)
    recommendations: list[str] = field(default_factory=list)
    summary: str = ""
    model_version: str = ""
    analyzed_at: str | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Analysis:
        return cls(
            id=row["id"],
            report_id=row["report_id"],
            compliance_status=row["compliance_status"],
            compliance_score=row["compliance_score"],
            threat_level=row["threat_level"],
            threats_detected=json.loads(row["threats_detected"] or "[]"),
            trends=json.loads(row["trends"] or "{}"),
            recommendations=json.loads(row["recommendations"] or "[]"),
            summary=row["summary"],
            model_version=row["model_version"],
            analyzed_at=row["analyzed_at"],
        )


@dataclass
class Notification:
    analysis_id: int
    threat_level: str
    status: str
    postal_message_id: str | None = None
    error_message: str | None = None
    sent_at: str | None = None
    id: int | None = None


@dataclass
class ProcessingLogEntry:
    email_uid: str
    subject: str
    from_address: str
    attachment_count: int
    status: str
    error_message: str | None = None
    processed_at: str | None = None
    id: int | None = None
