"""Pydantic schema for the assessment response and the parsing around it."""

from __future__ import annotations

import json
import re

from pydantic import BaseModel, Field, ValidationError, field_validator

from dmarcsieve.errors import AssessmentValidationError
from dmarcsieve.models import ComplianceStatus, ThreatLevel, ThreatType


class Finding(BaseModel):
    """One detected threat."""

    type: ThreatType = ThreatType.OTHER
    severity: ThreatLevel
    description: str = ""
    source_ips: list[str] = Field(default_factory=list)
    evidence: str = ""

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, v):
        if isinstance(v, str):
            v = v.strip().lower().replace(" ", "_")
            if v not in {t.value for t in ThreatType}:
                return ThreatType.OTHER
        return v

    @field_validator("severity", mode="before")
    @classmethod
    def _upper_severity(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class TopSource(BaseModel):
    ip: str
    count: int = 0
    country: str | None = None


class DispositionSummary(BaseModel):
    none: int = 0
    quarantine: int = 0
    reject: int = 0


class Trends(BaseModel):
    total_messages: int = 0
    pass_rate: float = 0.0
    fail_rate: float = 0.0
    top_sources: list[TopSource] = Field(default_factory=list)
    disposition_summary: DispositionSummary = Field(default_factory=DispositionSummary)


class AssessmentResponse(BaseModel):
    """Structured output expected from the reasoning service."""

    compliance_status: ComplianceStatus
    compliance_score: int = Field(default=0, ge=0, le=100)
    threats: list[Finding]
    threat_level: ThreatLevel
    trends: Trends = Field(default_factory=Trends)
    recommendations: list[str]
    summary: str = ""

    @field_validator("compliance_status", "threat_level", mode="before")
    @classmethod
    def _upper_enums(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*\n?(.*?)\n?\s*```$", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    cleaned = text.strip()
    match = _FENCE_RE.match(cleaned)
    if match:
        return match.group(1).strip()
    return cleaned


def parse_assessment(response_text: str) -> AssessmentResponse:
    """Decode and validate a raw reasoning-service reply.

    Raises AssessmentValidationError carrying the raw text when the reply is
    not JSON or any required field is absent or malformed.
    """
    cleaned = strip_code_fences(response_text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise AssessmentValidationError(
            f"Response is not valid JSON: {e}", raw_response=response_text
        ) from e

    if not isinstance(data, dict):
        raise AssessmentValidationError(
            "Response JSON is not an object", raw_response=response_text
        )

    try:
        return AssessmentResponse.model_validate(data)
    except ValidationError as e:
        missing = [
            ".".join(str(p) for p in err["loc"])
            for err in e.errors() if err["type"] == "missing"
        ]
        if missing:
            message = f"Missing required fields in response: {', '.join(missing)}"
        else:
            message = f"Response failed schema validation: {e.error_count()} error(s)"
        raise AssessmentValidationError(message, raw_response=response_text) from e
