"""Shared test fixtures."""

from __future__ import annotations

import json
import sqlite3

import pytest

from dmarcsieve.config import PostalConfig
from dmarcsieve.database import init_db


@pytest.fixture
def db():
    """In-memory SQLite database with schema initialized."""
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    init_db(conn)
    yield conn
    conn.close()


RECORD_TEMPLATE = """
  <record>
    <row>
      <source_ip>{ip}</source_ip>
      <count>{count}</count>
      <policy_evaluated>
        <disposition>{disposition}</disposition>
        <dkim>{dkim}</dkim>
        <spf>{spf}</spf>
      </policy_evaluated>
    </row>
    <identifiers>
      <header_from>{header_from}</header_from>
      <envelope_from>{envelope_from}</envelope_from>
    </identifiers>
    <auth_results>
      <dkim>
        <domain>{dkim_domain}</domain>
        <selector>{selector}</selector>
        <result>{dkim}</result>
      </dkim>
      <spf>
        <domain>{spf_domain}</domain>
        <result>{spf}</result>
      </spf>
    </auth_results>
  </record>"""


def make_record(
    ip: str,
    count: int = 1,
    disposition: str = "none",
    dkim: str = "pass",
    spf: str = "pass",
    header_from: str = "example.com",
    envelope_from: str = "example.com",
    dkim_domain: str = "example.com",
    selector: str = "s1",
    spf_domain: str = "example.com",
) -> str:
    return RECORD_TEMPLATE.format(
        ip=ip, count=count, disposition=disposition, dkim=dkim, spf=spf,
        header_from=header_from, envelope_from=envelope_from,
        dkim_domain=dkim_domain, selector=selector, spf_domain=spf_domain,
    )


def make_report_xml(report_id: str = "rpt-2024-0001", records: str = "", domain: str = "example.com") -> str:
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<feedback>
  <report_metadata>
    <org_name>google.com</org_name>
    <email>noreply-dmarc-support@google.com</email>
    <report_id>{report_id}</report_id>
    <date_range>
      <begin>1704067200</begin>
      <end>1704153599</end>
    </date_range>
  </report_metadata>
  <policy_published>
    <domain>{domain}</domain>
    <adkim>r</adkim>
    <aspf>r</aspf>
    <p>quarantine</p>
    <sp>none</sp>
    <pct>100</pct>
  </policy_published>{records}
</feedback>
"""


@pytest.fixture
def report_xml_factory():
    """Build aggregate report XML: factory(report_id=..., records=..., domain=...)."""
    return make_report_xml


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def sample_report_xml():
    """One report, three records; the last two fail both DKIM and SPF."""
    records = (
        make_record("203.0.113.5", count=120)
        + make_record(
            "198.51.100.23", count=45, disposition="quarantine", dkim="fail", spf="fail",
            envelope_from="spoofer.test", dkim_domain="spoofer.test", selector="x1",
            spf_domain="spoofer.test",
        )
        + make_record(
            "192.0.2.77", count=12, disposition="reject", dkim="fail", spf="fail",
            envelope_from="bad.test", dkim_domain="bad.test", selector="x2",
            spf_domain="bad.test",
        )
    )
    return make_report_xml("rpt-2024-0001", records)


@pytest.fixture
def critical_response():
    """A valid CRITICAL assessment reply as the reasoning service returns it."""
    return json.dumps({
        "compliance_status": "FAIL",
        "compliance_score": 35,
        "threats": [
            {
                "type": "spoofing",
                "severity": "CRITICAL",
                "description": "Unauthorized sources sending as example.com",
                "source_ips": ["198.51.100.23", "192.0.2.77"],
                "evidence": "57 messages failed both DKIM and SPF",
            }
        ],
        "threat_level": "CRITICAL",
        "trends": {
            "total_messages": 177,
            "pass_rate": 67.8,
            "fail_rate": 32.2,
            "top_sources": [{"ip": "203.0.113.5", "count": 120, "country": None}],
            "disposition_summary": {"none": 120, "quarantine": 45, "reject": 12},
        },
        "recommendations": [
            "Move the policy to p=reject",
            "Investigate 198.51.100.23",
        ],
        "summary": "Active spoofing of example.com from two sources.",
    })


@pytest.fixture
def postal_config():
    return PostalConfig(
        api_key="test-key",
        base_url="https://postal.example.net",
        from_email="dmarc@example.com",
        to_email="security@example.com",
    )
