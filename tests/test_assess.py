"""Tests for the assessment stage (mocked AI provider and Postal)."""

import gzip
import json
import sqlite3
from unittest.mock import MagicMock, patch

import pytest

from dmarcsieve.config import PostalConfig
from dmarcsieve.database import get_records_by_report_id, get_report
from dmarcsieve.errors import ConfigurationError, TransportError
from dmarcsieve.mailbox.intake import IntakeEngine
from dmarcsieve.postal import PostalClient
from dmarcsieve.stages.assess import analyze_reports, build_analysis_prompt
from dmarcsieve.stages.parse import parse_report


def _provider(*responses):
    provider = MagicMock()
    provider.complete.side_effect = list(responses)
    return provider


def _low_response():
    return json.dumps({
        "compliance_status": "PASS",
        "compliance_score": 98,
        "threats": [],
        "threat_level": "LOW",
        "recommendations": ["Keep monitoring"],
        "summary": "All good.",
    })


def _count(db, table):
    return db.execute(f"SELECT COUNT(*) as cnt FROM {table}").fetchone()["cnt"]


def test_critical_assessment_sends_notification(db, sample_report_xml, critical_response, postal_config):
    result = parse_report(db, sample_report_xml)
    provider = _provider(critical_response)

    with patch.object(PostalClient, "send_message", return_value="msg-123") as send:
        count = analyze_reports(
            db, model_spec="anthropic:test-model", postal_config=postal_config,
            provider=provider, sleep=MagicMock(),
        )

    assert count == 1
    assert get_report(db, result.report_id).processed is True

    analysis = db.execute("SELECT * FROM ai_analysis").fetchone()
    assert analysis["report_id"] == result.report_id
    assert analysis["threat_level"] == "CRITICAL"
    assert analysis["compliance_status"] == "FAIL"
    assert analysis["compliance_score"] == 35
    assert analysis["model_version"] == "test-model"
    assert json.loads(analysis["recommendations"])[0] == "Move the policy to p=reject"
    assert json.loads(analysis["threats_detected"])[0]["type"] == "spoofing"

    notification = db.execute("SELECT * FROM notifications").fetchone()
    assert notification["analysis_id"] == analysis["id"]
    assert notification["status"] == "SENT"
    assert notification["postal_message_id"] == "msg-123"

    send.assert_called_once()
    assert send.call_args.kwargs["subject"] == "[CRITICAL] DMARC Alert - example.com"
    assert send.call_args.kwargs["to"] == ["security@example.com"]


def test_low_assessment_sends_nothing(db, sample_report_xml, postal_config):
    parse_report(db, sample_report_xml)

    with patch.object(PostalClient, "send_message") as send:
        count = analyze_reports(db, postal_config=postal_config,
                                provider=_provider(_low_response()), sleep=MagicMock())

    assert count == 1
    send.assert_not_called()
    assert _count(db, "notifications") == 0


def test_failed_notification_still_marks_processed(db, sample_report_xml, critical_response):
    """Missing Postal settings record a FAILED notification; the report is done."""
    result = parse_report(db, sample_report_xml)

    count = analyze_reports(db, postal_config=PostalConfig(),
                            provider=_provider(critical_response), sleep=MagicMock())

    assert count == 1
    assert get_report(db, result.report_id).processed is True
    notification = db.execute("SELECT * FROM notifications").fetchone()
    assert notification["status"] == "FAILED"
    assert "api_key" in notification["error_message"]


def test_missing_recommendations_leaves_report_unprocessed(db, sample_report_xml, critical_response, caplog):
    result = parse_report(db, sample_report_xml)
    data = json.loads(critical_response)
    del data["recommendations"]

    count = analyze_reports(db, provider=_provider(json.dumps(data)), sleep=MagicMock())

    assert count == 0
    assert get_report(db, result.report_id).processed is False
    assert _count(db, "ai_analysis") == 0
    assert "recommendations" in caplog.text


def test_report_without_records_marked_processed(db, report_xml_factory):
    result = parse_report(db, report_xml_factory("rpt-empty"))
    provider = MagicMock()

    count = analyze_reports(db, provider=provider, sleep=MagicMock())

    assert count == 0
    provider.complete.assert_not_called()
    assert get_report(db, result.report_id).processed is True


def test_existing_critical_analysis_gets_its_missing_alert(db, sample_report_xml, critical_response, postal_config):
    """An analysis stored before a crash still gets its notification on the next run."""
    result = parse_report(db, sample_report_xml)
    with patch("dmarcsieve.stages.notify.send_threat_notification", return_value=False):
        analyze_reports(db, provider=_provider(critical_response), sleep=MagicMock())
    db.execute("UPDATE dmarc_reports SET processed = 0 WHERE id = ?", (result.report_id,))
    db.commit()
    assert _count(db, "notifications") == 0
    provider = MagicMock()

    with patch.object(PostalClient, "send_message", return_value="msg-late") as send:
        count = analyze_reports(db, postal_config=postal_config, provider=provider, sleep=MagicMock())

    assert count == 0
    provider.complete.assert_not_called()
    send.assert_called_once()
    row = db.execute("SELECT status, postal_message_id FROM notifications").fetchone()
    assert (row["status"], row["postal_message_id"]) == ("SENT", "msg-late")
    assert get_report(db, result.report_id).processed is True


def test_notification_error_stays_local(db, report_xml_factory, record_factory, critical_response, postal_config):
    first = parse_report(db, report_xml_factory(report_id="a", records=record_factory("203.0.113.9")))
    second = parse_report(db, report_xml_factory(report_id="b", records=record_factory("203.0.113.9")))
    provider = _provider(critical_response, critical_response)

    with patch("dmarcsieve.stages.notify.send_threat_notification",
               side_effect=[sqlite3.OperationalError("database is locked"), True]):
        count = analyze_reports(db, postal_config=postal_config, provider=provider, sleep=MagicMock())

    assert count == 2
    assert get_report(db, first.report_id).processed is False
    assert get_report(db, second.report_id).processed is True
    assert _count(db, "ai_analysis") == 0


def test_delay_between_reports_not_after_last(db, report_xml_factory, record_factory):
    for i in range(3):
        parse_report(db, report_xml_factory(f"rpt-{i}", record_factory(f"192.0.2.{i}")))
    sleep = MagicMock()
    provider = _provider(_low_response(), _low_response(), _low_response())

    count = analyze_reports(db, provider=provider, request_delay_seconds=2.5, sleep=sleep)

    assert count == 3
    assert sleep.call_count == 2
    sleep.assert_called_with(2.5)


def test_reports_assessed_oldest_first(db, report_xml_factory, record_factory):
    for name in ["first", "second"]:
        parse_report(db, report_xml_factory(name, record_factory("192.0.2.1"), domain=f"{name}.example"))
    provider = _provider(_low_response(), _low_response())

    analyze_reports(db, provider=provider, request_delay_seconds=0)

    prompts = [c.kwargs["prompt"] for c in provider.complete.call_args_list]
    assert "first.example" in prompts[0]
    assert "second.example" in prompts[1]


def test_transport_error_aborts_stage(db, report_xml_factory, record_factory):
    for i in range(2):
        parse_report(db, report_xml_factory(f"rpt-{i}", record_factory("192.0.2.1")))
    provider = _provider(TransportError("connection refused"))

    with pytest.raises(TransportError):
        analyze_reports(db, provider=provider, sleep=MagicMock())

    assert provider.complete.call_count == 1
    assert _count(db, "ai_analysis") == 0


def test_unexpected_provider_error_is_local(db, report_xml_factory, record_factory):
    for i in range(2):
        parse_report(db, report_xml_factory(f"rpt-{i}", record_factory("192.0.2.1")))
    provider = _provider(RuntimeError("rate limited"), _low_response())

    count = analyze_reports(db, provider=provider, sleep=MagicMock())

    assert count == 1
    pending = db.execute("SELECT report_id FROM dmarc_reports WHERE processed = 0").fetchall()
    assert [r["report_id"] for r in pending] == ["rpt-0"]


def test_existing_analysis_is_not_repeated(db, sample_report_xml):
    result = parse_report(db, sample_report_xml)
    analyze_reports(db, provider=_provider(_low_response()), sleep=MagicMock())
    db.execute("UPDATE dmarc_reports SET processed = 0 WHERE id = ?", (result.report_id,))
    db.commit()
    provider = MagicMock()

    count = analyze_reports(db, provider=provider, sleep=MagicMock())

    assert count == 0
    provider.complete.assert_not_called()
    assert get_report(db, result.report_id).processed is True


def test_provider_resolved_from_model_spec(db, sample_report_xml):
    """Without an explicit provider, get_provider builds one from the model string."""
    parse_report(db, sample_report_xml)
    mock_provider = _provider(_low_response())

    with patch("dmarcsieve.ai.get_provider") as mock_get:
        mock_get.return_value = (mock_provider, "llama3")
        count = analyze_reports(db, model_spec="ollama:llama3", ai_config={"temperature": 0.1})

    assert count == 1
    mock_get.assert_called_once_with("ollama:llama3", config={"temperature": 0.1})
    assert mock_provider.complete.call_args.kwargs["model"] == "llama3"
    assert mock_provider.complete.call_args.kwargs["response_format"] == "json"


def test_missing_api_key_is_configuration_error(db, sample_report_xml):
    parse_report(db, sample_report_xml)
    with pytest.raises(ConfigurationError):
        analyze_reports(db, model_spec="anthropic:claude-3-5-sonnet-20241022",
                        ai_config={"anthropic_api_key": ""})


def test_no_pending_reports_skips_provider(db):
    with patch("dmarcsieve.ai.get_provider") as mock_get:
        assert analyze_reports(db) == 0
    mock_get.assert_not_called()


def test_prompt_contains_normalized_records_not_raw_xml(db, sample_report_xml):
    result = parse_report(db, sample_report_xml)
    report = get_report(db, result.report_id)
    prompt = build_analysis_prompt(report, get_records_by_report_id(db, report.id))

    assert "198.51.100.23" in prompt
    assert '"date_begin": "2024-01-01T00:00:00Z"' in prompt
    assert '"p": "quarantine"' in prompt
    assert "<feedback>" not in prompt
    assert "compliance_status" in prompt


def test_intake_then_assessment_scenario(db, sample_report_xml, critical_response, postal_config):
    """A .gz report with two failing sources ends with one SENT alert."""
    from email.message import EmailMessage

    msg = EmailMessage()
    msg["Subject"] = "Report domain: example.com"
    msg["From"] = "noreply-dmarc-support@google.com"
    msg.add_attachment(gzip.compress(sample_report_xml.encode()), maintype="application",
                       subtype="gzip", filename="google.com!example.com!1704067200!1704153599.xml.gz")

    mailbox = MagicMock()
    mailbox.search_unseen.return_value = ["1"]
    mailbox.fetch_message.return_value = msg.as_bytes()

    IntakeEngine(mailbox, db).run()

    report = db.execute("SELECT * FROM dmarc_reports").fetchone()
    assert report["processed"] == 0
    records = get_records_by_report_id(db, report["id"])
    assert len(records) == 3
    assert sum(1 for r in records if r.dkim == "fail" and r.spf == "fail") == 2

    with patch.object(PostalClient, "send_message", return_value="msg-1"):
        count = analyze_reports(db, postal_config=postal_config,
                                provider=_provider(critical_response), sleep=MagicMock())

    assert count == 1
    assert _count(db, "ai_analysis") == 1
    assert db.execute("SELECT status FROM notifications").fetchone()["status"] == "SENT"
    assert db.execute("SELECT processed FROM dmarc_reports").fetchone()["processed"] == 1
