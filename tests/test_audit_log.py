from datetime import datetime, timezone

from fakes import APP_ID
from flightsign.src.core.audit_log import AuditLog
from flightsign.src.core.models import DeploymentRecord

FIXED = datetime(2024, 5, 1, 12, 30, 0, tzinfo=timezone.utc)


def make_log(tmp_path) -> AuditLog:
    return AuditLog(tmp_path / "audit.log", clock=lambda: FIXED, echo=False)


def test_line_format(tmp_path) -> None:
    log = make_log(tmp_path)
    line = log.record("VERSION_RESOLVED", APP_ID, "2.0.0", 42, "build 42 (remote 41)")
    assert line == "2024-05-01T12:30:00+00:00: VERSION_RESOLVED - com.acme.app v2.0.0 (42) - build 42 (remote 41)"
    assert (tmp_path / "audit.log").read_text() == line + "\n"


def test_missing_values_are_dashes(tmp_path) -> None:
    log = make_log(tmp_path)
    line = log.record("CERTIFICATE_REUSED", APP_ID, None, None, "reused CERT1")
    assert "com.acme.app v- (-) - reused CERT1" in line
    entry = log.entries()[0]
    assert (entry.version, entry.build) == ("-", "-")


def test_build_zero_is_not_a_dash(tmp_path) -> None:
    assert "(0)" in make_log(tmp_path).record("X", APP_ID, "1.0.0", 0, "ok")


def test_multiline_status_stays_on_one_line(tmp_path) -> None:
    log = make_log(tmp_path)
    log.record("UPLOAD_FAILED", APP_ID, "1.0.0", 3, "first line\nsecond   line")
    log.record("UPLOAD_ATTEMPT", APP_ID, "1.0.0", 3, "ok")
    entries = log.entries()
    assert len(entries) == 2
    assert entries[0].status == "first line second line"
    assert [e.event for e in log.events("UPLOAD_ATTEMPT")] == ["UPLOAD_ATTEMPT"]


def test_entries_are_appended(tmp_path) -> None:
    log = make_log(tmp_path)
    for build in (1, 2, 3):
        log.record("DEPLOYMENT", APP_ID, "1.0.0", build, "VALID")
    assert [e.build for e in log.entries()] == ["1", "2", "3"]
    assert AuditLog(tmp_path / "missing.log").entries() == []


def test_deployment_record(tmp_path) -> None:
    log = make_log(tmp_path)
    record = DeploymentRecord(
        timestamp=FIXED,
        app_identifier=APP_ID,
        team_id="ABCDE12345",
        version="2.0.0",
        build_number=42,
        processing_status="VALID",
        upload_strategy="altool",
        duration_seconds=12.34,
        locally_resolved=True,
    )
    line = log.record_deployment(record)
    assert line.endswith("DEPLOYMENT - com.acme.app v2.0.0 (42) - VALID via altool in 12.3s [locally resolved]")
