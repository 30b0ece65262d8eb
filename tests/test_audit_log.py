"""Tests for the audit log.

Covers:
  - Inline writes when the writer thread is stopped
  - Queued writes drained by the writer thread
  - Filters: action, user, device, inclusive time range
  - RFC 3339 validation of range bounds
  - Append never raising on storage failure
"""

import pytest

from tracr.core.audit_log import (
    ACTION_CREATE_COMMAND,
    ACTION_LOGIN,
    ACTION_LOGIN_FAILED,
    AuditLogger,
    parse_rfc3339,
)
from tracr.core.errors import BadRequest


@pytest.fixture
def audit(tmp_path, clock):
    return AuditLogger(tmp_path / "audit.db", clock=clock)


class TestAppend:

    def test_inline_write(self, audit):
        entry_id = audit.append(
            ACTION_LOGIN, user_id="u-1", username="alice",
            ip_address="10.0.0.5", user_agent="pytest",
        )
        page = audit.query()
        assert page.total == 1
        entry = page.items[0]
        assert entry["id"] == entry_id
        assert entry["action"] == "login"
        assert entry["username"] == "alice"
        assert entry["ip_address"] == "10.0.0.5"
        assert entry["details"] == {}

    def test_details_round_trip(self, audit):
        audit.append(ACTION_CREATE_COMMAND, details={"command_type": "refresh_now"})
        assert audit.query().items[0]["details"] == {"command_type": "refresh_now"}

    def test_writer_thread_and_flush(self, audit):
        audit.start()
        try:
            assert audit.is_running
            for i in range(20):
                audit.append(ACTION_LOGIN, username=f"user-{i}")
            assert audit.flush(timeout=5)
            assert audit.query().total == 20
        finally:
            audit.stop()
        assert not audit.is_running

    def test_storage_failure_never_raises(self, audit):
        audit.db_path = audit.db_path.parent / "missing-dir" / "nested" / "audit.db"
        audit.append(ACTION_LOGIN, username="alice")

    def test_newest_first(self, audit, clock):
        audit.append(ACTION_LOGIN, username="first")
        clock.advance(seconds=1)
        audit.append(ACTION_LOGIN, username="second")
        assert [e["username"] for e in audit.query().items] == ["second", "first"]


class TestQueryFilters:

    @pytest.fixture
    def history(self, audit, clock):
        audit.append(ACTION_LOGIN, user_id="u-1", username="alice")
        clock.advance(hours=1)
        audit.append(ACTION_LOGIN_FAILED, username="mallory")
        clock.advance(hours=1)
        audit.append(ACTION_CREATE_COMMAND, user_id="u-1", device_id="d-1", hostname="WS001")
        return audit

    def test_action_filter(self, history):
        page = history.query(action="login_failed")
        assert [e["username"] for e in page.items] == ["mallory"]

    def test_user_filter(self, history):
        assert history.query(user_id="u-1").total == 2

    def test_device_filter(self, history):
        page = history.query(device_id="d-1")
        assert [e["hostname"] for e in page.items] == ["WS001"]

    def test_time_range_inclusive(self, history):
        page = history.query(
            start_date="2026-03-02T10:00:00Z", end_date="2026-03-02T11:00:00+00:00"
        )
        assert [e["action"] for e in page.items] == ["create_command", "login_failed"]

    def test_offset_timezone(self, history):
        page = history.query(end_date="2026-03-02T10:00:00+01:00")
        assert [e["action"] for e in page.items] == ["login"]

    def test_start_after_end(self, history):
        with pytest.raises(BadRequest):
            history.query(start_date="2026-03-03T00:00:00Z", end_date="2026-03-02T00:00:00Z")

    def test_pagination(self, history):
        page = history.query(page=2, limit=2)
        assert page.total == 3
        assert [e["action"] for e in page.items] == ["login"]


class TestRfc3339:

    def test_utc_z(self):
        assert parse_rfc3339("2026-03-02T09:00:00Z", "start_date").startswith(
            "2026-03-02T09:00:00"
        )

    def test_offset_normalized_to_utc(self):
        assert parse_rfc3339("2026-03-02T11:00:00+02:00", "start_date").startswith(
            "2026-03-02T09:00:00"
        )

    @pytest.mark.parametrize("value", [
        "2026-03-02", "2026-03-02T09:00:00", "yesterday", "2026-13-02T09:00:00Z",
    ])
    def test_invalid(self, value):
        with pytest.raises(BadRequest, match="start_date"):
            parse_rfc3339(value, "start_date")
