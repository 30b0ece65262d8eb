"""
Shared pytest fixtures for the Tracr test suite.

Autouse fixtures below isolate tests from live state:
  - Settings      -> fixed secret, cheap password hashing, no rate limits
  - Fleet manager -> fresh temp SQLite database per test
  - Rate limiter  -> fresh in-memory instance per test
"""

from datetime import datetime, timedelta, timezone

import pytest

from tracr.core.auth import issue_session_token
from tracr.core.config import Settings


TEST_SECRET = "test-secret-key-0123456789abcdefghijklmnop"


class FakeClock:
    """Controllable replacement for utc_now()."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_path=str(tmp_path / "tracr.db"),
        secret_key=TEST_SECRET,
        password_hash_iterations=1000,
        rate_limit_enabled=False,
        admin_username="admin",
        admin_password="admin-password-1",
    )


@pytest.fixture(autouse=True)
def _isolate_settings(settings):
    """Every test sees the test Settings through get_settings()."""
    import tracr.core.config as config_mod

    old = config_mod._settings
    config_mod._settings = settings
    yield
    config_mod._settings = old


@pytest.fixture(autouse=True)
def _isolate_fleet():
    """Reset the FleetManager singleton so no test touches data/tracr.db."""
    import tracr.fleet.manager as manager_mod

    old = manager_mod._fleet
    manager_mod._fleet = None
    yield
    current = manager_mod._fleet
    if current is not None and current is not old:
        current.stop()
    manager_mod._fleet = old


@pytest.fixture(autouse=True)
def _isolate_rate_limiter():
    import tracr.api.rate_limiter as limiter_mod

    old = limiter_mod._rate_limiter
    limiter_mod._rate_limiter = None
    yield
    limiter_mod._rate_limiter = old


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def fleet(settings):
    """FleetManager on a temp database, installed as the singleton."""
    from tracr.fleet.manager import FleetManager, set_fleet

    manager = FleetManager(settings)
    set_fleet(manager)
    return manager


@pytest.fixture
def clocked_fleet(settings, clock):
    """FleetManager whose stores read time from ``clock``."""
    from tracr.fleet.manager import FleetManager

    return FleetManager(settings, clock=clock)


@pytest.fixture
def client(fleet):
    from fastapi.testclient import TestClient

    from tracr.api.main import app

    return TestClient(app)


def _headers_for(user, settings):
    token, _ = issue_session_token(user, settings.secret_key, 3600)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_user(fleet):
    return fleet.users.create("root-admin", "admin-password-1", role="admin")


@pytest.fixture
def viewer_user(fleet):
    return fleet.users.create("viewer1", "viewer-password-1", role="viewer")


@pytest.fixture
def admin_headers(admin_user, settings):
    return _headers_for(admin_user, settings)


@pytest.fixture
def viewer_headers(viewer_user, settings):
    return _headers_for(viewer_user, settings)


@pytest.fixture
def make_inventory():
    """Factory for a valid inventory submission (JSON-compatible dict)."""

    def _make(
        hostname="WS001",
        software=None,
        volumes=None,
        collected_at="2026-03-02T08:55:00+00:00",
        boot_time="2026-03-01T21:00:00+00:00",
        cpu_percent=12.5,
    ):
        return {
            "identity": {
                "hostname": hostname,
                "domain": "CORP",
                "last_interactive_user": "jdoe",
                "boot_time": boot_time,
            },
            "os": {
                "caption": "Microsoft Windows 11 Pro",
                "version": "10.0.22631",
                "build_number": "22631",
            },
            "hardware": {
                "manufacturer": "Dell Inc.",
                "model": "Latitude 7440",
                "serial_number": "SN-0001",
            },
            "performance": {
                "cpu_percent": cpu_percent,
                "memory_used_bytes": 8_000_000_000,
                "memory_total_bytes": 16_000_000_000,
            },
            "volumes": volumes if volumes is not None else [
                {"name": "C:", "filesystem": "NTFS", "total_bytes": 500_000, "free_bytes": 125_000},
            ],
            "software": software if software is not None else [
                {"name": "7-Zip", "version": "23.01", "publisher": "Igor Pavlov"},
            ],
            "collected_at": collected_at,
            "agent_version": "1.0.0",
        }

    return _make
