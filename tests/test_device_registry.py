"""Tests for the device registry.

Covers:
  - Idempotent registration by hostname (same id + token, no new row)
  - Token verification and unknown-device signalling
  - Heartbeat liveness and read-time online derivation
  - Listing: search, status filter, ordering, latest snapshot, pagination round trip
  - Stats counters and cascade delete
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from tracr.core.db import format_ts
from tracr.core.errors import BadRequest, DeviceNotRegistered, NotFound, Unauthorized
from tracr.fleet.database import FleetDatabase
from tracr.fleet.devices import DeviceRegistry, compute_is_online, compute_uptime_hours


def _device_count(fleet) -> int:
    with fleet.db.connection() as conn:
        return conn.execute("SELECT COUNT(*) FROM devices").fetchone()[0]


# ── Registration ─────────────────────────────────────────────────────


class TestRegistration:

    def test_register_new_device(self, fleet):
        reg = fleet.devices.register("WS001", "Windows 11", "1.0")
        assert reg.created is True
        assert len(reg.device_id) == 36
        assert len(reg.device_token) == 64

    def test_register_same_hostname_is_idempotent(self, fleet):
        first = fleet.devices.register("WS001", "Windows 11", "1.0")
        second = fleet.devices.register("WS001", "Windows 11", "1.0")
        assert second.created is False
        assert (second.device_id, second.device_token) == (first.device_id, first.device_token)
        assert _device_count(fleet) == 1

    def test_different_hostnames_get_different_devices(self, fleet):
        a = fleet.devices.register("WS001")
        b = fleet.devices.register("WS002")
        assert a.device_id != b.device_id
        assert a.device_token != b.device_token
        assert _device_count(fleet) == 2

    def test_reregistration_refreshes_last_seen_and_versions(self, clocked_fleet, clock):
        reg = clocked_fleet.devices.register("WS001", "Windows 10", "1.0")
        clock.advance(minutes=30)
        clocked_fleet.devices.register("WS001", "Windows 11", "1.1")
        device = clocked_fleet.devices.get(reg.device_id)
        assert device["last_seen"] == format_ts(clock.now)
        assert device["os_version"] == "Windows 11"
        assert device["agent_version"] == "1.1"
        assert device["status"] == "active"

    def test_raw_token_not_stored(self, fleet):
        reg = fleet.devices.register("WS001")
        with fleet.db.connection() as conn:
            row = conn.execute("SELECT * FROM devices WHERE id = ?", (reg.device_id,)).fetchone()
        assert reg.device_token not in dict(row).values()

    def test_blank_hostname_rejected(self, fleet):
        with pytest.raises(BadRequest):
            fleet.devices.register("   ")

    def test_concurrent_registration_same_hostname(self, fleet):
        results = []

        def worker():
            results.append(fleet.devices.register("RACE-01"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len({(r.device_id, r.device_token) for r in results}) == 1
        assert sum(1 for r in results if r.created) == 1
        assert _device_count(fleet) == 1

    def test_secret_rotation_issues_new_token(self, tmp_path):
        db = FleetDatabase(tmp_path / "rot.db")
        old = DeviceRegistry(db, secret_key="a" * 40).register("WS001")
        new_registry = DeviceRegistry(db, secret_key="b" * 40)
        rotated = new_registry.register("WS001")
        assert rotated.device_id == old.device_id
        assert rotated.device_token != old.device_token
        assert new_registry.authenticate(rotated.device_id, rotated.device_token)
        with pytest.raises(Unauthorized):
            new_registry.authenticate(old.device_id, old.device_token)


# ── Authentication & heartbeat ───────────────────────────────────────


class TestAuthentication:

    def test_valid_token(self, fleet):
        reg = fleet.devices.register("WS001")
        device = fleet.devices.authenticate(reg.device_id, reg.device_token)
        assert device["hostname"] == "WS001"

    def test_wrong_token(self, fleet):
        reg = fleet.devices.register("WS001")
        with pytest.raises(Unauthorized):
            fleet.devices.authenticate(reg.device_id, "0" * 64)

    def test_other_devices_token_rejected(self, fleet):
        a = fleet.devices.register("WS001")
        b = fleet.devices.register("WS002")
        with pytest.raises(Unauthorized):
            fleet.devices.authenticate(a.device_id, b.device_token)

    def test_unknown_device(self, fleet):
        with pytest.raises(DeviceNotRegistered):
            fleet.devices.authenticate("no-such-device", "0" * 64)

    def test_heartbeat_updates_last_seen(self, clocked_fleet, clock):
        reg = clocked_fleet.devices.register("WS001")
        clock.advance(minutes=3)
        assert clocked_fleet.devices.heartbeat(reg.device_id) is True
        assert clocked_fleet.devices.get(reg.device_id)["last_seen"] == format_ts(clock.now)

    def test_heartbeat_unknown_device(self, fleet):
        assert fleet.devices.heartbeat("no-such-device") is False


# ── Online derivation ────────────────────────────────────────────────


class TestOnlineDerivation:

    NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def test_nine_minutes_is_online(self):
        assert compute_is_online(self.NOW - timedelta(minutes=9), self.NOW)

    def test_eleven_minutes_is_offline(self):
        assert not compute_is_online(self.NOW - timedelta(minutes=11), self.NOW)

    def test_exactly_threshold_is_offline(self):
        assert not compute_is_online(self.NOW - timedelta(minutes=10), self.NOW)

    def test_accepts_stored_string(self):
        assert compute_is_online(format_ts(self.NOW - timedelta(minutes=1)), self.NOW)

    def test_custom_threshold(self):
        last = self.NOW - timedelta(minutes=20)
        assert compute_is_online(last, self.NOW, threshold=timedelta(minutes=30))

    def test_independent_of_status(self, clocked_fleet, clock):
        reg = clocked_fleet.devices.register("WS001")
        clocked_fleet.devices.set_status(reg.device_id, "error")
        assert clocked_fleet.devices.get(reg.device_id)["is_online"] is True
        clock.advance(minutes=11)
        assert clocked_fleet.devices.get(reg.device_id)["is_online"] is False

    def test_uptime_hours(self):
        assert compute_uptime_hours(self.NOW - timedelta(hours=5, minutes=59), self.NOW) == 5
        assert compute_uptime_hours(None, self.NOW) is None
        assert compute_uptime_hours(self.NOW + timedelta(hours=1), self.NOW) is None


# ── Listing ──────────────────────────────────────────────────────────


class TestListing:

    def test_search_hostname_case_insensitive(self, fleet):
        fleet.devices.register("ACCT-LAPTOP-01")
        fleet.devices.register("ENG-DESKTOP-07")
        page = fleet.devices.list(search="laptop")
        assert [d["hostname"] for d in page.items] == ["ACCT-LAPTOP-01"]

    def test_search_matches_os_caption(self, fleet, make_inventory):
        reg = fleet.devices.register("WS001")
        fleet.devices.register("WS002")
        fleet.snapshots.submit(reg.device_id, make_inventory(hostname="WS001"))
        page = fleet.devices.list(search="windows 11")
        assert [d["id"] for d in page.items] == [reg.device_id]

    def test_search_treats_wildcards_literally(self, fleet):
        fleet.devices.register("WS_001")
        fleet.devices.register("WSX001")
        assert [d["hostname"] for d in fleet.devices.list(search="ws_").items] == ["WS_001"]

    def test_status_filter(self, fleet):
        a = fleet.devices.register("WS001")
        fleet.devices.register("WS002")
        fleet.devices.set_status(a.device_id, "error")
        page = fleet.devices.list(status="error")
        assert page.total == 1
        assert page.items[0]["id"] == a.device_id

    def test_invalid_status_filter(self, fleet):
        with pytest.raises(BadRequest):
            fleet.devices.list(status="bogus")

    def test_ordered_by_last_seen_desc(self, clocked_fleet, clock):
        old = clocked_fleet.devices.register("OLD")
        clock.advance(minutes=1)
        new = clocked_fleet.devices.register("NEW")
        ids = [d["id"] for d in clocked_fleet.devices.list().items]
        assert ids == [new.device_id, old.device_id]

    def test_token_columns_never_listed(self, fleet):
        fleet.devices.register("WS001")
        item = fleet.devices.list().items[0]
        assert "device_token_hash" not in item
        assert "device_token_enc" not in item

    def test_latest_snapshot_on_list_items(self, fleet, make_inventory):
        bare = fleet.devices.register("BARE")
        reg = fleet.devices.register("WS001")
        fleet.snapshots.submit(reg.device_id, make_inventory(collected_at="2026-03-01T08:00:00Z"))
        newest = fleet.snapshots.submit(
            reg.device_id, make_inventory(collected_at="2026-03-02T08:00:00Z", cpu_percent=55)
        )

        items = {d["hostname"]: d for d in fleet.devices.list().items}
        assert items["BARE"]["latest_snapshot"] is None
        summary = items["WS001"]["latest_snapshot"]
        assert summary["id"] == newest.snapshot_id
        assert summary["cpu_percent"] == 55
        assert set(summary) == {
            "id", "collected_at", "cpu_percent", "memory_used_bytes",
            "memory_total_bytes", "boot_time",
        }
        assert fleet.devices.get(bare.device_id)["latest_snapshot"] is None
        assert fleet.devices.get(reg.device_id)["latest_snapshot"] == summary

    def test_pagination_round_trip(self, clocked_fleet, clock):
        for i in range(23):
            clocked_fleet.devices.register(f"HOST-{i:02d}")
            clock.advance(seconds=1)

        seen = []
        first = clocked_fleet.devices.list(page=1, limit=10)
        assert first.pagination() == {"total": 23, "page": 1, "limit": 10, "total_pages": 3}
        for page_no in range(1, first.total_pages + 1):
            seen.extend(d["id"] for d in clocked_fleet.devices.list(page=page_no, limit=10).items)

        assert len(seen) == 23
        assert len(set(seen)) == 23

    def test_page_and_limit_normalized(self, fleet):
        fleet.devices.register("WS001")
        page = fleet.devices.list(page=0, limit=500)
        assert (page.page, page.limit) == (1, 50)


# ── Stats & delete ───────────────────────────────────────────────────


class TestStatsAndDelete:

    def test_stats(self, clocked_fleet, clock):
        clocked_fleet.devices.register("STALE")
        clock.advance(minutes=15)
        clocked_fleet.devices.register("FRESH")
        broken = clocked_fleet.devices.register("BROKEN")
        clocked_fleet.devices.set_status(broken.device_id, "error")

        assert clocked_fleet.devices.stats() == {
            "total": 3, "online": 2, "offline": 1, "error": 1,
        }

    def test_stats_empty(self, fleet):
        assert fleet.devices.stats() == {"total": 0, "online": 0, "offline": 0, "error": 0}

    def test_delete_cascades(self, fleet, make_inventory):
        reg = fleet.devices.register("WS001")
        fleet.snapshots.submit(reg.device_id, make_inventory())
        fleet.commands.create(reg.device_id, "refresh_now")

        removed = fleet.devices.delete(reg.device_id)
        assert removed["hostname"] == "WS001"

        with fleet.db.connection() as conn:
            for table in ("devices", "snapshots", "snapshot_volumes",
                          "snapshot_software", "commands"):
                assert conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0] == 0

    def test_delete_unknown(self, fleet):
        with pytest.raises(NotFound):
            fleet.devices.delete("no-such-device")

    def test_deleted_device_token_invalid(self, fleet):
        reg = fleet.devices.register("WS001")
        fleet.devices.delete(reg.device_id)
        with pytest.raises(DeviceNotRegistered):
            fleet.devices.authenticate(reg.device_id, reg.device_token)

    def test_get_unknown(self, fleet):
        with pytest.raises(NotFound):
            fleet.devices.get("no-such-device")
