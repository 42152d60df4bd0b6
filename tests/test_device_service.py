"""
Unit tests for the presence tracker.
Coverage: heartbeat window, reported state, unknown device, never-seen device,
listing and ordering, capability formats, read-only behaviour.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from gym_enrollment.core.exceptions import StoreConnectionError
from gym_enrollment.services.device_service import DeviceService
from gym_enrollment.store.base import device_path
from gym_enrollment.store.memory import InMemoryDocumentStore
from helpers import DEVICE, GYM, run

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def fixed_clock():
    return NOW


def seed(store, device_id=DEVICE, **fields):
    data = {
        "reportedState": "online",
        "lastHeartbeat": NOW - timedelta(seconds=10),
        "location": "Front desk",
    }
    data.update(fields)
    run(store.set(device_path(GYM, device_id), data))


def make_tracker(store):
    return DeviceService(store, clock=fixed_clock, reachability_window=120)


# ============================================================
# check_availability
# ============================================================

def test_online_device_with_fresh_heartbeat_is_available():
    store = InMemoryDocumentStore()
    seed(store, capabilities={"enrollment": True}, firmwareVersion="2.0.1", uptimeSeconds=42)

    result = run(make_tracker(store).check_availability(GYM, DEVICE))

    assert result.available is True
    assert result.code == "ok"
    assert result.info["location"] == "Front desk"
    assert result.info["firmwareVersion"] == "2.0.1"
    assert result.info["capabilities"] == {"enrollment": True}
    assert result.info["uptimeSeconds"] == 42


@pytest.mark.parametrize("age, available", [
    (0, True),
    (119, True),
    (120, False),
    (121, False),
    (300, False),
])
def test_heartbeat_window_is_strict(age, available):
    """Reachable only if now - lastHeartbeat < 120 s."""
    store = InMemoryDocumentStore()
    seed(store, lastHeartbeat=NOW - timedelta(seconds=age))

    result = run(make_tracker(store).check_availability(GYM, DEVICE))

    assert result.available is available
    if not available:
        assert result.code == "offline"
        assert result.reason == f"Device offline - last seen {age}s ago"


def test_non_online_state_is_reported_as_such():
    store = InMemoryDocumentStore()
    seed(store, reportedState="busy")

    result = run(make_tracker(store).check_availability(GYM, DEVICE))

    assert result.available is False
    assert result.code == "not_online"
    assert result.reason == "Device status: busy"


def test_stale_heartbeat_wins_over_reported_state():
    store = InMemoryDocumentStore()
    seed(store, reportedState="busy", lastHeartbeat=NOW - timedelta(minutes=10))

    assert run(make_tracker(store).check_availability(GYM, DEVICE)).code == "offline"


def test_unknown_device():
    result = run(make_tracker(InMemoryDocumentStore()).check_availability(GYM, "ghost"))

    assert result.available is False
    assert result.code == "not_found"
    assert "not found" in result.reason


def test_device_without_heartbeat_is_offline():
    store = InMemoryDocumentStore()
    seed(store, lastHeartbeat=None)

    result = run(make_tracker(store).check_availability(GYM, DEVICE))

    assert result.code == "offline"
    assert result.reason == "Device offline - no heartbeat received"


def test_iso_and_epoch_heartbeats_are_understood():
    store = InMemoryDocumentStore()
    seed(store, "iso", lastHeartbeat="2026-03-01T11:59:30Z")
    seed(store, "epoch_ms", lastHeartbeat=int((NOW - timedelta(seconds=30)).timestamp() * 1000))
    tracker = make_tracker(store)

    assert run(tracker.check_availability(GYM, "iso")).available is True
    assert run(tracker.check_availability(GYM, "epoch_ms")).available is True


def test_numeric_presence_fields_are_coerced():
    store = InMemoryDocumentStore()
    seed(store, location=3, firmwareVersion=2, reportedState="online")

    result = run(make_tracker(store).check_availability(GYM, DEVICE))

    assert result.available is True
    assert result.info["location"] == "3"
    assert result.info["firmwareVersion"] == "2"


def test_store_read_error_is_reported_not_raised():
    store = MagicMock()
    store.get = AsyncMock(side_effect=StoreConnectionError(message="broker unreachable"))

    result = run(make_tracker(store).check_availability(GYM, DEVICE))

    assert result.available is False
    assert result.code == "error"
    assert result.reason == "Error checking device: broker unreachable"


def test_availability_check_writes_nothing():
    store = InMemoryDocumentStore()
    seed(store, reportedState="busy")
    writes_before = list(store.write_log)

    run(make_tracker(store).check_availability(GYM, DEVICE))
    run(make_tracker(store).list_devices(GYM))

    assert store.write_log == writes_before


# ============================================================
# list_devices
# ============================================================

def test_list_devices_sorted_by_location():
    store = InMemoryDocumentStore()
    seed(store, "dev_b", location="Studio")
    seed(store, "dev_a", location="Entrance", lastHeartbeat=NOW - timedelta(minutes=5))
    seed(store, "dev_c", location=None, reportedState=None)
    # Mailbox documents below a device are not devices
    run(store.set(f"{device_path(GYM, 'dev_b')}/commands/enroll", {"status": "pending"}))

    devices = run(make_tracker(store).list_devices(GYM))

    assert [d.device_id for d in devices] == ["dev_a", "dev_b", "dev_c"]
    entrance, studio, unknown = devices
    assert entrance.is_reachable is False
    assert entrance.seconds_since_heartbeat == 300
    assert studio.is_available is True
    assert unknown.location == "Unknown Location"
    assert unknown.reported_state == "unknown"


def test_list_of_capabilities_becomes_flag_map():
    store = InMemoryDocumentStore()
    seed(store, capabilities=["enrollment", "audio"])

    device = run(make_tracker(store).list_devices(GYM))[0]

    assert device.capabilities == {"enrollment": True, "audio": True}


def test_list_devices_of_empty_gym():
    assert run(make_tracker(InMemoryDocumentStore()).list_devices("empty")) == []
