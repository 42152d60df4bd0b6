# gym_enrollment/services/device_service.py
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from gym_enrollment.core.config import settings
from gym_enrollment.models.models import ReportedState
from gym_enrollment.schema.schemas import AvailabilityResult, DevicePresence
from gym_enrollment.store.base import DocumentStore, device_path, devices_collection
from gym_enrollment.utils.time_utils import parse_timestamp, utcnow

logger = logging.getLogger("presence")


def _capabilities(raw: Any) -> Dict[str, bool]:
    # Older firmware sends a list of flags instead of a map
    if isinstance(raw, dict):
        return {str(k): bool(v) for k, v in raw.items()}
    if isinstance(raw, (list, tuple)):
        return {str(flag): True for flag in raw}
    return {}


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class DeviceService:
    """
    Presence tracker: online/offline judgment for the scanners of a gym.

    Presence documents are written only by the devices themselves. This
    service never writes; every answer is computed at call time from the
    heartbeat age and the state the device reports.
    """

    def __init__(self, store: DocumentStore,
                 clock: Callable[[], datetime] = utcnow,
                 reachability_window: Optional[float] = None):
        self.store = store
        self.clock = clock
        if reachability_window is None:
            reachability_window = settings.REACHABILITY_WINDOW_SECONDS
        self.reachability_window = timedelta(seconds=reachability_window)

    def to_presence(self, device_id: str, data: Dict[str, Any],
                    now: Optional[datetime] = None) -> DevicePresence:
        now = now or self.clock()
        last_heartbeat = parse_timestamp(data.get("lastHeartbeat"))

        if last_heartbeat is None:
            # Never seen -> offline
            is_reachable = False
            age = None
        else:
            diff = now - last_heartbeat
            is_reachable = diff < self.reachability_window
            age = int(diff.total_seconds())

        return DevicePresence(
            device_id=device_id,
            location=str(data.get("location") or "Unknown Location"),
            reported_state=str(data.get("reportedState") or "unknown"),
            is_reachable=is_reachable,
            last_heartbeat=last_heartbeat,
            seconds_since_heartbeat=age,
            capabilities=_capabilities(data.get("capabilities")),
            firmware_version=str(data.get("firmwareVersion") or "unknown"),
            uptime_seconds=_int_or_none(data.get("uptimeSeconds")),
        )

    async def get_presence(self, scope_id: str, device_id: str) -> Optional[DevicePresence]:
        data = await self.store.get(device_path(scope_id, device_id))
        if data is None:
            return None
        return self.to_presence(device_id, data)

    async def list_devices(self, scope_id: str) -> List[DevicePresence]:
        now = self.clock()
        docs = await self.store.list(devices_collection(scope_id))
        devices = [self.to_presence(device_id, data, now) for device_id, data in docs]
        return sorted(devices, key=lambda d: (d.location, d.device_id))

    async def check_availability(self, scope_id: str, device_id: str) -> AvailabilityResult:
        try:
            presence = await self.get_presence(scope_id, device_id)
        except Exception as e:
            # Unreadable store or presence document: not available, never a crash
            logger.error(f"[PRESENCE] {scope_id}/{device_id} | error checking device: {e}")
            return AvailabilityResult(
                available=False,
                code="error",
                reason=f"Error checking device: {e}",
            )

        if presence is None:
            return AvailabilityResult(
                available=False,
                code="not_found",
                reason="Device not found - check device ID and ensure the scanner is registered",
            )

        if not presence.is_reachable:
            if presence.seconds_since_heartbeat is None:
                reason = "Device offline - no heartbeat received"
            else:
                reason = f"Device offline - last seen {presence.seconds_since_heartbeat}s ago"
            return AvailabilityResult(available=False, code="offline", reason=reason)

        if presence.reported_state != ReportedState.ONLINE.value:
            return AvailabilityResult(
                available=False,
                code="not_online",
                reason=f"Device status: {presence.reported_state}",
            )

        return AvailabilityResult(
            available=True,
            code="ok",
            reason="Device is online and ready",
            info={
                "location": presence.location,
                "firmwareVersion": presence.firmware_version,
                "capabilities": presence.capabilities,
                "uptimeSeconds": presence.uptime_seconds,
            },
        )
