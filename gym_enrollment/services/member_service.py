# gym_enrollment/services/member_service.py
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from unidecode import unidecode

from gym_enrollment.schema.schemas import EnrollmentStats, RecentEnrollment
from gym_enrollment.store.base import (
    SERVER_TIMESTAMP,
    DocumentStore,
    member_path,
    members_collection,
)
from gym_enrollment.utils.time_utils import parse_timestamp, utcnow

logger = logging.getLogger("enrollment")

GYM_MEMBER_ID_PREFIX = "FN"
RECENT_ENROLLMENTS = 10


def _normalize(text: Any) -> str:
    # "Thảo" and "thao" must match the same search
    return unidecode(str(text)).lower().strip()


def _with_ids(doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    member = dict(data)
    member["id"] = doc_id
    member["fingerprintId"] = int(doc_id) if doc_id.isdigit() else None
    member["gymMemberId"] = data.get("gymMemberId") or data.get("Gym_ID") or "N/A"
    return member


class MemberService:
    """Member records of a gym, stored under the fingerprint id the scanner assigned."""

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    # ---------- WRITE ----------

    async def create_from_enrollment(
        self,
        scope_id: str,
        fingerprint_id: int,
        attributes: Dict[str, Any],
        device_id: str,
    ) -> Dict[str, Any]:
        """Persist the member once the scanner has confirmed the enrollment."""
        fingerprint_id = int(fingerprint_id)
        data = dict(attributes)
        data.update({
            "id": str(fingerprint_id),
            "fingerprintId": fingerprint_id,
            "enrollmentStatus": "completed",
            "enrolledByDevice": device_id,
            "enrollmentTimestamp": SERVER_TIMESTAMP,
            "createdAt": SERVER_TIMESTAMP,
            "updatedAt": SERVER_TIMESTAMP,
        })

        saved = await self.store.set(member_path(scope_id, fingerprint_id), data)
        logger.info(f"[MEMBER] {scope_id} | created member {fingerprint_id} ({data.get('Name')})")
        return saved

    async def delete_member(self, scope_id: str, fingerprint_id: int) -> bool:
        path = member_path(scope_id, fingerprint_id)
        if await self.store.get(path) is None:
            return False
        await self.store.delete(path)
        logger.info(f"[MEMBER] {scope_id} | deleted member {fingerprint_id}")
        return True

    # ---------- READ ----------

    async def get_by_fingerprint_id(self, scope_id: str, fingerprint_id: int) -> Optional[Dict[str, Any]]:
        data = await self.store.get(member_path(scope_id, fingerprint_id))
        if data is None:
            return None
        return _with_ids(str(fingerprint_id), data)

    async def list_members(self, scope_id: str) -> List[Dict[str, Any]]:
        docs = await self.store.list(members_collection(scope_id))
        members = [_with_ids(doc_id, data) for doc_id, data in docs]
        return sorted(members, key=lambda m: _normalize(m.get("Name") or ""))

    async def search_members(self, scope_id: str, term: str) -> List[Dict[str, Any]]:
        """Partial match on name, gym member id, document id or fingerprint id."""
        needle = _normalize(term)
        if not needle:
            return await self.list_members(scope_id)

        result = []
        for member in await self.list_members(scope_id):
            candidates = [member.get("Name") or "", member["id"]]
            if member["gymMemberId"] != "N/A":
                candidates.append(member["gymMemberId"])
            if member["fingerprintId"] is not None:
                candidates.append(str(member["fingerprintId"]))

            if any(needle in _normalize(c) for c in candidates):
                result.append(member)
        return result

    # ---------- GYM MEMBER ID ----------

    async def _gym_member_ids(self, scope_id: str, exclude_id: Optional[str] = None) -> Dict[str, str]:
        ids = {}
        for doc_id, data in await self.store.list(members_collection(scope_id)):
            if doc_id == exclude_id:
                continue
            existing = data.get("gymMemberId") or data.get("Gym_ID")
            if existing:
                ids[str(existing).strip().lower()] = doc_id
        return ids

    async def validate_gym_member_id(
        self, scope_id: str, gym_member_id: str, exclude_id: Optional[str] = None
    ) -> Tuple[bool, Optional[str]]:
        candidate = (gym_member_id or "").strip()
        if not candidate:
            return False, "Gym Member ID is required"
        if candidate.isdigit():
            return False, "Gym Member ID must not be purely numeric"
        if candidate.lower() in await self._gym_member_ids(scope_id, exclude_id):
            return False, "This Gym Member ID is already in use"
        return True, None

    async def generate_gym_member_id(self, scope_id: str) -> str:
        """Next free id of the form FN001, FN002..."""
        taken = await self._gym_member_ids(scope_id)
        number = len(await self.store.list(members_collection(scope_id))) + 1
        while True:
            candidate = f"{GYM_MEMBER_ID_PREFIX}{number:03d}"
            if candidate.lower() not in taken:
                return candidate
            number += 1

    # ---------- STATISTICS ----------

    async def get_enrollment_stats(self, scope_id: str, device_id: Optional[str] = None) -> EnrollmentStats:
        now = self.clock()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        this_week = today - timedelta(days=7)
        this_month = today.replace(day=1)

        stats = EnrollmentStats()
        recent: List[RecentEnrollment] = []

        for doc_id, data in await self.store.list(members_collection(scope_id)):
            device = data.get("enrolledByDevice") or "unknown"
            if device_id and device != device_id:
                continue
            stats.total += 1

            enrolled_at = parse_timestamp(data.get("enrollmentTimestamp"))
            if enrolled_at is None:
                continue

            if enrolled_at >= today:
                stats.today += 1
            if enrolled_at >= this_week:
                stats.this_week += 1
            if enrolled_at >= this_month:
                stats.this_month += 1
            stats.by_device[device] = stats.by_device.get(device, 0) + 1

            recent.append(RecentEnrollment(
                name=data.get("Name"),
                fingerprint_id=data.get("fingerprintId"),
                date=enrolled_at,
                device=device,
            ))

        recent.sort(key=lambda r: r.date, reverse=True)
        stats.recent_enrollments = recent[:RECENT_ENROLLMENTS]
        return stats
