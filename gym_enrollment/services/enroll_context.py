# gym_enrollment/services/enroll_context.py
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from gym_enrollment.models.models import AttemptState
from gym_enrollment.utils.time_utils import utcnow


@dataclass
class AttemptInfo:
    scope_id: str
    device_id: str
    correlation_id: str
    subject_name: str
    state: AttemptState = AttemptState.IDLE
    started_at: object = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlationId": self.correlation_id,
            "subjectName": self.subject_name,
            "state": self.state.value,
            "startedAt": self.started_at,
        }


class EnrollContext:
    """
    Attempts started by this process, keyed by (gym, device).

    One instance is created by the Container and passed to whoever needs it;
    there is no module-level copy. The entry for a device is replaced when a
    newer attempt starts, so it only ever describes the latest attempt.
    """

    def __init__(self):
        self._storage: Dict[Tuple[str, str], AttemptInfo] = {}

    def set(self, info: AttemptInfo):
        self._storage[(info.scope_id, info.device_id)] = info

    def get(self, scope_id: str, device_id: str) -> Optional[AttemptInfo]:
        return self._storage.get((scope_id, device_id))

    def invalidate(self, scope_id: str, device_id: str, correlation_id: Optional[str] = None):
        """Drop the entry. With a correlation id, only if it still belongs to that attempt."""
        key = (scope_id, device_id)
        info = self._storage.get(key)
        if info is None:
            return
        if correlation_id is None or info.correlation_id == correlation_id:
            del self._storage[key]

    def active(self):
        return [info for info in self._storage.values() if not info.state.is_terminal]

    def clear(self):
        self._storage.clear()
