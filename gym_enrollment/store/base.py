# gym_enrollment/store/base.py
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

Document = Dict[str, Any]
ChangeCallback = Callable[[Optional[Document]], None]
ErrorCallback = Callable[[BaseException], None]


class _ServerTimestamp:
    def __repr__(self):
        return "SERVER_TIMESTAMP"


# Placeholder replaced by the store with its own clock at write time
SERVER_TIMESTAMP = _ServerTimestamp()


# ---------- DOCUMENT PATHS ----------

def device_path(scope_id: str, device_id: str) -> str:
    return f"gyms/{scope_id}/devices/{device_id}"


def devices_collection(scope_id: str) -> str:
    return f"gyms/{scope_id}/devices"


def mailbox_path(scope_id: str, device_id: str) -> str:
    return f"gyms/{scope_id}/devices/{device_id}/commands/enroll"


def members_collection(scope_id: str) -> str:
    return f"gyms/{scope_id}/members"


def member_path(scope_id: str, fingerprint_id: int) -> str:
    return f"gyms/{scope_id}/members/{fingerprint_id}"


def resolve_server_timestamps(data: Document, now: Optional[datetime] = None) -> Document:
    now = now or datetime.now(timezone.utc)
    return {k: (now if v is SERVER_TIMESTAMP else v) for k, v in data.items()}


# ---------- SUBSCRIPTION ----------

class Subscription:
    """
    Handle returned by DocumentStore.watch().

    unsubscribe() may be called any number of times; after the first call no
    further callbacks are delivered.
    """

    def __init__(self, path: str, on_change: ChangeCallback,
                 on_error: Optional[ErrorCallback] = None,
                 on_close: Optional[Callable[["Subscription"], None]] = None):
        self.path = path
        self._on_change = on_change
        self._on_error = on_error
        self._on_close = on_close
        self.active = True

    def deliver(self, data: Optional[Document]):
        if self.active:
            self._on_change(data)

    def fail(self, exc: BaseException):
        if not self.active:
            return
        # A failed subscription is closed: nothing is delivered after the error
        self.unsubscribe()
        if self._on_error:
            self._on_error(exc)

    def unsubscribe(self):
        if not self.active:
            return
        self.active = False
        if self._on_close:
            self._on_close(self)

    __call__ = unsubscribe


# ---------- STORE INTERFACE ----------

class DocumentStore(ABC):
    """
    Shared document store used as the message bus between the API and the devices.

    Guarantees expected from an implementation:
    - each single-document write is atomic
    - watchers of a document see its mutations in write order
    - watch() delivers the current snapshot (or None) first
    """

    async def connect(self):
        pass

    async def close(self):
        pass

    @abstractmethod
    async def get(self, path: str) -> Optional[Document]:
        pass

    @abstractmethod
    async def set(self, path: str, data: Document) -> Document:
        """Create or overwrite the document."""

    @abstractmethod
    async def update(self, path: str, fields: Document) -> Document:
        """Merge fields into an existing document. Raises KeyError if it does not exist."""

    @abstractmethod
    async def compare_and_set(self, path: str, data: Document,
                              predicate: Callable[[Optional[Document]], bool]) -> bool:
        """Overwrite the document only if predicate(current) holds. Returns whether it wrote."""

    @abstractmethod
    async def delete(self, path: str):
        pass

    @abstractmethod
    async def list(self, collection: str) -> List[Tuple[str, Document]]:
        """Direct children of a collection as (document_id, data) pairs."""

    @abstractmethod
    def watch(self, path: str, on_change: ChangeCallback,
              on_error: Optional[ErrorCallback] = None) -> Subscription:
        pass


def child_id(collection: str, path: str) -> Optional[str]:
    """Return the document id if path is a direct child of collection."""
    prefix = collection.rstrip("/") + "/"
    if not path.startswith(prefix):
        return None
    rest = path[len(prefix):]
    if not rest or "/" in rest:
        return None
    return rest
