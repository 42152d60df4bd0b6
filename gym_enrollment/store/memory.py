# gym_enrollment/store/memory.py
import asyncio
import copy
import logging
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Tuple

from gym_enrollment.store.base import (
    ChangeCallback,
    Document,
    DocumentStore,
    ErrorCallback,
    Subscription,
    child_id,
    resolve_server_timestamps,
)

logger = logging.getLogger("store")


class InMemoryDocumentStore(DocumentStore):
    """
    Document store living in the event loop's process.

    Notifications are queued on the loop with call_soon, so they reach watchers
    after the writing coroutine yields and always in write order.
    """

    def __init__(self, clock: Optional[Callable] = None):
        self._docs: Dict[str, Document] = {}
        self._watchers: Dict[str, List[Subscription]] = defaultdict(list)
        self._clock = clock
        # (operation, path) of every mutation, oldest first
        self.write_log: List[Tuple[str, str]] = []

    # ---------- READ ----------

    async def get(self, path: str) -> Optional[Document]:
        doc = self._docs.get(path)
        return copy.deepcopy(doc) if doc is not None else None

    async def list(self, collection: str) -> List[Tuple[str, Document]]:
        items = []
        for path, doc in self._docs.items():
            doc_id = child_id(collection, path)
            if doc_id is not None:
                items.append((doc_id, copy.deepcopy(doc)))
        return items

    # ---------- WRITE ----------

    async def set(self, path: str, data: Document) -> Document:
        return self._write("set", path, dict(data))

    async def update(self, path: str, fields: Document) -> Document:
        current = self._docs.get(path)
        if current is None:
            raise KeyError(f"No document at {path}")
        merged = dict(current)
        merged.update(fields)
        return self._write("update", path, merged)

    async def compare_and_set(self, path: str, data: Document, predicate) -> bool:
        # No await between the check and the write: atomic on a single loop
        if not predicate(copy.deepcopy(self._docs.get(path))):
            return False
        self._write("set", path, dict(data))
        return True

    async def delete(self, path: str):
        if self._docs.pop(path, None) is not None:
            self.write_log.append(("delete", path))
            self._notify(path, None)

    def _write(self, op: str, path: str, data: Document) -> Document:
        now = self._clock() if self._clock else None
        doc = resolve_server_timestamps(data, now)
        self._docs[path] = doc
        self.write_log.append((op, path))
        self._notify(path, doc)
        return copy.deepcopy(doc)

    # ---------- SUBSCRIPTIONS ----------

    def watch(self, path: str, on_change: ChangeCallback,
              on_error: Optional[ErrorCallback] = None) -> Subscription:
        sub = Subscription(path, on_change, on_error, on_close=self._remove_watcher)
        self._watchers[path].append(sub)
        snapshot = copy.deepcopy(self._docs.get(path))
        asyncio.get_running_loop().call_soon(sub.deliver, snapshot)
        return sub

    def watcher_count(self, path: str) -> int:
        return len(self._watchers.get(path, []))

    def fail_watchers(self, path: Optional[str], exc: BaseException):
        """Simulate a transport failure for watchers of path (all watchers if None)."""
        loop = asyncio.get_running_loop()
        paths = [path] if path is not None else list(self._watchers)
        for p in paths:
            for sub in list(self._watchers.get(p, [])):
                loop.call_soon(sub.fail, exc)

    def _notify(self, path: str, doc: Optional[Document]):
        watchers = self._watchers.get(path)
        if not watchers:
            return
        loop = asyncio.get_running_loop()
        for sub in list(watchers):
            loop.call_soon(sub.deliver, copy.deepcopy(doc))

    def _remove_watcher(self, sub: Subscription):
        watchers = self._watchers.get(sub.path)
        if watchers and sub in watchers:
            watchers.remove(sub)
            if not watchers:
                del self._watchers[sub.path]
