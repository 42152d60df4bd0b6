# gym_enrollment/mqtt/client.py
import asyncio
import copy
import json
import logging
from collections import defaultdict
from datetime import date, datetime
from typing import Dict, List, Optional, Tuple

import paho.mqtt.client as mqtt

from gym_enrollment.core.config import settings
from gym_enrollment.core.exceptions import StoreConnectionError
from gym_enrollment.store.base import (
    ChangeCallback,
    Document,
    DocumentStore,
    ErrorCallback,
    Subscription,
    child_id,
    resolve_server_timestamps,
)

logger = logging.getLogger("mqtt")


def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Type {type(value).__name__} is not JSON serializable")


class MqttDocumentStore(DocumentStore):
    """
    Document store carried over an MQTT broker.

    Every document is a retained JSON message on "<base>/docs/<path>", so the
    broker holds the latest version of each document and replays it to anyone
    who subscribes. Devices read and write their documents the same way.
    An empty retained payload means the document was deleted.

    paho runs its network loop in its own thread; every callback is handed to
    the asyncio loop before touching the cache or the watchers.
    """

    def __init__(self, base_topic: str, host: str, port: int,
                 username: str = "", password: str = "",
                 client: Optional[mqtt.Client] = None):
        self.base_topic = base_topic.rstrip("/")
        self.host = host
        self.port = port

        self.client = client or mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message

        if username and password:
            self.client.username_pw_set(username, password)

        self._cache: Dict[str, Document] = {}
        self._watchers: Dict[str, List[Subscription]] = defaultdict(list)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._ready: Optional[asyncio.Event] = None
        self._closing = False

    @classmethod
    def from_settings(cls) -> "MqttDocumentStore":
        return cls(
            base_topic=settings.MQTT_BASE_TOPIC,
            host=settings.get_mqtt_host(),
            port=settings.MQTT_PORT,
            username=settings.MQTT_USERNAME,
            password=settings.MQTT_PASSWORD,
        )

    # ---------- TOPICS ----------

    def topic_for(self, path: str) -> str:
        return f"{self.base_topic}/docs/{path}"

    def path_for(self, topic: str) -> str:
        prefix = f"{self.base_topic}/docs/"
        if not topic.startswith(prefix) or topic == prefix:
            raise ValueError(f"Invalid topic format: {topic}")
        return topic[len(prefix):]

    @staticmethod
    def parse_payload(payload: bytes) -> Optional[Document]:
        if not payload:
            return None
        data = json.loads(payload.decode("utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"Document payload must be a JSON object, got {type(data).__name__}")
        return data

    # ---------- MQTT CALLBACKS (network thread) ----------

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.error(f"[MQTT] Connection failed (rc={reason_code})")
            return

        topic = f"{self.base_topic}/docs/#"
        client.subscribe(topic, qos=1)
        logger.info(f"[MQTT] Connected & subscribed: {topic}")

        if self._loop and self._ready:
            self._loop.call_soon_threadsafe(self._ready.set)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        if self._closing:
            return
        logger.warning(f"[MQTT] Unexpected disconnect (rc={reason_code})")
        if self._loop:
            exc = StoreConnectionError(message=f"MQTT broker connection lost (rc={reason_code})")
            self._loop.call_soon_threadsafe(self._fail_all, exc)

    def _on_message(self, client, userdata, msg):
        try:
            path = self.path_for(msg.topic)
            doc = self.parse_payload(msg.payload)
        except Exception as e:
            logger.exception(f"[MQTT] Message error: {e}")
            return

        if self._loop:
            self._loop.call_soon_threadsafe(self._apply, path, doc)

    # ---------- EVENT LOOP SIDE ----------

    def _apply(self, path: str, doc: Optional[Document]):
        if doc is None:
            self._cache.pop(path, None)
        else:
            self._cache[path] = doc

        for sub in list(self._watchers.get(path, [])):
            sub.deliver(copy.deepcopy(doc))

    def _fail_all(self, exc: BaseException):
        for subs in list(self._watchers.values()):
            for sub in list(subs):
                sub.fail(exc)

    def _remove_watcher(self, sub: Subscription):
        watchers = self._watchers.get(sub.path)
        if watchers and sub in watchers:
            watchers.remove(sub)
            if not watchers:
                del self._watchers[sub.path]

    def _publish(self, path: str, doc: Optional[Document]):
        topic = self.topic_for(path)
        payload = b"" if doc is None else json.dumps(doc, default=_json_default)
        info = self.client.publish(topic, payload, qos=1, retain=True)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise StoreConnectionError(message=f"MQTT publish to {topic} failed (rc={info.rc})")
        logger.debug(f"[PUB] → {topic}")

    # ---------- LIFECYCLE ----------

    async def connect(self, timeout: float = 10):
        self._loop = asyncio.get_running_loop()
        self._ready = asyncio.Event()
        self._closing = False

        logger.info(f"[MQTT] Connecting to {self.host}:{self.port}")
        try:
            self.client.connect(self.host, self.port, 60)
        except OSError as e:
            raise StoreConnectionError(e) from e
        self.client.loop_start()

        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError as e:
            raise StoreConnectionError(
                message=f"MQTT broker {self.host}:{self.port} did not accept the connection"
            ) from e

    async def close(self):
        self._closing = True
        self.client.loop_stop()
        self.client.disconnect()

    # ---------- DOCUMENT API ----------

    async def get(self, path: str) -> Optional[Document]:
        doc = self._cache.get(path)
        return copy.deepcopy(doc) if doc is not None else None

    async def list(self, collection: str) -> List[Tuple[str, Document]]:
        items = []
        for path, doc in self._cache.items():
            doc_id = child_id(collection, path)
            if doc_id is not None:
                items.append((doc_id, copy.deepcopy(doc)))
        return items

    async def set(self, path: str, data: Document) -> Document:
        doc = resolve_server_timestamps(dict(data))
        self._publish(path, doc)
        # Watchers are notified when the broker echoes the message back
        self._cache[path] = doc
        return copy.deepcopy(doc)

    async def update(self, path: str, fields: Document) -> Document:
        current = self._cache.get(path)
        if current is None:
            raise KeyError(f"No document at {path}")
        merged = dict(current)
        merged.update(fields)
        return await self.set(path, merged)

    async def compare_and_set(self, path: str, data: Document, predicate) -> bool:
        # Checked against the local mirror only: a device or another server
        # writing at the same moment can still win the slot.
        if not predicate(copy.deepcopy(self._cache.get(path))):
            return False
        await self.set(path, data)
        return True

    async def delete(self, path: str):
        self._publish(path, None)
        self._cache.pop(path, None)

    def watch(self, path: str, on_change: ChangeCallback,
              on_error: Optional[ErrorCallback] = None) -> Subscription:
        sub = Subscription(path, on_change, on_error, on_close=self._remove_watcher)
        self._watchers[path].append(sub)
        asyncio.get_running_loop().call_soon(sub.deliver, copy.deepcopy(self._cache.get(path)))
        return sub
