"""
Shared test helpers.

Nothing here talks to a broker or a database server: the document store is
the in-memory one and the device log uses an in-memory SQLite engine.
A FakeDeviceAgent plays the scanner's side of the mailbox conversation.
"""

import asyncio
from datetime import timedelta
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from gym_enrollment.database import init_db
from gym_enrollment.services.device_log_service import DeviceLogService
from gym_enrollment.services.device_service import DeviceService
from gym_enrollment.services.enroll_context import EnrollContext
from gym_enrollment.services.enrollment_service import EnrollmentService
from gym_enrollment.services.member_service import MemberService
from gym_enrollment.store.base import device_path, mailbox_path
from gym_enrollment.utils.time_utils import utcnow

GYM = "gym1"
DEVICE = "dev1"


def run(coro):
    return asyncio.run(coro)


def make_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


def make_device_log():
    return DeviceLogService(sessionmaker(autocommit=False, autoflush=False, bind=make_engine()))


def make_service(store, timeout=2.0, mailbox_guard=False, device_log=None) -> EnrollmentService:
    return EnrollmentService(
        store=store,
        device_service=DeviceService(store),
        member_service=MemberService(store),
        context=EnrollContext(),
        device_log=device_log,
        timeout=timeout,
        mailbox_guard=mailbox_guard,
        operator="test_operator",
    )


async def register_device(store, scope_id=GYM, device_id=DEVICE, state="online",
                          heartbeat_age: Optional[float] = 5, **extra):
    data = {
        "reportedState": state,
        "lastHeartbeat": utcnow() - timedelta(seconds=heartbeat_age) if heartbeat_age is not None else None,
        "capabilities": {"enrollment": True, "attendance": True, "audio": False},
        "location": "Front desk",
        "firmwareVersion": "1.4.2",
        "uptimeSeconds": 3600,
    }
    data.update(extra)
    await store.set(device_path(scope_id, device_id), data)


async def wait_for_mailbox(store, predicate, scope_id=GYM, device_id=DEVICE, timeout=1.0):
    """Poll the mailbox until predicate(doc) holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        doc = await store.get(mailbox_path(scope_id, device_id))
        if doc is not None and predicate(doc):
            return doc
        await asyncio.sleep(0.001)
    raise AssertionError("mailbox never reached the expected state")


class FakeDeviceAgent:
    """
    Scanner firmware stand-in.

    Answers every new pending command with the configured steps, then the
    final outcome ("completed", "failed", any raw status string, or None to
    stay silent).
    """

    def __init__(self, store, scope_id=GYM, device_id=DEVICE, outcome="completed",
                 fingerprint_id: Optional[int] = 7, message=None, steps=("in_progress",)):
        self.store = store
        self.path = mailbox_path(scope_id, device_id)
        self.outcome = outcome
        self.fingerprint_id = fingerprint_id
        self.message = message
        self.steps = steps
        self.seen = []
        self.subscription = None

    async def start(self):
        self.subscription = self.store.watch(self.path, self._on_change)

    def stop(self):
        if self.subscription:
            self.subscription.unsubscribe()

    def _on_change(self, doc):
        if not doc or doc.get("status") != "pending":
            return
        correlation_id = doc["correlationId"]
        if correlation_id in self.seen:
            return
        self.seen.append(correlation_id)
        asyncio.get_running_loop().create_task(self._respond(correlation_id))

    async def _respond(self, correlation_id):
        for step in self.steps:
            await asyncio.sleep(0)
            await self.store.update(self.path, {"status": step, "message": "Place finger on sensor"})

        if self.outcome is None:
            return

        await asyncio.sleep(0)
        fields = {"status": self.outcome, "message": self.message}
        if self.outcome == "completed":
            fields["fingerprintId"] = self.fingerprint_id
        await self.store.update(self.path, fields)

