import asyncio

from gym_enrollment.models.models import AttemptState
from gym_enrollment.services.enroll_context import AttemptInfo, EnrollContext
from gym_enrollment.store.base import mailbox_path
from gym_enrollment.store.memory import InMemoryDocumentStore
from helpers import DEVICE, GYM, make_service, register_device, run, wait_for_mailbox


def make_info(correlation_id, device_id=DEVICE, state=AttemptState.WAITING):
    return AttemptInfo(GYM, device_id, correlation_id, "Alice", state=state)


def test_latest_attempt_replaces_entry():
    context = EnrollContext()
    context.set(make_info("X"))
    context.set(make_info("Y"))

    assert context.get(GYM, DEVICE).correlation_id == "Y"


def test_invalidate_with_stale_correlation_keeps_newer_entry():
    context = EnrollContext()
    context.set(make_info("Y"))

    context.invalidate(GYM, DEVICE, "X")
    assert context.get(GYM, DEVICE).correlation_id == "Y"

    context.invalidate(GYM, DEVICE, "Y")
    assert context.get(GYM, DEVICE) is None

    # Nothing left: a no-op
    context.invalidate(GYM, DEVICE)


def test_active_and_clear():
    context = EnrollContext()
    context.set(make_info("A", "dev1"))
    context.set(make_info("B", "dev2", state=AttemptState.TIMED_OUT))

    assert [info.correlation_id for info in context.active()] == ["A"]

    context.clear()
    assert context.active() == []


def test_service_tracks_attempt_while_waiting():
    async def scenario():
        store = InMemoryDocumentStore()
        await register_device(store)
        service = make_service(store)

        task = asyncio.ensure_future(service.begin_enrollment(GYM, DEVICE, {"Name": "Alice"}))
        command = await wait_for_mailbox(store, lambda doc: doc["status"] == "pending")
        during = service.context.get(GYM, DEVICE)
        await store.update(mailbox_path(GYM, DEVICE), {"status": "completed", "fingerprintId": 4})
        await task
        return command, during, service.context.get(GYM, DEVICE)

    command, during, after = run(scenario())

    assert during.correlation_id == command["correlationId"]
    assert during.subject_name == "Alice"
    assert after is None
