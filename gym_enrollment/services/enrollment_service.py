# gym_enrollment/services/enrollment_service.py
"""
Enrollment coordinator.

The API never talks to a scanner directly. An enrollment is a conversation
through the device's mailbox document (gyms/<gym>/devices/<device>/commands/enroll):

1. the server writes {status: pending, correlationId: X, subjectName: ...}
2. the scanner moves it to in_progress, then to completed (with the
   fingerprintId it assigned) or failed (with a message)
3. the server watches the document and settles the attempt on the first
   terminal status carrying its own correlation id

The mailbox holds a single command: a newer attempt simply overwrites it.
Updates carrying another correlation id belong to that other attempt and are
ignored, which is what keeps two attempts on the same scanner from settling
each other. The member record is written only after a completed status with
a fingerprint id has been seen; every other outcome leaves no member behind.
"""

import asyncio
import logging
import secrets
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from pydantic import ValidationError

from gym_enrollment.core.config import settings
from gym_enrollment.core.exceptions import (
    DeviceProtocolError,
    DeviceUnavailableError,
    EnrollmentError,
    EnrollmentTimeoutError,
    EnrollmentValidationError,
    HardwareEnrollmentError,
    StoreConnectionError,
    UserCancelledError,
)
from gym_enrollment.models.models import AttemptState, CommandStatus
from gym_enrollment.schema.schemas import (
    EnrolleeAttributes,
    EnrollmentCommand,
    EnrollmentResult,
)
from gym_enrollment.services.device_log_service import DeviceLogService
from gym_enrollment.services.device_service import DeviceService
from gym_enrollment.services.enroll_context import AttemptInfo, EnrollContext
from gym_enrollment.services.member_service import MemberService
from gym_enrollment.store.base import (
    SERVER_TIMESTAMP,
    Document,
    DocumentStore,
    Subscription,
    mailbox_path,
)
from gym_enrollment.utils.time_utils import parse_timestamp, utcnow

logger = logging.getLogger("enrollment")

StatusCallback = Callable[[Dict[str, Any]], None]


def new_correlation_id() -> str:
    # Millisecond clock + 72 random bits: unique across servers and browsers
    return f"enr_{int(time.time() * 1000)}_{secrets.token_urlsafe(9)}"


def to_status_update(doc: Document) -> Dict[str, Any]:
    """Mailbox document -> the payload handed to status listeners."""
    issued_at = doc.get("issuedAt")
    if isinstance(issued_at, datetime):
        issued_at = issued_at.isoformat()
    return {
        "status": doc.get("status"),
        "correlationId": doc.get("correlationId"),
        "fingerprintId": doc.get("fingerprintId"),
        "message": doc.get("message"),
        "subjectName": doc.get("subjectName"),
        "attempts": doc.get("attempts", 0),
        "issuedAt": issued_at,
    }


class _Attempt:
    """One enrollment attempt, scoped to a single correlation id."""

    def __init__(self, info: AttemptInfo, future: asyncio.Future,
                 on_update: Optional[StatusCallback]):
        self.info = info
        self.future = future
        self.on_update = on_update
        self.subscription: Optional[Subscription] = None
        self.timer: Optional[asyncio.TimerHandle] = None

    @property
    def correlation_id(self) -> str:
        return self.info.correlation_id

    @property
    def state(self) -> AttemptState:
        return self.info.state

    def move_to(self, state: AttemptState):
        if not self.info.state.is_terminal:
            self.info.state = state

    def release(self):
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None
        if self.subscription is not None:
            self.subscription.unsubscribe()

    def settle(self, state: AttemptState, result: Any = None,
               error: Optional[BaseException] = None) -> bool:
        """Move to a terminal state. Only the first call has any effect."""
        if self.info.state.is_terminal or self.future.done():
            return False
        self.info.state = state
        self.release()
        if error is not None:
            self.future.set_exception(error)
        else:
            self.future.set_result(result)
        return True


class EnrollmentService:

    def __init__(
        self,
        store: DocumentStore,
        device_service: DeviceService,
        member_service: MemberService,
        context: EnrollContext,
        device_log: Optional[DeviceLogService] = None,
        timeout: Optional[float] = None,
        mailbox_guard: Optional[bool] = None,
        operator: Optional[str] = None,
    ):
        self.store = store
        self.device_service = device_service
        self.member_service = member_service
        self.context = context
        self.device_log = device_log
        self.timeout = settings.ENROLLMENT_TIMEOUT_SECONDS if timeout is None else timeout
        self.mailbox_guard = settings.ENROLLMENT_MAILBOX_GUARD if mailbox_guard is None else mailbox_guard
        self.operator = operator or settings.OPERATOR_NAME

    # ---------- VALIDATION ----------

    @staticmethod
    def validate_attributes(attributes: Union[EnrolleeAttributes, Dict[str, Any]]) -> EnrolleeAttributes:
        if isinstance(attributes, EnrolleeAttributes):
            return attributes
        try:
            return EnrolleeAttributes.model_validate(attributes)
        except ValidationError as e:
            messages = []
            for err in e.errors():
                if err.get("type") == "missing":
                    field = ".".join(str(part) for part in err.get("loc", ()))
                    messages.append(f"Missing required fields: {field}")
                    continue
                # pydantic prefixes messages raised from validators
                messages.append(err.get("msg", "").replace("Value error, ", "", 1))
            raise EnrollmentValidationError("; ".join(messages), errors=e.errors()) from e

    async def _check_gym_member_id(self, scope_id: str, enrollee: EnrolleeAttributes):
        if enrollee.gym_member_id:
            ok, error = await self.member_service.validate_gym_member_id(scope_id, enrollee.gym_member_id)
            if not ok:
                raise EnrollmentValidationError(error)

    # ---------- PUBLIC API ----------

    async def begin_enrollment(
        self,
        scope_id: str,
        device_id: str,
        attributes: Union[EnrolleeAttributes, Dict[str, Any]],
        on_update: Optional[StatusCallback] = None,
    ) -> EnrollmentResult:
        """
        Run one enrollment attempt and return once the scanner has answered.

        Raises one of the EnrollmentError subclasses. Validation and
        availability failures happen before anything is written.
        """
        # 1. Local checks: nothing is written if any of these fail
        enrollee = self.validate_attributes(attributes)

        availability = await self.device_service.check_availability(scope_id, device_id)
        if not availability.available:
            logger.warning(f"[ENROLL] {scope_id}/{device_id} | refused: {availability.reason}")
            raise DeviceUnavailableError(device_id, availability.reason)

        await self._check_gym_member_id(scope_id, enrollee)

        if self.mailbox_guard and self.active_attempt(scope_id, device_id) is not None:
            # Our own attempt still owns the slot: no need to ask the store
            logger.warning(f"[ENROLL] {scope_id}/{device_id} | attempt already running here, refused")
            raise DeviceUnavailableError(device_id, "busy with another enrollment")

        # 2. Issue the command
        correlation_id = new_correlation_id()
        info = AttemptInfo(
            scope_id=scope_id,
            device_id=device_id,
            correlation_id=correlation_id,
            subject_name=enrollee.name,
            state=AttemptState.REQUESTING,
        )
        self.context.set(info)

        loop = asyncio.get_running_loop()
        attempt = _Attempt(info, loop.create_future(), on_update)

        try:
            await self._write_command(scope_id, device_id, correlation_id, enrollee.name)
        except Exception as e:
            self.context.invalidate(scope_id, device_id, correlation_id)
            if isinstance(e, EnrollmentError):
                raise
            raise StoreConnectionError(e) from e

        logger.info(
            f"[ENROLL] {scope_id}/{device_id} | command sent | corr={correlation_id} | subject={enrollee.name}"
        )

        # 3. Watch the mailbox, 4. arm the timeout (no await before both are in place)
        attempt.move_to(AttemptState.WAITING)
        attempt.subscription = self.store.watch(
            mailbox_path(scope_id, device_id),
            on_change=lambda doc: self._on_mailbox_change(attempt, doc),
            on_error=lambda exc: self._on_mailbox_error(attempt, exc),
        )
        attempt.timer = loop.call_later(self.timeout, self._on_timeout, attempt)

        # 5. Wait for the terminal status
        try:
            await self._audit(scope_id, device_id, "enroll_req", correlation_id, None, True,
                              f"Enrollment requested for {enrollee.name}")
            command: EnrollmentCommand = await attempt.future
        except EnrollmentError as e:
            await self._audit(scope_id, device_id, "enroll_resp", correlation_id, None, False, e.message)
            raise
        finally:
            attempt.release()
            self.context.invalidate(scope_id, device_id, correlation_id)

        # 6. Finalize: the only place a member record gets written
        fingerprint_id = int(command.fingerprint_id)
        member_fields = enrollee.to_member_fields()
        try:
            # Generated only now so that concurrent attempts cannot take the same id
            gym_member_id = enrollee.gym_member_id or await self.member_service.generate_gym_member_id(scope_id)
            member_fields["gymMemberId"] = gym_member_id
            await self.member_service.create_from_enrollment(scope_id, fingerprint_id, member_fields, device_id)
        except Exception as e:
            logger.error(f"[ENROLL] {scope_id}/{device_id} | member save failed for finger {fingerprint_id}: {e}")
            await self._audit(scope_id, device_id, "enroll_resp", correlation_id, fingerprint_id, False,
                              f"Device enrolled OK but member save failed: {e}")
            if isinstance(e, StoreConnectionError):
                raise
            raise StoreConnectionError(e) from e

        message = f"Member {enrollee.name} enrolled successfully with Fingerprint ID: {fingerprint_id}"
        logger.info(f"[ENROLL] {scope_id}/{device_id} | success | corr={correlation_id} | finger={fingerprint_id}")
        await self._audit(scope_id, device_id, "enroll_resp", correlation_id, fingerprint_id, True, message)

        return EnrollmentResult(
            fingerprint_id=fingerprint_id,
            member_id=str(fingerprint_id),
            gym_member_id=gym_member_id,
            device_id=device_id,
            correlation_id=correlation_id,
            message=message,
        )

    async def retry_enrollment(
        self,
        scope_id: str,
        device_id: str,
        attributes: Union[EnrolleeAttributes, Dict[str, Any]],
        on_update: Optional[StatusCallback] = None,
    ) -> EnrollmentResult:
        """Start a brand-new attempt (new correlation id) for the same enrollee."""
        if isinstance(attributes, EnrolleeAttributes):
            data = attributes.model_dump(by_alias=True, exclude_none=True)
        else:
            data = dict(attributes)
        data["retryAttempt"] = int(data.get("retryAttempt") or 0) + 1
        logger.info(f"[ENROLL] {scope_id}/{device_id} | retry #{data['retryAttempt']} for {data.get('Name')}")
        return await self.begin_enrollment(scope_id, device_id, data, on_update)

    async def cancel_enrollment(self, scope_id: str, device_id: str) -> bool:
        """
        Ask the scanner to abort the current command.

        Best effort: the scanner decides when to stop. An attempt waiting on
        this mailbox sees the cancelled status through its own subscription.
        Returns False when there is no active command to cancel.
        """
        path = mailbox_path(scope_id, device_id)
        current = await self.store.get(path)
        if current is None:
            logger.info(f"[CANCEL] {scope_id}/{device_id} | no command to cancel")
            return False

        try:
            status = CommandStatus(current.get("status"))
        except ValueError:
            status = None
        if status is None or not status.is_active:
            logger.info(f"[CANCEL] {scope_id}/{device_id} | command already {current.get('status')}, nothing to cancel")
            return False

        try:
            await self.store.update(path, {
                "status": CommandStatus.CANCELLED.value,
                "cancelledBy": self.operator,
                "updatedAt": SERVER_TIMESTAMP,
            })
        except KeyError:
            return False
        except StoreConnectionError:
            raise
        except Exception as e:
            raise StoreConnectionError(e) from e

        logger.info(f"[CANCEL] {scope_id}/{device_id} | corr={current.get('correlationId')}")
        await self._audit(scope_id, device_id, "enroll_cancel", current.get("correlationId"), None, True,
                          "Cancellation sent to device")
        return True

    def active_attempt(self, scope_id: str, device_id: str) -> Optional[AttemptInfo]:
        """Attempt this process is still waiting on for the device, if any."""
        info = self.context.get(scope_id, device_id)
        if info is None or info.state.is_terminal:
            return None
        return info

    def observe_enrollment(self, scope_id: str, device_id: str, callback: StatusCallback) -> Subscription:
        """
        Forward every mailbox change to callback, whatever attempt it belongs to.

        Used for passive status displays. A transport failure is reported once
        as {"status": "error", ...} and closes the subscription.
        """
        def on_change(doc: Optional[Document]):
            if doc is not None:
                callback(to_status_update(doc))

        def on_error(exc: BaseException):
            logger.error(f"[OBSERVE] {scope_id}/{device_id} | listener error: {exc}")
            callback({"status": "error", "message": f"Connection error: {exc}"})

        return self.store.watch(mailbox_path(scope_id, device_id), on_change, on_error)

    # ---------- COMMAND WRITE ----------

    def _mailbox_is_free(self, current: Optional[Document]) -> bool:
        if current is None:
            return True
        try:
            status = CommandStatus(current.get("status"))
        except ValueError:
            return True
        if not status.is_active:
            return True
        # An active command older than one timeout was abandoned
        issued_at = parse_timestamp(current.get("issuedAt"))
        if issued_at is None:
            return True
        return (utcnow() - issued_at).total_seconds() >= self.timeout

    async def _write_command(self, scope_id: str, device_id: str, correlation_id: str, subject_name: str):
        command = {
            "status": CommandStatus.PENDING.value,
            "correlationId": correlation_id,
            "subjectName": subject_name,
            "fingerprintId": None,
            "message": None,
            "issuedAt": SERVER_TIMESTAMP,
            "requestedBy": self.operator,
        }
        path = mailbox_path(scope_id, device_id)

        if not self.mailbox_guard:
            # Single slot: whatever was there before is superseded
            await self.store.set(path, command)
            return

        written = await self.store.compare_and_set(path, command, self._mailbox_is_free)
        if not written:
            logger.warning(f"[ENROLL] {scope_id}/{device_id} | mailbox busy, refused")
            raise DeviceUnavailableError(device_id, "busy with another enrollment")

    # ---------- MAILBOX EVENTS ----------

    def _on_mailbox_change(self, attempt: _Attempt, doc: Optional[Document]):
        if attempt.future.done() or doc is None:
            return

        if doc.get("correlationId") != attempt.correlation_id:
            logger.debug(
                f"[ENROLL] {attempt.info.device_id} | ignored update for corr={doc.get('correlationId')}"
            )
            return

        try:
            command = EnrollmentCommand.model_validate(doc)
        except ValidationError as e:
            attempt.settle(AttemptState.PROTOCOL_ERROR,
                           error=DeviceProtocolError(f"Malformed enrollment status from device: {e.errors()[0]['msg']}"))
            return

        try:
            status = CommandStatus(command.status)
        except ValueError:
            attempt.settle(AttemptState.PROTOCOL_ERROR,
                           error=DeviceProtocolError(f"Unknown enrollment status from device: {command.status!r}"))
            return

        if status == CommandStatus.PENDING:
            # Forward only: a replayed pending after in_progress changes nothing
            if attempt.state != AttemptState.PROCESSING:
                attempt.move_to(AttemptState.WAITING)

        elif status == CommandStatus.IN_PROGRESS:
            attempt.move_to(AttemptState.PROCESSING)
            logger.info(f"[ENROLL] {attempt.info.device_id} | in progress | {command.message or ''}")
            if attempt.on_update:
                try:
                    attempt.on_update(to_status_update(doc))
                except Exception:
                    logger.exception("[ENROLL] progress callback failed")

        elif status == CommandStatus.COMPLETED:
            if command.fingerprint_id is None:
                attempt.settle(AttemptState.PROTOCOL_ERROR,
                               error=DeviceProtocolError("Device reported completion without a fingerprint ID"))
            else:
                attempt.settle(AttemptState.SUCCESS, result=command)

        elif status == CommandStatus.FAILED:
            logger.warning(f"[ENROLL] {attempt.info.device_id} | device failure: {command.message}")
            attempt.settle(AttemptState.FAILED, error=HardwareEnrollmentError(command.message))

        elif status == CommandStatus.CANCELLED:
            attempt.settle(AttemptState.CANCELLED, error=UserCancelledError())

    def _on_mailbox_error(self, attempt: _Attempt, exc: BaseException):
        logger.error(f"[ENROLL] {attempt.info.device_id} | listener error: {exc}")
        error = exc if isinstance(exc, StoreConnectionError) else StoreConnectionError(exc)
        attempt.settle(AttemptState.CONNECTION_ERROR, error=error)

    def _on_timeout(self, attempt: _Attempt):
        # The mailbox is left as it is; a later attempt overwrites it
        if attempt.settle(AttemptState.TIMED_OUT,
                          error=EnrollmentTimeoutError(attempt.info.device_id, self.timeout)):
            logger.warning(f"[ENROLL] {attempt.info.device_id} | timeout | corr={attempt.correlation_id}")

    # ---------- AUDIT ----------

    async def _audit(self, scope_id: str, device_id: str, event_type: str, correlation_id: Optional[str],
                     finger_id: Optional[int], success: bool, message: str):
        if self.device_log is None:
            return
        try:
            # Blocking SQL session: kept off the event loop thread
            await asyncio.to_thread(
                self.device_log.add,
                scope_id=scope_id,
                device_id=device_id,
                event_type=event_type,
                correlation_id=correlation_id,
                finger_id=finger_id,
                success=success,
                message=message,
            )
        except Exception as e:
            # The audit trail must not change the outcome of the attempt
            logger.error(f"[ENROLL] {scope_id}/{device_id} | device log write failed: {e}")
