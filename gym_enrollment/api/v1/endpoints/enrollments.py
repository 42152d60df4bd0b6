import asyncio
import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, WebSocket, WebSocketDisconnect, status

from gym_enrollment.api.deps import get_enrollment_service
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
from gym_enrollment.schema.schemas import EnrollmentResult
from gym_enrollment.services.enrollment_service import EnrollmentService

logger = logging.getLogger("api")

router = APIRouter()

HTTP_STATUS_BY_ERROR = {
    EnrollmentValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    DeviceUnavailableError: status.HTTP_409_CONFLICT,
    EnrollmentTimeoutError: status.HTTP_504_GATEWAY_TIMEOUT,
    HardwareEnrollmentError: status.HTTP_502_BAD_GATEWAY,
    UserCancelledError: status.HTTP_409_CONFLICT,
    DeviceProtocolError: status.HTTP_502_BAD_GATEWAY,
    StoreConnectionError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def to_http_error(error: EnrollmentError) -> HTTPException:
    code = HTTP_STATUS_BY_ERROR.get(type(error), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return HTTPException(status_code=code, detail=error.to_dict())


# ==========================================
# 1. Enroll a new member on a scanner
# ==========================================
@router.post("/{device_id}/enrollments", response_model=EnrollmentResult)
async def begin_enrollment(
    scope_id: str,
    device_id: str,
    attributes: Dict[str, Any] = Body(...),
    service: EnrollmentService = Depends(get_enrollment_service),
):
    """
    Blocks until the scanner answers (or the enrollment times out).
    Live progress is available on the WebSocket route below.
    """
    try:
        return await service.begin_enrollment(scope_id, device_id, attributes)
    except EnrollmentError as e:
        raise to_http_error(e)


# ==========================================
# 2. Retry: a new attempt for the same member
# ==========================================
@router.post("/{device_id}/enrollments/retry", response_model=EnrollmentResult)
async def retry_enrollment(
    scope_id: str,
    device_id: str,
    attributes: Dict[str, Any] = Body(...),
    service: EnrollmentService = Depends(get_enrollment_service),
):
    try:
        return await service.retry_enrollment(scope_id, device_id, attributes)
    except EnrollmentError as e:
        raise to_http_error(e)


# ==========================================
# 3. Cancel the running enrollment
# ==========================================
@router.post("/{device_id}/enrollments/cancel", status_code=status.HTTP_202_ACCEPTED)
async def cancel_enrollment(
    scope_id: str,
    device_id: str,
    service: EnrollmentService = Depends(get_enrollment_service),
):
    try:
        sent = await service.cancel_enrollment(scope_id, device_id)
    except EnrollmentError as e:
        raise to_http_error(e)

    return {
        "device_id": device_id,
        "status": "cancel_sent" if sent else "nothing_to_cancel",
    }


# ==========================================
# 4. Live mailbox status (passive display)
# ==========================================
@router.websocket("/{device_id}/enrollments/ws")
async def watch_enrollment(websocket: WebSocket, scope_id: str, device_id: str):
    service: EnrollmentService = websocket.app.state.container.enrollment_service
    await websocket.accept()

    updates: asyncio.Queue = asyncio.Queue()
    subscription = service.observe_enrollment(scope_id, device_id, updates.put_nowait)

    async def forward():
        while True:
            update = await updates.get()
            await websocket.send_json(update)
            if update.get("status") == "error":
                return

    async def wait_for_close():
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            return

    tasks = {asyncio.ensure_future(forward()), asyncio.ensure_future(wait_for_close())}
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc and not isinstance(exc, WebSocketDisconnect):
                logger.error(f"[WS] {scope_id}/{device_id} | {exc}")
    finally:
        subscription.unsubscribe()
