from typing import List

from fastapi import APIRouter, Depends, HTTPException

from gym_enrollment.api.deps import get_device_log_service, get_device_service, get_enrollment_service
from gym_enrollment.schema.schemas import AvailabilityResult, DeviceLogResp, DevicePresence
from gym_enrollment.services.device_log_service import DeviceLogService
from gym_enrollment.services.device_service import DeviceService
from gym_enrollment.services.enrollment_service import EnrollmentService

router = APIRouter()


# ==========================================
# 1. Scanners of a gym with their presence
# ==========================================
@router.get("", response_model=List[DevicePresence])
async def list_devices(scope_id: str, service: DeviceService = Depends(get_device_service)):
    return await service.list_devices(scope_id)


# ==========================================
# 2. Can this scanner take an enrollment now?
# ==========================================
@router.get("/{device_id}/status", response_model=AvailabilityResult)
async def get_device_status(scope_id: str, device_id: str,
                            service: DeviceService = Depends(get_device_service),
                            enrollment: EnrollmentService = Depends(get_enrollment_service)):
    result = await service.check_availability(scope_id, device_id)
    if result.code == "not_found":
        raise HTTPException(404, result.reason)
    attempt = enrollment.active_attempt(scope_id, device_id)
    if attempt is not None:
        result.active_attempt = attempt.to_dict()
    return result


# ==========================================
# 3. Enrollment audit trail of a scanner
# ==========================================
@router.get("/{device_id}/logs", response_model=List[DeviceLogResp])
def get_device_logs(scope_id: str, device_id: str, limit: int = 50,
                    log_service: DeviceLogService = Depends(get_device_log_service)):
    return log_service.get_recent(scope_id, device_id, limit)
