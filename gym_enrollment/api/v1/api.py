from fastapi import APIRouter

from gym_enrollment.api.v1.endpoints import devices, enrollments, members

api_router = APIRouter()

api_router.include_router(devices.router, prefix="/gyms/{scope_id}/devices", tags=["Devices"])
api_router.include_router(enrollments.router, prefix="/gyms/{scope_id}/devices", tags=["Enrollment"])
api_router.include_router(members.router, prefix="/gyms/{scope_id}/members", tags=["Members"])
