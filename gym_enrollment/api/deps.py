# gym_enrollment/api/deps.py
from fastapi import Depends, Request

from gym_enrollment.core.container import Container
from gym_enrollment.services.device_log_service import DeviceLogService
from gym_enrollment.services.device_service import DeviceService
from gym_enrollment.services.enrollment_service import EnrollmentService
from gym_enrollment.services.member_service import MemberService


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_enrollment_service(container: Container = Depends(get_container)) -> EnrollmentService:
    return container.enrollment_service


def get_device_service(container: Container = Depends(get_container)) -> DeviceService:
    return container.device_service


def get_member_service(container: Container = Depends(get_container)) -> MemberService:
    return container.member_service


def get_device_log_service(container: Container = Depends(get_container)) -> DeviceLogService:
    return container.device_log
