# gym_enrollment/core/exceptions.py
from typing import Optional


class EnrollmentError(Exception):
    """Base class for every outcome of an enrollment attempt other than success."""

    kind = "unknown_error"
    user_message = "Enrollment failed."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.user_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class EnrollmentValidationError(EnrollmentError):
    kind = "validation_error"
    user_message = "Member details are invalid. Correct the form and try again."

    def __init__(self, message: Optional[str] = None, errors: Optional[list] = None):
        self.errors = errors or []
        super().__init__(message)


class DeviceUnavailableError(EnrollmentError):
    kind = "device_offline"
    user_message = "The scanner is not available. Check that it is powered on and connected."

    def __init__(self, device_id: str, reason: str):
        self.device_id = device_id
        self.reason = reason
        super().__init__(f"Device {device_id} is not available: {reason}")


class EnrollmentTimeoutError(EnrollmentError):
    kind = "timeout"

    def __init__(self, device_id: str, timeout: float):
        self.device_id = device_id
        self.timeout = timeout
        super().__init__(
            f"Enrollment timeout - device {device_id} did not respond within {timeout:g} seconds"
        )


class HardwareEnrollmentError(EnrollmentError):
    """The scanner reported a failure. The device's own message is kept verbatim."""

    kind = "hardware_error"
    user_message = "Enrollment failed on the scanner - unknown error"

    def __init__(self, device_message: Optional[str] = None):
        self.device_message = device_message
        super().__init__(device_message or self.user_message)


class UserCancelledError(EnrollmentError):
    kind = "user_cancelled"
    user_message = "Enrollment was cancelled"


class DeviceProtocolError(EnrollmentError):
    kind = "protocol_error"
    user_message = "The scanner sent an invalid response. Contact support if this repeats."


class StoreConnectionError(EnrollmentError):
    kind = "network_error"
    user_message = "Lost connection to the data store."

    def __init__(self, cause: Optional[BaseException] = None, message: Optional[str] = None):
        self.cause = cause
        if message is None and cause is not None:
            message = f"Store connection error: {cause}"
        super().__init__(message)
