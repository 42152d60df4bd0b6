import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, EmailStr, Field, field_validator

PHONE_PATTERN = re.compile(r"^[\d\s\-\+\(\)]+$")
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 50


# ===== Enrollee (form data sent by the web client) =====
class EnrolleeAttributes(BaseModel):
    """
    Member details submitted with an enrollment request.

    Only the display name is required. Any extra field (address, membership
    tier, emergency contact...) is accepted and copied to the member record.
    """

    name: str = Field(alias="Name")
    phone_number: Optional[str] = Field(default=None, alias="Phone_Number")
    age: Optional[int] = Field(default=None, alias="Age")
    email: Optional[EmailStr] = Field(default=None, alias="Email")
    gym_member_id: Optional[str] = Field(default=None, alias="gymMemberId")
    retry_attempt: int = Field(default=0, alias="retryAttempt", ge=0)

    class Config:
        populate_by_name = True
        extra = "allow"

    @field_validator("name")
    @classmethod
    def valid_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Missing required fields: Name")
        if len(v) < NAME_MIN_LENGTH:
            raise ValueError(f"Name must be at least {NAME_MIN_LENGTH} characters long")
        if len(v) > NAME_MAX_LENGTH:
            raise ValueError(f"Name must be less than {NAME_MAX_LENGTH} characters long")
        return v

    @field_validator("phone_number")
    @classmethod
    def valid_phone(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if not PHONE_PATTERN.match(v):
            raise ValueError("Phone number contains invalid characters")
        return v

    @field_validator("age")
    @classmethod
    def valid_age(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and not 1 <= v <= 120:
            raise ValueError("Age must be between 1 and 120")
        return v

    @field_validator("gym_member_id")
    @classmethod
    def valid_gym_member_id(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        if not v:
            raise ValueError("Gym Member ID is required")
        # Purely numeric ids would be confused with fingerprint ids
        if v.isdigit():
            raise ValueError("Gym Member ID must not be purely numeric")
        return v

    def to_member_fields(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ===== Mailbox document as read back from the store =====
class EnrollmentCommand(BaseModel):
    correlation_id: Optional[str] = Field(default=None, alias="correlationId")
    status: Optional[str] = None
    subject_name: Optional[str] = Field(default=None, alias="subjectName")
    fingerprint_id: Optional[int] = Field(default=None, alias="fingerprintId")
    message: Optional[str] = None
    issued_at: Optional[Union[datetime, str]] = Field(default=None, alias="issuedAt")
    requested_by: Optional[str] = Field(default=None, alias="requestedBy")
    cancelled_by: Optional[str] = Field(default=None, alias="cancelledBy")

    class Config:
        populate_by_name = True
        extra = "allow"


# ===== Responses =====
class DevicePresence(BaseModel):
    device_id: str
    location: str = "Unknown Location"
    reported_state: str = "unknown"
    is_reachable: bool = False
    last_heartbeat: Optional[datetime] = None
    seconds_since_heartbeat: Optional[int] = None   # None: never seen
    capabilities: Dict[str, bool] = {}
    firmware_version: str = "unknown"
    uptime_seconds: Optional[int] = None

    @property
    def is_available(self) -> bool:
        return self.is_reachable and self.reported_state == "online"


class AvailabilityResult(BaseModel):
    available: bool
    code: str           # ok, not_found, offline, not_online, error
    reason: str
    info: Optional[Dict[str, Any]] = None
    active_attempt: Optional[Dict[str, Any]] = None     # attempt this server is waiting on


class EnrollmentResult(BaseModel):
    fingerprint_id: int
    member_id: str
    gym_member_id: Optional[str] = None
    device_id: str
    correlation_id: str
    message: str


class DeviceLogResp(BaseModel):
    event_type: str
    device_id: str
    correlation_id: Optional[str]
    finger_id: Optional[int]
    timestamp: datetime
    success: bool
    message: Optional[str]

    class Config:
        from_attributes = True


class RecentEnrollment(BaseModel):
    name: Optional[str]
    fingerprint_id: Optional[int]
    date: datetime
    device: str


class EnrollmentStats(BaseModel):
    total: int = 0
    today: int = 0
    this_week: int = 0
    this_month: int = 0
    by_device: Dict[str, int] = {}
    recent_enrollments: List[RecentEnrollment] = []
