# gym_enrollment/models/models.py
import enum

from sqlalchemy import TIMESTAMP, Column, Integer, String, func

from gym_enrollment.database import Base


# ===== Mailbox command status (written by the API and by the device) =====
class CommandStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (CommandStatus.PENDING, CommandStatus.IN_PROGRESS)


# ===== Device state as reported in its presence document =====
class ReportedState(str, enum.Enum):
    ONLINE = "online"


# ===== Per-attempt outcome of the enrollment state machine =====
class AttemptState(str, enum.Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    WAITING = "waiting"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    PROTOCOL_ERROR = "protocol_error"
    CONNECTION_ERROR = "connection_error"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    AttemptState.SUCCESS,
    AttemptState.FAILED,
    AttemptState.CANCELLED,
    AttemptState.TIMED_OUT,
    AttemptState.PROTOCOL_ERROR,
    AttemptState.CONNECTION_ERROR,
})


class DeviceLog(Base):
    __tablename__ = "device_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)

    scope_id = Column(String(50), nullable=False)       # gym
    device_id = Column(String(50), nullable=False)
    correlation_id = Column(String(64))
    finger_id = Column(Integer)

    timestamp = Column(TIMESTAMP, nullable=False)
    event_type = Column(String(20))          # enroll_req, enroll_resp, enroll_cancel
    success = Column(Integer)                # 1 = true, 0 = false
    message = Column(String(255))

    created_at = Column(TIMESTAMP, server_default=func.now())
