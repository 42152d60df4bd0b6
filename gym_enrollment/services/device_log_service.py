# gym_enrollment/services/device_log_service.py

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from gym_enrollment.database import SessionLocal
from gym_enrollment.models.models import DeviceLog
from gym_enrollment.utils.time_utils import utcnow

logger = logging.getLogger("enrollment")


class DeviceLogService:

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def add(
        self,
        scope_id: str,
        device_id: str,
        event_type: str,
        correlation_id: Optional[str] = None,
        finger_id: Optional[int] = None,
        success: bool = True,
        message: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> DeviceLog:
        """Write one audit row. Message is cut to the column size."""
        db: Session = self.session_factory()
        try:
            new_log = DeviceLog(
                scope_id=scope_id,
                device_id=device_id,
                correlation_id=correlation_id,
                event_type=event_type,
                finger_id=finger_id,
                success=1 if success else 0,
                message=message[:255] if message else message,
                timestamp=timestamp or utcnow(),
            )

            db.add(new_log)
            db.commit()
            db.refresh(new_log)

            return new_log

        except Exception as e:
            db.rollback()
            logger.error(f"[DeviceLogService] Error adding log: {e}")
            raise
        finally:
            db.close()

    def get_recent(self, scope_id: str, device_id: str, limit: int = 50) -> List[DeviceLog]:
        """Latest log rows of one device, newest first."""
        db: Session = self.session_factory()
        try:
            return (
                db.query(DeviceLog)
                .filter(DeviceLog.scope_id == scope_id, DeviceLog.device_id == device_id)
                .order_by(DeviceLog.timestamp.desc(), DeviceLog.id.desc())
                .limit(limit)
                .all()
            )
        finally:
            db.close()
