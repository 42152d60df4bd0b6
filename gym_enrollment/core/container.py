# gym_enrollment/core/container.py
import logging
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from gym_enrollment import database
from gym_enrollment.core.config import settings
from gym_enrollment.mqtt.client import MqttDocumentStore
from gym_enrollment.services.device_log_service import DeviceLogService
from gym_enrollment.services.device_service import DeviceService
from gym_enrollment.services.enroll_context import EnrollContext
from gym_enrollment.services.enrollment_service import EnrollmentService
from gym_enrollment.services.member_service import MemberService
from gym_enrollment.store.base import DocumentStore
from gym_enrollment.store.memory import InMemoryDocumentStore
from gym_enrollment.utils.time_utils import utcnow

logger = logging.getLogger("api")


def build_store(backend: Optional[str] = None) -> DocumentStore:
    backend = (backend or settings.STORE_BACKEND).lower()
    if backend == "mqtt":
        return MqttDocumentStore.from_settings()
    if backend == "memory":
        return InMemoryDocumentStore()
    raise ValueError(f"Unknown STORE_BACKEND: {backend}")


class Container:
    """Builds and owns every service of the application (one per process)."""

    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        engine: Optional[Engine] = None,
        clock=utcnow,
        timeout: Optional[float] = None,
        mailbox_guard: Optional[bool] = None,
    ):
        self.store = store or build_store()
        self.engine = engine or database.engine
        session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

        self.context = EnrollContext()
        self.device_log = DeviceLogService(session_factory)
        self.device_service = DeviceService(self.store, clock=clock)
        self.member_service = MemberService(self.store, clock=clock)
        self.enrollment_service = EnrollmentService(
            store=self.store,
            device_service=self.device_service,
            member_service=self.member_service,
            context=self.context,
            device_log=self.device_log,
            timeout=timeout,
            mailbox_guard=mailbox_guard,
        )

    async def start(self):
        database.init_db(self.engine)
        await self.store.connect()
        logger.info(f"[APP] Store connected ({type(self.store).__name__})")

    async def stop(self):
        self.context.clear()
        await self.store.close()
        logger.info("[APP] Store closed")
