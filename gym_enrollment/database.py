# gym_enrollment/database.py
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from gym_enrollment.core.config import settings

# SQLite needs this flag once sessions are used outside the creating thread
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(settings.DATABASE_URL, connect_args=connect_args)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db(bind=None):
    """Create the tables that do not exist yet."""
    import gym_enrollment.models.models  # noqa: F401 - registers the models on Base.metadata

    Base.metadata.create_all(bind=bind or engine)
