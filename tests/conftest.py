"""
Configuration shared by all tests: an in-memory document store and an HTTP
client whose container uses that store and an in-memory SQLite database.
"""

import pytest
from fastapi.testclient import TestClient

from gym_enrollment.core.container import Container
from gym_enrollment.main import create_app
from gym_enrollment.store.memory import InMemoryDocumentStore
from helpers import make_engine


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def container(store):
    return Container(store=store, engine=make_engine(), timeout=2.0)


@pytest.fixture
def client(container):
    """HTTP test client; the app's lifespan runs on enter and exit."""
    app = create_app(container)
    with TestClient(app) as c:
        yield c
