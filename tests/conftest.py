import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

BASE_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BASE_DIR))

os.environ.setdefault("ELEVENLABS_AGENT_ID", "agent_test123")
os.environ.setdefault("ELEVENLABS_API_KEY", "sk_test_key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_FILE", os.devnull)
os.environ["EVENT_WEBHOOK_URLS"] = ""
os.environ["API_KEYS"] = ""

from database import Base, get_db
from main import app


@pytest.fixture(scope="function")
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


#scope : function < class < module < package < session
@pytest.fixture(scope="function")
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def inbound_call(client):
    """Post an inbound call webhook and return the response"""
    def _call(from_number="+441234567890", call_sid="CA123", **extra):
        data = {"From": from_number, "CallSid": call_sid, "To": "+15005550006"}
        data.update(extra)
        return client.post("/voice/inbound", data=data)
    return _call
