"""Shared test fixtures for backend tests.

Uses an in-memory SQLite database so tests run without Postgres, and
hand-written fakes for the inference endpoint, object storage and the
WebSocket channel so nothing leaves the process.
"""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from db.database import Base, get_db
from db.models import AppUser
from db.store import PotholeStore


def _enable_sqlite_foreign_keys(engine) -> None:
    # SQLite does not enforce foreign keys by default.
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, _connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


# ---------- Database fixtures ----------

@pytest.fixture()
def db_engine():
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _enable_sqlite_foreign_keys(engine)

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False, class_=Session)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def store(session_factory) -> PotholeStore:
    return PotholeStore(session_factory)


@pytest.fixture()
def file_store(tmp_path):
    """Store on a file database, for tests that hit it from several threads."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'potholes.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    _enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    yield PotholeStore(sessionmaker(bind=engine, autocommit=False, autoflush=False, class_=Session))
    engine.dispose()


# ---------- User fixtures ----------

@pytest.fixture()
def regular_user(db_session: Session) -> AppUser:
    user = AppUser(id="user-1", username="testuser", email="test@potholemap.local", is_admin=False)
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture()
def admin_user(db_session: Session) -> AppUser:
    user = AppUser(id="admin-1", username="adminuser", email="admin@potholemap.local", is_admin=True)
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


# ---------- FastAPI test clients ----------

def _override_get_db_with(db_session: Session):
    def _override_get_db():
        try:
            yield db_session
        finally:
            pass  # session lifetime managed by the db_session fixture

    return _override_get_db


@pytest.fixture()
def client(db_session: Session, store: PotholeStore):
    """TestClient for the pothole routes backed by the in-memory store."""
    # Import here to avoid pulling in the full app module graph at collection time.
    from fastapi import FastAPI
    from slowapi import _rate_limit_exceeded_handler
    from slowapi.errors import RateLimitExceeded
    from slowapi.middleware import SlowAPIMiddleware

    from routes.potholes import limiter, router

    limiter.reset()
    app = FastAPI()
    app.state.limiter = limiter
    app.state.store = store
    app.add_middleware(SlowAPIMiddleware)
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.include_router(router)
    app.dependency_overrides[get_db] = _override_get_db_with(db_session)

    with TestClient(app) as c:
        yield c


@pytest.fixture()
def fake_vision():
    from tests.fakes import FakeVisionClient

    return FakeVisionClient()


@pytest.fixture()
def fake_blob_store():
    from tests.fakes import FakeBlobStore

    return FakeBlobStore()


@pytest.fixture()
def ws_client(db_session: Session, store: PotholeStore, fake_vision, fake_blob_store):
    """TestClient for the detection socket wired to fakes.

    Cooldown is zero so consecutive frames in a test are all admitted.
    """
    from fastapi import FastAPI

    from orchestrator.orchestrator import DetectionOrchestrator
    from realtime.hub import RegionHub
    from realtime.routes import router
    from realtime.session import SessionManager

    hub = RegionHub()
    orchestrator = DetectionOrchestrator(fake_vision, fake_blob_store, store)

    app = FastAPI()
    app.state.store = store
    app.state.hub = hub
    app.state.session_manager = SessionManager(orchestrator, store, hub, cooldown_seconds=0.0)
    app.include_router(router)
    app.dependency_overrides[get_db] = _override_get_db_with(db_session)

    with TestClient(app) as c:
        yield c
