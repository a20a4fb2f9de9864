"""Shared fixtures: an in-memory database and small factories."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401
from database import Base, enable_sqlite_savepoints, get_db
from models import Habit, User
from notifications import Notifier


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def notifier(db):
    return Notifier(db)


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make_user(**overrides):
        counter["n"] += 1
        fields = dict(
            email=f"user{counter['n']}@example.com",
            password_hash="x",
            name=f"User {counter['n']}",
            timezone="UTC",
        )
        fields.update(overrides)
        user = User(**fields)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def make_habit(db):
    def _make_habit(user, **overrides):
        fields = dict(
            user_id=user.id,
            name="Read",
            frequency_type="daily",
            completed_dates=[],
        )
        fields.update(overrides)
        habit = Habit(**fields)
        db.add(habit)
        db.commit()
        db.refresh(habit)
        return habit

    return _make_habit


@pytest.fixture
def client(session_factory):
    """API client on the test database. Not used as a context manager, so
    the lifespan (tables on the real engine, scheduler) never runs."""
    from main import app

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
