import os
from collections.abc import Generator

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("KV_BACKEND", "memory")
os.environ.setdefault("SWEEPER_ENABLED", "false")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from osnovci.core.kv_store import InMemoryStore
from osnovci.db.base import Base
from osnovci.db import models  # noqa: F401
from osnovci.db.models.user import User


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def make_user(db_session: Session):
    def _make_user(email: str, role: str = "student", display_name: str = "", is_active: bool = True) -> User:
        user = User(
            email=email,
            hashed_password="x",
            display_name=display_name,
            role=role,
            is_active=is_active,
            token_version=0,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()
