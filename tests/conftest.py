import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("PIPELINE_LOCK_BACKEND", "memory")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from gate_intel.db.database import Base
from gate_intel.db import models  # noqa: F401  (registers tables)


@pytest.fixture
def engine(tmp_path):
    db_path = tmp_path / "gates.sqlite"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()
