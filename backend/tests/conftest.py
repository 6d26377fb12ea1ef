import pytest
from sqlalchemy.orm import sessionmaker

from policyglass.db.database import build_engine, create_tables
from policyglass.services.job_store import JobStore
from policyglass.services.notifications import NotificationHub
from policyglass.services.reports import ReportRepository


@pytest.fixture
def session_factory(tmp_path):
    """A fresh SQLite file database per test."""
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    create_tables(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return JobStore(session_factory)


@pytest.fixture
def reports(session_factory):
    return ReportRepository(session_factory)


@pytest.fixture
def hub():
    return NotificationHub(keepalive_interval=0.01)
