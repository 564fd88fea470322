import os
import sys
import tempfile
import threading
import time
from pathlib import Path

import pytest

_tmp = tempfile.mkdtemp(prefix="outreach-queue-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+pysqlite:///{_tmp}/app.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

sys.path.append(str(Path(__file__).resolve().parents[1] / "api"))

from outreach_queue import models  # noqa: E402,F401
from outreach_queue.db import Base, make_engine, make_session_factory  # noqa: E402
from outreach_queue.generator import GenerationService  # noqa: E402
from outreach_queue.processor import BatchProcessor  # noqa: E402
from outreach_queue.schemas import ContactIn, GeneratedContent  # noqa: E402
from outreach_queue.store import JobStore  # noqa: E402

@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite+pysqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()

@pytest.fixture
def db(session_factory):
    with session_factory() as s:
        yield s

def make_contacts(n: int, **overrides) -> list[ContactIn]:
    contacts = []
    for i in range(n):
        fields = {
            "company_name": f"Company {i}",
            "first_name": f"First{i}",
            "last_name": f"Last{i}",
            "profile_url": f"https://www.linkedin.com/in/contact-{i}",
            "title": "Engineer",
        }
        fields.update(overrides)
        contacts.append(ContactIn(**fields))
    return contacts

@pytest.fixture
def seed_job(session_factory):
    def _seed(n: int = 1, owner_id: str = "owner-1", contacts: list[ContactIn] | None = None) -> str:
        with session_factory() as s:
            return JobStore(s).create(owner_id, contacts or make_contacts(n), filename="leads.xlsx").id

    return _seed

class FakeGenerator:
    """Succeeds unless the company name maps to an exception (class or instance) in ``failures``."""

    def __init__(self, failures: dict | None = None, delay: float = 0.0):
        self.failures = failures or {}
        self.delay = delay
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def generate(self, record):
        with self._lock:
            self.calls.append(record.id)
        if self.delay:
            time.sleep(self.delay)
        failure = self.failures.get(record.company_name)
        if failure is not None:
            raise failure
        return GeneratedContent(
            message1=f"Hello {record.first_name}",
            message2=f"Following up, {record.first_name}",
            message3=f"A case study for {record.company_name}",
            tone="conversational",
        )

class AlwaysFailing:
    def __init__(self, error: Exception):
        self.error = error

    def generate(self, record):
        raise self.error

@pytest.fixture
def make_processor(session_factory):
    def _make(generator=None, timeout_seconds: float = 5.0, **kwargs) -> BatchProcessor:
        generation = GenerationService(generator or FakeGenerator(), timeout_seconds=timeout_seconds)
        kwargs.setdefault("dead_letter", None)
        return BatchProcessor(session_factory, generation, **kwargs)

    return _make

