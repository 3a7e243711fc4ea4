"""Pytest fixtures for Content Coordinator tests."""
import uuid
from datetime import datetime, timedelta
from typing import Generator, Optional

import pytest

from src.coordinator import Coordinator, ExecutionRecordRepository
from src.coordinator.records import ExecutionContext, ExecutionRecord, ExecutionStatus
from src.core.config import CoordinatorSettings, load_settings
from src.core.error_log import ErrorLogRepository
from src.core.store import Database
from src.resources.pools import ResourcePoolTracker
from src.work_queue.work_queue import WorkQueue

# Wednesday, inside peak hours
FIXED_NOW = datetime(2026, 3, 4, 11, 0, 0)


# --- Core Fixtures ---

@pytest.fixture
def now() -> datetime:
    """Fixed tick clock."""
    return FIXED_NOW


@pytest.fixture
def settings() -> CoordinatorSettings:
    """Default settings, isolated from the environment's .env file."""
    return load_settings(_env_file=None, db_path=":memory:")


@pytest.fixture
def make_settings():
    """Factory fixture for settings with overrides."""
    def _make(**overrides) -> CoordinatorSettings:
        return load_settings(_env_file=None, db_path=":memory:", **overrides)
    return _make


@pytest.fixture
def db() -> Generator[Database, None, None]:
    """Fresh in-memory database."""
    database = Database()
    yield database
    database.close()


@pytest.fixture
def error_log(db: Database) -> ErrorLogRepository:
    return ErrorLogRepository(db)


@pytest.fixture
def pools(db: Database, settings: CoordinatorSettings, now: datetime) -> ResourcePoolTracker:
    """Pool tracker with pools created at the fixed clock."""
    tracker = ResourcePoolTracker(db, settings)
    tracker.ensure_pools(now)
    return tracker


@pytest.fixture
def queue(db: Database, settings: CoordinatorSettings, error_log: ErrorLogRepository) -> WorkQueue:
    return WorkQueue(db, settings, error_log)


@pytest.fixture
def records(db: Database) -> ExecutionRecordRepository:
    return ExecutionRecordRepository(db)


@pytest.fixture
def coordinator(db: Database, settings: CoordinatorSettings, pools: ResourcePoolTracker) -> Coordinator:
    """Coordinator over the shared database, with no notifiers."""
    return Coordinator(settings, db=db, notifiers=[])


@pytest.fixture
def make_record(records: ExecutionRecordRepository, now: datetime):
    """Factory fixture: insert a pending record for a category."""
    def _make(category: str = "seo_monitor", scheduled_at: Optional[datetime] = None, **fields) -> ExecutionRecord:
        scheduled = scheduled_at or now
        record = ExecutionRecord(
            execution_id=str(uuid.uuid4()),
            category=category,
            status=ExecutionStatus.PENDING,
            priority=fields.pop("priority", 80),
            scheduled_at=scheduled,
            timeout_at=fields.pop("timeout_at", scheduled + timedelta(minutes=10)),
            batch_size=fields.pop("batch_size", 1),
            estimated_cost=fields.pop("estimated_cost", 0.05),
            worker_id=fields.pop("worker_id", "worker-test"),
            input_context=ExecutionContext(category_id=category, batch_size=1),
            created_at=scheduled,
            updated_at=scheduled,
            **fields,
        )
        records.create_pending([record])
        return record
    return _make
