"""Shared pytest fixtures for PulseCheck tests.

Each test gets its own SQLite file so WAL locking behaves like production.
"""
from datetime import datetime
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy import select, func

from pulsecheck.config import Settings
from pulsecheck.database import Database
from pulsecheck.models import User, Monitor, CheckHistory, NotificationLog
from pulsecheck.pipeline import Pipeline
from pulsecheck.services.job_queue import JobQueue, CHECK_QUEUE, NOTIFICATION_QUEUE

from tests.mocks import FakeChecker, RecordingMailer


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", data_path=str(tmp_path))
    await database.init()
    yield database
    await database.close()


@pytest.fixture
def check_queue(db):
    return JobQueue(db, CHECK_QUEUE, default_attempts=3, default_backoff_seconds=0, lease_seconds=60)


@pytest.fixture
def notification_queue(db):
    return JobQueue(db, NOTIFICATION_QUEUE, default_attempts=3, default_backoff_seconds=0, lease_seconds=60)


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        data_path=str(tmp_path),
        check_backoff_seconds=0,
        notification_backoff_seconds=0,
        queue_poll_seconds=0.01,
        email_test_recipient=None,
    )


@pytest_asyncio.fixture
async def pipeline_factory(db, test_settings):
    """Build pipelines sharing the test database with a fake probe and mailer."""
    created = []

    def factory(checker: Optional[FakeChecker] = None, mailer: Optional[RecordingMailer] = None) -> Pipeline:
        pipeline = Pipeline(
            test_settings,
            db=db,
            checker=checker or FakeChecker(),
            mailer=mailer or RecordingMailer(),
        )
        created.append(pipeline)
        return pipeline

    yield factory

    for pipeline in created:
        pipeline.scheduler.stop()
        await pipeline.check_pool.stop()
        await pipeline.notification_pool.stop()


async def create_user(
    db: Database,
    email: Optional[str] = "owner@example.com",
    **prefs,
) -> User:
    async with db.session() as session:
        user = User(name="Owner", email=email, **prefs)
        session.add(user)
        await session.commit()
        return user


async def create_monitor(db: Database, owner: User, **fields) -> Monitor:
    values = {
        "name": "Example API",
        "url": "https://api.example.com/health",
        "frequency_minutes": 5,
        "alert_threshold": 1,
    }
    values.update(fields)
    async with db.session() as session:
        monitor = Monitor(owner_id=owner.id, **values)
        session.add(monitor)
        await session.commit()
        return monitor


async def load_monitor(db: Database, monitor_id: int) -> Monitor:
    async with db.session() as session:
        return await session.get(Monitor, monitor_id)


async def set_last_alert_at(db: Database, monitor_id: int, value: Optional[datetime]):
    async with db.session() as session:
        monitor = await session.get(Monitor, monitor_id)
        monitor.last_alert_at = value
        await session.commit()


async def count_history(db: Database, monitor_id: int) -> int:
    async with db.session() as session:
        result = await session.execute(
            select(func.count()).select_from(CheckHistory).where(CheckHistory.monitor_id == monitor_id)
        )
        return result.scalar_one()


async def notification_logs(db: Database):
    async with db.session() as session:
        result = await session.execute(select(NotificationLog).order_by(NotificationLog.id))
        return list(result.scalars().all())
