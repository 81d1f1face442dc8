"""Data access for the pipeline.

Every store method takes the caller's AsyncSession so a worker can compose
several writes into one transaction. Monitor rows are only ever written with
single conditional UPDATE statements; nothing here loads a monitor, mutates
it in Python and saves it back.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional, List, Sequence, Tuple, Any, Dict

from sqlalchemy import select, update, delete, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Monitor, User, CheckRun, CheckHistory, NotificationLog
from .utils.db_utils import utcnow

if TYPE_CHECKING:
    from .services.checker import ProbeResult

logger = logging.getLogger(__name__)


def insert_ignore(session: AsyncSession, model):
    """INSERT ... ON CONFLICT DO NOTHING for the session's dialect."""
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model).on_conflict_do_nothing()
    if dialect == "sqlite":
        return sqlite.insert(model).on_conflict_do_nothing()
    raise NotImplementedError(f"Unsupported database dialect: {dialect}")


@dataclass
class MonitorState:
    """Monitor columns as they stand right after a conditional update."""
    last_status: str
    consecutive_fails: int
    alert_threshold: int


class MonitorStore:
    """Reads and atomic conditional writes on monitor rows."""

    async def get(self, session: AsyncSession, monitor_id: int) -> Optional[Monitor]:
        result = await session.execute(select(Monitor).where(Monitor.id == monitor_id))
        return result.scalar_one_or_none()

    async def get_status(self, session: AsyncSession, monitor_id: int) -> Optional[str]:
        result = await session.execute(
            select(Monitor.last_status).where(Monitor.id == monitor_id)
        )
        return result.scalar_one_or_none()

    async def list_enabled(self, session: AsyncSession) -> List[Tuple[int, int]]:
        """(id, frequency_minutes) of every enabled monitor."""
        result = await session.execute(
            select(Monitor.id, Monitor.frequency_minutes).where(Monitor.enabled.is_(True))
        )
        return [(row.id, row.frequency_minutes) for row in result]

    async def conditional_update(
        self,
        session: AsyncSession,
        monitor_id: int,
        predicate: Sequence[Any],
        values: Dict[str, Any],
    ) -> Optional[MonitorState]:
        """UPDATE monitors SET values WHERE id = monitor_id AND predicate.

        Returns the post-update state, or None when no row matched.
        """
        stmt = (
            update(Monitor)
            .where(Monitor.id == monitor_id, *predicate)
            .values(**values)
            .returning(Monitor.last_status, Monitor.consecutive_fails, Monitor.alert_threshold)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        row = result.first()
        if row is None:
            return None
        return MonitorState(
            last_status=row.last_status,
            consecutive_fails=row.consecutive_fails,
            alert_threshold=row.alert_threshold,
        )

    async def record_outcome(
        self,
        session: AsyncSession,
        monitor_id: int,
        previous_status: str,
        result: "ProbeResult",
    ) -> Optional[MonitorState]:
        """Apply a probe outcome if the status is still previous_status.

        A failure increments consecutive_fails in SQL, a success resets it.
        """
        new_status = "up" if result.ok else "down"
        return await self.conditional_update(
            session,
            monitor_id,
            predicate=[Monitor.last_status == previous_status],
            values={
                "last_status": new_status,
                "consecutive_fails": 0 if result.ok else Monitor.consecutive_fails + 1,
                "last_response_time": result.response_time_ms,
                "last_checked_at": result.checked_at,
                "updated_at": utcnow(),
            },
        )

    async def compare_and_set_last_alert(
        self,
        session: AsyncSession,
        monitor_id: int,
        expected: Optional[datetime],
        new_value: Optional[datetime],
    ) -> bool:
        """Set last_alert_at only if it still equals expected."""
        if expected is None:
            current_matches = Monitor.last_alert_at.is_(None)
        else:
            current_matches = Monitor.last_alert_at == expected
        state = await self.conditional_update(
            session,
            monitor_id,
            predicate=[current_matches],
            values={"last_alert_at": new_value},
        )
        return state is not None


class HistoryStore:
    """Append-only check history."""

    async def append(
        self,
        session: AsyncSession,
        monitor_id: int,
        check_run_id: str,
        result: "ProbeResult",
    ) -> int:
        entry = CheckHistory(
            monitor_id=monitor_id,
            check_run_id=check_run_id,
            status_code=result.status_code,
            response_time_ms=result.response_time_ms,
            ok=result.ok,
            body_hash=result.body_hash,
            response_snippet=result.response_snippet,
            error=result.error,
            checked_at=result.checked_at,
        )
        session.add(entry)
        await session.flush()  # Get the entry.id
        return entry.id

    async def count_for_monitor(self, session: AsyncSession, monitor_id: int) -> int:
        result = await session.execute(
            select(func.count()).select_from(CheckHistory).where(CheckHistory.monitor_id == monitor_id)
        )
        return result.scalar_one()


class CheckRunStore:
    """Idempotency tokens for check jobs."""

    async def get(self, session: AsyncSession, check_run_id: str) -> Optional[CheckRun]:
        result = await session.execute(select(CheckRun).where(CheckRun.id == check_run_id))
        return result.scalar_one_or_none()

    async def try_create(self, session: AsyncSession, check_run_id: str, monitor_id: int) -> bool:
        """Insert an unprocessed run. Returns False if it already existed."""
        stmt = insert_ignore(session, CheckRun).values(
            id=check_run_id,
            monitor_id=monitor_id,
            processed=False,
            created_at=utcnow(),
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def mark_processed(self, session: AsyncSession, check_run_id: str) -> bool:
        """Flip processed false -> true. Returns False if another worker got there first."""
        result = await session.execute(
            update(CheckRun)
            .where(CheckRun.id == check_run_id, CheckRun.processed.is_(False))
            .values(processed=True, processed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def purge_processed(self, session: AsyncSession, before: datetime) -> int:
        """Delete processed runs older than before. Unprocessed runs are kept for redelivery."""
        result = await session.execute(
            delete(CheckRun).where(CheckRun.processed.is_(True), CheckRun.processed_at < before)
        )
        return result.rowcount


class NotificationLogStore:
    """Alert dedup rows keyed by (check_run_id, alert_type)."""

    async def try_create(
        self,
        session: AsyncSession,
        check_run_id: str,
        alert_type: str,
        monitor_id: int,
        job_id: Optional[int],
    ) -> Tuple[NotificationLog, bool]:
        """Insert-if-absent. Returns (row, created)."""
        stmt = insert_ignore(session, NotificationLog).values(
            check_run_id=check_run_id,
            alert_type=alert_type,
            monitor_id=monitor_id,
            job_id=job_id,
            sent=False,
            created_at=utcnow(),
        )
        result = await session.execute(stmt)
        created = result.rowcount == 1
        row = await session.execute(
            select(NotificationLog).where(
                NotificationLog.check_run_id == check_run_id,
                NotificationLog.alert_type == alert_type,
            )
        )
        return row.scalar_one(), created

    async def mark_sent(self, session: AsyncSession, log_id: int, recipient: str, sent_at: datetime) -> bool:
        result = await session.execute(
            update(NotificationLog)
            .where(NotificationLog.id == log_id, NotificationLog.sent.is_(False))
            .values(
                sent=True,
                sent_at=sent_at,
                recipient=recipient,
                skip_reason=None,
                reserved_at=None,
                previous_alert_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_reservation(
        self,
        session: AsyncSession,
        log_id: int,
        reserved_at: Optional[datetime],
        previous_alert_at: Optional[datetime],
    ):
        """Record (or clear, with None) the cooldown slot this row's job holds."""
        await session.execute(
            update(NotificationLog)
            .where(NotificationLog.id == log_id)
            .values(reserved_at=reserved_at, previous_alert_at=previous_alert_at)
            .execution_options(synchronize_session=False)
        )

    async def mark_skipped(self, session: AsyncSession, log_id: int, reason: str):
        await session.execute(
            update(NotificationLog)
            .where(NotificationLog.id == log_id, NotificationLog.sent.is_(False))
            .values(skip_reason=reason)
            .execution_options(synchronize_session=False)
        )

    async def list_unsent(
        self,
        session: AsyncSession,
        limit: int = 100,
        include_skipped: bool = False,
    ) -> List[NotificationLog]:
        """Rows that never led to a sent e-mail, newest first.

        Intentional skips (preferences, cooldown) are left out unless asked for.
        """
        stmt = select(NotificationLog).where(NotificationLog.sent.is_(False))
        if not include_skipped:
            stmt = stmt.where(NotificationLog.skip_reason.is_(None))
        result = await session.execute(
            stmt.order_by(NotificationLog.created_at.desc()).limit(limit)
        )
        return list(result.scalars().all())


@dataclass
class OwnerPreferences:
    """Alert preferences of a monitor's owner."""
    email: Optional[str]
    alerts_enabled: bool = True
    alert_on_down: bool = True
    alert_on_up: bool = True
    cooldown_minutes: int = 10

    def allows(self, alert_type: str) -> bool:
        if alert_type == "down":
            return self.alert_on_down
        if alert_type == "up":
            return self.alert_on_up
        return False


class OwnerPreferenceLookup:
    """Resolves the owner preferences for a monitor."""

    def __init__(self, default_cooldown_minutes: int = 10):
        self.default_cooldown_minutes = default_cooldown_minutes

    async def get(self, session: AsyncSession, monitor_id: int) -> Optional[OwnerPreferences]:
        result = await session.execute(
            select(User)
            .join(Monitor, Monitor.owner_id == User.id)
            .where(Monitor.id == monitor_id)
        )
        user = result.scalar_one_or_none()
        if user is None:
            return None
        cooldown = user.cooldown_minutes
        if cooldown is None:
            cooldown = self.default_cooldown_minutes
        return OwnerPreferences(
            email=user.email,
            alerts_enabled=bool(user.alerts_enabled),
            alert_on_down=bool(user.alert_on_down),
            alert_on_up=bool(user.alert_on_up),
            cooldown_minutes=cooldown,
        )


def cooldown_elapsed(last_alert_at: Optional[datetime], cooldown_minutes: int, now: datetime) -> bool:
    """True when a new alert may be sent."""
    if not cooldown_minutes or cooldown_minutes <= 0:
        return True
    if last_alert_at is None:
        return True
    return now - last_alert_at >= timedelta(minutes=cooldown_minutes)
