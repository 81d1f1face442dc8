"""Notification worker - turns alert candidates into e-mails.

The only component that decides whether an alert is sent. Order matters:
dedup happens before the send, so queue retries can never produce a second
e-mail for the same (check run, alert type).
"""
import logging
from typing import Optional, Dict, Any, Protocol

from ..database import Database
from ..models import QueueJob
from ..stores import (
    MonitorStore,
    NotificationLogStore,
    OwnerPreferenceLookup,
    OwnerPreferences,
    cooldown_elapsed,
)
from ..utils.db_utils import retry_on_lock, utcnow
from .alert_policy import ALERT_TYPES
from .email_sender import render_alert

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    async def send(self, to: str, subject: str, body: str, html: Optional[str] = None): ...


class NotificationWorker:
    """Handler for the notifications queue."""

    def __init__(
        self,
        db: Database,
        mailer: Mailer,
        preferences: Optional[OwnerPreferenceLookup] = None,
        monitors: Optional[MonitorStore] = None,
        logs: Optional[NotificationLogStore] = None,
        fallback_recipient: Optional[str] = None,
    ):
        self.db = db
        self.mailer = mailer
        self.preferences = preferences or OwnerPreferenceLookup()
        self.monitors = monitors or MonitorStore()
        self.logs = logs or NotificationLogStore()
        self.fallback_recipient = fallback_recipient

    async def handle(self, job: QueueJob) -> Dict[str, Any]:
        return await self.process(job.payload or {}, job_id=job.id)

    async def process(self, payload: Dict[str, Any], job_id: Optional[int] = None) -> Dict[str, Any]:
        alert_type = payload.get("alert_type")
        target_id = int(payload["target_id"])
        check_run_id = payload["check_run_id"]

        if alert_type not in ALERT_TYPES:
            logger.warning(f"Unknown alert type {alert_type!r} for monitor={target_id}, ignoring")
            return {"ignored": True}

        # 1. Dedup
        async def _dedup():
            async with self.db.session() as session:
                row, created = await self.logs.try_create(
                    session, check_run_id, alert_type, target_id, job_id
                )
                await session.commit()
                return row, created

        log, created = await retry_on_lock(_dedup)
        if not created and (log.sent or job_id is None or log.job_id != job_id):
            logger.info(
                f"Duplicate {alert_type} candidate for run={check_run_id} monitor={target_id}, dropping"
            )
            return {"skipped": "duplicate"}

        # 2. Monitor and owner preferences, read fresh on every attempt
        async with self.db.session() as session:
            monitor = await self.monitors.get(session, target_id)
            prefs = await self.preferences.get(session, target_id)

        if monitor is None:
            return await self._skip(log.id, "monitor_deleted", alert_type, target_id)

        if prefs is None:
            prefs = OwnerPreferences(email=None, cooldown_minutes=self.preferences.default_cooldown_minutes)

        if not prefs.alerts_enabled:
            return await self._skip(log.id, "alerts_disabled", alert_type, target_id)
        if not prefs.allows(alert_type):
            return await self._skip(log.id, f"{alert_type}_alerts_disabled", alert_type, target_id)

        recipient = prefs.email or self.fallback_recipient
        if not recipient:
            return await self._skip(log.id, "no_recipient", alert_type, target_id)

        # 3. Cooldown gate: reserve the slot with a compare-and-set on last_alert_at.
        # The reservation is recorded on the log row in the same transaction, so a
        # redelivery of this job recognises its own slot after a crash.
        gated = prefs.cooldown_minutes > 0
        reserved_at = previous_alert_at = None
        if gated:
            if log.reserved_at is not None and monitor.last_alert_at == log.reserved_at:
                reserved_at = log.reserved_at
                previous_alert_at = log.previous_alert_at
                logger.info(f"Resuming {alert_type} alert for monitor={target_id} with its reserved cooldown slot")
            else:
                previous_alert_at = monitor.last_alert_at
                reserved_at = utcnow()
                if not cooldown_elapsed(previous_alert_at, prefs.cooldown_minutes, reserved_at):
                    return await self._skip(log.id, "cooldown", alert_type, target_id)
                if not await self._reserve(log.id, target_id, previous_alert_at, reserved_at):
                    # Another alert for this monitor went out since we read it
                    return await self._skip(log.id, "cooldown", alert_type, target_id)

        # 4. Send
        subject, text, html = render_alert(alert_type, monitor.name, monitor.url, payload.get("result") or {})
        try:
            await self.mailer.send(recipient, subject, text, html=html)
        except BaseException:
            # Cancellation included; a process kill leaves the reservation for redelivery
            if gated:
                await self._release(log.id, target_id, reserved_at, previous_alert_at)
            logger.error(f"Sending {alert_type} alert for monitor={target_id} to {recipient} failed")
            raise

        # 5. Stamp and record
        sent_at = utcnow()

        async def _record():
            async with self.db.session() as session:
                expected = reserved_at if gated else None
                if gated:
                    await self.monitors.compare_and_set_last_alert(session, target_id, expected, sent_at)
                else:
                    await self.monitors.conditional_update(
                        session, target_id, predicate=[], values={"last_alert_at": sent_at}
                    )
                await self.logs.mark_sent(session, log.id, recipient, sent_at)
                await session.commit()

        await retry_on_lock(_record)
        logger.info(f"Sent {alert_type.upper()} email to {recipient} for monitor={target_id}")
        return {"sent": True, "recipient": recipient}

    async def _reserve(self, log_id: int, target_id: int, previous_alert_at, reserved_at) -> bool:
        """Take the cooldown slot and record it as owned by this log row."""
        async def _cas():
            async with self.db.session() as session:
                swapped = await self.monitors.compare_and_set_last_alert(
                    session, target_id, previous_alert_at, reserved_at
                )
                if swapped:
                    await self.logs.set_reservation(session, log_id, reserved_at, previous_alert_at)
                await session.commit()
                return swapped

        return await retry_on_lock(_cas)

    async def _release(self, log_id: int, target_id: int, reserved_at, previous_alert_at):
        """Hand the slot back after a failed send."""
        async def _cas():
            async with self.db.session() as session:
                await self.monitors.compare_and_set_last_alert(session, target_id, reserved_at, previous_alert_at)
                await self.logs.set_reservation(session, log_id, None, None)
                await session.commit()

        await retry_on_lock(_cas)

    async def _skip(self, log_id: int, reason: str, alert_type: str, target_id: int) -> Dict[str, Any]:
        async def _mark():
            async with self.db.session() as session:
                await self.logs.mark_skipped(session, log_id, reason)
                await session.commit()

        await retry_on_lock(_mark)
        logger.info(f"Skipping {alert_type} alert for monitor={target_id}: {reason}")
        return {"skipped": reason}
