"""Tests for the notification worker: dedup, preferences and cooldown."""
import asyncio
import uuid
from datetime import timedelta

import pytest

from pulsecheck.exceptions import MailDeliveryError
from pulsecheck.services.email_sender import render_alert
from pulsecheck.services.notification_worker import NotificationWorker
from pulsecheck.stores import NotificationLogStore, OwnerPreferenceLookup
from pulsecheck.utils.db_utils import utcnow
from tests.conftest import create_user, create_monitor, load_monitor, set_last_alert_at, notification_logs
from tests.mocks import RecordingMailer


def candidate(monitor_id: int, alert_type: str = "down", check_run_id: str = None) -> dict:
    return {
        "target_id": monitor_id,
        "check_run_id": check_run_id or str(uuid.uuid4()),
        "alert_type": alert_type,
        "previous_status": "up" if alert_type == "down" else "down",
        "new_status": alert_type,
        "result": {
            "ok": alert_type == "up",
            "status_code": 503 if alert_type == "down" else 200,
            "response_time_ms": 42,
            "checked_at": utcnow().isoformat(),
            "error": None,
        },
    }


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def worker(db, mailer):
    return NotificationWorker(db, mailer)


class TestSending:
    """Happy path and dedup."""

    async def test_sends_down_alert(self, db, worker, mailer) -> None:
        owner = await create_user(db)
        monitor = await create_monitor(db, owner)

        result = await worker.process(candidate(monitor.id), job_id=1)

        assert result == {"sent": True, "recipient": "owner@example.com"}
        assert len(mailer.sent) == 1
        assert mailer.sent[0]["to"] == "owner@example.com"
        assert mailer.sent[0]["subject"] == "ALERT: Example API is DOWN"

        logs = await notification_logs(db)
        assert len(logs) == 1
        assert logs[0].sent is True
        assert logs[0].recipient == "owner@example.com"
        stored = await load_monitor(db, monitor.id)
        assert stored.last_alert_at == logs[0].sent_at

    async def test_sends_recovery_alert(self, db, worker, mailer) -> None:
        owner = await create_user(db)
        monitor = await create_monitor(db, owner)

        await worker.process(candidate(monitor.id, "up"), job_id=1)

        assert mailer.sent[0]["subject"] == "RECOVERY: Example API is UP"

    async def test_duplicate_candidate_from_another_job_dropped(self, db, worker, mailer) -> None:
        owner = await create_user(db)
        monitor = await create_monitor(db, owner)
        payload = candidate(monitor.id)

        await worker.process(payload, job_id=1)
        await set_last_alert_at(db, monitor.id, None)
        second = await worker.process(payload, job_id=2)

        assert second == {"skipped": "duplicate"}
        assert len(mailer.sent) == 1
        assert len(await notification_logs(db)) == 1

    async def test_duplicate_without_job_id_dropped(self, db, worker, mailer) -> None:
        owner = await create_user(db, cooldown_minutes=0)
        monitor = await create_monitor(db, owner)
        payload = candidate(monitor.id)

        await worker.process(payload)
        second = await worker.process(payload)

        assert second == {"skipped": "duplicate"}
        assert len(mailer.sent) == 1

    async def test_same_type_different_runs_are_distinct(self, db, worker, mailer) -> None:
        owner = await create_user(db, cooldown_minutes=0)
        monitor = await create_monitor(db, owner)

        await worker.process(candidate(monitor.id), job_id=1)
        await worker.process(candidate(monitor.id), job_id=2)

        assert len(mailer.sent) == 2

    async def test_down_and_up_for_same_run_are_distinct(self, db, worker, mailer) -> None:
        owner = await create_user(db, cooldown_minutes=0)
        monitor = await create_monitor(db, owner)
        run_id = str(uuid.uuid4())

        await worker.process(candidate(monitor.id, "down", run_id), job_id=1)
        await worker.process(candidate(monitor.id, "up", run_id), job_id=2)

        assert len(mailer.sent) == 2

    async def test_unknown_alert_type_ignored(self, db, worker, mailer) -> None:
        owner = await create_user(db)
        monitor = await create_monitor(db, owner)

        result = await worker.process(candidate(monitor.id, "flapping"), job_id=1)

        assert result == {"ignored": True}
        assert mailer.sent == []
        assert await notification_logs(db) == []


class TestDeliveryFailure:
    """Retries of the owning job after a failed send."""

    async def test_failed_send_raises_and_releases_cooldown(self, db) -> None:
        owner = await create_user(db)
        monitor = await create_monitor(db, owner)
        mailer = RecordingMailer(fail_times=1)
        worker = NotificationWorker(db, mailer)

        with pytest.raises(MailDeliveryError):
            await worker.process(candidate(monitor.id), job_id=1)

        stored = await load_monitor(db, monitor.id)
        assert stored.last_alert_at is None
        logs = await notification_logs(db)
        assert logs[0].sent is False

    async def test_retry_of_same_job_sends_once(self, db) -> None:
        owner = await create_user(db)
        monitor = await create_monitor(db, owner)
        mailer = RecordingMailer(fail_times=1)
        worker = NotificationWorker(db, mailer)
        payload = candidate(monitor.id)

        with pytest.raises(MailDeliveryError):
            await worker.process(payload, job_id=7)
        result = await worker.process(payload, job_id=7)

        assert result["sent"] is True
        assert mailer.attempts == 2
        assert len(mailer.sent) == 1
        logs = await notification_logs(db)
        assert len(logs) == 1
        assert logs[0].sent is True

    async def test_cancelled_send_releases_cooldown_for_redelivery(self, db) -> None:
        owner = await create_user(db, cooldown_minutes=10)
        monitor = await create_monitor(db, owner)
        mailer = RecordingMailer(fail_times=1, error=asyncio.CancelledError())
        worker = NotificationWorker(db, mailer)
        payload = candidate(monitor.id)

        with pytest.raises(asyncio.CancelledError):
            await worker.process(payload, job_id=7)

        assert (await load_monitor(db, monitor.id)).last_alert_at is None
        logs = await notification_logs(db)
        assert logs[0].reserved_at is None

        result = await worker.process(payload, job_id=7)

        assert result["sent"] is True
        assert len(mailer.sent) == 1
        logs = await notification_logs(db)
        assert [(log.sent, log.skip_reason) for log in logs] == [(True, None)]

    async def test_redelivery_reuses_reservation_left_by_killed_worker(self, db, monkeypatch) -> None:
        owner = await create_user(db, cooldown_minutes=10)
        monitor = await create_monitor(db, owner)
        mailer = RecordingMailer(fail_times=1, error=asyncio.CancelledError())
        killed = NotificationWorker(db, mailer)

        async def no_release(*args, **kwargs):
            return None

        # The process dies mid-send, so nothing hands the slot back
        monkeypatch.setattr(killed, "_release", no_release)
        payload = candidate(monitor.id)
        with pytest.raises(asyncio.CancelledError):
            await killed.process(payload, job_id=7)

        stored = await load_monitor(db, monitor.id)
        logs = await notification_logs(db)
        assert logs[0].reserved_at is not None
        assert stored.last_alert_at == logs[0].reserved_at

        # An alert from another job still sees the slot as taken
        worker = NotificationWorker(db, mailer)
        other = await worker.process(candidate(monitor.id, "up"), job_id=8)
        assert other == {"skipped": "cooldown"}

        result = await worker.process(payload, job_id=7)

        assert result["sent"] is True
        assert len(mailer.sent) == 1
        logs = await notification_logs(db)
        assert logs[0].sent is True
        assert logs[0].skip_reason is None
        assert logs[0].reserved_at is None
        assert (await load_monitor(db, monitor.id)).last_alert_at == logs[0].sent_at

    async def test_interrupted_send_stays_in_unsent_backlog(self, db, monkeypatch) -> None:
        owner = await create_user(db, cooldown_minutes=10)
        monitor = await create_monitor(db, owner)
        worker = NotificationWorker(db, RecordingMailer(fail_times=1, error=asyncio.CancelledError()))

        async def no_release(*args, **kwargs):
            return None

        monkeypatch.setattr(worker, "_release", no_release)
        with pytest.raises(asyncio.CancelledError):
            await worker.process(candidate(monitor.id), job_id=7)

        async with db.session() as session:
            unsent = await NotificationLogStore().list_unsent(session)
        assert len(unsent) == 1
        assert unsent[0].job_id == 7

    async def test_sent_row_is_not_resent_by_owning_job(self, db, worker, mailer) -> None:
        owner = await create_user(db, cooldown_minutes=0)
        monitor = await create_monitor(db, owner)
        payload = candidate(monitor.id)

        await worker.process(payload, job_id=3)
        second = await worker.process(payload, job_id=3)

        assert second == {"skipped": "duplicate"}
        assert len(mailer.sent) == 1


class TestPreferences:
    """Owner preferences and recipients."""

    @pytest.mark.parametrize(
        "prefs,alert_type,reason",
        [
            ({"alerts_enabled": False}, "down", "alerts_disabled"),
            ({"alert_on_down": False}, "down", "down_alerts_disabled"),
            ({"alert_on_up": False}, "up", "up_alerts_disabled"),
        ],
    )
    async def test_preference_skips(self, db, worker, mailer, prefs, alert_type, reason) -> None:
        owner = await create_user(db, **prefs)
        monitor = await create_monitor(db, owner)

        result = await worker.process(candidate(monitor.id, alert_type), job_id=1)

        assert result == {"skipped": reason}
        assert mailer.sent == []
        logs = await notification_logs(db)
        assert logs[0].skip_reason == reason
        assert logs[0].sent is False

    async def test_other_type_still_sent(self, db, worker, mailer) -> None:
        owner = await create_user(db, alert_on_up=False)
        monitor = await create_monitor(db, owner)

        result = await worker.process(candidate(monitor.id, "down"), job_id=1)

        assert result["sent"] is True

    async def test_deleted_monitor_skipped(self, db, worker, mailer) -> None:
        result = await worker.process(candidate(12345), job_id=1)

        assert result == {"skipped": "monitor_deleted"}
        assert mailer.sent == []

    async def test_no_recipient_skipped(self, db, worker, mailer) -> None:
        owner = await create_user(db, email=None)
        monitor = await create_monitor(db, owner)

        result = await worker.process(candidate(monitor.id), job_id=1)

        assert result == {"skipped": "no_recipient"}

    async def test_fallback_recipient(self, db, mailer) -> None:
        owner = await create_user(db, email=None)
        monitor = await create_monitor(db, owner)
        worker = NotificationWorker(db, mailer, fallback_recipient="ops@example.com")

        result = await worker.process(candidate(monitor.id), job_id=1)

        assert result == {"sent": True, "recipient": "ops@example.com"}


class TestCooldown:
    """Rate limiting per monitor."""

    async def test_within_cooldown_skipped(self, db, worker, mailer) -> None:
        owner = await create_user(db, cooldown_minutes=10)
        monitor = await create_monitor(db, owner)
        last = utcnow() - timedelta(minutes=5)
        await set_last_alert_at(db, monitor.id, last)

        result = await worker.process(candidate(monitor.id), job_id=1)

        assert result == {"skipped": "cooldown"}
        assert mailer.sent == []
        assert (await load_monitor(db, monitor.id)).last_alert_at == last

    async def test_after_cooldown_sent(self, db, worker, mailer) -> None:
        owner = await create_user(db, cooldown_minutes=10)
        monitor = await create_monitor(db, owner)
        await set_last_alert_at(db, monitor.id, utcnow() - timedelta(minutes=11))

        result = await worker.process(candidate(monitor.id), job_id=1)

        assert result["sent"] is True

    async def test_cooldown_applies_across_alert_types(self, db, worker, mailer) -> None:
        owner = await create_user(db, cooldown_minutes=10)
        monitor = await create_monitor(db, owner)

        await worker.process(candidate(monitor.id, "down"), job_id=1)
        result = await worker.process(candidate(monitor.id, "up"), job_id=2)

        assert result == {"skipped": "cooldown"}
        assert len(mailer.sent) == 1

    async def test_zero_cooldown_disables_gate(self, db, worker, mailer) -> None:
        owner = await create_user(db, cooldown_minutes=0)
        monitor = await create_monitor(db, owner)

        for job_id in range(3):
            await worker.process(candidate(monitor.id), job_id=job_id)

        assert len(mailer.sent) == 3
        assert (await load_monitor(db, monitor.id)).last_alert_at is not None

    async def test_null_cooldown_uses_server_default(self, db, mailer) -> None:
        owner = await create_user(db, cooldown_minutes=None)
        monitor = await create_monitor(db, owner)
        worker = NotificationWorker(db, mailer, preferences=OwnerPreferenceLookup(default_cooldown_minutes=30))
        await set_last_alert_at(db, monitor.id, utcnow() - timedelta(minutes=20))

        result = await worker.process(candidate(monitor.id), job_id=1)

        assert result == {"skipped": "cooldown"}

    async def test_concurrent_candidates_send_once(self, db, worker, mailer) -> None:
        owner = await create_user(db, cooldown_minutes=10)
        monitor = await create_monitor(db, owner)

        results = await asyncio.gather(*[
            worker.process(candidate(monitor.id), job_id=job_id) for job_id in range(5)
        ])

        assert len(mailer.sent) == 1
        assert sum(1 for r in results if r.get("sent")) == 1
        assert all(r == {"skipped": "cooldown"} for r in results if not r.get("sent"))


class TestRenderAlert:
    """Tests for render_alert."""

    def test_down_includes_error(self) -> None:
        subject, text, html = render_alert(
            "down", "Shop", "https://shop.example.com", {"status_code": None, "error": "timeout"}
        )

        assert subject == "ALERT: Shop is DOWN"
        assert "Error: timeout" in text
        assert "Status code: N/A" in text
        assert "https://shop.example.com" in html

    def test_up_includes_response_time(self) -> None:
        subject, text, _ = render_alert("up", "", "https://shop.example.com", {"response_time_ms": 120})

        assert subject == "RECOVERY: https://shop.example.com is UP"
        assert "Response time: 120ms" in text

    def test_html_is_escaped(self) -> None:
        _, _, html = render_alert("down", "<b>x</b>", "https://a.example.com/?q=<script>", {})

        assert "<script>" not in html
        assert "&lt;b&gt;" in html
