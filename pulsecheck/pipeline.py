"""Process wiring: builds the database, queues, workers and scheduler once."""
import logging
from typing import Optional

from .config import Settings, settings as default_settings
from .database import Database
from .services.checker import CheckerService
from .services.check_worker import CheckWorker
from .services.email_sender import EmailConfig, EmailSenderService
from .services.job_queue import JobQueue, WorkerPool, CHECK_QUEUE, NOTIFICATION_QUEUE
from .services.notification_worker import NotificationWorker, Mailer
from .services.scheduler import SchedulerService
from .stores import OwnerPreferenceLookup

logger = logging.getLogger(__name__)


class Pipeline:
    """All long-lived handles of a PulseCheck process."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        db: Optional[Database] = None,
        checker: Optional[CheckerService] = None,
        mailer: Optional[Mailer] = None,
    ):
        self.config = config or default_settings
        self.db = db or Database.from_settings(self.config)

        self.check_queue = JobQueue(
            self.db,
            CHECK_QUEUE,
            default_attempts=self.config.check_job_attempts,
            default_backoff_seconds=self.config.check_backoff_seconds,
            lease_seconds=self.config.job_lease_seconds,
        )
        self.notification_queue = JobQueue(
            self.db,
            NOTIFICATION_QUEUE,
            default_attempts=self.config.notification_job_attempts,
            default_backoff_seconds=self.config.notification_backoff_seconds,
            lease_seconds=self.config.job_lease_seconds,
        )

        self.checker = checker or CheckerService(
            snippet_chars=self.config.response_snippet_chars,
            verify_tls=self.config.verify_tls,
        )
        self.mailer = mailer or EmailSenderService(EmailConfig.from_settings(self.config))

        self.check_worker = CheckWorker(self.db, self.checker, self.notification_queue)
        self.notification_worker = NotificationWorker(
            self.db,
            self.mailer,
            preferences=OwnerPreferenceLookup(self.config.default_cooldown_minutes),
            fallback_recipient=self.config.email_test_recipient,
        )

        self.check_pool = WorkerPool(
            self.check_queue,
            self.check_worker.handle,
            concurrency=self.config.check_concurrency,
            poll_seconds=self.config.queue_poll_seconds,
        )
        self.notification_pool = WorkerPool(
            self.notification_queue,
            self.notification_worker.handle,
            concurrency=self.config.notification_concurrency,
            poll_seconds=self.config.queue_poll_seconds,
        )

        self.scheduler = SchedulerService(
            self.db,
            self.check_queue,
            retention_queues=[self.check_queue, self.notification_queue],
            retention_hours=self.config.job_retention_hours,
        )

    async def start(self, scheduler: bool = True, workers: bool = True):
        """Create tables, then start the scheduler and/or both worker pools.

        Run the scheduler in exactly one process; worker pools can run anywhere.
        """
        await self.db.init()
        if scheduler:
            await self.scheduler.start()
        if workers:
            self.check_pool.start()
            self.notification_pool.start()

    async def stop(self):
        self.scheduler.stop()
        await self.check_pool.stop()
        await self.notification_pool.stop()
        await self.db.close()
        logger.info("Shutdown complete")
