"""Check worker - runs probes and applies their outcome to monitor state.

Per job:
1. Skip if the job's CheckRun was already processed (duplicate delivery)
2. Record the CheckRun as a write-ahead marker
3. Load the monitor; deleted monitors and disabled ones on auto triggers are
   no-ops that still mark the CheckRun processed. A payload without a trigger
   counts as auto
4. Probe
5. In one transaction: mark the CheckRun processed, update monitor state with
   a conditional UPDATE, append history, enqueue the alert candidate

Probe failures are ordinary "down" outcomes. Storage errors propagate so the
queue retries the job.
"""
import logging
from typing import Optional, Dict, Any

from ..database import Database
from ..exceptions import StateConflictError
from ..models import QueueJob
from ..stores import MonitorStore, HistoryStore, CheckRunStore
from ..utils.db_utils import retry_on_lock, utcnow
from .alert_policy import decide_alert, JOB_NAMES
from .checker import CheckerService, ProbeResult
from .job_queue import JobQueue

logger = logging.getLogger(__name__)

# Conditional update attempts before giving the job back to the queue
STATE_UPDATE_RETRIES = 5


class CheckWorker:
    """Handler for the checks queue."""

    def __init__(
        self,
        db: Database,
        checker: CheckerService,
        notification_queue: JobQueue,
        monitors: Optional[MonitorStore] = None,
        history: Optional[HistoryStore] = None,
        check_runs: Optional[CheckRunStore] = None,
    ):
        self.db = db
        self.checker = checker
        self.notification_queue = notification_queue
        self.monitors = monitors or MonitorStore()
        self.history = history or HistoryStore()
        self.check_runs = check_runs or CheckRunStore()

    async def handle(self, job: QueueJob) -> Dict[str, Any]:
        payload = job.payload or {}
        return await self.process(
            target_id=int(payload["target_id"]),
            check_run_id=payload["check_run_id"],
            trigger=payload.get("trigger", "auto"),
        )

    async def process(self, target_id: int, check_run_id: str, trigger: str = "auto") -> Dict[str, Any]:
        logger.info(f"Processing check run={check_run_id} monitor={target_id} trigger={trigger}")

        if await self._already_processed(check_run_id):
            logger.info(f"Check run {check_run_id} already processed, skipping duplicate delivery")
            return {"skipped": "duplicate"}

        await self._record_run(check_run_id, target_id)

        async with self.db.session() as session:
            monitor = await self.monitors.get(session, target_id)

        if monitor is None:
            logger.info(f"Monitor {target_id} not found (deleted after scheduling)")
            await self._finish_run(check_run_id)
            return {"skipped": "monitor-not-found"}

        if not monitor.enabled and trigger != "manual":
            logger.info(f"Monitor {target_id} is disabled, skipping")
            await self._finish_run(check_run_id)
            return {"skipped": "monitor-disabled"}

        previous_status = monitor.last_status or "unknown"

        try:
            result = await self.checker.check(
                url=monitor.url,
                method=monitor.method,
                headers=monitor.headers,
                body=monitor.body,
                timeout_ms=monitor.timeout_ms,
                assertions=monitor.assertions,
            )
        except Exception as e:
            # Treat as failed check
            logger.warning(f"Probe error for monitor {target_id}: {e}")
            result = ProbeResult(ok=False, checked_at=utcnow(), error=str(e) or type(e).__name__)

        return await retry_on_lock(
            lambda: self._apply_outcome(target_id, check_run_id, previous_status, result)
        )

    async def _already_processed(self, check_run_id: str) -> bool:
        async with self.db.session() as session:
            run = await self.check_runs.get(session, check_run_id)
            return run is not None and run.processed

    async def _record_run(self, check_run_id: str, target_id: int):
        async def _create():
            async with self.db.session() as session:
                await self.check_runs.try_create(session, check_run_id, target_id)
                await session.commit()

        await retry_on_lock(_create)

    async def _finish_run(self, check_run_id: str):
        """Mark a run that ends without a probe as processed."""
        async def _mark():
            async with self.db.session() as session:
                await self.check_runs.mark_processed(session, check_run_id)
                await session.commit()

        await retry_on_lock(_mark)

    async def _apply_outcome(
        self,
        target_id: int,
        check_run_id: str,
        previous_status: str,
        result: ProbeResult,
    ) -> Dict[str, Any]:
        """Persist one outcome atomically and emit at most one alert candidate."""
        async with self.db.session() as session:
            async with session.begin():
                if not await self.check_runs.mark_processed(session, check_run_id):
                    logger.info(f"Check run {check_run_id} processed concurrently, discarding result")
                    return {"skipped": "duplicate"}

                state = None
                for _ in range(STATE_UPDATE_RETRIES):
                    state = await self.monitors.record_outcome(session, target_id, previous_status, result)
                    if state is not None:
                        break
                    current = await self.monitors.get_status(session, target_id)
                    if current is None:
                        break
                    # Another check changed the status since we read it
                    previous_status = current

                if state is None:
                    if await self.monitors.get_status(session, target_id) is None:
                        logger.info(f"Monitor {target_id} deleted mid-check, result not recorded")
                        return {"ok": result.ok, "skipped": "monitor-deleted"}
                    raise StateConflictError(target_id, STATE_UPDATE_RETRIES)

                history_id = await self.history.append(session, target_id, check_run_id, result)

                alert_type = decide_alert(
                    previous_status,
                    state.last_status,
                    state.consecutive_fails,
                    state.alert_threshold,
                )
                if alert_type:
                    await self.notification_queue.add(
                        JOB_NAMES[alert_type],
                        {
                            "target_id": target_id,
                            "check_run_id": check_run_id,
                            "alert_type": alert_type,
                            "history_id": history_id,
                            "previous_status": previous_status,
                            "new_status": state.last_status,
                            "result": result.to_dict(),
                        },
                        session=session,
                    )
                    logger.info(
                        f"Alert candidate {alert_type} for monitor={target_id} "
                        f"({previous_status} -> {state.last_status}, fails={state.consecutive_fails})"
                    )
                elif state.last_status == "down":
                    logger.info(
                        f"DOWN detected but consecutive_fails={state.consecutive_fails} "
                        f"< alert_threshold={state.alert_threshold}, not alerting yet"
                    )

        logger.info(
            f"Completed check run={check_run_id} monitor={target_id} ok={result.ok} "
            f"alert={alert_type or 'none'}"
        )
        return {
            "ok": result.ok,
            "history_id": history_id,
            "consecutive_fails": state.consecutive_fails,
            "alert": alert_type,
        }
