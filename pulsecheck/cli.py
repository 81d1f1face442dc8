"""Command-line entry point.

Commands:
    serve                       API + scheduler (+ workers when MODE=all)
    worker                      check and notification worker pools only
    run MONITOR_ID              enqueue an ad-hoc check
    jobs [--queue Q] [--status S]
                                list queue jobs
    notify-test MONITOR_ID      push a test alert candidate onto the notification queue
    schedules [--url URL]       list live schedules and drift of a running server
    schedules-remove-all [--url URL]
                                remove every live schedule of a running server

Live schedules exist only inside the serving process, so the schedule
commands talk to its HTTP API.
"""
import argparse
import asyncio
import json
import logging
import signal
import uuid
from typing import List, Optional

import httpx

from .config import settings
from .pipeline import Pipeline
from .services.alert_policy import JOB_NAMES
from .utils.db_utils import utcnow

logger = logging.getLogger(__name__)


def parse_args(args: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="pulsecheck",
        description="PulseCheck - scheduled HTTP checks with e-mail alerts",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Log level (default: INFO)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the API and scheduler")
    sub.add_parser("worker", help="Run the worker pools")

    run = sub.add_parser("run", help="Enqueue an ad-hoc check")
    run.add_argument("monitor_id", type=int)

    jobs = sub.add_parser("jobs", help="List queue jobs")
    jobs.add_argument("--queue", choices=["checks", "notifications"], default="notifications")
    jobs.add_argument("--status", choices=["waiting", "active", "completed", "failed"], default=None)
    jobs.add_argument("--limit", type=int, default=50)

    notify = sub.add_parser("notify-test", help="Enqueue a test alert candidate")
    notify.add_argument("monitor_id", type=int)
    notify.add_argument("--type", dest="alert_type", choices=["down", "up"], default="down")

    for name in ("schedules", "schedules-remove-all"):
        cmd = sub.add_parser(name, help="Inspect or clear live schedules of a running server")
        cmd.add_argument("--url", default=f"http://localhost:{settings.web_port}")

    return parser.parse_args(args)


async def _run_workers():
    pipeline = Pipeline(settings)
    await pipeline.start(scheduler=False, workers=True)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    logger.info("Worker pools started, waiting for jobs")
    await stop.wait()
    logger.info("Worker shutdown initiated")
    await pipeline.stop()


async def _enqueue_check(monitor_id: int):
    pipeline = Pipeline(settings)
    await pipeline.db.init()
    try:
        job_id = await pipeline.scheduler.enqueue_ad_hoc_check(monitor_id)
        print(f"Enqueued check job {job_id} for monitor {monitor_id}")
    finally:
        await pipeline.db.close()


async def _list_jobs(queue: str, status: Optional[str], limit: int):
    pipeline = Pipeline(settings)
    await pipeline.db.init()
    try:
        job_queue = pipeline.check_queue if queue == "checks" else pipeline.notification_queue
        print(json.dumps(await job_queue.counts()))
        for job in await job_queue.list_jobs(status=status, limit=limit):
            print(
                f"{job.id}\t{job.name}\t{job.status}\t{job.attempts_made}/{job.max_attempts}\t"
                f"{json.dumps(job.payload)}\t{job.last_error or ''}"
            )
    finally:
        await pipeline.db.close()


async def _push_test_notification(monitor_id: int, alert_type: str):
    pipeline = Pipeline(settings)
    await pipeline.db.init()
    try:
        check_run_id = f"test-{uuid.uuid4()}"
        job_id = await pipeline.notification_queue.add(
            JOB_NAMES[alert_type],
            {
                "target_id": monitor_id,
                "check_run_id": check_run_id,
                "alert_type": alert_type,
                "history_id": None,
                "previous_status": "up" if alert_type == "down" else "down",
                "new_status": alert_type,
                "result": {
                    "ok": alert_type == "up",
                    "status_code": None,
                    "error": "test notification" if alert_type == "down" else None,
                    "checked_at": utcnow().isoformat(),
                },
            },
        )
        print(f"Enqueued test {alert_type} notification job {job_id} (run={check_run_id})")
    finally:
        await pipeline.db.close()


def _call_server(method: str, url: str) -> dict:
    response = httpx.request(method, url, timeout=10)
    response.raise_for_status()
    return response.json()


def main(args: Optional[List[str]] = None) -> int:
    parsed = parse_args(args)
    logging.basicConfig(
        level=getattr(logging, parsed.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if parsed.command == "serve":
        import uvicorn

        uvicorn.run("pulsecheck.main:app", host="0.0.0.0", port=settings.web_port)
    elif parsed.command == "worker":
        asyncio.run(_run_workers())
    elif parsed.command == "run":
        asyncio.run(_enqueue_check(parsed.monitor_id))
    elif parsed.command == "jobs":
        asyncio.run(_list_jobs(parsed.queue, parsed.status, parsed.limit))
    elif parsed.command == "notify-test":
        asyncio.run(_push_test_notification(parsed.monitor_id, parsed.alert_type))
    elif parsed.command == "schedules":
        print(json.dumps(_call_server("GET", f"{parsed.url}/api/ops/schedules"), indent=2))
    elif parsed.command == "schedules-remove-all":
        print(json.dumps(_call_server("DELETE", f"{parsed.url}/api/ops/schedules"), indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
