"""Command line entry point: ``python -m wavmedia {serve,workers,enqueue,cleanup-now}``."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal

from wavmedia.core import settings
from wavmedia.core.errors import JobDataError
from wavmedia.core.logging import configure_logging
from wavmedia.queue.definitions import FILE_CLEANUP, QUEUE_SPECS
from wavmedia.queue.job_queue import JobOptions
from wavmedia.runtime import MediaRuntime
from wavmedia.schemas.jobs import FileCleanupPayload, Timeframe

logger = logging.getLogger("wavmedia.cli")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="wavmedia", description="Media conversion pipeline.")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL.")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API (and, with API_RUNS_WORKERS, the workers).")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    sub.add_parser("workers", help="Run every queue's worker pool until interrupted.")

    enqueue = sub.add_parser("enqueue", help="Validate and enqueue one job.")
    enqueue.add_argument("queue", choices=sorted(QUEUE_SPECS))
    enqueue.add_argument("payload", help="Job payload as JSON (camelCase keys).")
    enqueue.add_argument("--delay", type=float, default=0.0, help="Seconds before the job becomes due.")

    cleanup = sub.add_parser("cleanup-now", help="Run one file cleanup sweep in this process.")
    cleanup.add_argument("--days", type=int, default=None, help="Retention window (default CLEANUP_RETENTION_DAYS).")
    return parser.parse_args(argv)


async def _run_workers() -> None:
    runtime = MediaRuntime(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # pragma: no cover (windows)
            pass
    async with runtime:
        await runtime.start()
        logger.info("Workers running; Ctrl+C to stop")
        await stop.wait()


async def _enqueue(queue: str, payload: dict, delay: float) -> str:
    async with MediaRuntime(settings) as runtime:
        options = JobOptions(attempts=settings.JOB_ATTEMPTS, backoff_ms=settings.JOB_BACKOFF_MS, delay_s=delay)
        job_id = await runtime.queue.enqueue(queue, payload, options)
    return str(job_id)


async def _cleanup_now(days: int | None) -> dict:
    payload = FileCleanupPayload(timeframe=Timeframe(value=days, unit="days") if days else None)
    async with MediaRuntime(settings) as runtime:
        job_id = await runtime.queue.enqueue(FILE_CLEANUP, payload)
        await runtime.queue.drain(FILE_CLEANUP, max_jobs=1)
        job = await runtime.queue.get_job(job_id)
    return {"jobId": str(job_id), "state": job.state if job else None, "result": job.result if job else None}


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level or settings.LOG_LEVEL)

    if args.command == "serve":
        import uvicorn

        uvicorn.run("wavmedia.main:app", host=args.host, port=args.port)
        return 0

    if args.command == "workers":
        asyncio.run(_run_workers())
        return 0

    if args.command == "enqueue":
        try:
            payload = json.loads(args.payload)
        except json.JSONDecodeError as e:
            print(f"[ERROR] payload must be valid JSON: {e}")
            return 2
        try:
            job_id = asyncio.run(_enqueue(args.queue, payload, args.delay))
        except JobDataError as e:
            print(f"[ERROR] {e.message}")
            return 2
        print(f"[OK] Enqueued {args.queue} job {job_id}")
        return 0

    if args.command == "cleanup-now":
        summary = asyncio.run(_cleanup_now(args.days))
        print(json.dumps(summary, indent=2, default=str))
        return 0 if summary["state"] == "completed" else 1

    return 2  # pragma: no cover


if __name__ == "__main__":
    raise SystemExit(main())
