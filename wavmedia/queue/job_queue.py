from __future__ import annotations

import asyncio
import functools
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Coroutine, Generic, Literal, TypeVar

from pydantic import BaseModel, ValidationError
from redis import Redis
from rq import Queue, Retry, SimpleWorker
from rq.exceptions import NoSuchJobError
from rq.job import Job
from rq.timeouts import TimerDeathPenalty

from wavmedia.core.errors import JobDataError, is_retryable
from wavmedia.core.timeutil import as_utc, utcnow

P = TypeVar("P", bound=BaseModel)

EventKind = Literal["completed", "failed", "retrying"]

# rq status -> the four states this service reports
_STATES = {
    "queued": "waiting",
    "scheduled": "waiting",
    "deferred": "waiting",
    "started": "active",
    "finished": "completed",
    "failed": "failed",
    "stopped": "failed",
    "canceled": "failed",
}

_REPEAT_POINTER = "wavmedia:repeat:{key}"


@dataclass(frozen=True)
class JobOptions:
    attempts: int = 3
    backoff_ms: int = 1000
    delay_s: float = 0.0

    def retry(self) -> Retry | None:
        """rq retry policy: ``attempts - 1`` retries, intervals doubling from ``backoff_ms``."""
        retries = max(1, self.attempts) - 1
        if retries == 0:
            return None
        intervals = [max(0, round(self.backoff_ms * 2 ** i / 1000)) for i in range(retries)]
        return Retry(max=retries, interval=intervals)


@dataclass(frozen=True)
class JobContext(Generic[P]):
    job_id: str
    queue: str
    name: str
    attempt: int          # 1-based
    max_attempts: int
    payload: P

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


@dataclass(frozen=True)
class JobRecord:
    """Snapshot of one job as the API and CLI report it."""
    id: str
    queue: str
    name: str
    state: str
    attempts_made: int
    max_attempts: int
    payload: dict
    result: dict | None
    last_error: str | None
    run_at: datetime | None
    finished_at: datetime | None


@dataclass(frozen=True)
class QueueEvent:
    kind: EventKind
    queue: str
    job_id: str
    name: str
    attempts_made: int
    result: dict | None = None
    error: str | None = None


Handler = Callable[[JobContext], Awaitable[dict | None]]
ExhaustedHook = Callable[[Any, BaseException], Awaitable[None]]
Listener = Callable[[QueueEvent], Awaitable[None] | None]


@dataclass
class QueueDefinition:
    """
    name: rq queue jobs are enqueued under
    payload_model: pydantic model every payload must validate against
    concurrency: consumer threads pulling from this queue
    on_exhausted: runs once when a job fails for good (last attempt or non-retryable)
    """
    name: str
    payload_model: type[BaseModel]
    concurrency: int = 1
    on_exhausted: ExhaustedHook | None = None


@dataclass
class _Registration:
    definition: QueueDefinition
    handler: Handler


_current = threading.local()


def run_job(queue: str, payload: dict) -> dict | None:
    """What rq executes for every job: hands it to the consumer running in this thread."""
    consumer: _Consumer | None = getattr(_current, "consumer", None)
    if consumer is None:
        raise RuntimeError("wavmedia jobs only run inside a JobQueue consumer")
    return consumer.run_current(queue, payload)


class _Consumer(SimpleWorker):
    """
    rq worker that runs in a thread of the process owning the event loop.

    The job body is a coroutine scheduled on that loop; while it runs the
    worker keeps the job's heartbeat fresh so rq never takes it for abandoned.
    """

    death_penalty_class = TimerDeathPenalty

    def __init__(self, queues, *, owner: "JobQueue", connection: Redis):
        super().__init__(queues, connection=connection, exception_handlers=[owner._on_job_exception])
        self.owner = owner
        self.performed = 0
        self._job: Job | None = None

    def _install_signal_handlers(self):
        # signals belong to the process that owns the event loop, not to consumer threads
        pass

    def perform_job(self, job, queue):
        _current.consumer = self
        self._job = job
        self.performed += 1
        try:
            return super().perform_job(job, queue)
        finally:
            _current.consumer = None
            self._job = None

    def run_current(self, queue: str, payload: dict) -> dict | None:
        job = self._job
        future = self.owner._submit(job, queue, payload)
        while True:
            try:
                return future.result(timeout=self.owner.heartbeat_s)
            except FutureTimeout:
                if future.done():
                    raise
                self.maintain_heartbeats(job)


class JobQueue:
    """
    At-least-once job queue on rq/Redis.

    rq owns delivery, retries (``Retry`` with doubling intervals), delayed
    jobs and the state registries. Handlers are coroutines; a started job is
    never handed to a second consumer while its heartbeat is alive, but a
    crash mid-job can still lead to a second delivery, so handlers must
    tolerate that.
    """

    def __init__(
        self,
        redis: Redis,
        *,
        poll_interval_s: float = 1.0,
        heartbeat_s: float = 30.0,
        job_timeout_s: float = 3600.0,
        result_ttl_s: int = 7 * 86400,
        failure_ttl_s: int = 30 * 86400,
        default_options: JobOptions | None = None,
    ):
        self.redis = redis
        self.poll_interval_s = float(poll_interval_s)
        self.heartbeat_s = heartbeat_s
        self.job_timeout_s = float(job_timeout_s)
        self.result_ttl_s = int(result_ttl_s)
        self.failure_ttl_s = int(failure_ttl_s)
        self.default_options = default_options or JobOptions()
        self._registrations: dict[str, _Registration] = {}
        self._rq_queues: dict[str, Queue] = {}
        self._listeners: dict[str, list[Listener]] = {"completed": [], "failed": [], "retrying": []}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._running = False
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    # ---------- registration / monitoring ----------

    def process(self, definition: QueueDefinition, handler: Handler) -> None:
        if definition.name in self._registrations:
            raise ValueError(f"Queue {definition.name!r} already has a handler")
        self._registrations[definition.name] = _Registration(definition=definition, handler=handler)

    def on(self, kind: EventKind, listener: Listener) -> None:
        self._listeners[kind].append(listener)

    def definition(self, queue: str) -> QueueDefinition | None:
        reg = self._registrations.get(queue)
        return reg.definition if reg else None

    @property
    def queues(self) -> list[QueueDefinition]:
        return [r.definition for r in self._registrations.values()]

    @property
    def running(self) -> bool:
        return self._running

    def _rq(self, queue: str) -> Queue:
        q = self._rq_queues.get(queue)
        if q is None:
            q = self._rq_queues[queue] = Queue(queue, connection=self.redis)
        return q

    # ---------- producing ----------

    def validate_payload(self, queue: str, payload: BaseModel | dict) -> dict:
        """Validated JSON form of ``payload`` for ``queue``; raises JobDataError if it does not fit."""
        definition = self.definition(queue)
        if definition is None:
            if isinstance(payload, BaseModel):
                return payload.model_dump(mode="json", by_alias=True, exclude_none=True)
            return dict(payload)
        try:
            if isinstance(payload, definition.payload_model):
                model = payload
            elif isinstance(payload, BaseModel):
                model = definition.payload_model.model_validate(payload.model_dump(by_alias=True))
            else:
                model = definition.payload_model.model_validate(payload)
        except ValidationError as e:
            raise JobDataError(f"Invalid payload for {queue}: {e}") from e
        return model.model_dump(mode="json", by_alias=True, exclude_none=True)

    async def enqueue(
        self,
        queue: str,
        payload: BaseModel | dict,
        options: JobOptions | None = None,
        *,
        name: str | None = None,
    ) -> str:
        opts = options or self.default_options
        data = self.validate_payload(queue, payload)
        run_at = utcnow() + timedelta(seconds=opts.delay_s) if opts.delay_s > 0 else None
        job = await asyncio.to_thread(self._push, queue, data, opts, name=name or queue, run_at=run_at)
        self.logger.info(
            "Enqueued job %s on %s (run at %s)", job.id, queue, (run_at or utcnow()).isoformat()
        )
        return job.id

    async def schedule_repeating(
        self,
        queue: str,
        payload: BaseModel | dict,
        every: timedelta,
        *,
        key: str,
        first_run_at: datetime | None = None,
        options: JobOptions | None = None,
    ) -> str:
        """Idempotent by ``key``: an occurrence still pending is returned as-is."""
        opts = options or self.default_options
        data = self.validate_payload(queue, payload)
        pending = await asyncio.to_thread(self._pending_occurrence, key)
        if pending is not None:
            return pending
        run_at = first_run_at or utcnow()
        job = await asyncio.to_thread(
            self._push, queue, data, opts, name=key, run_at=run_at,
            repeat={"key": key, "every_s": int(every.total_seconds()), "run_at": run_at.isoformat()},
        )
        self.logger.info("Scheduled repeating job %s every %s (first run %s)", key, every, run_at.isoformat())
        return job.id

    def _push(
        self,
        queue: str,
        data: dict,
        opts: JobOptions,
        *,
        name: str,
        run_at: datetime | None,
        repeat: dict | None = None,
    ) -> Job:
        q = self._rq(queue)
        meta = {"max_attempts": max(1, opts.attempts), "attempts_made": 0, "backoff_ms": max(0, opts.backoff_ms)}
        if repeat is not None:
            meta["repeat"] = repeat
        kwargs = dict(
            args=(queue, data),
            description=name,
            meta=meta,
            retry=opts.retry(),
            job_timeout=-1,  # the handler's own timeout applies, see _submit
            result_ttl=self.result_ttl_s,
            failure_ttl=self.failure_ttl_s,
        )
        if run_at is not None and run_at > utcnow():
            job = q.enqueue_at(run_at, run_job, **kwargs)
        else:
            job = q.enqueue(run_job, **kwargs)
        if repeat is not None:
            self.redis.set(_REPEAT_POINTER.format(key=repeat["key"]), job.id)
        return job

    def _pending_occurrence(self, key: str) -> str | None:
        job_id = self.redis.get(_REPEAT_POINTER.format(key=key))
        if not job_id:
            return None
        job = self._fetch(job_id.decode() if isinstance(job_id, bytes) else job_id)
        if job is None or _state(job) not in ("waiting", "active"):
            return None
        return job.id

    # ---------- inspection ----------

    def _fetch(self, job_id: str) -> Job | None:
        try:
            return Job.fetch(str(job_id), connection=self.redis)
        except NoSuchJobError:
            return None

    async def get_job(self, job_id) -> JobRecord | None:
        return await asyncio.to_thread(self._record, str(job_id))

    def _record(self, job_id: str) -> JobRecord | None:
        job = self._fetch(job_id)
        if job is None:
            return None
        args = list(job.args or ())
        queue = args[0] if args else job.origin
        payload = args[1] if len(args) > 1 else {}
        status = _status(job)
        state = _STATES.get(status, "waiting")
        run_at = job.enqueued_at
        if status == "scheduled":
            run_at = self._rq(job.origin).scheduled_job_registry.get_scheduled_time(job)
        result = job.return_value() if state == "completed" else None
        return JobRecord(
            id=job.id,
            queue=queue,
            name=job.description or job.origin,
            state=state,
            attempts_made=int(job.meta.get("attempts_made", 0)),
            max_attempts=int(job.meta.get("max_attempts", 1)),
            payload=dict(payload or {}),
            result=result if isinstance(result, dict) else None,
            last_error=job.meta.get("last_error"),
            run_at=as_utc(run_at),
            finished_at=as_utc(job.ended_at) if state in ("completed", "failed") else None,
        )

    async def counts(self, queue: str) -> dict[str, int]:
        return await asyncio.to_thread(self._counts, queue)

    def _counts(self, queue: str) -> dict[str, int]:
        q = self._rq(queue)
        return {
            "waiting": q.count + q.scheduled_job_registry.count + q.deferred_job_registry.count,
            "active": q.started_job_registry.count,
            "completed": q.finished_job_registry.count,
            "failed": q.failed_job_registry.count,
        }

    # ---------- consuming ----------

    async def start(self) -> None:
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._stopping.clear()
        slots = sum(max(1, r.definition.concurrency) for r in self._registrations.values())
        self._executor = ThreadPoolExecutor(max_workers=max(1, slots), thread_name_prefix="wavmedia-consumer")
        for reg in self._registrations.values():
            for i in range(max(1, reg.definition.concurrency)):
                self._tasks.append(
                    asyncio.create_task(self._consume(reg.definition.name), name=f"{reg.definition.name}-consumer-{i}")
                )
        self._tasks.append(asyncio.create_task(self._promote_loop(), name="scheduled-jobs"))
        self._running = True
        self.logger.info(
            "Job queue started: %s",
            ", ".join(f"{r.definition.name}x{r.definition.concurrency}" for r in self._registrations.values()),
        )

    async def close(self) -> None:
        """Stop taking new jobs and wait for the ones in flight."""
        if not self._running:
            return
        self._stopping.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self._running = False
        self.logger.info("Job queue stopped")

    async def run_once(self, queue: str) -> bool:
        """Run at most one due job from ``queue``. False when nothing was due."""
        if queue not in self._registrations:
            raise ValueError(f"No handler registered for queue {queue!r}")
        self._loop = asyncio.get_running_loop()
        await asyncio.to_thread(self._promote_due)
        return await asyncio.to_thread(self._work, queue, 1) > 0

    async def drain(self, queue: str | None = None, *, max_jobs: int = 1000) -> int:
        """Run due jobs until none are left. Returns how many ran."""
        self._loop = asyncio.get_running_loop()
        names = [queue] if queue else list(self._registrations)
        ran = 0
        progressed = True
        while progressed and ran < max_jobs:
            progressed = False
            await asyncio.to_thread(self._promote_due)
            for name in names:
                n = await asyncio.to_thread(self._work, name, max_jobs - ran)
                if n:
                    ran += n
                    progressed = True
                if ran >= max_jobs:
                    break
        return ran

    async def _consume(self, queue: str) -> None:
        consumer_run = functools.partial(self._work, queue, 1)
        while not self._stopping.is_set():
            try:
                ran = await self._loop.run_in_executor(self._executor, consumer_run)
            except Exception:
                self.logger.exception("Consumer error on %s", queue)
                ran = 0
            if not ran:
                await self._pause()

    async def _promote_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.to_thread(self._promote_due)
            except Exception:
                self.logger.exception("Could not enqueue due scheduled jobs")
            await self._pause()

    async def _pause(self) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval_s)
        except asyncio.TimeoutError:
            pass

    def _work(self, queue: str, max_jobs: int) -> int:
        consumer = _Consumer([self._rq(queue)], owner=self, connection=self.redis)
        consumer.work(burst=True, max_jobs=max_jobs, logging_level="WARNING")
        return consumer.performed

    def _promote_due(self) -> None:
        """Move due delayed jobs and retries onto their queues; ZREM decides which process wins."""
        for name in self._registrations:
            q = self._rq(name)
            registry = q.scheduled_job_registry
            for job_id in registry.get_jobs_to_schedule():
                job_id = job_id.decode() if isinstance(job_id, bytes) else job_id
                if not registry.remove(job_id):
                    continue
                job = self._fetch(job_id)
                if job is not None:
                    q.enqueue_job(job)

    # ---------- running one job (consumer thread) ----------

    def _on_loop(self, coro: Coroutine) -> Future:
        if self._loop is None:
            raise RuntimeError("JobQueue has no event loop; call start(), run_once() or drain() first")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def _submit(self, job: Job, queue: str, payload: dict) -> Future:
        reg = self._registrations.get(queue)
        if reg is None:
            raise JobDataError(f"No handler registered for queue {queue!r}")
        max_attempts = int(job.meta.get("max_attempts", 1))
        attempt = max_attempts - (job.retries_left or 0)
        job.meta["attempts_made"] = attempt
        job.save_meta()
        try:
            model = reg.definition.payload_model.model_validate(payload)
        except ValidationError as e:
            raise JobDataError(f"Invalid payload for {queue}: {e}") from e

        ctx = JobContext(
            job_id=job.id,
            queue=queue,
            name=job.description or queue,
            attempt=attempt,
            max_attempts=max_attempts,
            payload=model,
        )
        self.logger.info("Job %s (%s) attempt %d/%d started", job.id, queue, attempt, max_attempts)
        return self._on_loop(self._invoke(reg, job, ctx))

    async def _invoke(self, reg: _Registration, job: Job, ctx: JobContext) -> dict | None:
        result = await asyncio.wait_for(reg.handler(ctx), timeout=self.job_timeout_s)
        self.logger.info("Job %s (%s) completed: %s", ctx.job_id, ctx.queue, result)
        await asyncio.to_thread(self._schedule_next, job)
        await self._emit(QueueEvent("completed", ctx.queue, ctx.job_id, ctx.name, ctx.attempt, result=result))
        return result

    def _on_job_exception(self, job: Job, exc_type, exc_value, tb) -> bool:
        """rq exception handler; runs before rq decides whether the job is retried."""
        queue = job.args[0] if job.args else job.origin
        attempts = int(job.meta.get("attempts_made", 0))
        max_attempts = int(job.meta.get("max_attempts", 1))
        described = _describe(exc_value)
        retrying = bool(job.retries_left) and is_retryable(exc_value)
        if not retrying:
            job.retries_left = 0
        job.meta["last_error"] = described
        job.save_meta()
        name = job.description or queue

        if retrying:
            self.logger.warning(
                "Job %s (%s) attempt %d/%d failed, retrying: %s", job.id, queue, attempts, max_attempts, exc_value
            )
            self._on_loop(self._emit(QueueEvent("retrying", queue, job.id, name, attempts, error=described))).result()
            return True

        self.logger.error(
            "Job %s (%s) failed after %d attempt(s): %s", job.id, queue, attempts, exc_value,
            exc_info=(exc_type, exc_value, tb),
        )
        self._on_loop(self._exhausted(queue, job, exc_value)).result()
        self._schedule_next(job)
        self._on_loop(self._emit(QueueEvent("failed", queue, job.id, name, attempts, error=described))).result()
        return True

    async def _exhausted(self, queue: str, job: Job, error: BaseException) -> None:
        reg = self._registrations.get(queue)
        if reg is None or reg.definition.on_exhausted is None:
            return
        try:
            payload = reg.definition.payload_model.model_validate(job.args[1])
        except (ValidationError, IndexError):
            return
        try:
            await reg.definition.on_exhausted(payload, error)
        except Exception:
            self.logger.exception("on_exhausted hook failed for job %s (%s)", job.id, queue)

    def _schedule_next(self, job: Job) -> None:
        repeat = job.meta.get("repeat")
        if not repeat:
            return
        every = timedelta(seconds=int(repeat["every_s"]))
        now = utcnow()
        next_run = as_utc(datetime.fromisoformat(repeat["run_at"])) + every
        while next_run <= now:
            next_run += every
        queue, data = job.args[0], job.args[1]
        opts = JobOptions(
            attempts=int(job.meta.get("max_attempts", 1)), backoff_ms=int(job.meta.get("backoff_ms", 0))
        )
        nxt = self._push(
            queue, data, opts, name=job.description or repeat["key"], run_at=next_run,
            repeat={**repeat, "run_at": next_run.isoformat()},
        )
        self.logger.info("Next %s occurrence is job %s at %s", repeat["key"], nxt.id, next_run.isoformat())

    async def _emit(self, event: QueueEvent) -> None:
        for listener in self._listeners[event.kind]:
            try:
                res = listener(event)
                if asyncio.iscoroutine(res):
                    await res
            except Exception:
                self.logger.exception("Queue listener failed for %s event on job %s", event.kind, event.job_id)


def _status(job: Job) -> str:
    status = job.get_status()
    return getattr(status, "value", status)


def _state(job: Job) -> str:
    return _STATES.get(_status(job), "waiting")


def _describe(error: BaseException) -> str:
    code = getattr(error, "error_code", None)
    return f"{code}: {error}" if code else f"{type(error).__name__}: {error}"
