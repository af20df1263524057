"""
Job scheduler module for davsync.
Named unique background work on the asyncio loop with KEEP/REPLACE/APPEND
policies, bounded exponential retry and cooperative cancellation.
"""

import asyncio
import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Awaitable, Callable, Optional

from davsync.models import now_ms

logger = logging.getLogger(__name__)


class WorkState(str, Enum):
    ENQUEUED = "ENQUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_finished(self) -> bool:
        return self in (WorkState.SUCCEEDED, WorkState.FAILED, WorkState.CANCELLED)


class ExistingWorkPolicy(str, Enum):
    KEEP = "KEEP"
    REPLACE = "REPLACE"
    APPEND = "APPEND"


class ResultKind(str, Enum):
    SUCCESS = "SUCCESS"
    RETRY = "RETRY"
    FAILURE = "FAILURE"


@dataclass
class JobResult:
    kind: ResultKind
    output: dict = field(default_factory=dict)

    @classmethod
    def success(cls, **output) -> "JobResult":
        return cls(ResultKind.SUCCESS, output)

    @classmethod
    def retry(cls, **output) -> "JobResult":
        return cls(ResultKind.RETRY, output)

    @classmethod
    def failure(cls, **output) -> "JobResult":
        return cls(ResultKind.FAILURE, output)


@dataclass
class BackoffSpec:
    initial_seconds: float = 30.0
    max_attempts: int = 5

    def delay_for(self, attempt: int) -> float:
        """Exponential delay before the given 1-based retry."""
        return self.initial_seconds * (2 ** max(0, attempt - 1))


@dataclass
class WorkInfo:
    id: int
    name: str
    state: WorkState
    run_attempt: int = 0
    input: dict = field(default_factory=dict)
    output: dict = field(default_factory=dict)
    enqueued_at: int = 0
    started_at: Optional[int] = None
    finished_at: Optional[int] = None


class JobContext:
    """What a running worker sees of its own work item."""

    def __init__(self, info: WorkInfo):
        self._info = info
        self._stopped = False

    @property
    def name(self) -> str:
        return self._info.name

    @property
    def input(self) -> dict:
        return self._info.input

    @property
    def run_attempt(self) -> int:
        return self._info.run_attempt

    def is_stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        self._stopped = True


JobWorker = Callable[[JobContext], Awaitable[JobResult]]
WorkListener = Callable[[WorkInfo], None]


@dataclass
class _WorkHandle:
    info: WorkInfo
    context: JobContext
    worker: JobWorker
    backoff: BackoffSpec
    initial_delay: float
    task: Optional[asyncio.Task] = None


class JobScheduler:
    """Deduplicates work by name and tracks its state history."""

    def __init__(self, history_limit: int = 20, default_backoff: Optional[BackoffSpec] = None):
        self.history_limit = history_limit
        self.default_backoff = default_backoff or BackoffSpec()
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._active: dict[str, list[_WorkHandle]] = {}
        self._history: dict[str, deque] = {}
        self._periodic: dict[str, asyncio.Task] = {}
        self._listeners: list[WorkListener] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # Listeners

    def add_listener(self, listener: WorkListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: WorkListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, info: WorkInfo) -> None:
        snapshot = replace(info, input=dict(info.input), output=dict(info.output))
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Work listener failed for {info.name}: {e}")

    # Queries

    def work_infos(self, name: str) -> list[WorkInfo]:
        """State history for a work name, oldest first."""
        with self._lock:
            history = list(self._history.get(name, ()))
        return [replace(info, input=dict(info.input), output=dict(info.output)) for info in history]

    def latest_info(self, name: str) -> Optional[WorkInfo]:
        infos = self.work_infos(name)
        return infos[-1] if infos else None

    def is_active(self, name: str) -> bool:
        with self._lock:
            return bool(self._active.get(name))

    # Enqueue and cancel

    def enqueue_unique(
        self,
        name: str,
        worker: JobWorker,
        policy: ExistingWorkPolicy = ExistingWorkPolicy.KEEP,
        input: Optional[dict] = None,
        initial_delay: float = 0.0,
        backoff: Optional[BackoffSpec] = None,
    ) -> WorkInfo:
        """
        Enqueue work under a unique name. Must be called on the event loop.

        KEEP returns the existing unfinished work untouched, REPLACE stops it
        and starts the new one once the stopped worker has returned, APPEND
        runs the new one after it finishes.
        """
        self._loop = asyncio.get_running_loop()
        cancelled: list[_WorkHandle] = []
        with self._lock:
            active = self._active.setdefault(name, [])
            if active and policy == ExistingWorkPolicy.KEEP:
                return replace(active[-1].info)
            if active and policy == ExistingWorkPolicy.REPLACE:
                cancelled = list(active)
                active.clear()
            predecessors = {old.task for old in cancelled if old.task is not None}
            if active and policy == ExistingWorkPolicy.APPEND and active[-1].task is not None:
                predecessors.add(active[-1].task)

            info = WorkInfo(
                id=next(self._ids),
                name=name,
                state=WorkState.ENQUEUED,
                input=dict(input or {}),
                enqueued_at=now_ms(),
            )
            handle = _WorkHandle(
                info=info,
                context=JobContext(info),
                worker=worker,
                backoff=backoff or self.default_backoff,
                initial_delay=max(0.0, initial_delay),
            )
            active.append(handle)
            history = self._history.setdefault(name, deque(maxlen=self.history_limit))
            history.append(info)

        for old in cancelled:
            self._cancel_handle(old)

        handle.task = asyncio.create_task(self._run(handle, predecessors), name=f"work:{name}:{info.id}")
        logger.debug(f"Enqueued {name} #{info.id} ({policy.value}, delay={initial_delay}s)")
        self._notify(info)
        return replace(info)

    def enqueue_unique_threadsafe(self, name: str, worker: JobWorker, policy: ExistingWorkPolicy, **kwargs) -> None:
        """Enqueue from a non-loop thread such as a filesystem observer."""
        if self._loop is None or self._loop.is_closed():
            logger.warning(f"Cannot enqueue {name}: scheduler loop not running")
            return
        self._loop.call_soon_threadsafe(
            lambda: self.enqueue_unique(name, worker, policy, **kwargs)
        )

    def cancel(self, name: str) -> bool:
        """Cancel all unfinished work with this name. Running workers stop cooperatively."""
        with self._lock:
            handles = self._active.pop(name, [])
        for handle in handles:
            self._cancel_handle(handle)
        return bool(handles)

    def _cancel_handle(self, handle: _WorkHandle) -> None:
        if handle.info.state.is_finished:
            return
        was_running = handle.info.state == WorkState.RUNNING
        handle.context.stop()
        self._finish(handle, WorkState.CANCELLED, {})
        if not was_running and handle.task is not None:
            handle.task.cancel()
        logger.info(f"Cancelled {handle.info.name} #{handle.info.id}")

    # Execution

    def _transition(self, handle: _WorkHandle, state: WorkState) -> None:
        with self._lock:
            handle.info.state = state
            if state == WorkState.RUNNING:
                handle.info.started_at = now_ms()
        self._notify(handle.info)

    def _finish(self, handle: _WorkHandle, state: WorkState, output: dict) -> None:
        with self._lock:
            if handle.info.state.is_finished:
                return
            handle.info.state = state
            handle.info.output = dict(output)
            handle.info.finished_at = now_ms()
            active = self._active.get(handle.info.name)
            if active and handle in active:
                active.remove(handle)
        self._notify(handle.info)

    async def _run(self, handle: _WorkHandle, predecessors: set) -> None:
        info = handle.info
        try:
            # A replaced worker may still be inside a network call
            pending = {task for task in predecessors if not task.done()}
            if pending:
                await asyncio.wait(pending)
            delay = handle.initial_delay
            while True:
                if delay > 0:
                    await asyncio.sleep(delay)
                if handle.context.is_stopped():
                    return
                self._transition(handle, WorkState.RUNNING)
                try:
                    result = await handle.worker(handle.context)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Work {info.name} #{info.id} raised: {e}", exc_info=True)
                    result = JobResult.failure(error=str(e) or e.__class__.__name__)

                if handle.context.is_stopped():
                    logger.debug(f"Discarding result of cancelled {info.name} #{info.id}")
                    return

                if result.kind == ResultKind.RETRY:
                    info.run_attempt += 1
                    if info.run_attempt >= handle.backoff.max_attempts:
                        output = dict(result.output)
                        output.setdefault("error", "retry_budget_exhausted")
                        logger.warning(f"{info.name} #{info.id} exhausted {info.run_attempt} attempts")
                        self._finish(handle, WorkState.FAILED, output)
                        return
                    with self._lock:
                        info.output = dict(result.output)
                    self._transition(handle, WorkState.ENQUEUED)
                    delay = handle.backoff.delay_for(info.run_attempt)
                    logger.info(f"{info.name} #{info.id} will retry in {delay:.0f}s")
                    continue

                state = WorkState.SUCCEEDED if result.kind == ResultKind.SUCCESS else WorkState.FAILED
                self._finish(handle, state, result.output)
                return
        except asyncio.CancelledError:
            self._finish(handle, WorkState.CANCELLED, {})
            raise

    async def join(self, name: str, timeout: Optional[float] = None) -> Optional[WorkInfo]:
        """Wait until no unfinished work remains for name (including appended follow-ups)."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            with self._lock:
                tasks = {h.task for h in self._active.get(name, []) if h.task is not None}
            if not tasks:
                return self.latest_info(name)
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            done, _ = await asyncio.wait(tasks, timeout=remaining)
            if not done and remaining is not None:
                return self.latest_info(name)

    # Periodic work

    def schedule_periodic(
        self,
        name: str,
        interval_seconds: float,
        worker: JobWorker,
        policy: ExistingWorkPolicy = ExistingWorkPolicy.KEEP,
        initial_delay: Optional[float] = None,
    ) -> bool:
        """Enqueue worker under name every interval. Returns False if KEEP left an existing schedule."""
        self._loop = asyncio.get_running_loop()
        existing = self._periodic.get(name)
        if existing is not None and not existing.done():
            if policy == ExistingWorkPolicy.KEEP:
                return False
            existing.cancel()

        async def tick() -> None:
            await asyncio.sleep(interval_seconds if initial_delay is None else initial_delay)
            while True:
                self.enqueue_unique(name, worker, ExistingWorkPolicy.KEEP)
                await asyncio.sleep(interval_seconds)

        self._periodic[name] = asyncio.create_task(tick(), name=f"periodic:{name}")
        logger.info(f"Scheduled periodic {name} every {interval_seconds:.0f}s")
        return True

    def cancel_periodic(self, name: str) -> bool:
        task = self._periodic.pop(name, None)
        if task is None:
            return False
        task.cancel()
        return True

    def periodic_names(self) -> list[str]:
        return [name for name, task in self._periodic.items() if not task.done()]

    async def shutdown(self) -> None:
        """Cancel periodic schedules and all unfinished work."""
        for name in list(self._periodic):
            self.cancel_periodic(name)
        with self._lock:
            names = list(self._active)
        tasks = []
        for name in names:
            with self._lock:
                tasks.extend(h.task for h in self._active.get(name, []) if h.task is not None)
            self.cancel(name)
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.wait(tasks)
        logger.info("Job scheduler stopped")
