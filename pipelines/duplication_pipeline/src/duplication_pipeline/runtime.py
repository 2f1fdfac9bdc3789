"""In-process worker runtime for duplication chains.

Provides the queue guarantees the stages rely on:

- a chain's stages run strictly in order, and the first unhandled error aborts the rest
  of the chain and is handed to a failure handler;
- stage executions for the same duplication id never overlap (`KeyedLock`);
- a burst of stage failures delays further executions of that stage instead of
  hammering the database (`ExceptionThrottle`);
- a stage that defers itself (feature gate closed) is run again after its delay.

Thread safety:
    `WorkerPool`, `KeyedLock` and `ExceptionThrottle` may be shared across threads.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from collections.abc import Callable, Hashable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass

from duplication_pipeline.stages.base import StageContext, StageJob, StageOutcome, StageResult


@dataclass(frozen=True)
class DuplicationChain:
    """Ordered stages for one duplication run."""

    duplication_id: int
    source_episode_id: int
    steps: tuple[type[StageJob], ...]

    def jobs(self) -> list[StageJob]:
        return [step(self.duplication_id, self.source_episode_id) for step in self.steps]


FailureHandler = Callable[[DuplicationChain, BaseException], None]


class KeyedLock:
    """Mutual exclusion per key; locks are dropped once nobody holds or waits on them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.Lock] = {}
        self._users: dict[Hashable, int] = defaultdict(int)

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] += 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]

    def __contains__(self, key: Hashable) -> bool:
        with self._guard:
            return key in self._locks


class ExceptionThrottle:
    """Sliding window of recent exceptions per key (e.g. 5 per 60 seconds)."""

    def __init__(
        self,
        max_exceptions: int = 5,
        window_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_exceptions = max_exceptions
        self.window_s = window_s
        self._clock = clock
        self._lock = threading.Lock()
        self._events: dict[Hashable, deque[float]] = defaultdict(deque)

    def _prune(self, key: Hashable, now: float) -> deque[float]:
        events = self._events[key]
        while events and events[0] <= now - self.window_s:
            events.popleft()
        return events

    def record(self, key: Hashable) -> None:
        with self._lock:
            now = self._clock()
            self._prune(key, now).append(now)

    def clear(self, key: Hashable) -> None:
        with self._lock:
            self._events.pop(key, None)

    def retry_after(self, key: Hashable) -> float:
        """Seconds to wait before the next execution for `key`; 0 when not throttled."""
        with self._lock:
            now = self._clock()
            events = self._prune(key, now)
            if len(events) < self.max_exceptions:
                return 0.0
            return max(events[0] + self.window_s - now, 0.0)


class WorkerPool:
    """Thread pool executing duplication chains."""

    def __init__(
        self,
        context: StageContext,
        *,
        workers: int | None = None,
        failure_handler: FailureHandler | None = None,
        locks: KeyedLock | None = None,
        throttle: ExceptionThrottle | None = None,
        sleep: Callable[[float], object] | None = None,
    ) -> None:
        """
        Args:
            context: Collaborators handed to every stage job.
            workers: Worker threads; defaults to the `workers` setting.
            failure_handler: Called once with the chain and the error that aborted it.
            locks: Shared per-duplication locks (pass one instance to several pools
                in the same process to exclude across them).
            throttle: Exception throttle; defaults to the throttle settings.
            sleep: Replacement for the interruptible wait used by deferrals and
                throttling (tests).
        """
        settings = context.settings
        self.context = context
        self.failure_handler = failure_handler
        self.locks = locks or KeyedLock()
        self.throttle = throttle or ExceptionThrottle(settings.throttle_max_exceptions, settings.throttle_window_s)
        self.logger = context.logger.bind(queue=settings.queue_name)
        self._sleep = sleep
        self._stopped = threading.Event()
        self._executor = ThreadPoolExecutor(
            max_workers=workers or settings.workers,
            thread_name_prefix=settings.queue_name,
        )

    def __enter__(self) -> WorkerPool:
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    def submit(self, chain: DuplicationChain) -> Future[list[StageResult]]:
        if self._stopped.is_set():
            raise RuntimeError("Worker pool is shut down")
        self.logger.info(
            "duplication.chain.submitted",
            duplication_id=chain.duplication_id,
            steps=[step.__name__ for step in chain.steps],
        )
        return self._executor.submit(self.run, chain)

    def run(self, chain: DuplicationChain) -> list[StageResult]:
        """Execute `chain` in the calling thread."""
        logger = self.logger.bind(duplication_id=chain.duplication_id, source_episode_id=chain.source_episode_id)
        results: list[StageResult] = []
        jobs = chain.jobs()
        for position, job in enumerate(jobs):
            try:
                result = self._run_job(job)
            except Exception as exc:
                logger.error(
                    "duplication.chain.aborted",
                    stage=job.stage.value,
                    skipped_stages=[skipped.stage.value for skipped in jobs[position + 1 :]],
                    error=str(exc),
                    error_class=type(exc).__name__,
                )
                if self.failure_handler is not None:
                    self.failure_handler(chain, exc)
                raise
            results.append(result)
            if result.outcome is StageOutcome.deferred:
                # Only reachable when the pool stopped while the stage was waiting.
                logger.warning("duplication.chain.abandoned", stage=job.stage.value)
                break
        return results

    def _run_job(self, job: StageJob) -> StageResult:
        key = type(job).__name__
        while True:
            retry_after = self.throttle.retry_after(key)
            if retry_after > 0:
                self.logger.warning(
                    "duplication.stage.throttled",
                    duplication_id=job.duplication_id,
                    stage=job.stage.value,
                    retry_after_s=retry_after,
                )
                if self._wait(retry_after):
                    return StageResult(job.stage, StageOutcome.deferred, release_after_s=retry_after)
                continue

            with self.locks.hold(job.duplication_id):
                try:
                    result = job.handle(self.context)
                except Exception:
                    self.throttle.record(key)
                    raise
            self.throttle.clear(key)

            if result.outcome is not StageOutcome.deferred:
                return result
            if self._wait(result.release_after_s or 0.0):
                return result

    def _wait(self, seconds: float) -> bool:
        """Wait before re-running a stage; True when the pool is shutting down."""
        if self._sleep is not None:
            self._sleep(seconds)
            return self._stopped.is_set()
        return self._stopped.wait(seconds)

    def shutdown(self, wait: bool = True) -> None:
        self._stopped.set()
        self._executor.shutdown(wait=wait)
