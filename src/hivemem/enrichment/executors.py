"""Job executors for background enrichment.

- InlineExecutor: awaits the job before returning (offline / tests).
- ThreadExecutor: one daemon thread per job, each with its own event loop.
- CooperativeExecutor: asyncio tasks on the caller's loop, bounded by a
  semaphore; suited to jobs that mostly wait on network I/O.

Executors own failure handling: a job's exception is logged and dropped,
never raised back into the write path.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from src.hivemem.config import EnrichmentConfig
from src.hivemem.errors import ValidationError

logger = logging.getLogger(__name__)

JobFn = Callable[[], Awaitable[None]]


async def run_job(name: str, job: JobFn) -> None:
    """Run one job, logging instead of propagating its failure."""
    try:
        await job()
    except Exception:
        logger.exception("Enrichment job %s failed", name)


class JobExecutor(ABC):
    """Dispatches enrichment jobs without blocking the caller."""

    @abstractmethod
    async def submit(self, name: str, job: JobFn) -> None:
        pass

    @abstractmethod
    async def drain(self) -> None:
        """Wait for every submitted job to finish."""
        pass

    @property
    @abstractmethod
    def pending(self) -> int:
        pass


class InlineExecutor(JobExecutor):
    """Runs each job to completion inside ``submit``."""

    async def submit(self, name: str, job: JobFn) -> None:
        await run_job(name, job)

    async def drain(self) -> None:
        return None

    @property
    def pending(self) -> int:
        return 0


class ThreadExecutor(JobExecutor):
    """Thread-per-job executor.

    Each job runs under ``asyncio.run`` on its own daemon thread, so the
    store and providers it touches must tolerate a foreign event loop.
    """

    def __init__(self):
        self._threads: set[threading.Thread] = set()
        self._lock = threading.Lock()

    def _run(self, name: str, job: JobFn) -> None:
        try:
            asyncio.run(run_job(name, job))
        finally:
            with self._lock:
                self._threads.discard(threading.current_thread())

    async def submit(self, name: str, job: JobFn) -> None:
        thread = threading.Thread(
            target=self._run, args=(name, job), name=f"hivemem-{name}", daemon=True
        )
        with self._lock:
            self._threads.add(thread)
        thread.start()

    async def drain(self) -> None:
        while True:
            with self._lock:
                threads = list(self._threads)
            if not threads:
                return
            for thread in threads:
                await asyncio.to_thread(thread.join)

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._threads)


class CooperativeExecutor(JobExecutor):
    """Runs jobs as tasks on the current event loop, ``max_concurrency`` at a time."""

    def __init__(self, max_concurrency: int = 4):
        if max_concurrency <= 0:
            raise ValidationError("max_concurrency must be positive")
        self.max_concurrency = max_concurrency
        self._semaphore: asyncio.Semaphore | None = None
        self._tasks: set[asyncio.Task] = set()

    async def _run(self, name: str, job: JobFn) -> None:
        async with self._semaphore:
            await run_job(name, job)

    async def submit(self, name: str, job: JobFn) -> None:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrency)
        task = asyncio.create_task(self._run(name, job), name=f"hivemem-{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    @property
    def pending(self) -> int:
        return len(self._tasks)


def build_executor(config: EnrichmentConfig) -> JobExecutor:
    if config.backend == "inline":
        return InlineExecutor()
    if config.backend == "thread":
        return ThreadExecutor()
    if config.backend == "cooperative":
        return CooperativeExecutor(config.max_concurrency)
    raise ValidationError(f"Unknown enrichment backend: {config.backend}")
