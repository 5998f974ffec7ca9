from __future__ import annotations

import asyncio
import logging

from ..errors import BuildTimeoutError, GraphFoundryError, InvalidTransitionError, NotFoundError
from ..knowledge_graph.models import GraphStatus
from ..knowledge_graph.pipeline import BuildJob, BuildStats, GraphBuilder
from ..knowledge_graph.store import GraphStore

logger = logging.getLogger(__name__)


def _error_text(e: BaseException) -> str:
    if isinstance(e, GraphFoundryError):
        return e.message
    return f"{type(e).__name__}: {e}"


class BuildWorkerPool:
    """Background workers draining a queue of build/update jobs.

    Requests only enqueue; workers run each job under a wall-clock ceiling
    and record the terminal status. A job's task can be cancelled (graph
    deletion); commits already made stay in place.
    """

    def __init__(self, builder: GraphBuilder, store: GraphStore, *, workers: int = 2, timeout_s: float = 600.0):
        self.builder = builder
        self.store = store
        self.worker_count = max(1, workers)
        self.timeout_s = timeout_s
        self._queue: asyncio.Queue[BuildJob] | None = None
        self._workers: list[asyncio.Task] = []
        self._running: dict[tuple[str, str], asyncio.Task] = {}

    @property
    def started(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        self._queue = asyncio.Queue()
        self._workers = [asyncio.create_task(self._worker(i), name=f"graph-build-{i}") for i in range(self.worker_count)]
        logger.info("Started %d build workers (timeout %.0fs)", self.worker_count, self.timeout_s)

    async def stop(self) -> None:
        for t in self._workers:
            t.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None

    def submit(self, job: BuildJob) -> None:
        if self._queue is None:
            raise RuntimeError("Worker pool is not started")
        self._queue.put_nowait(job)
        logger.debug("Queued %s job for %s/%s", job.kind, job.scope, job.name)

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        if self._queue is not None:
            await self._queue.join()

    async def cancel(self, scope: str, name: str) -> bool:
        task = self._running.get((scope, name))
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.wait([task])
        return True

    async def _worker(self, idx: int) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            job = await queue.get()
            try:
                await self._execute(job)
            except Exception:
                logger.exception("Worker %d: unexpected error handling %s/%s", idx, job.scope, job.name)
            finally:
                queue.task_done()

    async def _execute(self, job: BuildJob) -> None:
        key = (job.scope, job.name)
        stats = BuildStats()
        task = asyncio.create_task(asyncio.wait_for(self.builder.run(job, stats), timeout=self.timeout_s))
        self._running[key] = task
        try:
            await asyncio.wait([task])
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if self._running.get(key) is task:
                del self._running[key]

        if task.cancelled():
            logger.info("%s job for %s/%s was cancelled", job.kind, job.scope, job.name)
            return

        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, NotFoundError):
            logger.info("Graph %s/%s disappeared during %s; dropping job", job.scope, job.name, job.kind)
            return
        if isinstance(exc, TimeoutError):
            exc = BuildTimeoutError(self.timeout_s)
            logger.warning("%s job for %s/%s timed out after %.0fs", job.kind, job.scope, job.name, self.timeout_s)
        elif isinstance(exc, GraphFoundryError):
            logger.warning("%s job for %s/%s failed: %s", job.kind, job.scope, job.name, exc)
        else:
            logger.error("%s job for %s/%s crashed", job.kind, job.scope, job.name, exc_info=exc)
        self._fail(job, exc, stats)

    def _fail(self, job: BuildJob, exc: BaseException, stats: BuildStats) -> None:
        try:
            self.store.record_stats(job.scope, job.name, stats.to_dict())
            self.store.transition_status(
                job.scope, job.name, GraphStatus.FAILED, _error_text(exc), generation=job.generation
            )
        except (NotFoundError, InvalidTransitionError) as e:
            logger.info("Could not mark %s/%s failed: %s", job.scope, job.name, e)
