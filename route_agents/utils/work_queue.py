"""
Bounded-concurrency priority queue used by agents for incoming messages.

A fixed pool of worker tasks pulls items from an asyncio.PriorityQueue, so
at most `concurrency` items run at once and excess work waits in the queue.
Higher priorities are served first; order inside one priority tier is not
guaranteed.

Example:
    queue = PriorityWorkQueue("risk-agent", concurrency=10, timeout=30.0)
    result = await queue.submit(lambda: agent.process(message), priority=2)
"""
import asyncio
import itertools
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from route_agents.errors import AgentStoppedError, AgentTimeoutError
from route_agents.utils.logger import get_logger

logger = get_logger(__name__)

JobFactory = Callable[[], Awaitable[Any]]
_QueueItem = Tuple[int, int, JobFactory, "asyncio.Future[Any]"]


class PriorityWorkQueue:
    def __init__(self, name: str, concurrency: int, timeout: Optional[float] = None):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.name = name
        self.concurrency = concurrency
        self.timeout = timeout

        self._queue: Optional["asyncio.PriorityQueue[_QueueItem]"] = None
        self._workers: List["asyncio.Task[None]"] = []
        self._sequence = itertools.count()
        self._running = 0

    @property
    def size(self) -> int:
        """Items waiting to start."""
        return self._queue.qsize() if self._queue is not None else 0

    @property
    def running(self) -> int:
        return self._running

    def _ensure_workers(self) -> "asyncio.PriorityQueue[_QueueItem]":
        if self._queue is None:
            self._queue = asyncio.PriorityQueue()
        if not self._workers:
            self._workers = [
                asyncio.create_task(self._worker(index), name=f"{self.name}-worker-{index}")
                for index in range(self.concurrency)
            ]
        return self._queue

    def submit(self, factory: JobFactory, priority: int = 0) -> "asyncio.Future[Any]":
        """
        Enqueue a job and return a future with its result.

        Args:
            factory: Zero-argument callable returning the awaitable to run
            priority: Larger values run first
        """
        queue = self._ensure_workers()
        future: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future()
        queue.put_nowait((-int(priority), next(self._sequence), factory, future))
        return future

    async def _worker(self, index: int) -> None:
        queue = self._queue
        while True:
            _, _, factory, future = await queue.get()
            if future.done():
                queue.task_done()
                continue

            self._running += 1
            job = asyncio.ensure_future(factory())
            try:
                done, _ = await asyncio.wait({job}, timeout=self.timeout)
            except asyncio.CancelledError:
                job.cancel()
                if not future.done():
                    future.set_exception(AgentStoppedError(f"Work queue {self.name} closed"))
                raise
            finally:
                self._running -= 1
                queue.task_done()

            if not done:
                job.cancel()
                self._settle_timeout(future)
                await asyncio.gather(job, return_exceptions=True)
            elif job.cancelled():
                if not future.done():
                    future.set_exception(AgentStoppedError(f"Work item cancelled in {self.name}"))
            elif job.exception() is not None:
                if not future.done():
                    future.set_exception(job.exception())
            elif not future.done():
                future.set_result(job.result())

    def _settle_timeout(self, future: "asyncio.Future[Any]") -> None:
        if not future.done():
            future.set_exception(
                AgentTimeoutError(f"Queue item timed out after {self.timeout}s in {self.name}")
            )

    def clear(self) -> int:
        """Reject every queued (not yet running) item with AgentStoppedError."""
        if self._queue is None:
            return 0

        rejected = 0
        while True:
            try:
                _, _, _, future = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
            if not future.done():
                future.set_exception(AgentStoppedError(f"Work queue {self.name} cleared"))
                rejected += 1

        if rejected:
            logger.info("work_queue_cleared", queue=self.name, rejected=rejected)
        return rejected

    async def close(self) -> None:
        """Reject queued items and cancel running ones. The queue can be reused afterwards."""
        self.clear()
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._queue = None
        self._running = 0
