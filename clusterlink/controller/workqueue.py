"""
Keyed work queue with rate-limited requeues.

Keys are deduplicated while pending, and a key is never handed to two
workers at once: a key added while it is being processed is queued again
when its worker finishes. Per-key processing is therefore strictly ordered
while unrelated keys are processed in parallel by the worker pool.
"""

import asyncio
from typing import Awaitable, Callable, Dict, Hashable, List, Optional, Set

from clusterlink.utils.logging import get_logger
from clusterlink.utils.retry import (
    ExponentialBackoff,
    NonRetryableError,
    RetryConfig,
    is_retryable_error,
)

logger = get_logger(__name__)

Handler = Callable[[Hashable], Awaitable[None]]

_SHUTDOWN = object()


class WorkQueue:
    """
    Deduplicating queue drained by a bounded pool of worker tasks.

    Handler outcomes:
    - returns: the key's requeue count is reset
    - raises NonRetryableError: logged, key dropped
    - raises anything else: key requeued with exponential backoff
    """

    def __init__(self, name: str, retry_config: Optional[RetryConfig] = None):
        """
        Initialize work queue.

        Args:
            name: Queue name used in logs
            retry_config: Backoff schedule for requeues
        """
        self.name = name
        self._backoff = ExponentialBackoff(retry_config)

        self._ready: asyncio.Queue = asyncio.Queue()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._requeues: Dict[Hashable, int] = {}
        self._delayed: Dict[Hashable, asyncio.TimerHandle] = {}

        self._workers: List[asyncio.Task] = []
        self._shutting_down = False

    def add(self, key: Hashable) -> None:
        """
        Queue a key for processing.

        Args:
            key: Work item key
        """
        if self._shutting_down or key in self._dirty:
            return

        self._dirty.add(key)

        if key in self._processing:
            return

        self._ready.put_nowait(key)

    def add_after(self, key: Hashable, delay_seconds: float) -> None:
        """
        Queue a key after a delay.

        An earlier pending schedule for the same key wins.

        Args:
            key: Work item key
            delay_seconds: Delay before the key is queued
        """
        if self._shutting_down:
            return

        if delay_seconds <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        when = loop.time() + delay_seconds

        existing = self._delayed.get(key)
        if existing is not None:
            if existing.when() <= when:
                return
            existing.cancel()

        self._delayed[key] = loop.call_at(when, self._fire_delayed, key)

    def _fire_delayed(self, key: Hashable) -> None:
        self._delayed.pop(key, None)
        self.add(key)

    def add_rate_limited(self, key: Hashable) -> None:
        """
        Requeue a key after its backoff delay.

        Args:
            key: Work item key
        """
        attempt = self._requeues.get(key, 0)
        self._requeues[key] = attempt + 1

        self.add_after(key, self._backoff.delay_seconds(attempt))

    def forget(self, key: Hashable) -> None:
        """Reset the requeue count of a key."""
        self._requeues.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        """Number of rate-limited requeues since the key was last forgotten."""
        return self._requeues.get(key, 0)

    def retries_exhausted(self, key: Hashable) -> bool:
        """Whether the key has used up its requeue budget."""
        return self._backoff.exhausted(self.num_requeues(key))

    async def get(self) -> Optional[Hashable]:
        """
        Wait for the next key and mark it as processing.

        Returns:
            Key, or None once the queue is shut down
        """
        key = await self._ready.get()

        if key is _SHUTDOWN:
            return None

        self._dirty.discard(key)
        self._processing.add(key)

        return key

    def done(self, key: Hashable) -> None:
        """
        Mark a key as processed, queueing it again if it was re-added meanwhile.

        Args:
            key: Key returned by get()
        """
        self._processing.discard(key)

        if key in self._dirty and not self._shutting_down:
            self._ready.put_nowait(key)

    def is_idle(self) -> bool:
        """Whether nothing is queued, delayed or being processed."""
        return not self._dirty and not self._processing and not self._delayed

    def __len__(self) -> int:
        return len(self._dirty)

    # Worker pool

    def start(self, handler: Handler, workers: int = 1) -> None:
        """
        Start worker tasks.

        Args:
            handler: Coroutine function processing one key
            workers: Number of worker tasks
        """
        if self._workers:
            return

        self._shutting_down = False

        # Keys re-added while earlier workers were finishing are dirty but
        # were never put back on the ready queue.
        pending = []
        while not self._ready.empty():
            key = self._ready.get_nowait()
            if key is not _SHUTDOWN:
                pending.append(key)
        pending.extend(key for key in self._dirty if key not in pending)

        for key in pending:
            self._ready.put_nowait(key)

        for i in range(workers):
            self._workers.append(
                asyncio.create_task(self._worker(handler), name=f"{self.name}-worker-{i}")
            )

        logger.info("Work queue started", queue=self.name, workers=workers)

    async def _worker(self, handler: Handler) -> None:
        """Process keys until shutdown."""
        while True:
            key = await self.get()
            if key is None:
                return

            try:
                await handler(key)
                self.forget(key)

            except asyncio.CancelledError:
                raise

            except NonRetryableError as e:
                self.forget(key)
                logger.error(
                    "Dropping work item after non-retryable error",
                    queue=self.name,
                    key=key,
                    error=str(e),
                )

            except Exception as e:
                logger.warning(
                    "Work item failed, requeueing",
                    queue=self.name,
                    key=key,
                    requeues=self.num_requeues(key),
                    error=str(e),
                    exc_info=not is_retryable_error(e),
                )
                self.add_rate_limited(key)

            finally:
                self.done(key)

    async def shutdown(self) -> None:
        """Stop accepting keys, cancel delayed requeues and wait for workers."""
        self._shutting_down = True

        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()

        for _ in self._workers:
            self._ready.put_nowait(_SHUTDOWN)

        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)

        self._workers = []

        logger.info("Work queue stopped", queue=self.name)
