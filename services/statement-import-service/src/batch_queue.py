"""
Bounded-concurrency batch runner with per-batch timeout and linear backoff.

`BatchQueue.enqueue` splits the input into contiguous batches, runs them
through a fixed pool of asyncio workers that claim the next unclaimed batch
index, and flattens the per-batch results back into input order. A batch that
still fails after its retries aborts the whole call.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, List, Optional, TypeVar

from errors import BatchTimeoutError

logger = logging.getLogger(__name__)

TIn = TypeVar("TIn")
TOut = TypeVar("TOut")

BatchHandler = Callable[[List[TIn]], Awaitable[List[TOut]]]
ProgressCallback = Callable[[int, int], None]
BatchCallback = Callable[[List[TOut]], None]


@dataclass
class BatchQueueConfig(Generic[TIn, TOut]):
    """
    Attributes:
        batch_size: Maximum items per handler call.
        concurrency: Maximum handler calls in flight at once.
        retries: Extra attempts per batch after the first failure.
        backoff_seconds: Base delay; attempt N waits `backoff_seconds * N`.
        timeout_seconds: Timeout for a single handler call.
        handler: Async callable returning one output per input, in order.
        on_progress: Called with cumulative (done_items, total_items) after each batch.
        on_batch: Called with each batch's results as soon as that batch succeeds.
    """

    handler: BatchHandler
    batch_size: int = 25
    concurrency: int = 2
    retries: int = 2
    backoff_seconds: float = 1.0
    timeout_seconds: float = 20.0
    on_progress: Optional[ProgressCallback] = None
    on_batch: Optional[BatchCallback] = None

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.retries < 0:
            raise ValueError("retries must not be negative")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must not be negative")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")


class BatchQueue(Generic[TIn, TOut]):
    def __init__(self, config: BatchQueueConfig[TIn, TOut]) -> None:
        self._config = config

    @property
    def config(self) -> BatchQueueConfig[TIn, TOut]:
        return self._config

    async def enqueue(self, items: Sequence[TIn]) -> List[TOut]:
        if not items:
            return []

        config = self._config
        total = len(items)
        batches = [list(items[start : start + config.batch_size]) for start in range(0, total, config.batch_size)]
        results: List[Optional[List[TOut]]] = [None] * len(batches)
        next_index = 0
        done = 0

        async def worker() -> None:
            nonlocal next_index, done
            while next_index < len(batches):
                # No await between the check and the claim, so workers never share an index.
                batch_index = next_index
                next_index += 1
                batch = batches[batch_index]

                batch_results = await self._run_with_retry(batch, batch_index)
                if len(batch_results) != len(batch):
                    raise ValueError(
                        f"Batch handler returned {len(batch_results)} results for {len(batch)} items"
                    )
                results[batch_index] = batch_results
                done += len(batch)

                if config.on_batch is not None:
                    config.on_batch(batch_results)
                if config.on_progress is not None:
                    config.on_progress(min(done, total), total)

        worker_count = min(config.concurrency, len(batches))
        tasks = [asyncio.create_task(worker()) for _ in range(worker_count)]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        flattened: List[TOut] = []
        for batch_results in results:
            flattened.extend(batch_results or [])
        return flattened

    async def _run_with_retry(self, batch: List[TIn], batch_index: int) -> List[TOut]:
        config = self._config
        attempts = config.retries + 1
        attempt = 0

        while True:
            attempt += 1
            start_time = time.perf_counter()
            try:
                return await asyncio.wait_for(config.handler(batch), timeout=config.timeout_seconds)
            except asyncio.TimeoutError:
                error: Exception = BatchTimeoutError(
                    f"Batch {batch_index} timed out after {config.timeout_seconds}s"
                )
            except Exception as exc:
                error = exc

            latency_ms = round((time.perf_counter() - start_time) * 1000, 2)
            if attempt >= attempts:
                logger.error(
                    {
                        "event": "batch_failed",
                        "batch_index": batch_index,
                        "batch_size": len(batch),
                        "attempts": attempts,
                        "latency_ms": latency_ms,
                        "error": str(error),
                    }
                )
                raise error

            delay = config.backoff_seconds * attempt
            logger.warning(
                {
                    "event": "batch_retry",
                    "batch_index": batch_index,
                    "batch_size": len(batch),
                    "attempt": attempt,
                    "max_attempts": attempts,
                    "retry_in_seconds": delay,
                    "latency_ms": latency_ms,
                    "error": str(error),
                }
            )
            if delay > 0:
                await asyncio.sleep(delay)
