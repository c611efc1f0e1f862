# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Throttling primitives for the embedding pipeline.

``ConcurrencyGate`` bounds how many provider calls are in flight for one
provider instance. ``MemoryPressureMonitor`` tracks an approximate byte cost
of in-flight text and freshly returned vectors and lets the batch pipeline
stall between chunks while that estimate sits above a soft threshold.
"""

import asyncio
import gc
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from ..config import MAX_EMBEDDING_CONCURRENCY

logger = logging.getLogger(__name__)

# Approximate in-memory cost of one float in a returned vector
BYTES_PER_FLOAT = 8


class ConcurrencyGate:
    """Bounded worker-slot gate shared by every batch on one provider."""

    def __init__(self, limit: int, hard_limit: int = MAX_EMBEDDING_CONCURRENCY):
        if limit < 1 or limit > hard_limit:
            raise ValueError(f"Concurrency limit must be between 1 and {hard_limit}, got {limit}")
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self._in_flight = 0
        self.peak_in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold one of the gate's slots for the duration of the block."""
        async with self._semaphore:
            self._in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
            try:
                yield
            finally:
                self._in_flight -= 1


class MemoryPressureMonitor:
    """Soft memory-pressure estimate driven by reserved byte counts."""

    def __init__(
        self,
        max_bytes: int,
        threshold: float = 0.8,
        poll_interval: float = 0.5,
        gc_hint: bool = True,
    ):
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        if not 0.0 < threshold <= 1.0:
            raise ValueError("threshold must be in (0, 1]")
        self.max_bytes = max_bytes
        self.threshold = threshold
        self.poll_interval = poll_interval
        self.gc_hint = gc_hint
        self._usage_bytes = 0
        self.stall_count = 0

    @property
    def usage_bytes(self) -> int:
        return self._usage_bytes

    @property
    def soft_limit_bytes(self) -> int:
        return int(self.max_bytes * self.threshold)

    @property
    def under_pressure(self) -> bool:
        return self._usage_bytes >= self.soft_limit_bytes

    def reserve(self, nbytes: int) -> None:
        self._usage_bytes += max(0, nbytes)

    def release(self, nbytes: int) -> None:
        self._usage_bytes = max(0, self._usage_bytes - max(0, nbytes))

    async def wait_for_headroom(self) -> int:
        """Sleep until usage drops below the soft threshold.

        Returns:
            Number of polling intervals spent stalled (0 if no pressure)
        """
        polls = 0
        while self.under_pressure:
            if polls == 0:
                self.stall_count += 1
                logger.warning(
                    f"Embedding pipeline under memory pressure "
                    f"({self._usage_bytes}/{self.max_bytes} bytes), stalling batch"
                )
            if self.gc_hint:
                gc.collect()
            polls += 1
            await asyncio.sleep(self.poll_interval)
        if polls:
            logger.info(f"Memory pressure cleared after {polls} poll(s), resuming batch")
        return polls
