"""Background queue for token metadata writes.

The read path enqueues metadata it happened to learn (symbol, name, logo) and
moves on; worker tasks persist it later. The queue is bounded and evicts the
oldest pending event when full, so a burst of new tokens keeps the freshest
metadata rather than stalling requests.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Deque, Optional

from walletlens.repositories.entries import TokenMetadataEntry
from walletlens.repositories.metadata import TokenMetadataRepository
from walletlens.services.metrics import (
    record_write_failure,
    record_write_queue_drop,
    record_write_queue_latency,
    update_write_queue_depth,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenMetadataEvent:
    address: str
    network: str
    symbol: str | None = None
    name: str | None = None
    decimals: int | None = None
    logo_url: str | None = None
    source: str = "provider"
    created_at: float = field(default_factory=time.time)
    retry_count: int = 0

    def to_entry(self) -> TokenMetadataEntry:
        return TokenMetadataEntry(
            network=self.network,
            contract_address=self.address,
            symbol=self.symbol,
            name=self.name,
            decimals=self.decimals,
            logo_url=self.logo_url,
            source=self.source,
        )


class TokenMetadataQueue:
    """Bounded multi-producer/multi-consumer queue with drop-oldest eviction."""

    def __init__(self, capacity: int = 1000, latency_warning_seconds: float = 5.0):
        if capacity <= 0:
            raise ValueError("capacity must be greater than 0")
        self._capacity = capacity
        self._latency_warning = latency_warning_seconds
        self._items: Deque[TokenMetadataEvent] = deque()
        self._not_empty = asyncio.Event()
        self._closed = False
        self._dropped = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def count(self) -> int:
        return len(self._items)

    @property
    def dropped_count(self) -> int:
        return self._dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue(self, event: TokenMetadataEvent) -> bool:
        """Add an event without blocking; False only once the queue is closed."""
        if self._closed:
            return False
        if len(self._items) >= self._capacity:
            evicted = self._items.popleft()
            self._dropped += 1
            record_write_queue_drop()
            logger.debug(f"Write queue full, dropped oldest event for {evicted.address} on {evicted.network}")
        self._items.append(event)
        self._not_empty.set()
        update_write_queue_depth(len(self._items))
        return True

    async def dequeue(self) -> Optional[TokenMetadataEvent]:
        """Wait for the next event; None once the queue is closed and drained."""
        while True:
            if self._items:
                event = self._items.popleft()
                if not self._items:
                    self._not_empty.clear()
                update_write_queue_depth(len(self._items))
                self._observe_latency(event)
                return event
            if self._closed:
                return None
            await self._not_empty.wait()

    def close(self) -> None:
        """Stop accepting events and wake idle consumers."""
        self._closed = True
        self._not_empty.set()

    def _observe_latency(self, event: TokenMetadataEvent) -> None:
        waited = time.time() - event.created_at
        record_write_queue_latency(waited)
        if waited > self._latency_warning:
            logger.warning(
                f"Metadata event for {event.address} on {event.network} waited {waited:.1f}s "
                f"in queue (depth {len(self._items)}); writers are falling behind"
            )


class MetadataWriteWorker:
    """Drains the queue into the metadata repository."""

    def __init__(
        self,
        queue: TokenMetadataQueue,
        repository: TokenMetadataRepository,
        max_retries: int = 3,
    ):
        self._queue = queue
        self._repository = repository
        self._max_retries = max_retries
        self.processed = 0

    async def run(self) -> None:
        while True:
            event = await self._queue.dequeue()
            if event is None:
                logger.info("Metadata write queue closed, worker exiting")
                return
            await self.process(event)

    async def process(self, event: TokenMetadataEvent) -> bool:
        try:
            await self._repository.add_or_update(event.to_entry())
        except Exception as e:
            if event.retry_count < self._max_retries:
                logger.warning(
                    f"Metadata write for {event.address} on {event.network} failed "
                    f"(attempt {event.retry_count + 1}): {e}"
                )
                if not self._queue.enqueue(replace(event, retry_count=event.retry_count + 1)):
                    logger.error(
                        f"Dropping metadata write for {event.address} on {event.network}: "
                        f"queue closed before the retry"
                    )
                    record_write_failure()
            else:
                logger.error(
                    f"Giving up on metadata write for {event.address} on {event.network} "
                    f"after {event.retry_count + 1} attempts: {e}"
                )
                record_write_failure()
            return False
        self.processed += 1
        return True
