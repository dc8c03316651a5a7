"""Per-call capture accumulator and the event-driven ingestion channel."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from types import TracebackType

from trackharvest.logging_utils import log_event
from trackharvest.schemas import CapturedTrack, PlaylistMetadata

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CaptureContext:
    """Mutable state owned by exactly one in-flight scrape call."""

    playlist_url: str = ""
    seen_offsets: set[int] = field(default_factory=set)
    seen_keys: set[str] = field(default_factory=set)
    items: list[CapturedTrack] = field(default_factory=list)
    total_count: int | None = None
    metadata: PlaylistMetadata = field(default_factory=PlaylistMetadata)
    duplicates_dropped: int = 0

    def claim_offset(self, offset: int) -> bool:
        """Return ``True`` the first time a pagination offset is seen."""
        if offset in self.seen_offsets:
            return False
        self.seen_offsets.add(offset)
        return True

    def add(self, track: CapturedTrack, *, key: str | None = None) -> bool:
        """Append a track unless its dedup key (or its id) was already captured.

        ``key`` overrides the track's own dedup key; the track id, when known,
        is claimed as well so no id can appear twice in one capture.
        """
        keys = {key or track.dedup_key}
        if track.track_id:
            keys.add(track.track_id)
        if not keys.isdisjoint(self.seen_keys):
            self.duplicates_dropped += 1
            return False
        self.seen_keys.update(keys)
        self.items.append(track)
        return True

    def record_total(self, total: int) -> None:
        """Keep the first reported total track count as the upper bound."""
        if self.total_count is None and total >= 0:
            self.total_count = total

    def record_metadata(self, metadata: PlaylistMetadata) -> None:
        self.metadata = self.metadata.fill_missing(metadata)

    @property
    def is_complete(self) -> bool:
        return self.total_count is not None and len(self.items) >= self.total_count


class IngestChannel[T]:
    """Bounded queue between an event producer and a single consumer task.

    Producers (browser event callbacks) ``publish`` payloads; the consumer
    applies them one at a time, so the capture state is only ever touched
    from one coroutine regardless of how events interleave with the driver
    loop. A failing payload is logged and skipped.
    """

    def __init__(
        self,
        consumer: Callable[[T], object],
        *,
        maxsize: int = 256,
        name: str = "ingest",
    ) -> None:
        self._consumer = consumer
        self._queue: asyncio.Queue[T] = asyncio.Queue(maxsize=maxsize)
        self._task: asyncio.Task[None] | None = None
        self.name = name
        self.processed = 0
        self.failed = 0

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"trackharvest-{self.name}")

    async def publish(self, item: T) -> None:
        """Enqueue a payload, waiting while the queue is full."""
        await self._queue.put(item)

    async def settle(self) -> None:
        """Wait until every published payload has been consumed."""
        if self._task is None:
            return
        await self._queue.join()

    async def close(self, *, drain: bool = True) -> None:
        """Stop the consumer, optionally processing pending payloads first."""
        task, self._task = self._task, None
        if task is None:
            return
        if drain and not task.done():
            self._task = task
            await self.settle()
            self._task = None
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        log_event(
            logger,
            logging.DEBUG,
            "ingest.closed",
            channel=self.name,
            processed=self.processed,
            failed=self.failed,
        )

    async def __aenter__(self) -> IngestChannel[T]:
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.close(drain=exc_type is None)

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                self._consumer(item)
                self.processed += 1
            except Exception as exc:  # noqa: BLE001
                self.failed += 1
                log_event(
                    logger,
                    logging.WARNING,
                    "ingest.item_failed",
                    channel=self.name,
                    error=str(exc),
                )
            finally:
                self._queue.task_done()
