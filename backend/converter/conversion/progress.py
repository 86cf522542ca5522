"""Progress reporting from adapters back to the orchestrator."""
import asyncio
import logging
from typing import Any, Callable, Optional

from converter.conversion.models import ItemStatus

logger = logging.getLogger("converter.progress")

Publish = Callable[[str, dict[str, Any]], None]
UpdateItem = Callable[..., None]


class ProgressReporter:
    """Progress sink for one item. Adapters call it; they never touch the item."""

    def __init__(self, item_id: str, publish: Publish):
        self.item_id = item_id
        self._publish = publish

    def progress(self, value: float) -> None:
        self._publish(self.item_id, {"progress": int(round(value))})

    def update(self, **changes: Any) -> None:
        self._publish(self.item_id, changes)


def discard_reporter() -> ProgressReporter:
    return ProgressReporter("", lambda _item_id, _changes: None)


class UpdateChannel:
    """
    Single serialized update path for item records.

    Producers publish (item_id, changes) without blocking; one consumer task
    applies them in order through ``update``. Progress never moves backwards
    while an item is converting.
    """

    def __init__(self, update: UpdateItem):
        self._update = update
        self._queue: asyncio.Queue = asyncio.Queue()
        self._progress: dict[str, int] = {}
        self._converting: set[str] = set()
        self._consumer: Optional[asyncio.Task] = None

    def publish(self, item_id: str, changes: dict[str, Any]) -> None:
        self._queue.put_nowait((item_id, dict(changes)))

    def reporter(self, item_id: str) -> ProgressReporter:
        return ProgressReporter(item_id, self.publish)

    def start(self) -> None:
        if self._consumer is None:
            self._consumer = asyncio.ensure_future(self._consume())

    async def close(self) -> None:
        """Apply everything published so far, then stop the consumer."""
        self._queue.put_nowait(None)
        if self._consumer is not None:
            await self._consumer
            self._consumer = None

    async def _consume(self) -> None:
        while True:
            entry = await self._queue.get()
            if entry is None:
                return
            item_id, changes = entry
            try:
                self._apply(item_id, changes)
            except Exception:
                logger.exception("Failed to apply update %s for item %s", sorted(changes), item_id)

    def _apply(self, item_id: str, changes: dict[str, Any]) -> None:
        status = changes.get("status")
        if status is not None:
            if status == ItemStatus.CONVERTING:
                if item_id not in self._converting:
                    self._progress[item_id] = int(changes.get("progress", 0))
                self._converting.add(item_id)
            else:
                self._converting.discard(item_id)
        if "progress" in changes and item_id in self._converting:
            last = self._progress.get(item_id, 0)
            value = max(last, int(changes["progress"]))
            self._progress[item_id] = value
            changes["progress"] = value
        self._update(item_id, **changes)
