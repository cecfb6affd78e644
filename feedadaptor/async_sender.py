"""Queue push items from any thread and send them in the background.

A single worker thread gathers queued items into batches. A batch is sent as
soon as it holds ``max_batch_size`` items, or ``max_latency`` seconds after its
first item arrived, whichever comes first. When the queue is full new items
are dropped with a warning rather than blocking the caller.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import TYPE_CHECKING, List, Optional

from .errors import PushInterrupted
from .handlers import PushErrorHandler, no_retry_handler
from .interfaces import AsyncDocIdPusher
from .models import Acl, AclItem, DocId, PushItem, Record, RecordBuilder

if TYPE_CHECKING:
    from .pusher import DocIdSender

logger = logging.getLogger(__name__)


class AsyncDocIdSender(AsyncDocIdPusher):
    """Batches queued items and hands them to :meth:`DocIdSender.push_items`.

    ``queue_capacity`` should cover the items expected to arrive while one
    feed is being sent.
    """

    def __init__(
        self,
        pusher: "DocIdSender",
        max_batch_size: int,
        max_latency: float,
        queue_capacity: int,
        poll_interval: float = 0.5,
    ) -> None:
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be positive")
        if max_latency < 0 or poll_interval <= 0:
            raise ValueError("max_latency must not be negative and poll_interval must be positive")
        self._pusher = pusher
        self._max_batch_size = max_batch_size
        self._max_latency = max_latency
        self._poll_interval = poll_interval
        self._queue: "queue.Queue[PushItem]" = queue.Queue(maxsize=queue_capacity)
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def async_push_item(self, item: PushItem) -> bool:
        try:
            self._queue.put_nowait(item)
        except queue.Full:
            logger.warning("Failed to queue item: %s", item)
            return False
        return True

    def push_doc_id(self, doc_id: DocId) -> bool:
        return self.async_push_item(RecordBuilder(doc_id).build())

    def push_record(self, record: Record) -> bool:
        return self.async_push_item(record)

    def push_named_resource(self, doc_id: DocId, acl: Acl) -> bool:
        return self.async_push_item(AclItem(doc_id, acl))

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._run, name="async-push", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the worker after it sends whatever is still queued, without retries."""
        self._stopping.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        batch: List[PushItem] = []
        while not self._stopping.is_set():
            batch = self._take_batch()
            if self._stopping.is_set():
                break
            self._send(batch, None)
            batch = []
        batch.extend(self._drain(None))
        if batch:
            logger.info("Sending %d queued items before shutting down", len(batch))
            self._send(batch, no_retry_handler())
        logger.debug("Async push worker shut down")

    def _take_batch(self) -> List[PushItem]:
        """Block for a first item, then fill the batch until it is full or stale.

        Returns early, possibly empty, once the sender is stopping.
        """
        batch: List[PushItem] = []
        while not batch:
            if self._stopping.is_set():
                return batch
            try:
                batch.append(self._queue.get(timeout=self._poll_interval))
            except queue.Empty:
                continue
        deadline = time.monotonic() + self._max_latency
        while True:
            batch.extend(self._drain(self._max_batch_size - len(batch)))
            if len(batch) >= self._max_batch_size:
                return batch
            remaining = deadline - time.monotonic()
            if remaining <= 0 or self._stopping.is_set():
                return batch
            try:
                batch.append(self._queue.get(timeout=min(remaining, self._poll_interval)))
            except queue.Empty:
                continue

    def _drain(self, limit: Optional[int]) -> List[PushItem]:
        items: List[PushItem] = []
        while limit is None or len(items) < limit:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return items

    def _send(self, batch: List[PushItem], handler: Optional[PushErrorHandler]) -> None:
        # Repeated items in one batch go out once, in first-queued order.
        unique = list(dict.fromkeys(batch))
        try:
            result = self._pusher.push_items(unique, handler)
        except PushInterrupted:
            logger.info("Queued push of %d items interrupted", len(unique))
            return
        except Exception:
            logger.exception("Failed to push %d queued items", len(unique))
            return
        if not result.ok:
            logger.warning("Queued push ended with %s. First unsent item: %s", result.status.value, result.failed_item)
