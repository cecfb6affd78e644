"""Wires the push pipeline together and runs it on a schedule."""

from __future__ import annotations

import logging
import threading
from typing import List, Optional

import requests

from .archive import build_feed_archiver
from .async_sender import AsyncDocIdSender
from .cancellation import CancellationToken
from .codec import DocIdCodec
from .config import AdaptorConfig
from .errors import PushInterrupted
from .feed_file import GsaFeedFileMaker
from .handlers import BackoffPushErrorHandler
from .interfaces import FeedArchiver, IncrementalLister, Lister
from .journal import Journal
from .listers.registry import build_default_factory
from .pusher import DocIdSender, PushStatus
from .scheduling import OneAtATime, PeriodicTask
from .sender import GsaFeedFileSender

logger = logging.getLogger(__name__)


class FeedService:
    """Owns one adaptor's pusher, journal and recurring push tasks."""

    def __init__(
        self,
        config: AdaptorConfig,
        lister: Optional[Lister] = None,
        session: Optional[requests.Session] = None,
        archiver: Optional[FeedArchiver] = None,
    ) -> None:
        self._config = config.validate()
        self._lister = lister or build_default_factory().create(config.lister)
        codec = DocIdCodec(config.feed.base_doc_url, config.feed.doc_id_is_url)
        file_maker = GsaFeedFileMaker(
            codec,
            separate_closing_record_tag=config.gsa.separate_closing_record_tag,
            use_auth_method_workaround=config.gsa.use_auth_method_workaround,
            crawl_immediately_override=config.feed.crawl_immediately_override,
            crawl_once_override=config.feed.crawl_once_override,
            comments=config.feed.comments,
        )
        file_sender = GsaFeedFileSender(
            config.gsa.hostname,
            secure=config.gsa.secure,
            encoding=config.gsa.character_encoding,
            port=config.gsa.port,
            connect_timeout=config.gsa.connect_timeout_secs,
            read_timeout=config.gsa.read_timeout_secs,
            session=session,
        )
        self.journal = Journal(reduced_mem=config.journal.reduced_mem)
        self._cancellation = CancellationToken()
        self.pusher = DocIdSender(
            file_maker,
            file_sender,
            archiver or build_feed_archiver(config.archive),
            self.journal,
            config,
            cancellation=self._cancellation,
            error_handler=BackoffPushErrorHandler(config.retry.maximum_tries, config.retry.sleep_seconds),
        )
        self.async_pusher = AsyncDocIdSender(
            self.pusher,
            config.feed.max_urls,
            config.feed.async_max_latency_secs,
            config.feed.effective_async_queue_capacity,
        )
        self._full_guard = OneAtATime(
            self._full_push, lambda: logger.warning("Skipping full push: one is already running")
        )
        self._incremental_guard = OneAtATime(
            self._incremental_push, lambda: logger.warning("Skipping incremental push: one is already running")
        )
        self._last_full_status: Optional[PushStatus] = None
        self._last_incremental_status: Optional[PushStatus] = None
        self._tasks: List[PeriodicTask] = []
        self._threads: List[threading.Thread] = []

    @property
    def lister(self) -> Lister:
        return self._lister

    @property
    def full_push_running(self) -> bool:
        return self._full_guard.running

    def _full_push(self) -> None:
        try:
            self._last_full_status = self.pusher.push_full_doc_ids_from_adaptor(self._lister)
        except PushInterrupted:
            self._last_full_status = PushStatus.INTERRUPTED

    def _incremental_push(self) -> None:
        try:
            self._last_incremental_status = self.pusher.push_incremental_doc_ids_from_adaptor(self._lister)
        except PushInterrupted:
            self._last_incremental_status = PushStatus.INTERRUPTED

    def run_full_push(self) -> Optional[PushStatus]:
        """Run a full push on the calling thread.

        Returns ``None`` if another full push was already running.
        """
        if not self._full_guard():
            return None
        return self._last_full_status

    def run_incremental_push(self) -> Optional[PushStatus]:
        if not isinstance(self._lister, IncrementalLister):
            raise TypeError(f"{type(self._lister).__name__} does not support incremental listing")
        if not self._incremental_guard():
            return None
        return self._last_incremental_status

    def push_doc_ids_now(self) -> bool:
        """Start a full push in the background; ``False`` if one is already running."""
        thread = self._full_guard.start_in_background("full-push-now")
        if thread is None:
            return False
        self._threads = [t for t in self._threads if t.is_alive()]
        self._threads.append(thread)
        return True

    def start(self) -> None:
        schedule = self._config.schedule
        self._cancellation.reset()
        self._tasks.append(
            PeriodicTask(
                "full-push",
                schedule.full_listing_interval_secs,
                self._full_guard,
                run_immediately=schedule.push_doc_ids_on_startup,
            )
        )
        if isinstance(self._lister, IncrementalLister):
            self._tasks.append(
                PeriodicTask("incremental-push", schedule.incremental_poll_period_secs, self._incremental_guard)
            )
        self.async_pusher.start()
        for task in self._tasks:
            task.start()
        logger.info("Feed service started for datasource %s", self._config.feed.name)

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        """Flush queued items, then cancel running pushes and wait for the worker threads."""
        self.async_pusher.stop(timeout)
        self._cancellation.cancel()
        for task in self._tasks:
            task.stop(timeout)
        for thread in self._threads:
            thread.join(timeout)
        self._tasks = []
        self._threads = []
        logger.info("Feed service stopped")
