"""Batches push items into feed files and delivers them with retries.

:class:`DocIdSender` is the adaptor's :class:`~feedadaptor.interfaces.DocIdPusher`.
It pulls items lazily, at most ``feed.max_urls`` per feed file, renders each
batch once and sends that same document until it is accepted or the error
handler gives up. A push stops at the first batch that cannot be delivered;
later batches are never sent out of order.
"""

from __future__ import annotations

import itertools
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, TypeVar, Union

from .cancellation import CancellationToken
from .config import AdaptorConfig
from .errors import GsaRejectedFeed, PushInterrupted, TransmissionError
from .feed_file import FEED_TYPE_METADATA_AND_URL, GsaFeedFileMaker
from .handlers import FailureKind, PushErrorHandler, build_retrying, default_handler
from .interfaces import DocIdPusher, FeedArchiver, IncrementalLister, Lister
from .journal import Journal
from .models import Acl, AclItem, DocId, GroupDefinition, Principal, PushItem, Record, RecordBuilder
from .sender import GsaFeedFileSender

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PushStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    INTERRUPTED = "interrupted"


class PushKind(str, Enum):
    """Which kind of push a state belongs to.

    ``ITEMS`` covers pushes made outside a listing, such as queued or group pushes.
    """

    FULL = "full"
    INCREMENTAL = "incremental"
    ITEMS = "items"


class PushState(str, Enum):
    IDLE = "idle"
    ENUMERATING = "enumerating"
    BATCHING = "batching"
    SENDING = "sending"
    RETRYING = "retrying"
    SUCCESS = "success"
    ABORTED = "aborted"
    INTERRUPTED = "interrupted"


@dataclass(frozen=True)
class PushResult:
    """Outcome of one push call.

    ``failed_item`` is the first item of the batch that could not be
    delivered; everything before that batch reached the appliance.
    """

    status: PushStatus
    batches_sent: int = 0
    items_sent: int = 0
    failed_item: Optional[Union[PushItem, GroupDefinition]] = None

    @property
    def ok(self) -> bool:
        return self.status is PushStatus.SUCCESS


GroupDefinitions = Union[Iterable[GroupDefinition], Mapping[Principal, Iterable[Principal]]]


class DocIdSender(DocIdPusher):
    """Pushes DocIds, records, named resources and groups to the appliance."""

    def __init__(
        self,
        file_maker: GsaFeedFileMaker,
        file_sender: GsaFeedFileSender,
        archiver: FeedArchiver,
        journal: Journal,
        config: AdaptorConfig,
        cancellation: Optional[CancellationToken] = None,
        error_handler: Optional[PushErrorHandler] = None,
    ) -> None:
        self._file_maker = file_maker
        self._file_sender = file_sender
        self._archiver = archiver
        self._journal = journal
        self._config = config
        self._cancellation = cancellation or CancellationToken()
        self._default_handler = error_handler or default_handler()
        self._states: Dict[PushKind, PushState] = {kind: PushState.IDLE for kind in PushKind}
        self._state_lock = threading.Lock()
        self._current = threading.local()

    def state_of(self, kind: PushKind) -> PushState:
        with self._state_lock:
            return self._states[kind]

    def states(self) -> Dict[str, str]:
        with self._state_lock:
            return {kind.value: state.value for kind, state in self._states.items()}

    @property
    def cancellation(self) -> CancellationToken:
        return self._cancellation

    def _set_state(self, state: PushState) -> None:
        kind = getattr(self._current, "kind", PushKind.ITEMS)
        with self._state_lock:
            self._states[kind] = state

    @contextmanager
    def _pushing_as(self, kind: PushKind) -> Iterator[None]:
        """Attribute state changes on this thread to ``kind``."""
        previous = getattr(self._current, "kind", PushKind.ITEMS)
        self._current.kind = kind
        try:
            yield
        finally:
            self._current.kind = previous

    # Listing ---------------------------------------------------------------

    def push_full_doc_ids_from_adaptor(
        self, lister: Lister, handler: Optional[PushErrorHandler] = None
    ) -> PushStatus:
        """Ask ``lister`` for every DocId and push them.

        Raises:
            PushInterrupted: if the push was cancelled.
        """
        logger.info("Beginning get_doc_ids")
        self._journal.record_full_push_started()
        with self._pushing_as(PushKind.FULL):
            return self._run_listing(
                "get_doc_ids",
                lister.get_doc_ids,
                handler,
                on_success=self._journal.record_full_push_successful,
                on_failure=self._journal.record_full_push_failed,
                on_interrupted=self._journal.record_full_push_interrupted,
            )

    def push_incremental_doc_ids_from_adaptor(
        self, lister: IncrementalLister, handler: Optional[PushErrorHandler] = None
    ) -> PushStatus:
        """Ask ``lister`` for recently changed DocIds and push them."""
        logger.info("Beginning get_modified_doc_ids")
        self._journal.record_incremental_push_started()
        with self._pushing_as(PushKind.INCREMENTAL):
            return self._run_listing(
                "get_modified_doc_ids",
                lister.get_modified_doc_ids,
                handler,
                on_success=self._journal.record_incremental_push_successful,
                on_failure=self._journal.record_incremental_push_failed,
                on_interrupted=self._journal.record_incremental_push_interrupted,
            )

    def _run_listing(
        self,
        name: str,
        list_into: Callable[[DocIdPusher], None],
        handler: Optional[PushErrorHandler],
        on_success: Callable[[], None],
        on_failure: Callable[[], None],
        on_interrupted: Callable[[], None],
    ) -> PushStatus:
        handler = handler or self._default_handler
        retrying = build_retrying(handler, self._cancellation, default_kind=FailureKind.GET_DOC_IDS)
        tracker = _ListingPusher(self)

        def attempt() -> None:
            self._cancellation.raise_if_cancelled()
            self._set_state(PushState.ENUMERATING)
            tracker.reset()
            list_into(tracker)

        try:
            retrying(attempt)
        except PushInterrupted:
            on_interrupted()
            self._set_state(PushState.INTERRUPTED)
            logger.info("Interrupted. Aborted %s", name)
            raise
        except Exception:
            on_failure()
            self._set_state(PushState.ABORTED)
            logger.warning("Gave up. Failed %s", name, exc_info=True)
            return PushStatus.FAILURE

        if tracker.worst is PushStatus.INTERRUPTED:
            on_interrupted()
            self._set_state(PushState.INTERRUPTED)
            logger.info("Interrupted. Aborted %s", name)
            raise PushInterrupted(f"{name} was interrupted after a partial push")
        if tracker.worst is PushStatus.FAILURE:
            on_failure()
            self._set_state(PushState.ABORTED)
            logger.warning("Failed %s: %s", name, tracker.first_failure)
            return PushStatus.FAILURE
        on_success()
        self._set_state(PushState.SUCCESS)
        logger.info("Completed %s", name)
        return PushStatus.SUCCESS

    # Items -----------------------------------------------------------------

    def push_doc_ids(self, doc_ids: Iterable[DocId], handler: Optional[PushErrorHandler] = None) -> PushResult:
        return self.push_items((RecordBuilder(doc_id).build() for doc_id in doc_ids), handler)

    def push_records(self, records: Iterable[Record], handler: Optional[PushErrorHandler] = None) -> PushResult:
        return self.push_items(records, handler)

    def push_named_resources(
        self, resources: Mapping[DocId, Acl], handler: Optional[PushErrorHandler] = None
    ) -> PushResult:
        if self._config.feed.mark_all_docs_public:
            logger.debug("Ignoring named resources because mark_all_docs_public is set")
            return PushResult(PushStatus.SUCCESS)
        items = [AclItem(doc_id, acl) for doc_id, acl in resources.items()]
        logger.debug("About to push %d named resources", len(items))
        return self.push_items(items, handler)

    def push_items(
        self,
        items: Iterable[PushItem],
        handler: Optional[PushErrorHandler] = None,
        feed_type: str = FEED_TYPE_METADATA_AND_URL,
    ) -> PushResult:
        """Push records and named resources in feed-sized batches."""
        logger.info("Pushing items")
        handler = handler or self._default_handler
        if self._config.feed.mark_all_docs_public:
            items = self._strip_acls(items)
        datasource = self._config.feed.name

        def send(batch: List[PushItem]) -> bool:
            xml = self._file_maker.make_metadata_and_url_xml(datasource, batch, feed_type)
            return self._deliver(
                xml,
                lambda: self._file_sender.send_metadata_and_url(
                    datasource, xml, self._config.feed.use_compression, feed_type
                ),
                handler,
                describe=f"batch of {len(batch)} items",
                first=batch[0],
            )

        result = self._push_batches(iter(items), send, "items")
        if result.ok:
            logger.info("Pushed %d items in %d batches", result.items_sent, result.batches_sent)
        return result

    @staticmethod
    def _strip_acls(items: Iterable[PushItem]) -> Iterator[PushItem]:
        for item in items:
            if isinstance(item, AclItem):
                continue
            if isinstance(item, Record) and item.acl is not None:
                item = RecordBuilder.from_record(item).set_acl(None).build()
            yield item

    def _push_batches(
        self,
        items: Iterator[T],
        send: Callable[[List[T]], bool],
        what: str,
        on_batch_sent: Optional[Callable[[List[T]], None]] = None,
    ) -> PushResult:
        max_urls = self._config.feed.max_urls
        batches_sent = 0
        items_sent = 0
        self._set_state(PushState.ENUMERATING)
        while True:
            batch = list(itertools.islice(items, max_urls))
            if not batch:
                break
            self._set_state(PushState.BATCHING)
            logger.info("Pushing group of %d %s", len(batch), what)
            try:
                self._cancellation.raise_if_cancelled()
                sent = send(batch)
            except PushInterrupted:
                self._set_state(PushState.INTERRUPTED)
                if batches_sent == 0:
                    raise
                # Earlier batches already reached the appliance, so report how far we got.
                logger.info("Pushing %s interrupted", what)
                return PushResult(PushStatus.INTERRUPTED, batches_sent, items_sent, batch[0])
            if not sent:
                self._set_state(PushState.ABORTED)
                logger.info("Failed to push all %s. Failed on: %s", what, batch[0])
                return PushResult(PushStatus.FAILURE, batches_sent, items_sent, batch[0])
            (on_batch_sent or self._journal.record_doc_id_push)(batch)
            batches_sent += 1
            items_sent += len(batch)
            self._set_state(PushState.ENUMERATING)
        self._set_state(PushState.SUCCESS)
        return PushResult(PushStatus.SUCCESS, batches_sent, items_sent)

    def _deliver(
        self,
        xml: str,
        transmit: Callable[[], None],
        handler: PushErrorHandler,
        describe: str,
        first: object,
    ) -> bool:
        """Send one rendered document until accepted or the handler gives up."""
        name = self._config.feed.name
        ntries = 0

        def attempt() -> None:
            nonlocal ntries
            ntries += 1
            if ntries > 1:
                logger.info("Trying again... Number of attempts: %d", ntries)
            self._set_state(PushState.SENDING)
            logger.info("Sending %s to GSA host: %s", describe, self._config.gsa.hostname)
            try:
                transmit()
            except (TransmissionError, GsaRejectedFeed):
                # Backoff, if any, happens in this state.
                self._set_state(PushState.RETRYING)
                raise

        try:
            build_retrying(handler, self._cancellation)(attempt)
        except (TransmissionError, GsaRejectedFeed) as exc:
            logger.warning("Gave up after %d attempt(s): %s. First item in list: %s", ntries, exc, first)
            self._archiver.save_failed_feed(name, xml)
            return False
        logger.info("Pushing %s succeeded", describe)
        self._archiver.save_feed(name, xml)
        return True

    # Groups ----------------------------------------------------------------

    def push_group_definitions(
        self,
        groups: GroupDefinitions,
        case_sensitive: bool = True,
        handler: Optional[PushErrorHandler] = None,
    ) -> PushResult:
        """Push group memberships to the groups endpoint."""
        if self._config.feed.mark_all_docs_public:
            logger.debug("Ignoring group definitions because mark_all_docs_public is set")
            return PushResult(PushStatus.SUCCESS)
        definitions = _as_group_definitions(groups)
        if not definitions:
            logger.debug("Called push_group_definitions with no groups to push")
            return PushResult(PushStatus.SUCCESS)
        handler = handler or self._default_handler
        groupsource = self._config.feed.effective_groupsource

        def send(batch: List[GroupDefinition]) -> bool:
            xml = self._file_maker.make_group_definitions_xml(batch, case_sensitive)
            return self._deliver(
                xml,
                lambda: self._file_sender.send_groups(groupsource, xml, self._config.feed.use_compression),
                handler,
                describe=f"batch of {len(batch)} groups",
                first=batch[0].group,
            )

        self._journal.record_group_push_started()
        try:
            result = self._push_batches(iter(definitions), send, "groups", on_batch_sent=lambda batch: None)
        except PushInterrupted:
            self._journal.record_group_push_interrupted()
            raise
        if result.status is PushStatus.INTERRUPTED:
            self._journal.record_group_push_interrupted()
        elif result.status is PushStatus.FAILURE:
            self._journal.record_group_push_failed()
        else:
            members = sum(len(d.members) for d in definitions)
            logger.info("Pushed %d groups containing %d memberships", len(definitions), members)
            self._journal.record_group_push_successful()
        return result


def _as_group_definitions(groups: GroupDefinitions) -> Sequence[GroupDefinition]:
    if isinstance(groups, Mapping):
        return [GroupDefinition(group, tuple(members)) for group, members in groups.items()]
    return list(groups)


class _ListingPusher(DocIdPusher):
    """Passes pushes through to the sender and remembers the worst outcome."""

    _SEVERITY = {PushStatus.SUCCESS: 0, PushStatus.FAILURE: 1, PushStatus.INTERRUPTED: 2}

    def __init__(self, sender: DocIdSender) -> None:
        self._sender = sender
        self.worst = PushStatus.SUCCESS
        self.first_failure: Optional[PushResult] = None

    def reset(self) -> None:
        self.worst = PushStatus.SUCCESS
        self.first_failure = None

    def _track(self, result: PushResult) -> PushResult:
        if self._SEVERITY[result.status] > self._SEVERITY[self.worst]:
            self.worst = result.status
        if not result.ok and self.first_failure is None:
            self.first_failure = result
        return result

    def push_doc_ids(self, doc_ids, handler=None):
        return self._track(self._sender.push_doc_ids(doc_ids, handler))

    def push_records(self, records, handler=None):
        return self._track(self._sender.push_records(records, handler))

    def push_named_resources(self, resources, handler=None):
        return self._track(self._sender.push_named_resources(resources, handler))

    def push_items(self, items, handler=None, feed_type=FEED_TYPE_METADATA_AND_URL):
        return self._track(self._sender.push_items(items, handler, feed_type))

    def push_group_definitions(self, groups, case_sensitive=True, handler=None):
        return self._track(self._sender.push_group_definitions(groups, case_sensitive, handler))
