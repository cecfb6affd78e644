#!/usr/bin/env python3
"""Tests for batching, retrying and interrupting pushes."""

import threading
import time

import pytest

from feedadaptor.cancellation import CancellationToken
from feedadaptor.codec import DocIdCodec
from feedadaptor.config import AdaptorConfig, FeedConfig
from feedadaptor.errors import FailedReadingReply, FailedToConnect, FailedWriting, GsaRejectedFeed, PushInterrupted
from feedadaptor.feed_file import GsaFeedFileMaker
from feedadaptor.handlers import (
    BackoffPushErrorHandler,
    FailureKind,
    PushErrorHandler,
    PushFailure,
    no_retry_handler,
)
from feedadaptor.interfaces import FeedArchiver, IncrementalLister, Lister
from feedadaptor.journal import CompletionStatus, Journal
from feedadaptor.models import AclBuilder, AclItem, DocId, GroupDefinition, Principal, Record, RecordBuilder
from feedadaptor.pusher import DocIdSender, PushKind, PushState, PushStatus


class RecordingFileSender:
    """Fails with the queued errors, in order, then accepts everything."""

    def __init__(self, failures=(), on_send=None):
        self.failures = list(failures)
        self.on_send = on_send
        self.feeds = []
        self.groups = []

    def send_metadata_and_url(self, datasource, xml, use_compression=True, feed_type="metadata-and-url"):
        self.feeds.append(xml)
        self._maybe_fail(len(self.feeds))

    def send_groups(self, groupsource, xml, use_compression=True):
        self.groups.append((groupsource, xml))
        self._maybe_fail(len(self.groups))

    def _maybe_fail(self, call_number):
        if self.on_send is not None:
            self.on_send(call_number)
        if self.failures:
            raise self.failures.pop(0)


class AlwaysFailingFileSender(RecordingFileSender):
    def _maybe_fail(self, call_number):
        if self.on_send is not None:
            self.on_send(call_number)
        raise FailedToConnect("refused")


class RecordingArchiver(FeedArchiver):
    def __init__(self):
        self.saved = []
        self.failed = []

    def save_feed(self, name, xml):
        self.saved.append((name, xml))

    def save_failed_feed(self, name, xml):
        self.failed.append((name, xml))


class AllowAttempts(PushErrorHandler):
    """Permits exactly ``attempts`` attempts in total, without sleeping."""

    def __init__(self, attempts):
        self.attempts = attempts

    def should_retry(self, failure, ntries):
        return ntries < self.attempts


def make_pusher(file_sender, max_urls=2, handler=None, mark_all_docs_public=False, token=None):
    config = AdaptorConfig(feed=FeedConfig(name="ds", max_urls=max_urls, mark_all_docs_public=mark_all_docs_public))
    maker = GsaFeedFileMaker(DocIdCodec(config.feed.base_doc_url))
    archiver = RecordingArchiver()
    journal = Journal()
    pusher = DocIdSender(
        maker,
        file_sender,
        archiver,
        journal,
        config,
        cancellation=token,
        error_handler=handler or BackoffPushErrorHandler(maximum_tries=3, sleep_seconds=0),
    )
    return pusher, archiver, journal


def urls_in(xml):
    return [line.split('url="')[1].split('"')[0] for line in xml.splitlines() if "<record " in line]


def test_three_ids_in_batches_of_two():
    """1001, 1002, 1003 with max 2 per feed go out as two feeds."""
    file_sender = RecordingFileSender()
    pusher, archiver, journal = make_pusher(file_sender)

    result = pusher.push_doc_ids([DocId("1001"), DocId("1002"), DocId("1003")])

    assert result.ok
    assert (result.batches_sent, result.items_sent, result.failed_item) == (2, 3, None)
    base = "http://localhost:5678/doc/"
    assert [urls_in(xml) for xml in file_sender.feeds] == [[base + "1001", base + "1002"], [base + "1003"]]
    assert len(archiver.saved) == 2
    assert journal.snapshot().total_items_pushed == 3
    assert journal.snapshot().total_batches_pushed == 2
    assert pusher.state_of(PushKind.ITEMS) is PushState.SUCCESS


@pytest.mark.parametrize("count,max_urls", [(0, 3), (1, 3), (3, 3), (7, 3), (10, 1), (5, 5000)])
def test_batch_count_and_order(count, max_urls):
    file_sender = RecordingFileSender()
    pusher, _, _ = make_pusher(file_sender, max_urls=max_urls)
    ids = [DocId(str(i)) for i in range(count)]

    result = pusher.push_doc_ids(iter(ids))

    expected_batches = -(-count // max_urls)
    assert len(file_sender.feeds) == expected_batches == result.batches_sent
    sent = [url.rsplit("/", 1)[1] for xml in file_sender.feeds for url in urls_in(xml)]
    assert sent == [d.unique_id for d in ids]
    assert all(1 <= len(urls_in(xml)) <= max_urls for xml in file_sender.feeds)


def test_items_are_pulled_lazily():
    pulled = []

    def generate():
        for i in range(5):
            pulled.append(i)
            yield DocId(str(i))

    def check_progress(call_number):
        # Only the current batch has been pulled from the iterator.
        assert len(pulled) <= call_number * 2

    pusher, _, _ = make_pusher(RecordingFileSender(on_send=check_progress))
    assert pusher.push_doc_ids(generate()).ok


@pytest.mark.parametrize("k", [1, 2, 3])
def test_retries_send_identical_feed(k):
    file_sender = RecordingFileSender(failures=[FailedToConnect("refused")] * k)
    pusher, archiver, _ = make_pusher(file_sender, handler=AllowAttempts(k + 1))

    result = pusher.push_doc_ids([DocId("a")])

    assert result.ok
    assert len(file_sender.feeds) == k + 1
    assert len(set(file_sender.feeds)) == 1
    assert archiver.failed == []


def test_each_transmission_failure_kind_is_retried():
    failures = [FailedToConnect("c"), FailedWriting("w"), FailedReadingReply("r")]
    file_sender = RecordingFileSender(failures=failures)
    pusher, _, _ = make_pusher(file_sender)

    assert pusher.push_doc_ids([DocId("a")]).ok
    assert len(file_sender.feeds) == 4


@pytest.mark.parametrize("j", [1, 2, 5])
def test_gives_up_after_allowed_attempts(j):
    file_sender = AlwaysFailingFileSender()
    pusher, archiver, journal = make_pusher(file_sender, handler=AllowAttempts(j))

    result = pusher.push_doc_ids([DocId("1001"), DocId("1002"), DocId("1003")])

    assert result.status is PushStatus.FAILURE
    assert result.failed_item == RecordBuilder(DocId("1001")).build()
    assert result.batches_sent == 0
    assert len(file_sender.feeds) == j
    assert len(archiver.failed) == 1
    assert journal.snapshot().total_items_pushed == 0
    assert pusher.state_of(PushKind.ITEMS) is PushState.ABORTED


def test_failure_reports_first_item_of_failed_batch():
    def fail_from_second_feed(call_number):
        if call_number >= 2:
            file_sender.failures.append(FailedWriting("broken pipe"))

    file_sender = RecordingFileSender(on_send=fail_from_second_feed)
    pusher, _, _ = make_pusher(file_sender, handler=no_retry_handler())

    result = pusher.push_doc_ids([DocId("1001"), DocId("1002"), DocId("1003")])

    assert result.status is PushStatus.FAILURE
    assert (result.batches_sent, result.items_sent) == (1, 2)
    assert result.failed_item.doc_id == DocId("1003")


def test_rejected_feed_is_not_retried_by_default():
    file_sender = RecordingFileSender(failures=[GsaRejectedFeed("Error - Unauthorized Request")])
    pusher, _, _ = make_pusher(file_sender)

    assert pusher.push_doc_ids([DocId("a")]).status is PushStatus.FAILURE
    assert len(file_sender.feeds) == 1


def test_backoff_grows_linearly():
    handler = BackoffPushErrorHandler(maximum_tries=12, sleep_seconds=5)
    failure = PushFailure(FailureKind.CONNECT, FailedToConnect("x"))
    assert [handler.backoff_seconds(failure, n) for n in (1, 2, 3)] == [5, 10, 15]
    assert handler.should_retry(failure, 12)
    assert not handler.should_retry(failure, 13)
    assert not handler.should_retry(PushFailure(FailureKind.REJECTED, GsaRejectedFeed("no")), 1)


def test_interrupt_during_first_batch_propagates():
    token = CancellationToken()
    file_sender = RecordingFileSender(failures=[FailedToConnect("refused")], on_send=lambda n: token.cancel())
    pusher, archiver, _ = make_pusher(
        file_sender, handler=BackoffPushErrorHandler(maximum_tries=3, sleep_seconds=60), token=token
    )

    with pytest.raises(PushInterrupted):
        pusher.push_doc_ids([DocId("a")])
    assert pusher.state_of(PushKind.ITEMS) is PushState.INTERRUPTED
    assert archiver.failed == []


def test_interrupt_in_later_batch_returns_first_item_of_batch():
    token = CancellationToken()

    def cancel_on_second(call_number):
        if call_number == 2:
            token.cancel()
            file_sender.failures.append(FailedToConnect("refused"))

    file_sender = RecordingFileSender(on_send=cancel_on_second)
    pusher, _, _ = make_pusher(
        file_sender, handler=BackoffPushErrorHandler(maximum_tries=3, sleep_seconds=60), token=token
    )

    result = pusher.push_doc_ids([DocId("1001"), DocId("1002"), DocId("1003")])

    assert result.status is PushStatus.INTERRUPTED
    assert result.failed_item.doc_id == DocId("1003")
    assert result.batches_sent == 1
    assert token.is_cancelled()


def test_interrupt_from_another_thread_cuts_backoff_short():
    token = CancellationToken()
    file_sender = AlwaysFailingFileSender()
    pusher, _, _ = make_pusher(
        file_sender, handler=BackoffPushErrorHandler(maximum_tries=3, sleep_seconds=60), token=token
    )
    threading.Timer(0.1, token.cancel).start()

    started = time.monotonic()
    with pytest.raises(PushInterrupted):
        pusher.push_doc_ids([DocId("a")])
    assert time.monotonic() - started < 10


def test_named_resources_become_acl_items():
    file_sender = RecordingFileSender()
    pusher, _, _ = make_pusher(file_sender)
    acl = AclBuilder().set_permit_users(["alice"]).build()

    assert pusher.push_named_resources({DocId("share"): acl}).ok
    assert '<acl url="http://localhost:5678/doc/share">' in file_sender.feeds[0]


def test_mark_all_docs_public_drops_acls():
    file_sender = RecordingFileSender()
    pusher, _, _ = make_pusher(file_sender, mark_all_docs_public=True)
    acl = AclBuilder().set_permit_users(["alice"]).build()

    result = pusher.push_named_resources({DocId("share"): acl})
    assert result.ok and result.batches_sent == 0
    assert pusher.push_group_definitions([GroupDefinition(Principal.group("g"))]).batches_sent == 0
    assert pusher.push_items([RecordBuilder(DocId("doc")).set_acl(acl).build(), AclItem(DocId("n"), acl)]).ok

    assert len(file_sender.feeds) == 1
    assert "<acl" not in file_sender.feeds[0]
    assert file_sender.groups == []


def test_group_definitions_are_batched_and_journaled():
    file_sender = RecordingFileSender()
    pusher, _, journal = make_pusher(file_sender)
    groups = {Principal.group(f"g{i}"): [Principal.user("u")] for i in range(3)}

    result = pusher.push_group_definitions(groups, case_sensitive=False)

    assert result.ok and result.batches_sent == 2
    assert [source for source, _ in file_sender.groups] == ["ds", "ds"]
    assert "EVERYTHING_CASE_INSENSITIVE" in file_sender.groups[0][1]
    assert journal.snapshot().group_push["successes"] == 1
    assert journal.snapshot().total_items_pushed == 0


def test_failed_group_push_names_group():
    pusher, _, journal = make_pusher(AlwaysFailingFileSender(), handler=no_retry_handler())
    result = pusher.push_group_definitions([GroupDefinition(Principal.group("g"))])

    assert result.status is PushStatus.FAILURE
    assert result.failed_item.group == Principal.group("g")
    assert journal.snapshot().group_push["failures"] == 1


class FlakyLister(IncrementalLister):
    def __init__(self, failures=0):
        self.failures = failures
        self.calls = 0

    def get_doc_ids(self, pusher):
        self.calls += 1
        if self.calls <= self.failures:
            raise IOError("repository unavailable")
        pusher.push_doc_ids([DocId("1"), DocId("2"), DocId("3")])

    def get_modified_doc_ids(self, pusher):
        pusher.push_records([Record(DocId.deleted("2"))])


def test_full_push_retries_lister_errors():
    lister = FlakyLister(failures=2)
    file_sender = RecordingFileSender()
    pusher, _, journal = make_pusher(file_sender)

    assert pusher.push_full_doc_ids_from_adaptor(lister) is PushStatus.SUCCESS
    assert lister.calls == 3
    assert journal.last_full_push_status() is CompletionStatus.SUCCESS
    assert not journal.snapshot().full_push["in_progress"]


def test_full_push_gives_up_on_lister_errors():
    lister = FlakyLister(failures=100)
    pusher, _, journal = make_pusher(RecordingFileSender(), handler=AllowAttempts(2))

    assert pusher.push_full_doc_ids_from_adaptor(lister) is PushStatus.FAILURE
    assert lister.calls == 2
    assert journal.last_full_push_status() is CompletionStatus.FAILURE


def test_full_push_fails_when_feed_cannot_be_sent():
    pusher, _, journal = make_pusher(AlwaysFailingFileSender(), handler=no_retry_handler())

    assert pusher.push_full_doc_ids_from_adaptor(FlakyLister()) is PushStatus.FAILURE
    assert journal.snapshot().full_push["failures"] == 1


def test_full_push_records_interruption():
    token = CancellationToken()
    token.cancel()
    pusher, _, journal = make_pusher(RecordingFileSender(), token=token)

    with pytest.raises(PushInterrupted):
        pusher.push_full_doc_ids_from_adaptor(FlakyLister())
    assert journal.snapshot().full_push["interruptions"] == 1


def test_incremental_push_sends_deletes():
    file_sender = RecordingFileSender()
    pusher, _, journal = make_pusher(file_sender)

    assert pusher.push_incremental_doc_ids_from_adaptor(FlakyLister()) is PushStatus.SUCCESS
    assert 'action="delete"' in file_sender.feeds[0]
    assert journal.snapshot().incremental_push["successes"] == 1


def test_concurrent_full_and_incremental_pushes_keep_separate_states():
    entered = threading.Event()
    release = threading.Event()

    def hold_full_push(call_number):
        if threading.current_thread().name == "full":
            entered.set()
            release.wait(5)

    pusher, _, _ = make_pusher(RecordingFileSender(on_send=hold_full_push))
    lister = FlakyLister()
    full = threading.Thread(target=pusher.push_full_doc_ids_from_adaptor, args=(lister,), name="full")
    full.start()
    try:
        assert entered.wait(5)
        assert pusher.push_incremental_doc_ids_from_adaptor(lister) is PushStatus.SUCCESS

        assert pusher.state_of(PushKind.INCREMENTAL) is PushState.SUCCESS
        assert pusher.state_of(PushKind.FULL) is PushState.SENDING
    finally:
        release.set()
        full.join(5)

    assert pusher.state_of(PushKind.FULL) is PushState.SUCCESS
    assert pusher.state_of(PushKind.ITEMS) is PushState.IDLE
    assert pusher.states() == {"full": "success", "incremental": "success", "items": "idle"}


def test_plain_lister_works_for_full_push():
    class OneShot(Lister):
        def get_doc_ids(self, pusher):
            pusher.push_doc_ids([DocId("only")])

    pusher, _, _ = make_pusher(RecordingFileSender())
    assert pusher.push_full_doc_ids_from_adaptor(OneShot()) is PushStatus.SUCCESS
