#!/usr/bin/env python3
"""Tests for the push journal."""

import threading

import pytest

from feedadaptor.journal import CompletionStatus, Journal
from feedadaptor.models import AclBuilder, AclItem, DocId, RecordBuilder


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def records(*ids):
    return [RecordBuilder(DocId(i)).build() for i in ids]


def test_counts_items_batches_and_doc_ids():
    journal = Journal()
    journal.record_doc_id_push(records("a", "b"))
    journal.record_doc_id_push(records("a") + [AclItem(DocId("n"), AclBuilder().build())])
    snapshot = journal.snapshot()

    assert snapshot.total_items_pushed == 4
    assert snapshot.total_batches_pushed == 2
    assert snapshot.unique_doc_ids_pushed == 3
    assert journal.times_pushed(DocId("a")) == 2


def test_reduced_memory_skips_per_doc_counts():
    journal = Journal(reduced_mem=True)
    journal.record_doc_id_push(records("a", "b"))

    assert journal.snapshot().unique_doc_ids_pushed is None
    assert journal.snapshot().total_items_pushed == 2
    with pytest.raises(RuntimeError):
        journal.times_pushed(DocId("a"))


def test_full_push_lifecycle_times():
    clock = FakeClock()
    journal = Journal(clock=clock)

    journal.record_full_push_started()
    clock.now = 160.0
    journal.record_full_push_successful()
    full = journal.snapshot().full_push

    assert full["last_status"] == "success"
    assert (full["last_successful_start"], full["last_successful_end"]) == (100.0, 160.0)
    assert journal.last_full_push_status() is CompletionStatus.SUCCESS


def test_failed_push_keeps_last_success_times():
    clock = FakeClock()
    journal = Journal(clock=clock)
    journal.record_incremental_push_started()
    journal.record_incremental_push_successful()
    clock.now = 200.0
    journal.record_incremental_push_started()
    journal.record_incremental_push_failed()
    incremental = journal.snapshot().incremental_push

    assert incremental["last_status"] == "failure"
    assert incremental["last_successful_start"] == 100.0
    assert (incremental["successes"], incremental["failures"]) == (1, 1)


def test_starting_twice_is_an_error():
    journal = Journal()
    journal.record_group_push_started()
    with pytest.raises(RuntimeError):
        journal.record_group_push_started()
    journal.record_group_push_interrupted()
    assert journal.snapshot().group_push["interruptions"] == 1


def test_finishing_without_start_is_an_error():
    with pytest.raises(RuntimeError):
        Journal().record_full_push_failed()


def test_concurrent_updates_are_not_lost():
    journal = Journal()
    batch = records("x")

    def push_many():
        for _ in range(500):
            journal.record_doc_id_push(batch)

    threads = [threading.Thread(target=push_many) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert journal.snapshot().total_items_pushed == 2000
    assert journal.times_pushed(DocId("x")) == 2000


def test_snapshot_serialises_to_dict():
    journal = Journal(clock=FakeClock())
    data = journal.snapshot().to_dict()

    assert data["taken_at"] == 100.0
    assert data["full_push"]["in_progress"] is False
