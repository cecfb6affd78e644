"""Mock lister producing deterministic DocIds."""

from __future__ import annotations

from datetime import datetime, timezone

from ..config import ListerConfig
from ..interfaces import DocIdPusher, IncrementalLister
from ..models import DocId, RecordBuilder


class MockLister(IncrementalLister):
    def __init__(self, config: ListerConfig) -> None:
        self._count = int(config.params.get("count", 10))
        self._prefix = config.params.get("prefix", "mock-doc-")
        self._modified_per_poll = int(config.params.get("modified_per_poll", 1))
        self._polls = 0

    def doc_ids(self):
        return [DocId(f"{self._prefix}{idx}") for idx in range(self._count)]

    def get_doc_ids(self, pusher: DocIdPusher) -> None:
        pusher.push_doc_ids(self.doc_ids())

    def get_modified_doc_ids(self, pusher: DocIdPusher) -> None:
        if not self._count or not self._modified_per_poll:
            return
        now = datetime.now(timezone.utc)
        start = self._polls * self._modified_per_poll
        self._polls += 1
        records = [
            RecordBuilder(DocId(f"{self._prefix}{(start + offset) % self._count}"))
            .set_last_modified(now)
            .set_crawl_immediately(True)
            .build()
            for offset in range(self._modified_per_poll)
        ]
        pusher.push_records(records)
