"""In-memory record of what the adaptor has pushed and how pushes ended."""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

from .models import PushItem

logger = logging.getLogger(__name__)


class CompletionStatus(str, Enum):
    SUCCESS = "success"
    INTERRUPTION = "interruption"
    FAILURE = "failure"


@dataclass
class PushTracker:
    """Start/end bookkeeping for one kind of push (full, incremental, groups)."""

    name: str
    started_at: Optional[float] = None
    last_status: Optional[CompletionStatus] = None
    last_successful_start: Optional[float] = None
    last_successful_end: Optional[float] = None
    successes: int = 0
    failures: int = 0
    interruptions: int = 0

    @property
    def in_progress(self) -> bool:
        return self.started_at is not None

    def start(self, now: float) -> None:
        if self.started_at is not None:
            raise RuntimeError(f"{self.name} push already started")
        self.started_at = now

    def finish(self, status: CompletionStatus, now: float) -> None:
        if self.started_at is None:
            raise RuntimeError(f"{self.name} push was not started")
        if status is CompletionStatus.SUCCESS:
            self.successes += 1
            self.last_successful_start = self.started_at
            self.last_successful_end = now
        elif status is CompletionStatus.FAILURE:
            self.failures += 1
        else:
            self.interruptions += 1
        self.last_status = status
        self.started_at = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "in_progress": self.in_progress,
            "last_status": self.last_status.value if self.last_status else None,
            "last_successful_start": self.last_successful_start,
            "last_successful_end": self.last_successful_end,
            "successes": self.successes,
            "failures": self.failures,
            "interruptions": self.interruptions,
        }


@dataclass(frozen=True)
class JournalSnapshot:
    total_items_pushed: int
    total_batches_pushed: int
    unique_doc_ids_pushed: Optional[int]
    full_push: Dict[str, Any] = field(default_factory=dict)
    incremental_push: Dict[str, Any] = field(default_factory=dict)
    group_push: Dict[str, Any] = field(default_factory=dict)
    taken_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_items_pushed": self.total_items_pushed,
            "total_batches_pushed": self.total_batches_pushed,
            "unique_doc_ids_pushed": self.unique_doc_ids_pushed,
            "full_push": dict(self.full_push),
            "incremental_push": dict(self.incremental_push),
            "group_push": dict(self.group_push),
            "taken_at": self.taken_at,
        }


class Journal:
    """Thread-safe push statistics.

    With ``reduced_mem`` the per-DocId push counts are not kept, which matters
    for repositories with many millions of documents.
    """

    def __init__(self, reduced_mem: bool = False, clock: Callable[[], float] = time.time) -> None:
        self._lock = threading.Lock()
        self._reduced_mem = reduced_mem
        self._clock = clock
        self._times_pushed: Counter = Counter()
        self._total_items = 0
        self._total_batches = 0
        self._full = PushTracker("full")
        self._incremental = PushTracker("incremental")
        self._groups = PushTracker("group")

    @property
    def reduced_mem(self) -> bool:
        return self._reduced_mem

    def record_doc_id_push(self, items: Iterable[PushItem]) -> None:
        """Note a batch the appliance accepted."""
        with self._lock:
            count = 0
            for item in items:
                count += 1
                if not self._reduced_mem:
                    self._times_pushed[item.doc_id] += 1
            self._total_items += count
            self._total_batches += 1

    def times_pushed(self, doc_id) -> int:
        if self._reduced_mem:
            raise RuntimeError("per-DocId counts are not kept in reduced memory mode")
        with self._lock:
            return self._times_pushed[doc_id]

    def _start(self, tracker: PushTracker) -> None:
        with self._lock:
            tracker.start(self._clock())
        logger.debug("%s push started", tracker.name)

    def _finish(self, tracker: PushTracker, status: CompletionStatus) -> None:
        with self._lock:
            tracker.finish(status, self._clock())
        logger.debug("%s push finished: %s", tracker.name, status.value)

    def record_full_push_started(self) -> None:
        self._start(self._full)

    def record_full_push_successful(self) -> None:
        self._finish(self._full, CompletionStatus.SUCCESS)

    def record_full_push_interrupted(self) -> None:
        self._finish(self._full, CompletionStatus.INTERRUPTION)

    def record_full_push_failed(self) -> None:
        self._finish(self._full, CompletionStatus.FAILURE)

    def record_incremental_push_started(self) -> None:
        self._start(self._incremental)

    def record_incremental_push_successful(self) -> None:
        self._finish(self._incremental, CompletionStatus.SUCCESS)

    def record_incremental_push_interrupted(self) -> None:
        self._finish(self._incremental, CompletionStatus.INTERRUPTION)

    def record_incremental_push_failed(self) -> None:
        self._finish(self._incremental, CompletionStatus.FAILURE)

    def record_group_push_started(self) -> None:
        self._start(self._groups)

    def record_group_push_successful(self) -> None:
        self._finish(self._groups, CompletionStatus.SUCCESS)

    def record_group_push_interrupted(self) -> None:
        self._finish(self._groups, CompletionStatus.INTERRUPTION)

    def record_group_push_failed(self) -> None:
        self._finish(self._groups, CompletionStatus.FAILURE)

    def last_full_push_status(self) -> Optional[CompletionStatus]:
        with self._lock:
            return self._full.last_status

    def snapshot(self) -> JournalSnapshot:
        with self._lock:
            return JournalSnapshot(
                total_items_pushed=self._total_items,
                total_batches_pushed=self._total_batches,
                unique_doc_ids_pushed=None if self._reduced_mem else len(self._times_pushed),
                full_push=self._full.as_dict(),
                incremental_push=self._incremental.as_dict(),
                group_push=self._groups.as_dict(),
                taken_at=self._clock(),
            )
