"""Lister that walks a local directory tree.

Each regular file becomes a DocId named by its path relative to the root,
with ``/`` separators. Incremental polls compare modification times against
the previous listing and report changed, new and removed files.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

from ..config import ListerConfig
from ..interfaces import DocIdPusher, IncrementalLister
from ..models import DocId, Record, RecordBuilder

logger = logging.getLogger(__name__)


class FilesystemLister(IncrementalLister):
    def __init__(self, config: ListerConfig) -> None:
        root = config.params.get("root")
        if not root:
            raise ValueError("FilesystemLister requires root param")
        self._root = Path(root)
        self._include_hidden = bool(config.params.get("include_hidden", False))
        self._seen: Optional[Dict[str, float]] = None

    def _walk(self) -> Iterator[Tuple[str, float]]:
        if not self._root.is_dir():
            raise FileNotFoundError(f"Lister root is not a directory: {self._root}")
        for path in sorted(self._root.rglob("*")):
            relative = path.relative_to(self._root)
            if not self._include_hidden and any(part.startswith(".") for part in relative.parts):
                continue
            if path.is_file():
                yield relative.as_posix(), path.stat().st_mtime

    @staticmethod
    def _record(unique_id: str, mtime: float) -> Record:
        return (
            RecordBuilder(DocId(unique_id))
            .set_last_modified(datetime.fromtimestamp(mtime, tz=timezone.utc))
            .build()
        )

    def get_doc_ids(self, pusher: DocIdPusher) -> None:
        listing = dict(self._walk())
        logger.info("Listing %d files under %s", len(listing), self._root)
        result = pusher.push_records(self._record(unique_id, mtime) for unique_id, mtime in listing.items())
        if result.ok:
            self._seen = listing

    def get_modified_doc_ids(self, pusher: DocIdPusher) -> None:
        listing = dict(self._walk())
        if self._seen is None:
            # No baseline yet; the next full listing covers everything.
            self._seen = listing
            return
        changed = [
            self._record(unique_id, mtime)
            for unique_id, mtime in listing.items()
            if self._seen.get(unique_id) != mtime
        ]
        removed = [
            RecordBuilder(DocId.deleted(unique_id)).build()
            for unique_id in sorted(set(self._seen) - set(listing))
        ]
        if not changed and not removed:
            return
        logger.info("Found %d changed and %d removed files", len(changed), len(removed))
        # Unsent changes are reported again on the next poll.
        if pusher.push_records(changed + removed).ok:
            self._seen = listing
