"""Archives for feed files that were sent, or failed to send."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from pathlib import Path
from typing import Callable, Optional

import boto3
from botocore.exceptions import ClientError

from .config import ArchiveConfig
from .interfaces import FeedArchiver

logger = logging.getLogger(__name__)


class _FeedNamer:
    """Produces ``<name>-<timestamp>-<n>.xml`` names, unique within a process."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def __call__(self, name: str, failed: bool) -> str:
        with self._lock:
            n = next(self._counter)
        stamp = time.strftime("%Y%m%d-%H%M%S", time.gmtime(self._clock()))
        prefix = "failed-" if failed else ""
        return f"{prefix}{name}-{stamp}-{n}.xml"


class NullFeedArchiver(FeedArchiver):
    def save_feed(self, name: str, xml: str) -> None:
        pass

    def save_failed_feed(self, name: str, xml: str) -> None:
        pass


class LocalFeedArchiver(FeedArchiver):
    def __init__(self, config: ArchiveConfig, clock: Callable[[], float] = time.time) -> None:
        base_path = config.params.get("base_path")
        if not base_path:
            raise ValueError("LocalFeedArchiver requires base_path param")
        self._base_path = Path(base_path)
        self._base_path.mkdir(parents=True, exist_ok=True)
        self._encoding = config.params.get("encoding", "utf-8")
        self._namer = _FeedNamer(clock)

    def _write(self, name: str, xml: str, failed: bool) -> Path:
        target = self._base_path / self._namer(name, failed)
        target.write_text(xml, encoding=self._encoding)
        logger.debug("Archived feed to %s", target)
        return target

    def save_feed(self, name: str, xml: str) -> None:
        self._write(name, xml, failed=False)

    def save_failed_feed(self, name: str, xml: str) -> None:
        self._write(name, xml, failed=True)


class S3FeedArchiver(FeedArchiver):
    """Stores feed files as objects in one S3 bucket.

    Required params:
    - bucket: bucket name; it must already exist

    Optional params:
    - prefix: key prefix (default: ``feeds/``)
    - region: AWS region (default: us-east-1)
    - endpoint_url: custom S3 endpoint (for LocalStack testing)
    """

    def __init__(self, config: ArchiveConfig, client=None, clock: Callable[[], float] = time.time) -> None:
        if "bucket" not in config.params:
            raise ValueError("S3FeedArchiver requires 'bucket' in params")
        self._bucket = config.params["bucket"]
        self._prefix = config.params.get("prefix", "feeds/")
        self._s3_client = client or boto3.client(
            "s3",
            region_name=config.params.get("region", "us-east-1"),
            endpoint_url=config.params.get("endpoint_url"),
        )
        self._namer = _FeedNamer(clock)
        logger.info("Initialized S3FeedArchiver for bucket=%s prefix=%s", self._bucket, self._prefix)

    def _put(self, name: str, xml: str, failed: bool) -> None:
        key = self._prefix + self._namer(name, failed)
        try:
            self._s3_client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=xml.encode("utf-8"),
                ContentType="text/xml; charset=utf-8",
            )
        except ClientError as exc:
            # Losing an archive copy must not fail the push itself.
            logger.error("Failed to archive feed to s3://%s/%s: %s", self._bucket, key, exc)
            return
        logger.debug("Archived feed to s3://%s/%s", self._bucket, key)

    def save_feed(self, name: str, xml: str) -> None:
        self._put(name, xml, failed=False)

    def save_failed_feed(self, name: str, xml: str) -> None:
        self._put(name, xml, failed=True)


def build_feed_archiver(config: Optional[ArchiveConfig]) -> FeedArchiver:
    if config is None or config.type == "none":
        return NullFeedArchiver()
    if config.type == "local_fs":
        return LocalFeedArchiver(config)
    if config.type == "s3":
        return S3FeedArchiver(config)
    raise ValueError(f"Unsupported feed archive type: {config.type}")
