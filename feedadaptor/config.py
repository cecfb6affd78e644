"""Configuration models and helpers for the feed adaptor."""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from .errors import InvalidConfiguration
from .sender import DATASOURCE_FORMAT, GROUPSOURCE_FORMAT

ARCHIVE_TYPES = ("none", "local_fs", "s3")


@dataclass
class GsaConfig:
    """Where the appliance is and how to talk to it."""

    hostname: str = "localhost"
    secure: bool = False
    port: Optional[int] = None
    character_encoding: str = "UTF-8"
    connect_timeout_secs: float = 30.0
    read_timeout_secs: float = 180.0
    # Older appliance releases reject self-closing <record/> elements.
    separate_closing_record_tag: bool = False
    # Older appliance releases need authmethod="httpsso" on every record.
    use_auth_method_workaround: bool = False


@dataclass
class FeedConfig:
    """What goes into each feed file."""

    name: str = "adaptor"
    groupsource: Optional[str] = None
    max_urls: int = 5000
    use_compression: bool = True
    crawl_immediately_override: Optional[bool] = None
    crawl_once_override: Optional[bool] = None
    comments: List[str] = field(default_factory=list)
    mark_all_docs_public: bool = False
    doc_id_is_url: bool = False
    base_doc_url: str = "http://localhost:5678/doc/"
    async_max_latency_secs: float = 5 * 60
    async_queue_capacity: Optional[int] = None

    @property
    def effective_groupsource(self) -> str:
        return self.groupsource or self.name

    @property
    def effective_async_queue_capacity(self) -> int:
        return self.async_queue_capacity or 2 * self.max_urls


@dataclass
class AdaptorScheduleConfig:
    """How often full and incremental pushes run."""

    full_listing_interval_secs: float = 24 * 60 * 60
    push_doc_ids_on_startup: bool = True
    incremental_poll_period_secs: float = 15 * 60


@dataclass
class RetryConfig:
    maximum_tries: int = 12
    sleep_seconds: float = 5.0


@dataclass
class ArchiveConfig:
    """Where copies of sent feeds are kept."""

    type: str = "none"
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ListerConfig:
    """Generic lister configuration."""

    type: str = "mock"
    name: str = "mock"
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class JournalConfig:
    reduced_mem: bool = False


@dataclass
class WebConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 5000


@dataclass
class AdaptorConfig:
    """Top-level configuration for the adaptor."""

    gsa: GsaConfig = field(default_factory=GsaConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    schedule: AdaptorScheduleConfig = field(default_factory=AdaptorScheduleConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    lister: ListerConfig = field(default_factory=ListerConfig)
    journal: JournalConfig = field(default_factory=JournalConfig)
    web: WebConfig = field(default_factory=WebConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AdaptorConfig":
        try:
            return cls(
                gsa=GsaConfig(**data.get("gsa", {})),
                feed=FeedConfig(**data.get("feed", {})),
                schedule=AdaptorScheduleConfig(**data.get("schedule", {})),
                retry=RetryConfig(**data.get("retry", {})),
                archive=ArchiveConfig(**data.get("archive", {})),
                lister=ListerConfig(**data.get("lister", {})),
                journal=JournalConfig(**data.get("journal", {})),
                web=WebConfig(**data.get("web", {})),
            )
        except TypeError as exc:
            raise InvalidConfiguration(f"Unrecognised configuration: {exc}") from exc

    @classmethod
    def from_json(cls, path: Path) -> "AdaptorConfig":
        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as exc:
            raise InvalidConfiguration(f"{path} is not valid JSON: {exc}") from exc
        return cls.from_dict(data)

    def validate(self) -> "AdaptorConfig":
        """Check values that would otherwise only fail at push time."""
        problems: List[str] = []
        if not self.gsa.hostname:
            problems.append("gsa.hostname is required")
        try:
            codecs.lookup(self.gsa.character_encoding)
        except LookupError:
            problems.append(f"gsa.character_encoding is unknown: {self.gsa.character_encoding}")
        if self.gsa.connect_timeout_secs <= 0 or self.gsa.read_timeout_secs <= 0:
            problems.append("gsa timeouts must be positive")
        if not DATASOURCE_FORMAT.fullmatch(self.feed.name):
            problems.append(f"feed.name is not a valid datasource: {self.feed.name!r}")
        if not GROUPSOURCE_FORMAT.fullmatch(self.feed.effective_groupsource):
            problems.append(f"feed.groupsource is not valid: {self.feed.effective_groupsource!r}")
        if self.feed.max_urls < 1:
            problems.append("feed.max_urls must be at least 1")
        if self.feed.async_max_latency_secs <= 0:
            problems.append("feed.async_max_latency_secs must be positive")
        if self.feed.async_queue_capacity is not None and self.feed.async_queue_capacity < 1:
            problems.append("feed.async_queue_capacity must be at least 1")
        if not self.feed.doc_id_is_url:
            parts = urlsplit(self.feed.base_doc_url)
            if not parts.scheme or not parts.netloc:
                problems.append(f"feed.base_doc_url must be absolute: {self.feed.base_doc_url!r}")
        if self.schedule.full_listing_interval_secs <= 0:
            problems.append("schedule.full_listing_interval_secs must be positive")
        if self.schedule.incremental_poll_period_secs <= 0:
            problems.append("schedule.incremental_poll_period_secs must be positive")
        if self.retry.maximum_tries < 0 or self.retry.sleep_seconds < 0:
            problems.append("retry settings must be non-negative")
        if self.archive.type not in ARCHIVE_TYPES:
            problems.append(f"archive.type must be one of {', '.join(ARCHIVE_TYPES)}")
        if problems:
            raise InvalidConfiguration("; ".join(problems))
        return self


DEFAULT_CONFIG = AdaptorConfig(
    lister=ListerConfig(type="mock", name="sample_repository", params={"count": 100}),
)
