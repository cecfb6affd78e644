"""Interface definitions for listers, pushers and feed archives."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Iterable, Mapping, Optional

from .models import Acl, DocId, GroupDefinition, Record

if TYPE_CHECKING:
    from .handlers import PushErrorHandler
    from .pusher import PushResult


class DocIdPusher(ABC):
    """Accepts DocIds, records and ACLs and delivers them to the appliance."""

    @abstractmethod
    def push_doc_ids(self, doc_ids: Iterable[DocId], handler: Optional["PushErrorHandler"] = None) -> "PushResult":
        """Push plain DocIds."""

    @abstractmethod
    def push_records(self, records: Iterable[Record], handler: Optional["PushErrorHandler"] = None) -> "PushResult":
        """Push records carrying metadata, ACLs and crawl hints."""

    @abstractmethod
    def push_named_resources(
        self, resources: Mapping[DocId, Acl], handler: Optional["PushErrorHandler"] = None
    ) -> "PushResult":
        """Push ACLs that are not attached to a document."""

    @abstractmethod
    def push_group_definitions(
        self,
        groups: Iterable[GroupDefinition],
        case_sensitive: bool = True,
        handler: Optional["PushErrorHandler"] = None,
    ) -> "PushResult":
        """Push group memberships."""


class AsyncDocIdPusher(ABC):
    """Queues items to be sent in the next batch, from any thread.

    Each method returns ``False`` when the queue is full and the item was dropped.
    """

    @abstractmethod
    def push_doc_id(self, doc_id: DocId) -> bool:
        """Queue a plain DocId."""

    @abstractmethod
    def push_record(self, record: Record) -> bool:
        """Queue a record."""

    @abstractmethod
    def push_named_resource(self, doc_id: DocId, acl: Acl) -> bool:
        """Queue an ACL that is not attached to a document."""


class Lister(ABC):
    """A repository that can enumerate every document it holds."""

    @abstractmethod
    def get_doc_ids(self, pusher: DocIdPusher) -> None:
        """Push every DocId in the repository through ``pusher``."""


class IncrementalLister(Lister):
    """A repository that can also report recent changes."""

    @abstractmethod
    def get_modified_doc_ids(self, pusher: DocIdPusher) -> None:
        """Push DocIds changed since the previous call."""


class FeedArchiver(ABC):
    """Keeps copies of feed files after they were sent."""

    @abstractmethod
    def save_feed(self, name: str, xml: str) -> None:
        """Archive a feed the appliance accepted."""

    @abstractmethod
    def save_failed_feed(self, name: str, xml: str) -> None:
        """Archive a feed that could not be delivered."""
