"""Feed adaptor package exposing the public API for pushing DocIds to a search appliance."""

from .async_sender import AsyncDocIdSender
from .config import AdaptorConfig
from .models import Acl, AclBuilder, DocId, GroupDefinition, Metadata, Principal, Record, RecordBuilder
from .pusher import DocIdSender, PushKind, PushResult, PushState, PushStatus
from .service import FeedService

__all__ = [
    "Acl",
    "AclBuilder",
    "AdaptorConfig",
    "AsyncDocIdSender",
    "DocId",
    "DocIdSender",
    "FeedService",
    "GroupDefinition",
    "Metadata",
    "Principal",
    "PushKind",
    "PushResult",
    "PushState",
    "PushStatus",
    "Record",
    "RecordBuilder",
]
