"""Domain models pushed to the appliance: document ids, ACLs and records."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import total_ordering
from typing import Callable, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "Default"


class DocAction(str, Enum):
    """What the appliance should do with a document in a feed."""

    ADD = "add"
    DELETE = "delete"


class DocReadPermissions(str, Enum):
    """Access-control summary attached to a DocId.

    Any other string is treated as a repository-specific descriptor.
    """

    IS_PUBLIC = "public"
    USE_HEAD_REQUEST = "head-request"


ReadPermissions = Union[DocReadPermissions, str]


@total_ordering
@dataclass(frozen=True)
class DocId:
    """Refers to a unique document in the repository.

    Equality covers the id, its read permissions and its action, so a deleted
    DocId never compares equal to the live one. Ordering only looks at the id.
    """

    unique_id: str
    read_permissions: ReadPermissions = DocReadPermissions.USE_HEAD_REQUEST
    action: DocAction = DocAction.ADD

    def __post_init__(self) -> None:
        if not isinstance(self.unique_id, str):
            raise TypeError(f"DocId unique_id must be a str, got {type(self.unique_id).__name__}")
        if self.read_permissions is None:
            raise TypeError("DocId read_permissions must not be None")
        if not isinstance(self.action, DocAction):
            raise TypeError(f"DocId action must be a DocAction, got {self.action!r}")
        if self.action is DocAction.DELETE:
            object.__setattr__(self, "read_permissions", DocReadPermissions.USE_HEAD_REQUEST)

    @classmethod
    def deleted(cls, unique_id: str) -> "DocId":
        """Build the variant that tells the appliance to drop the document."""
        return cls(unique_id, DocReadPermissions.USE_HEAD_REQUEST, DocAction.DELETE)

    @property
    def is_deleted(self) -> bool:
        return self.action is DocAction.DELETE

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, DocId):
            return NotImplemented
        return self.unique_id < other.unique_id

    def __str__(self) -> str:
        if self.is_deleted:
            return f"DeletedDocId({self.unique_id})"
        return f"DocId({self.unique_id})"


@dataclass(frozen=True)
class ParsedPrincipal:
    plain_name: str
    domain: str
    domain_format: str  # "none", "at", "backslash" or "slash"


@dataclass(frozen=True)
class Principal:
    """A user or a group, optionally qualified by namespace and domain."""

    name: str
    is_group: bool = False
    namespace: str = DEFAULT_NAMESPACE

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not isinstance(self.namespace, str):
            raise TypeError("Principal name and namespace must be str")
        if not self.name.strip():
            raise ValueError("Principal name must not be blank")
        if self.name != self.name.strip():
            raise ValueError(f"Principal name must not start or end with whitespace: {self.name!r}")

    @classmethod
    def user(cls, name: str, namespace: str = DEFAULT_NAMESPACE) -> "Principal":
        return cls(name, False, namespace)

    @classmethod
    def group(cls, name: str, namespace: str = DEFAULT_NAMESPACE) -> "Principal":
        return cls(name, True, namespace)

    @property
    def is_user(self) -> bool:
        return not self.is_group

    @property
    def scope(self) -> str:
        return "group" if self.is_group else "user"

    def parse(self) -> ParsedPrincipal:
        """Split the name into plain name and domain.

        Understands ``user@domain``, ``DOMAIN\\user`` and ``domain/user``.
        """
        name = self.name
        if "\\" in name:
            domain, _, plain = name.partition("\\")
            return ParsedPrincipal(plain, domain, "backslash")
        if "@" in name:
            plain, _, domain = name.rpartition("@")
            return ParsedPrincipal(plain, domain, "at")
        if "/" in name:
            domain, _, plain = name.partition("/")
            return ParsedPrincipal(plain, domain, "slash")
        return ParsedPrincipal(name, "", "none")

    def sort_key(self) -> Tuple[str, bool, str]:
        # namespace, then users before groups, then name
        return (self.namespace, self.is_group, self.name)

    def matches(self, other: "Principal", case_sensitive: bool = True) -> bool:
        if self.is_group != other.is_group or self.namespace != other.namespace:
            return False
        if case_sensitive:
            return self.name == other.name
        return self.name.casefold() == other.name.casefold()


class AuthzStatus(str, Enum):
    PERMIT = "PERMIT"
    DENY = "DENY"
    INDETERMINATE = "INDETERMINATE"


Decision = Callable[[], AuthzStatus]


class InheritanceType(str, Enum):
    """How an ACL combines with the ACL of a child that inherits from it."""

    CHILD_OVERRIDES = "child-overrides"
    PARENT_OVERRIDES = "parent-overrides"
    AND_BOTH_PERMIT = "and-both-permit"
    LEAF_NODE = "leaf-node"

    @property
    def common_form(self) -> str:
        return self.value

    def combine(self, child: Decision, parent: Decision) -> AuthzStatus:
        """Combine the decisions of a child and its parent.

        Decisions are callables so that the child chain is only evaluated when
        the inheritance type needs it.
        """
        if self is InheritanceType.CHILD_OVERRIDES:
            status = child()
            return parent() if status is AuthzStatus.INDETERMINATE else status
        if self is InheritanceType.PARENT_OVERRIDES:
            status = parent()
            return child() if status is AuthzStatus.INDETERMINATE else status
        if self is InheritanceType.AND_BOTH_PERMIT:
            if parent() is AuthzStatus.PERMIT and child() is AuthzStatus.PERMIT:
                return AuthzStatus.PERMIT
            return AuthzStatus.DENY
        logger.warning("Illegal ACL information. A LEAF_NODE is the parent of another node.")
        return AuthzStatus.DENY


@dataclass(frozen=True)
class AuthnIdentity:
    """An authenticated user and the groups they belong to."""

    user: Principal
    groups: FrozenSet[Principal] = frozenset()


def _unique(principals: Iterable[Principal]) -> Tuple[Principal, ...]:
    return tuple(dict.fromkeys(principals))


@dataclass(frozen=True)
class Acl:
    """Access control for one document or named resource.

    Instances are immutable; use :class:`AclBuilder` to create them.
    Principal sets keep insertion order so that rendering is stable.
    """

    permit_users: Tuple[Principal, ...] = ()
    deny_users: Tuple[Principal, ...] = ()
    permit_groups: Tuple[Principal, ...] = ()
    deny_groups: Tuple[Principal, ...] = ()
    inherit_from: Optional[DocId] = None
    inherit_from_fragment: Optional[str] = None
    inheritance_type: InheritanceType = InheritanceType.LEAF_NODE
    user_names_case_sensitive: bool = True
    group_names_case_sensitive: bool = True

    EMPTY = None  # type: Acl

    def __post_init__(self) -> None:
        if self.inheritance_type is None:
            raise TypeError("inheritance_type must not be None")
        if self.inherit_from is None and self.inherit_from_fragment is not None:
            raise ValueError("inherit_from_fragment requires inherit_from")
        for label, principals, want_group in (
            ("permit_users", self.permit_users, False),
            ("deny_users", self.deny_users, False),
            ("permit_groups", self.permit_groups, True),
            ("deny_groups", self.deny_groups, True),
        ):
            for principal in principals:
                if not isinstance(principal, Principal):
                    raise TypeError(f"{label} entries must be Principal, got {principal!r}")
                if principal.is_group != want_group:
                    raise ValueError(f"{label} must only contain {'groups' if want_group else 'users'}: {principal}")

    @property
    def is_everything_case_sensitive(self) -> bool:
        return self.user_names_case_sensitive and self.group_names_case_sensitive

    @property
    def is_everything_case_insensitive(self) -> bool:
        return not self.user_names_case_sensitive and not self.group_names_case_sensitive

    def is_case_sensitive_for(self, principal: Principal) -> bool:
        if principal.is_group:
            return self.group_names_case_sensitive
        return self.user_names_case_sensitive

    def principals(self) -> Iterator[Tuple[str, Principal]]:
        """Yield ``(access, principal)`` in rendering order."""
        for principal in self.permit_users:
            yield "permit", principal
        for principal in self.permit_groups:
            yield "permit", principal
        for principal in self.deny_users:
            yield "deny", principal
        for principal in self.deny_groups:
            yield "deny", principal

    def _contains(self, principals: Iterable[Principal], candidate: Principal) -> bool:
        case_sensitive = self.is_case_sensitive_for(candidate)
        return any(p.matches(candidate, case_sensitive) for p in principals)

    def is_authorized_local(self, identity: AuthnIdentity) -> AuthzStatus:
        """Decide using only this ACL, ignoring inheritance."""
        if self._contains(self.deny_users, identity.user) or any(
            self._contains(self.deny_groups, g) for g in identity.groups
        ):
            return AuthzStatus.DENY
        if self._contains(self.permit_users, identity.user) or any(
            self._contains(self.permit_groups, g) for g in identity.groups
        ):
            return AuthzStatus.PERMIT
        return AuthzStatus.INDETERMINATE

    @staticmethod
    def is_authorized(identity: AuthnIdentity, chain: List["Acl"]) -> AuthzStatus:
        """Evaluate an inheritance chain, root first.

        Broken chains (empty, a root that inherits, a non-root that does not)
        are programmer errors. A ``LEAF_NODE`` in the middle of a chain, or a
        chain made of a single empty ACL, is indeterminate.
        """
        if not chain:
            raise ValueError("chain must contain at least one ACL")
        if chain[0].inherit_from is not None:
            raise ValueError("chain must start at the root, which must not have an inherit_from")
        if any(acl.inherit_from is None for acl in chain[1:]):
            raise ValueError("each ACL in the chain except the first must have an inherit_from")

        if len(chain) == 1 and chain[0] == Acl.EMPTY:
            logger.debug("Chain only has one ACL and it is empty. This implies 'no ACLs.'")
            return AuthzStatus.INDETERMINATE
        if any(acl.inheritance_type is InheritanceType.LEAF_NODE for acl in chain[:-1]):
            logger.warning("Only the last ACL in a chain can have the inheritance type LEAF_NODE")
            return AuthzStatus.INDETERMINATE

        result = Acl._is_authorized_recurse(identity, chain)
        return AuthzStatus.DENY if result is AuthzStatus.INDETERMINATE else result

    @staticmethod
    def _is_authorized_recurse(identity: AuthnIdentity, chain: List["Acl"]) -> AuthzStatus:
        if len(chain) == 1:
            return chain[0].is_authorized_local(identity)
        parent = chain[0]
        return parent.inheritance_type.combine(
            child=lambda: Acl._is_authorized_recurse(identity, chain[1:]),
            parent=lambda: parent.is_authorized_local(identity),
        )


Acl.EMPTY = Acl()


class AclBuilder:
    """Mutable builder producing immutable :class:`Acl` instances."""

    def __init__(self, acl: Optional[Acl] = None) -> None:
        acl = acl or Acl.EMPTY
        self._permit_users = acl.permit_users
        self._deny_users = acl.deny_users
        self._permit_groups = acl.permit_groups
        self._deny_groups = acl.deny_groups
        self._inherit_from = acl.inherit_from
        self._inherit_from_fragment = acl.inherit_from_fragment
        self._inheritance_type = acl.inheritance_type
        self._user_case_sensitive = acl.user_names_case_sensitive
        self._group_case_sensitive = acl.group_names_case_sensitive

    @staticmethod
    def _coerce(values: Iterable[Union[Principal, str]], is_group: bool) -> Tuple[Principal, ...]:
        if isinstance(values, (str, Principal)):
            raise TypeError("expected a collection of principals, not a single value")
        principals = []
        for value in values:
            if value is None:
                raise TypeError("principal collections must not contain None")
            if isinstance(value, str):
                value = Principal(value, is_group)
            principals.append(value)
        return _unique(principals)

    def set_permit_users(self, users: Iterable[Union[Principal, str]]) -> "AclBuilder":
        self._permit_users = self._coerce(users, False)
        return self

    def set_deny_users(self, users: Iterable[Union[Principal, str]]) -> "AclBuilder":
        self._deny_users = self._coerce(users, False)
        return self

    def set_permit_groups(self, groups: Iterable[Union[Principal, str]]) -> "AclBuilder":
        self._permit_groups = self._coerce(groups, True)
        return self

    def set_deny_groups(self, groups: Iterable[Union[Principal, str]]) -> "AclBuilder":
        self._deny_groups = self._coerce(groups, True)
        return self

    def set_permits(self, principals: Iterable[Principal]) -> "AclBuilder":
        """Split a mixed collection into permitted users and groups."""
        principals = list(principals)
        self._permit_users = _unique(p for p in principals if p.is_user)
        self._permit_groups = _unique(p for p in principals if p.is_group)
        return self

    def set_denies(self, principals: Iterable[Principal]) -> "AclBuilder":
        principals = list(principals)
        self._deny_users = _unique(p for p in principals if p.is_user)
        self._deny_groups = _unique(p for p in principals if p.is_group)
        return self

    def set_inherit_from(self, doc_id: Optional[DocId], fragment: Optional[str] = None) -> "AclBuilder":
        if doc_id is None and fragment is not None:
            raise ValueError("fragment requires an inherit_from DocId")
        self._inherit_from = doc_id
        self._inherit_from_fragment = fragment
        return self

    def set_inheritance_type(self, inheritance_type: InheritanceType) -> "AclBuilder":
        if inheritance_type is None:
            raise TypeError("inheritance_type must not be None")
        self._inheritance_type = InheritanceType(inheritance_type)
        return self

    def set_everything_case_sensitive(self) -> "AclBuilder":
        self._user_case_sensitive = True
        self._group_case_sensitive = True
        return self

    def set_everything_case_insensitive(self) -> "AclBuilder":
        self._user_case_sensitive = False
        self._group_case_sensitive = False
        return self

    def set_user_names_case_sensitive(self, case_sensitive: bool) -> "AclBuilder":
        self._user_case_sensitive = bool(case_sensitive)
        return self

    def set_group_names_case_sensitive(self, case_sensitive: bool) -> "AclBuilder":
        self._group_case_sensitive = bool(case_sensitive)
        return self

    def build(self) -> Acl:
        return Acl(
            permit_users=self._permit_users,
            deny_users=self._deny_users,
            permit_groups=self._permit_groups,
            deny_groups=self._deny_groups,
            inherit_from=self._inherit_from,
            inherit_from_fragment=self._inherit_from_fragment,
            inheritance_type=self._inheritance_type,
            user_names_case_sensitive=self._user_case_sensitive,
            group_names_case_sensitive=self._group_case_sensitive,
        )


@dataclass(frozen=True)
class Metadata:
    """Ordered set of name/value pairs attached to a record.

    Entries are kept sorted so the same metadata always renders the same way.
    """

    entries: Tuple[Tuple[str, str], ...] = ()

    def __post_init__(self) -> None:
        for pair in self.entries:
            if len(pair) != 2 or not all(isinstance(part, str) for part in pair):
                raise TypeError(f"metadata entries must be (str, str) pairs, got {pair!r}")
        object.__setattr__(self, "entries", tuple(sorted(set(self.entries))))

    @classmethod
    def of(cls, values: Union[Mapping[str, str], Iterable[Tuple[str, str]]]) -> "Metadata":
        if isinstance(values, Mapping):
            return cls(tuple(values.items()))
        return cls(tuple(tuple(pair) for pair in values))

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def get_all(self, name: str) -> List[str]:
        return [value for key, value in self.entries if key == name]

    def get_one(self, name: str) -> Optional[str]:
        values = self.get_all(name)
        return values[0] if values else None

    def keys(self) -> List[str]:
        return list(dict.fromkeys(key for key, _ in self.entries))


@dataclass(frozen=True)
class Record:
    """A DocId plus the push-time information sent along with it."""

    doc_id: DocId
    delete_from_index: bool = False
    last_modified: Optional[datetime] = None
    result_link: Optional[str] = None
    crawl_immediately: bool = False
    crawl_once: bool = False
    lock: bool = False
    metadata: Optional[Metadata] = None
    acl: Optional[Acl] = None

    def __post_init__(self) -> None:
        if not isinstance(self.doc_id, DocId):
            raise TypeError(f"Record doc_id must be a DocId, got {self.doc_id!r}")

    @property
    def is_to_be_deleted(self) -> bool:
        return self.delete_from_index or self.doc_id.is_deleted

    @property
    def action(self) -> DocAction:
        return DocAction.DELETE if self.is_to_be_deleted else DocAction.ADD


class RecordBuilder:
    """Builder for :class:`Record`; every setter returns the builder."""

    def __init__(self, doc_id: DocId) -> None:
        if not isinstance(doc_id, DocId):
            raise TypeError(f"RecordBuilder needs a DocId, got {doc_id!r}")
        self._values = {"doc_id": doc_id}

    @classmethod
    def from_record(cls, record: Record) -> "RecordBuilder":
        builder = cls(record.doc_id)
        builder._values.update(
            delete_from_index=record.delete_from_index,
            last_modified=record.last_modified,
            result_link=record.result_link,
            crawl_immediately=record.crawl_immediately,
            crawl_once=record.crawl_once,
            lock=record.lock,
            metadata=record.metadata,
            acl=record.acl,
        )
        return builder

    def set_doc_id(self, doc_id: DocId) -> "RecordBuilder":
        self._values["doc_id"] = doc_id
        return self

    def set_delete_from_index(self, delete: bool) -> "RecordBuilder":
        self._values["delete_from_index"] = bool(delete)
        return self

    def set_last_modified(self, last_modified: Optional[datetime]) -> "RecordBuilder":
        self._values["last_modified"] = last_modified
        return self

    def set_result_link(self, link: Optional[str]) -> "RecordBuilder":
        self._values["result_link"] = link
        return self

    def set_crawl_immediately(self, crawl_immediately: bool) -> "RecordBuilder":
        self._values["crawl_immediately"] = bool(crawl_immediately)
        return self

    def set_crawl_once(self, crawl_once: bool) -> "RecordBuilder":
        self._values["crawl_once"] = bool(crawl_once)
        return self

    def set_lock(self, lock: bool) -> "RecordBuilder":
        self._values["lock"] = bool(lock)
        return self

    def set_metadata(self, metadata: Union[Metadata, Mapping[str, str], None]) -> "RecordBuilder":
        if metadata is not None and not isinstance(metadata, Metadata):
            metadata = Metadata.of(metadata)
        self._values["metadata"] = metadata
        return self

    def set_acl(self, acl: Optional[Acl]) -> "RecordBuilder":
        self._values["acl"] = acl
        return self

    def build(self) -> Record:
        return Record(**self._values)


@dataclass(frozen=True)
class AclItem:
    """A named resource: an ACL pushed on its own, usually as an inheritance parent."""

    doc_id: DocId
    acl: Acl
    fragment: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.doc_id, DocId) or not isinstance(self.acl, Acl):
            raise TypeError("AclItem needs a DocId and an Acl")


PushItem = Union[Record, AclItem]


@dataclass(frozen=True)
class GroupDefinition:
    """A group and its members, pushed to the groups endpoint."""

    group: Principal
    members: Tuple[Principal, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.group.is_group:
            raise ValueError(f"group definitions need a group principal, got {self.group}")
        object.__setattr__(self, "members", tuple(sorted(set(self.members), key=Principal.sort_key)))
