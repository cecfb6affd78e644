#!/usr/bin/env python3
"""Tests for DocIds, principals, ACLs and records."""

from datetime import datetime, timezone

import pytest

from feedadaptor.models import (
    Acl,
    AclBuilder,
    AclItem,
    AuthnIdentity,
    AuthzStatus,
    DocAction,
    DocId,
    DocReadPermissions,
    GroupDefinition,
    InheritanceType,
    Metadata,
    Principal,
    RecordBuilder,
)


def test_deleted_doc_id_differs_from_live_one():
    """A deleted DocId is not equal to the live DocId with the same id."""
    live = DocId("a")
    gone = DocId.deleted("a")

    assert live != gone
    assert gone.is_deleted
    assert gone.action is DocAction.DELETE
    assert str(gone) == "DeletedDocId(a)"
    assert str(live) == "DocId(a)"


def test_doc_id_ordering_uses_unique_id_only():
    ids = [DocId("b"), DocId("a", DocReadPermissions.IS_PUBLIC), DocId("c")]
    assert [d.unique_id for d in sorted(ids)] == ["a", "b", "c"]


def test_doc_id_rejects_non_string():
    with pytest.raises(TypeError):
        DocId(None)


def test_principal_validation():
    with pytest.raises(ValueError):
        Principal.user("   ")
    with pytest.raises(ValueError):
        Principal.user(" padded")


def test_principal_parse_domain_forms():
    assert Principal.user("dom\\alice").parse().domain == "dom"
    assert Principal.user("alice@dom.example").parse().plain_name == "alice"
    parsed = Principal.group("dom/eng").parse()
    assert (parsed.plain_name, parsed.domain, parsed.domain_format) == ("eng", "dom", "slash")
    assert Principal.user("alice").parse().domain_format == "none"


def test_acl_builder_dedups_and_keeps_order():
    acl = AclBuilder().set_permit_users(["bob", "alice", "bob"]).set_deny_groups(["eng"]).build()

    assert [p.name for p in acl.permit_users] == ["bob", "alice"]
    assert acl.deny_groups == (Principal.group("eng"),)


def test_acl_builder_rejects_single_string():
    with pytest.raises(TypeError):
        AclBuilder().set_permit_users("alice")


def test_acl_rejects_groups_in_user_set():
    with pytest.raises(ValueError):
        Acl(permit_users=(Principal.group("eng"),))


def test_acl_builder_splits_mixed_permits():
    acl = AclBuilder().set_permits([Principal.user("u"), Principal.group("g")]).build()
    assert acl.permit_users == (Principal.user("u"),)
    assert acl.permit_groups == (Principal.group("g"),)


def test_acl_fragment_requires_inherit_from():
    with pytest.raises(ValueError):
        AclBuilder().set_inherit_from(None, "frag")


def test_local_authorization_deny_wins():
    acl = AclBuilder().set_permit_users(["alice"]).set_deny_groups(["contractors"]).build()
    identity = AuthnIdentity(Principal.user("alice"), frozenset({Principal.group("contractors")}))

    assert acl.is_authorized_local(identity) is AuthzStatus.DENY
    assert acl.is_authorized_local(AuthnIdentity(Principal.user("alice"))) is AuthzStatus.PERMIT
    assert acl.is_authorized_local(AuthnIdentity(Principal.user("eve"))) is AuthzStatus.INDETERMINATE


def test_case_insensitive_users_only():
    acl = (
        AclBuilder()
        .set_permit_users(["Alice"])
        .set_permit_groups(["Eng"])
        .set_user_names_case_sensitive(False)
        .build()
    )

    assert acl.is_authorized_local(AuthnIdentity(Principal.user("alice"))) is AuthzStatus.PERMIT
    eng = AuthnIdentity(Principal.user("bob"), frozenset({Principal.group("eng")}))
    assert acl.is_authorized_local(eng) is AuthzStatus.INDETERMINATE


def test_inheritance_chain_child_overrides():
    root = (
        AclBuilder()
        .set_permit_users(["alice"])
        .set_inheritance_type(InheritanceType.CHILD_OVERRIDES)
        .build()
    )
    child = AclBuilder().set_deny_users(["alice"]).set_inherit_from(DocId("root")).build()
    alice = AuthnIdentity(Principal.user("alice"))

    assert Acl.is_authorized(alice, [root, child]) is AuthzStatus.DENY
    silent_child = AclBuilder().set_inherit_from(DocId("root")).build()
    assert Acl.is_authorized(alice, [root, silent_child]) is AuthzStatus.PERMIT


def test_inheritance_chain_and_both_permit():
    root = (
        AclBuilder()
        .set_permit_users(["alice"])
        .set_inheritance_type(InheritanceType.AND_BOTH_PERMIT)
        .build()
    )
    child = AclBuilder().set_inherit_from(DocId("root")).build()

    assert Acl.is_authorized(AuthnIdentity(Principal.user("alice")), [root, child]) is AuthzStatus.DENY


def test_chain_with_leaf_in_middle_is_indeterminate():
    root = AclBuilder().set_permit_users(["alice"]).build()
    child = AclBuilder().set_inherit_from(DocId("root")).build()
    assert Acl.is_authorized(AuthnIdentity(Principal.user("alice")), [root, child]) is AuthzStatus.INDETERMINATE


def test_broken_chain_is_an_error():
    orphan = AclBuilder().set_inherit_from(DocId("x")).build()
    with pytest.raises(ValueError):
        Acl.is_authorized(AuthnIdentity(Principal.user("alice")), [orphan])
    with pytest.raises(ValueError):
        Acl.is_authorized(AuthnIdentity(Principal.user("alice")), [])


def test_empty_acl_alone_is_indeterminate():
    assert Acl.is_authorized(AuthnIdentity(Principal.user("a")), [Acl.EMPTY]) is AuthzStatus.INDETERMINATE


def test_metadata_is_sorted_and_deduplicated():
    metadata = Metadata.of([("b", "2"), ("a", "1"), ("b", "2"), ("a", "0")])

    assert list(metadata) == [("a", "0"), ("a", "1"), ("b", "2")]
    assert metadata.get_all("a") == ["0", "1"]
    assert metadata.get_one("missing") is None


def test_record_action_follows_delete_flag_and_doc_id():
    assert RecordBuilder(DocId("x")).build().action is DocAction.ADD
    assert RecordBuilder(DocId("x")).set_delete_from_index(True).build().action is DocAction.DELETE
    assert RecordBuilder(DocId.deleted("x")).build().is_to_be_deleted


def test_record_builder_round_trips_record():
    record = (
        RecordBuilder(DocId("x"))
        .set_last_modified(datetime(2020, 1, 2, tzinfo=timezone.utc))
        .set_metadata({"k": "v"})
        .set_lock(True)
        .build()
    )

    assert RecordBuilder.from_record(record).build() == record
    assert record.metadata.get_one("k") == "v"


def test_record_requires_doc_id():
    with pytest.raises(TypeError):
        RecordBuilder("x")


def test_acl_item_requires_acl():
    with pytest.raises(TypeError):
        AclItem(DocId("x"), None)


def test_group_definition_sorts_members():
    group = GroupDefinition(Principal.group("eng"), (Principal.user("zed"), Principal.group("sub"), Principal.user("amy")))

    assert [m.name for m in group.members] == ["amy", "zed", "sub"]
    with pytest.raises(ValueError):
        GroupDefinition(Principal.user("not-a-group"))
