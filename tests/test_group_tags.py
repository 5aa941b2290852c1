import pytest

from cityrelay.group_tags import (
    admin_assignment_changed,
    canonical_state_kinds_for_source,
    default_string,
    first_tag_value,
    group_members_state_tags,
    group_metadata_state_tags,
    group_roles_state_tags,
    has_tag,
    join_request_pubkey,
    normalize_role_name,
    owner_role_permissions,
    parse_bool_tag,
    parse_csv_tag,
    parse_int_tag,
    parse_put_user_tag,
    relay_only_kind,
    role_grants_admin,
    tag_bool_value,
    truncate_geohash,
)
from cityrelay.models import Event, Group, GroupMember, GroupRole


@pytest.mark.parametrize(
    "kind, membership, admins, expected",
    [
        (9007, True, True, [39000, 39002, 39003, 39001]),
        (9002, False, False, [39000]),
        (9003, False, False, [39003]),
        (9000, True, False, [39002]),
        (9000, True, True, [39002, 39001]),
        (9021, False, False, []),
        (9021, True, False, [39002]),
        (9001, True, False, [39002]),
    ],
)
def test_canonical_state_kinds_for_source(kind, membership, admins, expected):
    assert canonical_state_kinds_for_source(kind, membership, admins) == expected


ROLE_PERMISSIONS = {
    "member": None,
    "moderator": None,
    "ops-admin": ["read", "admin"],
    "ops-admin-2": ["admin"],
}


@pytest.mark.parametrize(
    "previous, requested, expected",
    [
        ("member", "member", False),
        ("member", "admin", True),
        ("admin", "member", True),
        ("admin", "owner", True),
        ("member", "ops-admin", True),
        ("ops-admin", "ops-admin-2", True),
        ("member", "moderator", False),
    ],
)
def test_admin_assignment_changed(previous, requested, expected):
    assert admin_assignment_changed(previous, requested, ROLE_PERMISSIONS) is expected


def test_group_metadata_state_tags_use_presence_booleans():
    group = Group(
        group_id="group-1",
        name="Name",
        about="About",
        picture="https://example.com/p.png",
        geohash="abcdef",
        is_private=True,
        is_restricted=True,
        is_vetted=True,
        is_hidden=True,
        is_closed=True,
    )
    tags = group_metadata_state_tags(group)
    for expected in (
        ["d", "group-1"],
        ["name", "Name"],
        ["about", "About"],
        ["picture", "https://example.com/p.png"],
        ["g", "abcdef"],
        ["private"],
        ["restricted"],
        ["vetted"],
        ["hidden"],
        ["closed"],
    ):
        assert expected in tags
    for tag in tags:
        if tag[0] in ("private", "restricted", "vetted", "hidden", "closed"):
            assert len(tag) == 1


def test_group_metadata_state_tags_omit_empty_fields():
    assert group_metadata_state_tags(Group(group_id="g")) == [["d", "g"]]


def test_group_members_state_tags_contain_only_pubkeys():
    tags = group_members_state_tags(
        "group-1",
        [GroupMember(pubkey="pubkey-1", role_name="admin"), GroupMember(pubkey="pubkey-2", role_name="member")],
    )
    assert ["d", "group-1"] in tags
    assert ["p", "pubkey-1"] in tags
    assert ["p", "pubkey-2"] in tags
    assert all(len(tag) == 2 for tag in tags if tag[0] == "p")


def test_group_roles_state_tags_contain_name_and_optional_description():
    tags = group_roles_state_tags(
        "group-1",
        [
            GroupRole(role_name="admin", description="administrators", permissions=["admin", "delete-event"]),
            GroupRole(role_name="helper", description=""),
        ],
    )
    assert ["d", "group-1"] in tags
    assert ["role", "admin", "administrators"] in tags
    assert ["role", "helper"] in tags
    assert all(len(tag) <= 3 for tag in tags if tag[0] == "role")


@pytest.mark.parametrize("raw, expected", [("42", 42), ("not-a-number", 0), ("", 0)])
def test_parse_int_tag(raw, expected):
    assert parse_int_tag(raw) == expected


@pytest.mark.parametrize("raw, expected", [("a, b,c", ["a", "b", "c"]), ("", []), (" , ", [])])
def test_parse_csv_tag(raw, expected):
    assert parse_csv_tag(raw) == expected


def test_default_string():
    assert default_string("value", "fallback") == "value"
    assert default_string("   ", "fallback") == "fallback"


def test_owner_role_permissions():
    perms = owner_role_permissions()
    assert perms
    for expected in (
        "add-user",
        "promote-user",
        "remove-user",
        "edit-metadata",
        "create-role",
        "delete-role",
        "delete-event",
        "create-group",
        "delete-group",
        "create-invite",
    ):
        assert expected in perms


def test_normalize_role_name():
    assert normalize_role_name("  Admin ") == "admin"


@pytest.mark.parametrize(
    "tags, pubkey, role",
    [
        ([["h", "group-1"], ["p", "pubkey-1", "moderator"]], "pubkey-1", "moderator"),
        ([["p", "pubkey-2"]], "pubkey-2", ""),
    ],
)
def test_parse_put_user_tag(tags, pubkey, role):
    assert parse_put_user_tag(tags) == (pubkey, role)


@pytest.mark.parametrize("tags", [[["h", "group-1"]], [["p", "   ", "member"]]])
def test_parse_put_user_tag_errors(tags):
    with pytest.raises(ValueError, match="put-user missing p tag"):
        parse_put_user_tag(tags)


def test_has_tag():
    tags = [["h", "group-1"], ["ban"], ["p", "pubkey-1", "member"]]
    assert has_tag(tags, "ban") is True
    assert has_tag(tags, "missing") is False


def test_first_tag_value_skips_tags_without_value():
    assert first_tag_value([["name"], ["name", "x"]], "name") == "x"
    assert first_tag_value([["other", "y"]], "name") == ""


@pytest.mark.parametrize(
    "tags, expected",
    [
        ([["h", "group-1"]], "pubkey-1"),
        ([["h", "group-1"], ["p", "pubkey-1"]], "pubkey-1"),
    ],
)
def test_join_request_pubkey(tags, expected):
    assert join_request_pubkey(Event(pubkey="pubkey-1", tags=tags)) == expected


def test_join_request_pubkey_rejects_mismatch():
    event = Event(pubkey="pubkey-1", tags=[["h", "group-1"], ["p", "pubkey-2"]])
    with pytest.raises(ValueError, match="must match event pubkey"):
        join_request_pubkey(event)


@pytest.mark.parametrize(
    "tags, name, expected",
    [
        ([["private"]], "private", (True, True)),
        ([["private", ""]], "private", (True, True)),
        ([["private", "false"]], "private", (False, True)),
        ([["other", "true"]], "private", (False, False)),
    ],
)
def test_tag_bool_value(tags, name, expected):
    assert tag_bool_value(tags, name) == expected


def test_parse_bool_tag():
    assert parse_bool_tag(" YES ") is True
    assert parse_bool_tag("on") is True
    assert parse_bool_tag("no") is False


def test_truncate_geohash():
    assert truncate_geohash("abcdefgh") == "abcdef"
    assert truncate_geohash("abc") == "abc"


def test_relay_only_kind():
    assert all(relay_only_kind(kind) for kind in (39000, 39001, 39002, 39003))
    assert not relay_only_kind(39004)
    assert not relay_only_kind(9007)


def test_role_grants_admin():
    assert role_grants_admin(" Owner ", None) is True
    assert role_grants_admin("", ["admin"]) is False
    assert role_grants_admin("custom", [" ADMIN "]) is True
    assert role_grants_admin("custom", ["remove-user"]) is False