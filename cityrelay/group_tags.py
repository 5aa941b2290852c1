"""Tag helpers and canonical state tag builders for group events."""

from __future__ import annotations

import re
from typing import Mapping, Optional, Sequence

from cityrelay.models import Event, Group, GroupMember, GroupRole, Permission

KIND_PUT_USER = 9000
KIND_REMOVE_USER = 9001
KIND_EDIT_METADATA = 9002
KIND_CREATE_ROLE = 9003
KIND_DELETE_ROLE = 9004
KIND_DELETE_EVENT = 9005
KIND_CREATE_GROUP = 9007
KIND_DELETE_GROUP = 9008
KIND_CREATE_INVITE = 9009
KIND_JOIN_REQUEST = 9021
KIND_LEAVE_REQUEST = 9022

KIND_GROUP_METADATA = 39000
KIND_GROUP_ADMINS = 39001
KIND_GROUP_MEMBERS = 39002
KIND_GROUP_ROLES = 39003

RELAY_ONLY_KINDS = frozenset(
    {KIND_GROUP_METADATA, KIND_GROUP_ADMINS, KIND_GROUP_MEMBERS, KIND_GROUP_ROLES}
)

GEOHASH_PRECISION = 6

_INT64 = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})

_OWNER_PERMISSIONS = (
    Permission.ADD_USER,
    Permission.PROMOTE_USER,
    Permission.REMOVE_USER,
    Permission.EDIT_METADATA,
    Permission.CREATE_ROLE,
    Permission.DELETE_ROLE,
    Permission.DELETE_EVENT,
    Permission.CREATE_GROUP,
    Permission.DELETE_GROUP,
    Permission.CREATE_INVITE,
)


def first_tag_value(tags: Sequence[Sequence[str]], name: str) -> str:
    """Return the value of the first tag with this name that has a value, or ""."""
    return next((tag[1] for tag in tags if len(tag) >= 2 and tag[0] == name), "")


def has_tag(tags: Sequence[Sequence[str]], name: str) -> bool:
    """Return whether any tag carries this name."""
    return any(tag and tag[0] == name for tag in tags)


def parse_put_user_tag(tags: Sequence[Sequence[str]]) -> tuple[str, str]:
    """Return (pubkey, role) from the first "p" tag; raise ValueError if unusable."""
    for tag in tags:
        if len(tag) < 2 or tag[0] != "p":
            continue
        pubkey = tag[1].strip()
        if not pubkey:
            raise ValueError("put-user missing p tag")
        role = tag[2].strip() if len(tag) >= 3 else ""
        return pubkey, role
    raise ValueError("put-user missing p tag")


def join_request_pubkey(event: Event) -> str:
    """Return the pubkey a join request is for; it must be the event's author."""
    requested = first_tag_value(event.tags, "p").strip()
    author = event.pubkey.strip()
    if not requested:
        return author
    if requested.lower() != author.lower():
        raise ValueError("join-request p tag must match event pubkey")
    return requested


def parse_bool_tag(raw: str) -> bool:
    """Interpret a tag value as a boolean flag."""
    return raw.strip().lower() in _TRUE_WORDS


def tag_bool_value(tags: Sequence[Sequence[str]], name: str) -> tuple[bool, bool]:
    """Return (value, found) for a boolean tag; a bare or empty tag means true."""
    for tag in tags:
        if not tag or tag[0] != name:
            continue
        if len(tag) < 2 or not tag[1].strip():
            return True, True
        return parse_bool_tag(tag[1]), True
    return False, False


def parse_int_tag(raw: str) -> int:
    """Parse a signed 64-bit decimal integer, returning 0 when it is not one."""
    if not _INT64.fullmatch(raw):
        return 0
    value = int(raw)
    if not _INT64_MIN <= value <= _INT64_MAX:
        return 0
    return value


def parse_csv_tag(raw: str) -> list[str]:
    """Split a comma-separated value into its non-empty trimmed parts."""
    return [part.strip() for part in raw.strip().split(",") if part.strip()] if raw.strip() else []


def truncate_geohash(geohash: str) -> str:
    """Cut a geohash down to the stored precision."""
    return geohash[:GEOHASH_PRECISION]


def default_string(value: str, fallback: str) -> str:
    """Return value unless it is blank, else fallback."""
    return value if value.strip() else fallback


def owner_role_permissions() -> list[str]:
    """Return the permissions granted to a group's owner role."""
    return [permission.value for permission in _OWNER_PERMISSIONS]


def relay_only_kind(kind: int) -> bool:
    """Return whether events of this kind may only be signed by the relay."""
    return kind in RELAY_ONLY_KINDS


def canonical_state_kinds_for_source(
    kind: int, membership_changed: bool, admins_changed: bool
) -> list[int]:
    """Return the canonical state kinds to re-emit after a source event, in order."""
    kinds: list[int] = []

    def add(state_kind: int) -> None:
        if state_kind not in kinds:
            kinds.append(state_kind)

    if kind == KIND_CREATE_GROUP:
        for state_kind in (KIND_GROUP_METADATA, KIND_GROUP_MEMBERS, KIND_GROUP_ROLES, KIND_GROUP_ADMINS):
            add(state_kind)
    elif kind in (KIND_EDIT_METADATA, KIND_DELETE_GROUP):
        add(KIND_GROUP_METADATA)
    elif kind in (KIND_CREATE_ROLE, KIND_DELETE_ROLE):
        add(KIND_GROUP_ROLES)
    elif kind in (KIND_PUT_USER, KIND_REMOVE_USER, KIND_LEAVE_REQUEST, KIND_JOIN_REQUEST):
        if membership_changed:
            add(KIND_GROUP_MEMBERS)

    if kind == KIND_PUT_USER and admins_changed:
        add(KIND_GROUP_ADMINS)
    return kinds


def group_metadata_state_tags(group: Group) -> list[list[str]]:
    """Build the tags of a group metadata state event; flags are presence tags."""
    tags = [["d", group.group_id]]
    for name, value in (("name", group.name), ("picture", group.picture), ("about", group.about)):
        if value:
            tags.append([name, value])
    if group.geohash:
        tags.append(["g", truncate_geohash(group.geohash)])
    for name, flag in (
        ("private", group.is_private),
        ("restricted", group.is_restricted),
        ("vetted", group.is_vetted),
        ("hidden", group.is_hidden),
        ("closed", group.is_closed),
    ):
        if flag:
            tags.append([name])
    return tags


def group_members_state_tags(group_id: str, members: Sequence[GroupMember]) -> list[list[str]]:
    """Build the tags of a group members state event."""
    return [["d", group_id], *(["p", member.pubkey] for member in members)]


def group_roles_state_tags(group_id: str, roles: Sequence[GroupRole]) -> list[list[str]]:
    """Build the tags of a group roles state event."""
    tags = [["d", group_id]]
    for role in roles:
        role_tag = ["role", role.role_name]
        if role.description:
            role_tag.append(role.description)
        tags.append(role_tag)
    return tags


def normalize_role_name(role_name: str) -> str:
    """Return a role name trimmed and lower-cased."""
    return role_name.strip().lower()


def role_grants_admin(role_name: str, permissions: Optional[Sequence[str]]) -> bool:
    """Return whether a role counts as an administrator role."""
    role_name = normalize_role_name(role_name)
    if not role_name:
        return False
    if role_name in ("owner", "admin"):
        return True
    return any(str(permission).strip().lower() == Permission.ADMIN.value for permission in permissions or ())


def admin_assignment_changed(
    previous_role: str,
    requested_role: str,
    role_permissions: Mapping[str, Optional[Sequence[str]]],
) -> bool:
    """Return whether moving a member between roles changes the admin list."""
    previous_role = normalize_role_name(previous_role)
    requested_role = normalize_role_name(requested_role)
    if previous_role == requested_role:
        return False
    was_admin = role_grants_admin(previous_role, role_permissions.get(previous_role))
    is_admin = role_grants_admin(requested_role, role_permissions.get(requested_role))
    if was_admin != is_admin:
        return True
    return was_admin and is_admin