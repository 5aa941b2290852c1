"""Data records shared by the relay's storage and services."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Permission(str, Enum):
    """Permissions that a group role can grant."""

    ADD_USER = "add-user"
    PROMOTE_USER = "promote-user"
    REMOVE_USER = "remove-user"
    EDIT_METADATA = "edit-metadata"
    CREATE_ROLE = "create-role"
    DELETE_ROLE = "delete-role"
    DELETE_EVENT = "delete-event"
    CREATE_GROUP = "create-group"
    DELETE_GROUP = "delete-group"
    CREATE_INVITE = "create-invite"
    ADMIN = "admin"

    def __str__(self) -> str:
        return self.value


@dataclass
class Event:
    """A signed Nostr event."""

    id: str = ""
    pubkey: str = ""
    created_at: int = 0
    kind: int = 0
    tags: list[list[str]] = field(default_factory=list)
    content: str = ""
    sig: str = ""


@dataclass
class DeletedEvent:
    """A record that an event was deleted, by whom and why."""

    event_id: str = ""
    deleted_at: int = 0
    deleted_by: str = ""
    reason: str = ""


@dataclass
class EventTag:
    """One tag of an event, flattened for indexed lookup."""

    event_id: str
    tag_index: int
    tag_name: str
    tag_value: str
    tag_array: list[str] = field(default_factory=list)


@dataclass
class Group:
    """Projected metadata of a group."""

    group_id: str = ""
    name: str = ""
    about: str = ""
    picture: str = ""
    geohash: str = ""
    is_private: bool = False
    is_restricted: bool = False
    is_vetted: bool = False
    is_hidden: bool = False
    is_closed: bool = False
    created_at: int = 0
    created_by: str = ""
    updated_at: int = 0
    updated_by: str = ""


@dataclass
class GroupRole:
    """A named role within a group and the permissions it grants."""

    group_id: str = ""
    role_name: str = ""
    description: str = ""
    permissions: list[str] = field(default_factory=list)
    created_at: int = 0
    created_by: str = ""
    updated_at: int = 0
    updated_by: str = ""


@dataclass
class GroupMember:
    """Membership of a pubkey in a group."""

    group_id: str = ""
    pubkey: str = ""
    added_at: int = 0
    added_by: str = ""
    role_name: str = ""
    promoted_at: int = 0
    promoted_by: str = ""


@dataclass
class GroupBan:
    """A ban of a pubkey from a group; expires_at of 0 means permanent."""

    group_id: str = ""
    pubkey: str = ""
    reason: str = ""
    banned_at: int = 0
    banned_by: str = ""
    expires_at: int = 0


@dataclass
class GroupInvite:
    """An invite code for a group."""

    group_id: str = ""
    code: str = ""
    expires_at: int = 0
    max_usage_count: int = 0
    usage_count: int = 0
    created_at: int = 0
    created_by: str = ""


@dataclass
class GroupJoinRequest:
    """A pending request by a pubkey to join a group."""

    group_id: str = ""
    pubkey: str = ""
    created_at: int = 0


@dataclass
class GroupEvent:
    """Association of an event with a group."""

    group_id: str = ""
    event_id: str = ""
    created_at: int = 0