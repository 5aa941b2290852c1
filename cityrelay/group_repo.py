"""Persistent storage of group projections: metadata, roles, members, bans and invites."""

from __future__ import annotations

import json
import sqlite3
import time
from dataclasses import dataclass
from typing import Optional

from cityrelay.db import NotFoundError
from cityrelay.models import (
    Group,
    GroupBan,
    GroupEvent,
    GroupInvite,
    GroupJoinRequest,
    GroupMember,
    GroupRole,
    Permission,
)

DEFAULT_GROUP_LIMIT = 100
MAX_GROUP_LIMIT = 200
MAX_GEOHASH_PRECISION = 6

_GROUP_COLUMNS = (
    "group_id, name, about, picture, geohash, is_private, is_restricted, "
    "is_vetted, is_hidden, is_closed, created_at, created_by, updated_at, updated_by"
)

_ADMIN_DEFAULT_PERMISSIONS = (
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


@dataclass
class GroupFilter:
    """Criteria for listing groups."""

    geohash_prefix: str = ""
    is_private: Optional[bool] = None
    is_vetted: Optional[bool] = None
    updated_since: Optional[int] = None
    limit: int = 0


def normalize_permission(permission: str) -> str:
    """Return a permission name trimmed and lower-cased."""
    return str(permission).strip().lower()


def default_role_permissions(role_name: str) -> list[str]:
    """Return the permissions a built-in role grants without explicit configuration."""
    if role_name == "admin":
        return [permission.value for permission in _ADMIN_DEFAULT_PERMISSIONS]
    return []


def role_has_permission(role_name: str, role_permissions: Optional[list[str]], required: str) -> bool:
    """Return whether a role, with its configured permissions, grants the required one."""
    required = normalize_permission(required)
    if not required:
        return False

    role_name = role_name.strip().lower()
    if role_name == "owner":
        return True

    allowed = {
        normalized
        for normalized in map(
            normalize_permission,
            [*default_role_permissions(role_name), *(role_permissions or [])],
        )
        if normalized
    }
    return required in allowed or Permission.ADMIN.value in allowed


def _load_permissions(raw) -> list[str]:
    if not raw:
        return []
    decoded = json.loads(raw)
    return [str(item) for item in decoded] if decoded else []


def _row_to_group(row) -> Group:
    return Group(
        group_id=row[0],
        name=row[1],
        about=row[2],
        picture=row[3],
        geohash=row[4],
        is_private=bool(row[5]),
        is_restricted=bool(row[6]),
        is_vetted=bool(row[7]),
        is_hidden=bool(row[8]),
        is_closed=bool(row[9]),
        created_at=row[10],
        created_by=row[11],
        updated_at=row[12],
        updated_by=row[13],
    )


class GroupRepo:
    """Stores and reads group projection state in an SQLite database."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def upsert_group(self, group: Group) -> None:
        """Insert or update a group unless a newer version is already stored."""
        if group.geohash and len(group.geohash) > MAX_GEOHASH_PRECISION:
            raise ValueError("geohash precision exceeds level 6")
        with self._conn:
            self._conn.execute(
                f"""
                INSERT INTO "groups" ({_GROUP_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (group_id) DO UPDATE
                SET name = excluded.name,
                    about = excluded.about,
                    picture = excluded.picture,
                    geohash = excluded.geohash,
                    is_private = excluded.is_private,
                    is_restricted = excluded.is_restricted,
                    is_vetted = excluded.is_vetted,
                    is_hidden = excluded.is_hidden,
                    is_closed = excluded.is_closed,
                    updated_at = excluded.updated_at,
                    updated_by = excluded.updated_by
                WHERE excluded.updated_at >= "groups".updated_at
                """,
                (
                    group.group_id,
                    group.name,
                    group.about,
                    group.picture,
                    group.geohash,
                    int(group.is_private),
                    int(group.is_restricted),
                    int(group.is_vetted),
                    int(group.is_hidden),
                    int(group.is_closed),
                    group.created_at,
                    group.created_by,
                    group.updated_at,
                    group.updated_by,
                ),
            )

    def close_group(self, group_id: str, updated_at: int, updated_by: str) -> None:
        """Mark a group hidden and closed."""
        with self._conn:
            self._conn.execute(
                """
                UPDATE "groups"
                SET is_hidden = 1, is_closed = 1, updated_at = ?, updated_by = ?
                WHERE group_id = ?
                """,
                (updated_at, updated_by, group_id),
            )

    def upsert_role(self, role: GroupRole) -> None:
        """Insert or update a role unless a newer version is already stored."""
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO group_roles (
                    group_id, role_name, description, permissions,
                    created_at, created_by, updated_at, updated_by
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (group_id, role_name) DO UPDATE
                SET description = excluded.description,
                    permissions = excluded.permissions,
                    updated_at = excluded.updated_at,
                    updated_by = excluded.updated_by
                WHERE excluded.updated_at >= group_roles.updated_at
                """,
                (
                    role.group_id,
                    role.role_name,
                    role.description,
                    json.dumps([str(p) for p in role.permissions or []]),
                    role.created_at,
                    role.created_by,
                    role.updated_at,
                    role.updated_by,
                ),
            )

    def delete_role(self, group_id: str, role_name: str) -> None:
        """Remove a role from a group."""
        with self._conn:
            self._conn.execute(
                "DELETE FROM group_roles WHERE group_id = ? AND role_name = ?",
                (group_id, role_name),
            )

    def upsert_member(self, member: GroupMember) -> None:
        """Insert or update a membership unless a newer one is already stored."""
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO group_members (
                    group_id, pubkey, added_at, added_by, role_name, promoted_at, promoted_by
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (group_id, pubkey) DO UPDATE
                SET role_name = excluded.role_name,
                    promoted_at = excluded.promoted_at,
                    promoted_by = excluded.promoted_by,
                    added_at = excluded.added_at,
                    added_by = excluded.added_by
                WHERE excluded.added_at >= group_members.added_at
                """,
                (
                    member.group_id,
                    member.pubkey,
                    member.added_at,
                    member.added_by,
                    member.role_name,
                    member.promoted_at,
                    member.promoted_by,
                ),
            )

    def remove_member(self, group_id: str, pubkey: str) -> None:
        """Remove a member from a group."""
        with self._conn:
            self._conn.execute(
                "DELETE FROM group_members WHERE group_id = ? AND pubkey = ?",
                (group_id, pubkey),
            )

    def upsert_ban(self, ban: GroupBan) -> None:
        """Insert or update a ban unless a newer one is already stored."""
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO group_bans (group_id, pubkey, reason, banned_at, banned_by, expires_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (group_id, pubkey) DO UPDATE
                SET reason = excluded.reason,
                    banned_at = excluded.banned_at,
                    banned_by = excluded.banned_by,
                    expires_at = excluded.expires_at
                WHERE excluded.banned_at >= group_bans.banned_at
                """,
                (ban.group_id, ban.pubkey, ban.reason, ban.banned_at, ban.banned_by, ban.expires_at),
            )

    def upsert_invite(self, invite: GroupInvite) -> None:
        """Insert or update an invite unless a newer one is already stored."""
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO group_invites (
                    group_id, code, expires_at, max_usage_count, usage_count, created_at, created_by
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (group_id, code) DO UPDATE
                SET expires_at = excluded.expires_at,
                    max_usage_count = excluded.max_usage_count,
                    usage_count = excluded.usage_count
                WHERE excluded.created_at >= group_invites.created_at
                """,
                (
                    invite.group_id,
                    invite.code,
                    invite.expires_at,
                    invite.max_usage_count,
                    invite.usage_count,
                    invite.created_at,
                    invite.created_by,
                ),
            )

    def upsert_join_request(self, request: GroupJoinRequest) -> None:
        """Record a join request, keeping the latest timestamp."""
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO group_join_requests (group_id, pubkey, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT (group_id, pubkey) DO UPDATE
                SET created_at = MAX(group_join_requests.created_at, excluded.created_at)
                """,
                (request.group_id, request.pubkey, request.created_at),
            )

    def delete_join_request(self, group_id: str, pubkey: str) -> None:
        """Remove a pending join request."""
        with self._conn:
            self._conn.execute(
                "DELETE FROM group_join_requests WHERE group_id = ? AND pubkey = ?",
                (group_id, pubkey),
            )

    def add_group_event(self, group_event: GroupEvent) -> None:
        """Associate an event with a group, keeping the latest timestamp."""
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO group_events (group_id, event_id, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT (group_id, event_id) DO UPDATE
                SET created_at = MAX(group_events.created_at, excluded.created_at)
                """,
                (group_event.group_id, group_event.event_id, group_event.created_at),
            )

    def remove_group_event_by_event_id(self, event_id: str) -> None:
        """Drop every group association of an event."""
        with self._conn:
            self._conn.execute("DELETE FROM group_events WHERE event_id = ?", (event_id,))

    def get_group(self, group_id: str) -> Group:
        """Return a group; raise NotFoundError if it does not exist."""
        row = self._conn.execute(
            f'SELECT {_GROUP_COLUMNS} FROM "groups" WHERE group_id = ?', (group_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"group {group_id} not found")
        return _row_to_group(row)

    def list_groups(self, filter: GroupFilter) -> list[Group]:
        """Return groups matching the filter, most recently updated first."""
        limit = filter.limit if filter.limit > 0 else DEFAULT_GROUP_LIMIT
        limit = min(limit, MAX_GROUP_LIMIT)

        sql = [f'SELECT {_GROUP_COLUMNS} FROM "groups" WHERE 1=1']
        params: list = []
        if filter.geohash_prefix:
            sql.append("AND substr(geohash, 1, length(?)) = ?")
            params.extend([filter.geohash_prefix, filter.geohash_prefix])
        if filter.is_private is not None:
            sql.append("AND is_private = ?")
            params.append(int(filter.is_private))
        if filter.is_vetted is not None:
            sql.append("AND is_vetted = ?")
            params.append(int(filter.is_vetted))
        if filter.updated_since is not None:
            sql.append("AND updated_at >= ?")
            params.append(filter.updated_since)
        sql.append("ORDER BY updated_at DESC")
        sql.append("LIMIT ?")
        params.append(limit)

        rows = self._conn.execute("\n".join(sql), params).fetchall()
        return [_row_to_group(row) for row in rows]

    def list_members(self, group_id: str) -> list[GroupMember]:
        """Return the members of a group, earliest added first."""
        rows = self._conn.execute(
            """
            SELECT group_id, pubkey, added_at, added_by, role_name, promoted_at, promoted_by
            FROM group_members
            WHERE group_id = ?
            ORDER BY added_at ASC
            """,
            (group_id,),
        ).fetchall()
        return [
            GroupMember(
                group_id=row[0],
                pubkey=row[1],
                added_at=row[2],
                added_by=row[3],
                role_name=row[4],
                promoted_at=row[5],
                promoted_by=row[6],
            )
            for row in rows
        ]

    def is_member(self, group_id: str, pubkey: str) -> bool:
        """Return whether pubkey is a member of the group."""
        row = self._conn.execute(
            "SELECT EXISTS (SELECT 1 FROM group_members WHERE group_id = ? AND pubkey = ?)",
            (group_id, pubkey),
        ).fetchone()
        return bool(row[0])

    def get_member_role(self, group_id: str, pubkey: str) -> tuple[str, bool]:
        """Return (role name, whether the member exists)."""
        row = self._conn.execute(
            "SELECT role_name FROM group_members WHERE group_id = ? AND pubkey = ?",
            (group_id, pubkey),
        ).fetchone()
        if row is None:
            return "", False
        return row[0], True

    def list_roles(self, group_id: str) -> list[GroupRole]:
        """Return the roles of a group ordered by name."""
        rows = self._conn.execute(
            """
            SELECT group_id, role_name, description, permissions,
                   created_at, created_by, updated_at, updated_by
            FROM group_roles
            WHERE group_id = ?
            ORDER BY role_name ASC
            """,
            (group_id,),
        ).fetchall()
        return [
            GroupRole(
                group_id=row[0],
                role_name=row[1],
                description=row[2],
                permissions=_load_permissions(row[3]),
                created_at=row[4],
                created_by=row[5],
                updated_at=row[6],
                updated_by=row[7],
            )
            for row in rows
        ]

    def list_bans(self, group_id: str) -> list[GroupBan]:
        """Return the bans of a group, most recent first."""
        rows = self._conn.execute(
            """
            SELECT group_id, pubkey, reason, banned_at, banned_by, expires_at
            FROM group_bans
            WHERE group_id = ?
            ORDER BY banned_at DESC
            """,
            (group_id,),
        ).fetchall()
        return [
            GroupBan(
                group_id=row[0],
                pubkey=row[1],
                reason=row[2],
                banned_at=row[3],
                banned_by=row[4],
                expires_at=row[5],
            )
            for row in rows
        ]

    def list_invites(self, group_id: str) -> list[GroupInvite]:
        """Return the invites of a group, most recent first."""
        rows = self._conn.execute(
            """
            SELECT group_id, code, expires_at, max_usage_count, usage_count, created_at, created_by
            FROM group_invites
            WHERE group_id = ?
            ORDER BY created_at DESC
            """,
            (group_id,),
        ).fetchall()
        return [
            GroupInvite(
                group_id=row[0],
                code=row[1],
                expires_at=row[2],
                max_usage_count=row[3],
                usage_count=row[4],
                created_at=row[5],
                created_by=row[6],
            )
            for row in rows
        ]

    def has_permission(self, group_id: str, pubkey: str, permission: str) -> bool:
        """Return whether pubkey holds a permission in the group.

        The group's creator holds every permission; a missing group grants none.
        """
        row = self._conn.execute(
            """
            SELECT g.created_by, COALESCE(gm.role_name, ''), gr.permissions
            FROM "groups" g
            LEFT JOIN group_members gm
                ON gm.group_id = g.group_id AND gm.pubkey = ?
            LEFT JOIN group_roles gr
                ON gr.group_id = gm.group_id AND gr.role_name = gm.role_name
            WHERE g.group_id = ?
            """,
            (pubkey, group_id),
        ).fetchone()
        if row is None:
            return False
        created_by, role_name, raw_permissions = row[0], row[1], row[2]
        if created_by == pubkey:
            return True
        return role_has_permission(role_name, _load_permissions(raw_permissions), permission)

    def is_admin(self, group_id: str, pubkey: str) -> bool:
        """Return whether pubkey created the group or holds an admin role in it."""
        try:
            group = self.get_group(group_id)
        except NotFoundError:
            return False
        if group.created_by == pubkey:
            return True

        row = self._conn.execute(
            """
            SELECT gm.role_name, gr.permissions
            FROM group_members gm
            LEFT JOIN group_roles gr
                ON gr.group_id = gm.group_id AND gr.role_name = gm.role_name
            WHERE gm.group_id = ? AND gm.pubkey = ?
            """,
            (group_id, pubkey),
        ).fetchone()
        if row is None:
            return False
        return row[0] in ("owner", "admin") or Permission.ADMIN.value in _load_permissions(row[1])

    def is_banned(self, group_id: str, pubkey: str, now: Optional[int] = None) -> bool:
        """Return whether pubkey is currently banned from the group."""
        row = self._conn.execute(
            "SELECT expires_at FROM group_bans WHERE group_id = ? AND pubkey = ?",
            (group_id, pubkey),
        ).fetchone()
        if row is None:
            return False
        expires_at = row[0]
        if expires_at == 0:
            return True
        current = int(time.time()) if now is None else now
        return expires_at >= current