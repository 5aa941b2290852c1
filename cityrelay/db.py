"""SQLite connection and schema for the relay's storage."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from os import PathLike
from typing import Iterator, Tuple, Union


class NotFoundError(LookupError):
    """A requested row does not exist."""


_COLUMN_TYPES = {
    "key": "TEXT NOT NULL",
    "t": "TEXT NOT NULL DEFAULT ''",
    "i": "INTEGER NOT NULL DEFAULT 0",
    "j": "TEXT NOT NULL DEFAULT '[]'",
}


@dataclass(frozen=True)
class _Table:
    name: str
    columns: str
    primary_key: Tuple[str, ...]
    constraints: Tuple[str, ...] = ()

    def create_statement(self) -> str:
        parts = [
            f"{name} {_COLUMN_TYPES[kind]}"
            for name, kind in (column.split(":") for column in self.columns.split())
        ]
        parts.append(f"PRIMARY KEY ({', '.join(self.primary_key)})")
        parts.extend(self.constraints)
        return f"CREATE TABLE IF NOT EXISTS {self.name} ({', '.join(parts)})"


@dataclass(frozen=True)
class _Index:
    name: str
    table: str
    columns: str

    def create_statement(self) -> str:
        return f"CREATE INDEX IF NOT EXISTS {self.name} ON {self.table} ({self.columns})"


_GROUP_KEY = ("group_id", "pubkey")

_TABLES = (
    _Table("events", "id:key pubkey:key created_at:i kind:i tags:j content:t sig:t", ("id",)),
    _Table(
        "event_tags",
        "event_id:key tag_index:i tag_name:key tag_value:t tag_array:j",
        ("event_id", "tag_index"),
        ("FOREIGN KEY (event_id) REFERENCES events (id) ON DELETE CASCADE",),
    ),
    _Table("deleted_events", "event_id:key deleted_at:i deleted_by:key reason:t", ("event_id",)),
    _Table(
        "groups",
        "group_id:key name:t about:t picture:t geohash:t is_private:i is_restricted:i "
        "is_vetted:i is_hidden:i is_closed:i created_at:i created_by:t updated_at:i updated_by:t",
        ("group_id",),
    ),
    _Table(
        "group_roles",
        "group_id:key role_name:key description:t permissions:j "
        "created_at:i created_by:t updated_at:i updated_by:t",
        ("group_id", "role_name"),
    ),
    _Table(
        "group_members",
        "group_id:key pubkey:key added_at:i added_by:t role_name:t promoted_at:i promoted_by:t",
        _GROUP_KEY,
    ),
    _Table(
        "group_bans",
        "group_id:key pubkey:key reason:t banned_at:i banned_by:t expires_at:i",
        _GROUP_KEY,
    ),
    _Table(
        "group_invites",
        "group_id:key code:key expires_at:i max_usage_count:i usage_count:i "
        "created_at:i created_by:t",
        ("group_id", "code"),
    ),
    _Table("group_join_requests", "group_id:key pubkey:key created_at:i", _GROUP_KEY),
    _Table("group_events", "group_id:key event_id:key created_at:i", ("group_id", "event_id")),
)

_INDEXES = (
    _Index("idx_events_pubkey_kind", "events", "pubkey, kind"),
    _Index("idx_events_created_at", "events", "created_at DESC, id"),
    _Index("idx_event_tags_name_value", "event_tags", "tag_name, tag_value"),
    _Index("idx_group_events_event_id", "group_events", "event_id"),
)


def _schema_statements() -> Iterator[str]:
    for table in _TABLES:
        yield table.create_statement()
    for index in _INDEXES:
        yield index.create_statement()


def initialize_schema(conn: sqlite3.Connection) -> None:
    """Create every table and index that does not yet exist."""
    for statement in _schema_statements():
        conn.execute(statement)
    conn.commit()


def connect(path: Union[str, "PathLike[str]"]) -> sqlite3.Connection:
    """Open a database at path, enable foreign keys and ensure the schema."""
    conn = sqlite3.connect(path, check_same_thread=False)
    try:
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        initialize_schema(conn)
    except sqlite3.Error:
        conn.close()
        raise
    return conn