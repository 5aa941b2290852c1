"""Persistent storage of events, their tags and deletion markers."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from typing import Iterable, Optional

from cityrelay.db import NotFoundError
from cityrelay.event_tags import normalize_tags
from cityrelay.models import DeletedEvent, Event

DEFAULT_QUERY_LIMIT = 100
MAX_QUERY_LIMIT = 500

_EVENT_COLUMNS = "e.id, e.pubkey, e.created_at, e.kind, e.tags, e.content, e.sig"


class DuplicateEventError(Exception):
    """An event with the same id is already stored."""


@dataclass
class EventFilter:
    """Coarse criteria for reading stored events."""

    author: str = ""
    kind: Optional[int] = None
    since: Optional[int] = None
    until: Optional[int] = None
    until_id: str = ""
    tag: str = ""
    limit: int = 0
    include_deleted: bool = False


def compare_replaceable_version(created_at_a: int, id_a: str, created_at_b: int, id_b: str) -> int:
    """Return 1 if version A supersedes B, -1 if B supersedes A, 0 on a tie.

    A newer timestamp wins; on equal timestamps the lexically lower id wins.
    """
    if created_at_a > created_at_b:
        return 1
    if created_at_a < created_at_b:
        return -1
    id_a = id_a.strip().lower()
    id_b = id_b.strip().lower()
    if id_a < id_b:
        return 1
    if id_a > id_b:
        return -1
    return 0


def parse_tag_filter(raw: str) -> tuple[str, str]:
    """Split "name:value" into its parts; a bare value has an empty name."""
    name, sep, value = raw.partition(":")
    if sep:
        return name.strip(), value.strip()
    return "", raw.strip()


def _row_to_event(row) -> Event:
    tags = json.loads(row[4]) if row[4] else []
    return Event(
        id=row[0],
        pubkey=row[1],
        created_at=row[2],
        kind=row[3],
        tags=tags if tags is not None else [],
        content=row[5],
        sig=row[6],
    )


class EventsRepo:
    """Stores and reads events in an SQLite database."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def insert_event(self, event: Event) -> None:
        """Store a regular event; raise DuplicateEventError if its id exists."""
        with self._conn:
            self._insert(event)

    def upsert_replaceable_event(self, event: Event) -> None:
        """Store an event, replacing older ones with the same pubkey and kind."""
        with self._conn:
            rows = self._conn.execute(
                "SELECT e.id, e.created_at FROM events e WHERE e.pubkey = ? AND e.kind = ?",
                (event.pubkey, event.kind),
            ).fetchall()
            self._upsert_latest(event, rows)

    def upsert_parameterized_replaceable_event(self, event: Event, d_tag: str) -> None:
        """Store an event, replacing older ones with the same pubkey, kind and d tag.

        A missing d tag is treated as the empty d address.
        """
        with self._conn:
            rows = self._conn.execute(
                """
                SELECT DISTINCT e.id, e.created_at
                FROM events e
                LEFT JOIN event_tags et
                  ON et.event_id = e.id
                 AND et.tag_name = 'd'
                WHERE e.pubkey = :pubkey
                  AND e.kind = :kind
                  AND (
                      (:d = '' AND (et.event_id IS NULL OR et.tag_value = ''))
                      OR (:d <> '' AND et.tag_value = :d)
                  )
                """,
                {"pubkey": event.pubkey, "kind": event.kind, "d": d_tag},
            ).fetchall()
            self._upsert_latest(event, rows)

    def get_event(self, event_id: str) -> Event:
        """Return the stored event with this id; raise NotFoundError if absent."""
        row = self._conn.execute(
            f"SELECT {_EVENT_COLUMNS} FROM events e WHERE e.id = ?", (event_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"event {event_id} not found")
        return _row_to_event(row)

    def mark_deleted(self, deleted: DeletedEvent) -> None:
        """Record or update the deletion marker of an event."""
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO deleted_events (event_id, deleted_at, deleted_by, reason)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (event_id) DO UPDATE
                SET deleted_at = excluded.deleted_at,
                    deleted_by = excluded.deleted_by,
                    reason = excluded.reason
                """,
                (deleted.event_id, deleted.deleted_at, deleted.deleted_by, deleted.reason),
            )

    def query_events(self, filter: EventFilter) -> list[Event]:
        """Return events matching the filter, newest first, ties by ascending id."""
        limit = filter.limit
        if limit <= 0:
            limit = DEFAULT_QUERY_LIMIT
        limit = min(limit, MAX_QUERY_LIMIT)

        sql = [f"SELECT {_EVENT_COLUMNS} FROM events e"]
        if not filter.include_deleted:
            sql.append("LEFT JOIN deleted_events d ON d.event_id = e.id")
        sql.append("WHERE 1=1")
        params: list = []

        if not filter.include_deleted:
            sql.append("AND d.event_id IS NULL")
        if filter.author:
            sql.append("AND e.pubkey = ?")
            params.append(filter.author)
        if filter.kind is not None:
            sql.append("AND e.kind = ?")
            params.append(filter.kind)
        if filter.since is not None:
            sql.append("AND e.created_at >= ?")
            params.append(filter.since)
        if filter.until is not None:
            if filter.until_id.strip():
                sql.append("AND (e.created_at < ? OR (e.created_at = ? AND e.id > ?))")
                params.extend([filter.until, filter.until, filter.until_id])
            else:
                sql.append("AND e.created_at <= ?")
                params.append(filter.until)
        if filter.tag:
            tag_name, tag_value = parse_tag_filter(filter.tag)
            if tag_name:
                sql.append(
                    "AND EXISTS (SELECT 1 FROM event_tags et "
                    "WHERE et.event_id = e.id AND et.tag_name = ? AND et.tag_value = ?)"
                )
                params.extend([tag_name, tag_value])
            else:
                sql.append(
                    "AND EXISTS (SELECT 1 FROM event_tags et "
                    "WHERE et.event_id = e.id AND et.tag_value = ?)"
                )
                params.append(tag_value)

        sql.append("ORDER BY e.created_at DESC, e.id ASC")
        sql.append("LIMIT ?")
        params.append(limit)

        rows = self._conn.execute("\n".join(sql), params).fetchall()
        return [_row_to_event(row) for row in rows]

    def _upsert_latest(self, event: Event, rows: Iterable) -> None:
        stale_ids: list[str] = []
        best: Optional[tuple[int, str]] = None
        for row in rows:
            existing_id, existing_created_at = row[0], row[1]
            if best is None or compare_replaceable_version(
                existing_created_at, existing_id, best[0], best[1]
            ) > 0:
                best = (existing_created_at, existing_id)
            if existing_id != event.id:
                stale_ids.append(existing_id)

        if best is not None and compare_replaceable_version(
            event.created_at, event.id, best[0], best[1]
        ) <= 0:
            return

        for stale_id in stale_ids:
            self._conn.execute("DELETE FROM event_tags WHERE event_id = ?", (stale_id,))
            self._conn.execute("DELETE FROM events WHERE id = ?", (stale_id,))
        self._conn.execute("DELETE FROM event_tags WHERE event_id = ?", (event.id,))
        self._conn.execute("DELETE FROM events WHERE id = ?", (event.id,))
        self._insert(event)

    def _insert(self, event: Event) -> None:
        tags = event.tags or []
        try:
            self._conn.execute(
                """
                INSERT INTO events (id, pubkey, created_at, kind, tags, content, sig)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.pubkey,
                    event.created_at,
                    event.kind,
                    json.dumps(tags),
                    event.content,
                    event.sig,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateEventError(f"duplicate event: {event.id}") from exc

        self._conn.executemany(
            """
            INSERT INTO event_tags (event_id, tag_index, tag_name, tag_value, tag_array)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                (tag.event_id, tag.tag_index, tag.tag_name, tag.tag_value, json.dumps(tag.tag_array))
                for tag in normalize_tags(event.id, tags)
            ],
        )