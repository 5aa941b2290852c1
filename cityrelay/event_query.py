"""Deletion-aware event reads and Nostr REQ filter matching."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional, Protocol

from cityrelay.events_repo import EventFilter
from cityrelay.models import Event

DEFAULT_TARGET_LIMIT = 100
_PAGE_SIZE = 500


class _EventQueryRepo(Protocol):
    def query_events(self, filter: EventFilter) -> list[Event]: ...


@dataclass
class NostrFilter:
    """A subscription filter as sent in a REQ message."""

    ids: list[str] = field(default_factory=list)
    authors: list[str] = field(default_factory=list)
    kinds: list[int] = field(default_factory=list)
    since: Optional[int] = None
    until: Optional[int] = None
    tags: dict[str, list[str]] = field(default_factory=dict)
    limit: int = 0


def _has_any_tag_value(tags: list[list[str]], name: str, values: list[str]) -> bool:
    return any(len(tag) >= 2 and tag[0] == name and tag[1] in values for tag in tags)


def matches_nostr_filter(event: Event, filter: NostrFilter) -> bool:
    """Return whether the event satisfies every condition of the filter."""
    if filter.ids and event.id not in filter.ids:
        return False
    if filter.authors and event.pubkey not in filter.authors:
        return False
    if filter.kinds and event.kind not in filter.kinds:
        return False
    if filter.since is not None and event.created_at < filter.since:
        return False
    if filter.until is not None and event.created_at > filter.until:
        return False
    return all(
        _has_any_tag_value(event.tags, key.removeprefix("#"), values)
        for key, values in filter.tags.items()
    )


class EventQueryService:
    """Reads events, hiding deleted ones unless asked otherwise."""

    def __init__(self, repo: _EventQueryRepo) -> None:
        self._repo = repo

    def query_events(self, filter: EventFilter) -> list[Event]:
        """Return matching events that have not been deleted."""
        return self._repo.query_events(replace(filter, include_deleted=False))

    def query_events_including_deleted(self, filter: EventFilter) -> list[Event]:
        """Return matching events, deleted ones included."""
        return self._repo.query_events(replace(filter, include_deleted=True))

    def query_nostr_filter(self, filter: NostrFilter) -> list[Event]:
        """Return up to filter.limit (default 100) events matching a REQ filter.

        Storage is queried with a coarse filter and paged backwards in time
        until enough exact matches are found or the events run out.
        """
        target = filter.limit if filter.limit > 0 else DEFAULT_TARGET_LIMIT

        coarse = EventFilter(limit=_PAGE_SIZE, include_deleted=False)
        if len(filter.authors) == 1:
            coarse.author = filter.authors[0]
        if len(filter.kinds) == 1:
            coarse.kind = filter.kinds[0]
        if filter.since is not None:
            coarse.since = filter.since
        for key, values in filter.tags.items():
            if values:
                coarse.tag = f"{key.removeprefix('#')}:{values[0]}"
                break

        until_cursor = filter.until
        until_id_cursor = ""
        matched: list[Event] = []
        seen: set[str] = set()

        while len(matched) < target:
            query = replace(coarse)
            if until_cursor is not None:
                query.until = until_cursor
                query.until_id = until_id_cursor

            events = self.query_events(query)
            if not events:
                break

            for event in events:
                if event.id in seen:
                    continue
                seen.add(event.id)
                if matches_nostr_filter(event, filter):
                    matched.append(event)
                    if len(matched) >= target:
                        break
            if len(matched) >= target or len(events) < query.limit:
                break

            oldest = events[-1]
            if coarse.since is not None and oldest.created_at < coarse.since:
                break
            if (
                until_cursor is not None
                and oldest.created_at == until_cursor
                and oldest.id == until_id_cursor
            ):
                break
            until_cursor = oldest.created_at
            until_id_cursor = oldest.id

        return matched