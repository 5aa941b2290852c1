"""Deterministic flattening of event tags for indexed storage."""

from __future__ import annotations

from cityrelay.models import EventTag


def normalize_tags(event_id: str, tags: list[list[str]]) -> list[EventTag]:
    """Return one EventTag per named tag, keeping its original position."""
    return [
        EventTag(
            event_id=event_id,
            tag_index=index,
            tag_name=tag[0],
            tag_value=tag[1] if len(tag) > 1 else "",
            tag_array=list(tag),
        )
        for index, tag in enumerate(tags)
        if tag and tag[0] != ""
    ]