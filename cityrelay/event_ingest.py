"""Admission of incoming events: validation, abuse checks, storage and projection."""

from __future__ import annotations

import enum
import time
from typing import Optional, Protocol, Sequence

from cityrelay.events_repo import DuplicateEventError
from cityrelay.group_tags import relay_only_kind
from cityrelay.metrics import Metrics
from cityrelay.models import Event


class IngestError(ValueError):
    """An event was refused by the ingest policy."""


class StorageMode(enum.Enum):
    """How an event kind is persisted."""

    REGULAR = "regular"
    REPLACEABLE = "replaceable"
    EPHEMERAL = "ephemeral"
    PARAMETERIZED_REPLACEABLE = "parameterized_replaceable"


class _Repo(Protocol):
    def insert_event(self, event: Event) -> None: ...

    def upsert_replaceable_event(self, event: Event) -> None: ...

    def upsert_parameterized_replaceable_event(self, event: Event, d_tag: str) -> None: ...


class _Validator(Protocol):
    def validate_event(self, event: Event, now: int) -> None: ...


class _Abuse(Protocol):
    def allow(self, pubkey: str, now: float) -> bool: ...

    def required_pow_bits(self, kind: int) -> int: ...

    def validate_pow(self, event: Event, required_bits: int) -> None: ...


class _Projection(Protocol):
    def apply_event(self, event: Event) -> None: ...


def event_storage_mode(kind: int) -> StorageMode:
    """Return how events of this kind are stored."""
    if kind in (0, 3) or 10000 <= kind <= 19999:
        return StorageMode.REPLACEABLE
    if 20000 <= kind <= 29999:
        return StorageMode.EPHEMERAL
    if 30000 <= kind <= 39999:
        return StorageMode.PARAMETERIZED_REPLACEABLE
    return StorageMode.REGULAR


def d_tag_value(tags: Sequence[Sequence[str]]) -> str:
    """Return the trimmed value of the first "d" tag, or "" if there is none."""
    return next((tag[1].strip() for tag in tags if len(tag) >= 2 and tag[0].strip() == "d"), "")


class EventIngestService:
    """Validates, abuse-checks, stores and projects incoming events."""

    def __init__(
        self,
        repo: Optional[_Repo],
        validator: _Validator,
        abuse: _Abuse,
        projection: Optional[_Projection],
        metrics: Metrics,
        relay_pubkey: str,
    ) -> None:
        self._repo = repo
        self._validator = validator
        self._abuse = abuse
        self._projection = projection
        self._metrics = metrics
        self._relay_pubkey = (relay_pubkey or "").strip().lower()

    def ingest(self, event: Event) -> None:
        """Admit one event.

        Raises the validator's and abuse controls' errors, IngestError for
        policy refusals and DuplicateEventError for an already stored event.
        """
        now = time.time()
        try:
            self._validator.validate_event(event, int(now))
        except Exception:
            self._metrics.inc("events_rejected_validation_total")
            raise

        if not self._abuse.allow(event.pubkey, now):
            self._metrics.inc("events_rejected_rate_limit_total")
            raise IngestError("rate limit exceeded")

        required_bits = self._abuse.required_pow_bits(event.kind)
        try:
            self._abuse.validate_pow(event, required_bits)
        except Exception:
            self._metrics.inc("events_rejected_pow_total")
            raise

        if relay_only_kind(event.kind) and event.pubkey.lower() != self._relay_pubkey:
            self._metrics.inc("events_rejected_validation_total")
            raise IngestError(f"kind {event.kind} events must be signed by relay")

        self._store(event)

        if self._projection is not None:
            try:
                self._projection.apply_event(event)
            except Exception:
                self._metrics.inc("group_projection_errors_total")
                raise

    def _store(self, event: Event) -> None:
        mode = event_storage_mode(event.kind)
        if mode is StorageMode.EPHEMERAL:
            # Relayed to subscribers but never persisted.
            return
        if self._repo is None:
            raise IngestError("event storage is not configured")
        if mode is StorageMode.REPLACEABLE:
            self._repo.upsert_replaceable_event(event)
        elif mode is StorageMode.PARAMETERIZED_REPLACEABLE:
            self._repo.upsert_parameterized_replaceable_event(event, d_tag_value(event.tags))
        else:
            try:
                self._repo.insert_event(event)
            except DuplicateEventError:
                self._metrics.inc("events_duplicate_total")
                raise
        self._metrics.inc("events_ingested_total")