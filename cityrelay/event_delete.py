"""Author-initiated event deletion."""

from __future__ import annotations

import time
from dataclasses import replace
from typing import Optional, Protocol

from cityrelay.events_repo import EventsRepo
from cityrelay.metrics import Metrics
from cityrelay.models import DeletedEvent


class DeleteError(ValueError):
    """A deletion request was malformed or not authorized."""


class _DeletionProjection(Protocol):
    def apply_deletion(self, event_id: str) -> None: ...


class EventDeleteService:
    """Marks events deleted and propagates the deletion to group projections."""

    def __init__(
        self,
        repo: EventsRepo,
        projection: Optional[_DeletionProjection],
        metrics: Metrics,
    ) -> None:
        self._repo = repo
        self._projection = projection
        self._metrics = metrics

    def delete_event(self, request: DeletedEvent) -> None:
        """Delete an event on behalf of its author.

        Raises DeleteError for a malformed or unauthorized request and
        NotFoundError when the event does not exist.
        """
        if not request.event_id or not request.deleted_by:
            raise DeleteError("event_id and deleted_by are required")
        if request.deleted_at == 0:
            request = replace(request, deleted_at=int(time.time()))

        event = self._repo.get_event(request.event_id)
        if event.pubkey != request.deleted_by:
            raise DeleteError("delete not authorized for this pubkey")

        self._repo.mark_deleted(request)
        self._metrics.inc("events_deleted_total")

        if self._projection is not None:
            self._projection.apply_deletion(request.event_id)