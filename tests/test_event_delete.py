import time

import pytest

from cityrelay.db import NotFoundError, connect
from cityrelay.event_delete import DeleteError, EventDeleteService
from cityrelay.events_repo import EventFilter, EventsRepo
from cityrelay.metrics import Metrics
from cityrelay.models import DeletedEvent, Event


class RecordingProjection:
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def apply_deletion(self, event_id):
        self.calls.append(event_id)
        if self.fail:
            raise RuntimeError("projection failed")


@pytest.fixture
def conn():
    connection = connect(":memory:")
    yield connection
    connection.close()


@pytest.fixture
def repo(conn):
    events = EventsRepo(conn)
    events.insert_event(Event(id="e1", pubkey="alice", created_at=10, kind=1))
    return events


@pytest.mark.parametrize(
    "request_",
    [DeletedEvent(event_id="", deleted_by="alice"), DeletedEvent(event_id="e1", deleted_by="")],
)
def test_requires_event_id_and_deleter(repo, request_):
    service = EventDeleteService(repo, None, Metrics())
    with pytest.raises(DeleteError, match="event_id and deleted_by are required"):
        service.delete_event(request_)


def test_unknown_event_raises_not_found(repo):
    service = EventDeleteService(repo, None, Metrics())
    with pytest.raises(NotFoundError):
        service.delete_event(DeletedEvent(event_id="missing", deleted_by="alice", deleted_at=5))


def test_only_author_may_delete(repo):
    metrics = Metrics()
    service = EventDeleteService(repo, None, metrics)
    with pytest.raises(DeleteError, match="not authorized"):
        service.delete_event(DeletedEvent(event_id="e1", deleted_by="mallory", deleted_at=5))
    assert [event.id for event in repo.query_events(EventFilter())] == ["e1"]
    assert metrics.get("events_deleted_total") == 0


def test_successful_delete_hides_event_and_notifies_projection(repo):
    metrics = Metrics()
    projection = RecordingProjection()
    service = EventDeleteService(repo, projection, metrics)

    service.delete_event(DeletedEvent(event_id="e1", deleted_by="alice", deleted_at=5, reason="oops"))

    assert repo.query_events(EventFilter()) == []
    assert [event.id for event in repo.query_events(EventFilter(include_deleted=True))] == ["e1"]
    assert metrics.get("events_deleted_total") == 1
    assert projection.calls == ["e1"]


def test_missing_deleted_at_is_filled_with_current_time(repo, conn):
    before = int(time.time())
    request = DeletedEvent(event_id="e1", deleted_by="alice")
    EventDeleteService(repo, None, Metrics()).delete_event(request)
    row = conn.execute("SELECT deleted_at, deleted_by FROM deleted_events WHERE event_id = 'e1'").fetchone()
    assert row[0] >= before
    assert row[1] == "alice"
    assert request.deleted_at == 0


def test_projection_failure_propagates_after_marking(repo):
    metrics = Metrics()
    service = EventDeleteService(repo, RecordingProjection(fail=True), metrics)
    with pytest.raises(RuntimeError, match="projection failed"):
        service.delete_event(DeletedEvent(event_id="e1", deleted_by="alice", deleted_at=5))
    assert metrics.get("events_deleted_total") == 1
    assert repo.query_events(EventFilter()) == []