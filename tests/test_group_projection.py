import sqlite3

import pytest

from cityrelay import schnorr
from cityrelay.db import initialize_schema
from cityrelay.events_repo import EventFilter, EventsRepo
from cityrelay.group_projection import (
    GroupProjectionService,
    PermissionDeniedError,
    ProjectionError,
)
from cityrelay.group_repo import GroupRepo
from cityrelay.group_vetting import GroupVettingService
from cityrelay.metrics import Metrics
from cityrelay.models import Event, GroupEvent
from cityrelay.validation import compute_event_id, verify_signature

OWNER = "owner-pub"
ALICE = "alice-pub"
BOB = "bob-pub"
GROUP = "group-1"


@pytest.fixture(scope="module")
def relay_keys():
    private_key = schnorr.generate_private_key()
    return private_key, schnorr.public_key(private_key)


@pytest.fixture
def env(relay_keys):
    conn = sqlite3.connect(":memory:")
    initialize_schema(conn)
    repo = GroupRepo(conn)
    events_repo = EventsRepo(conn)
    metrics = Metrics()
    private_key, pubkey = relay_keys
    svc = GroupProjectionService(
        repo, events_repo, pubkey, private_key, GroupVettingService(repo), metrics
    )
    yield svc, repo, events_repo, metrics, conn, pubkey
    conn.close()


@pytest.fixture
def plain(env):
    _, repo, events_repo, metrics, conn, _ = env
    svc = GroupProjectionService(repo, events_repo, "", "", GroupVettingService(repo), metrics)
    return svc, repo, events_repo, metrics, conn


_counter = iter(range(1, 10**6))


def _event(kind, pubkey, tags, created_at=100):
    return Event(id=f"ev-{next(_counter)}", pubkey=pubkey, created_at=created_at, kind=kind, tags=tags)


def _create_group(svc, extra=(), created_at=100):
    event = _event(9007, OWNER, [["h", GROUP], ["name", "Town"], *extra], created_at)
    svc.apply_event(event)
    return event


def test_create_group_projects_owner(plain):
    svc, repo, _, metrics, _ = plain
    _create_group(svc, [["g", "u4pruydqqvj"], ["private"]])
    group = repo.get_group(GROUP)
    assert group.name == "Town"
    assert group.created_by == OWNER
    assert group.geohash == "u4pruy"
    assert group.is_private is True
    assert group.is_vetted is False
    members = repo.list_members(GROUP)
    assert [(m.pubkey, m.role_name) for m in members] == [(OWNER, "owner")]
    roles = repo.list_roles(GROUP)
    assert roles[0].role_name == "owner"
    assert "delete-group" in roles[0].permissions
    assert metrics.get("group_projection_applied_total") == 1


def test_event_without_group_is_ignored(plain):
    svc, _, _, metrics, _ = plain
    svc.apply_event(_event(1, OWNER, [["t", "x"]]))
    assert metrics.get("group_projection_applied_total") == 0


def test_create_group_emits_signed_canonical_events(env):
    svc, _, events_repo, _, _, relay_pub = env
    _create_group(svc)
    stored = events_repo.query_events(EventFilter(author=relay_pub))
    assert sorted(e.kind for e in stored) == [39000, 39001, 39002, 39003]
    for event in stored:
        assert event.tags[0] == ["d", GROUP]
        assert event.id == compute_event_id(event.pubkey, event.created_at, event.kind, event.tags, "")
        verify_signature(event)
    admins = next(e for e in stored if e.kind == 39001)
    assert ["p", OWNER, "owner"] in admins.tags
    members = next(e for e in stored if e.kind == 39002)
    assert ["p", OWNER] in members.tags


def test_canonical_events_are_replaced(env):
    svc, _, events_repo, _, _, relay_pub = env
    _create_group(svc)
    svc.apply_event(_event(9002, OWNER, [["h", GROUP], ["name", "Renamed"]], created_at=200))
    metadata = events_repo.query_events(EventFilter(author=relay_pub, kind=39000))
    assert len(metadata) == 1
    assert ["name", "Renamed"] in metadata[0].tags


def test_mismatched_relay_pubkey_is_rejected(env, relay_keys):
    _, repo, events_repo, metrics, _, _ = env
    private_key, _ = relay_keys
    other_pub = schnorr.public_key(schnorr.generate_private_key())
    svc = GroupProjectionService(repo, events_repo, other_pub, private_key, None, metrics)
    with pytest.raises(ProjectionError, match="does not match relay pubkey"):
        _create_group(svc)


def test_edit_metadata_requires_permission(plain):
    svc, repo, _, _, _ = plain
    _create_group(svc)
    with pytest.raises(PermissionDeniedError, match="edit-metadata"):
        svc.apply_event(_event(9002, ALICE, [["h", GROUP], ["name", "Nope"]], created_at=200))
    assert repo.get_group(GROUP).name == "Town"


def test_edit_metadata_updates_flags(plain):
    svc, repo, _, _, _ = plain
    _create_group(svc, [["private"]])
    svc.apply_event(
        _event(9002, OWNER, [["h", GROUP], ["private", "false"], ["vetted"], ["about", "hi"]], created_at=200)
    )
    group = repo.get_group(GROUP)
    assert group.is_private is False
    assert group.is_vetted is True
    assert group.about == "hi"
    assert group.name == "Town"
    assert group.updated_at == 200


def test_edit_metadata_creates_missing_group(plain):
    svc, repo, _, _, _ = plain
    svc.apply_event(_event(9002, ALICE, [["h", "fresh"], ["name", "New"]], created_at=300))
    group = repo.get_group("fresh")
    assert group.name == "New"
    assert group.created_by == ALICE
    assert group.created_at == 300


def test_put_user_adds_member(plain):
    svc, repo, _, _, _ = plain
    _create_group(svc)
    svc.apply_event(_event(9000, OWNER, [["h", GROUP], ["p", ALICE]], created_at=200))
    role, exists = repo.get_member_role(GROUP, ALICE)
    assert exists is True
    assert role == "member"


def test_put_user_with_role(plain):
    svc, repo, _, _, _ = plain
    _create_group(svc)
    svc.apply_event(_event(9000, OWNER, [["h", GROUP], ["p", ALICE, "admin"]], created_at=200))
    assert repo.get_member_role(GROUP, ALICE) == ("admin", True)
    assert repo.is_admin(GROUP, ALICE) is True


def test_put_user_by_stranger_denied(plain):
    svc, repo, _, _, _ = plain
    _create_group(svc)
    with pytest.raises(PermissionDeniedError, match="add-user"):
        svc.apply_event(_event(9000, BOB, [["h", GROUP], ["p", ALICE]], created_at=200))
    assert repo.is_member(GROUP, ALICE) is False


def test_put_user_missing_p_tag(plain):
    svc, _, _, _, _ = plain
    _create_group(svc)
    with pytest.raises(ProjectionError, match="put-user missing p tag"):
        svc.apply_event(_event(9000, OWNER, [["h", GROUP]], created_at=200))


def test_remove_user_with_ban(plain):
    svc, repo, _, _, _ = plain
    _create_group(svc)
    svc.apply_event(_event(9000, OWNER, [["h", GROUP], ["p", ALICE]], created_at=200))
    svc.apply_event(
        _event(9001, OWNER, [["h", GROUP], ["p", ALICE], ["ban"], ["reason", "spam"]], created_at=300)
    )
    assert repo.is_member(GROUP, ALICE) is False
    bans = repo.list_bans(GROUP)
    assert [(b.pubkey, b.reason, b.expires_at) for b in bans] == [(ALICE, "spam", 0)]
    assert repo.is_banned(GROUP, ALICE) is True


def test_remove_user_missing_p_tag(plain):
    svc, _, _, _, _ = plain
    _create_group(svc)
    with pytest.raises(ProjectionError, match="remove-user missing p tag"):
        svc.apply_event(_event(9001, OWNER, [["h", GROUP]], created_at=200))


def test_join_request_auto_approved(plain):
    svc, repo, _, _, _ = plain
    _create_group(svc)
    svc.apply_event(_event(9021, ALICE, [["h", GROUP]], created_at=200))
    assert repo.get_member_role(GROUP, ALICE) == ("member", True)


def test_join_request_vetted_needs_approval(plain):
    svc, repo, _, metrics, _ = plain
    _create_group(svc, [["vetted"]])
    svc.apply_event(_event(9021, ALICE, [["h", GROUP]], created_at=200))
    assert repo.is_member(GROUP, ALICE) is False
    with pytest.raises(PermissionDeniedError):
        svc.approve_join_request(GROUP, ALICE, BOB, 300)
    assert repo.is_member(GROUP, ALICE) is False


def test_approve_join_request_emits_members(env):
    svc, repo, events_repo, metrics, _, relay_pub = env
    _create_group(svc, [["vetted"]])
    svc.apply_event(_event(9021, ALICE, [["h", GROUP]], created_at=200))
    svc.approve_join_request(GROUP, ALICE, OWNER, 300)
    assert repo.is_member(GROUP, ALICE) is True
    assert metrics.get("group_join_approved_total") == 1
    members = events_repo.query_events(EventFilter(author=relay_pub, kind=39002))
    assert len(members) == 1
    assert ["p", ALICE] in members[0].tags


def test_approve_without_signing_context_fails(plain):
    svc, repo, _, _, _ = plain
    _create_group(svc, [["vetted"]])
    with pytest.raises(ProjectionError):
        svc.approve_join_request(GROUP, ALICE, OWNER, 300)


def test_join_request_duplicate_and_banned(plain):
    svc, _, _, _, _ = plain
    _create_group(svc)
    with pytest.raises(ProjectionError, match="duplicate: user already member"):
        svc.apply_event(_event(9021, OWNER, [["h", GROUP]], created_at=200))
    svc.apply_event(_event(9001, OWNER, [["h", GROUP], ["p", BOB], ["ban"]], created_at=200))
    with pytest.raises(ProjectionError, match="user is banned"):
        svc.apply_event(_event(9021, BOB, [["h", GROUP]], created_at=300))


def test_join_request_mismatched_p_tag(plain):
    svc, _, _, _, _ = plain
    _create_group(svc)
    with pytest.raises(ProjectionError, match="must match event pubkey"):
        svc.apply_event(_event(9021, ALICE, [["h", GROUP], ["p", BOB]], created_at=200))


def test_leave_request_removes_member(plain):
    svc, repo, _, _, _ = plain
    _create_group(svc)
    svc.apply_event(_event(9021, ALICE, [["h", GROUP]], created_at=200))
    svc.apply_event(_event(9022, ALICE, [["h", GROUP]], created_at=300))
    assert repo.is_member(GROUP, ALICE) is False


def test_create_and_delete_role(plain):
    svc, repo, _, _, _ = plain
    _create_group(svc)
    svc.apply_event(
        _event(
            9003,
            OWNER,
            [["h", GROUP], ["role", "moderator"], ["permissions", "remove-user, delete-event"],
             ["description", "mods"]],
            created_at=200,
        )
    )
    roles = {r.role_name: r for r in repo.list_roles(GROUP)}
    assert roles["moderator"].permissions == ["remove-user", "delete-event"]
    assert roles["moderator"].description == "mods"
    svc.apply_event(_event(9004, OWNER, [["h", GROUP], ["role", "moderator"]], created_at=300))
    assert [r.role_name for r in repo.list_roles(GROUP)] == ["owner"]


def test_create_role_missing_name(plain):
    svc, _, _, _, _ = plain
    _create_group(svc)
    with pytest.raises(ProjectionError, match="role update missing role tag"):
        svc.apply_event(_event(9003, OWNER, [["h", GROUP]], created_at=200))


def test_custom_role_grants_permission(plain):
    svc, repo, _, _, _ = plain
    _create_group(svc)
    svc.apply_event(
        _event(9003, OWNER, [["h", GROUP], ["role", "moderator"], ["perm", "remove-user"]], created_at=200)
    )
    svc.apply_event(_event(9000, OWNER, [["h", GROUP], ["p", ALICE, "moderator"]], created_at=210))
    svc.apply_event(_event(9000, OWNER, [["h", GROUP], ["p", BOB]], created_at=220))
    svc.apply_event(_event(9001, ALICE, [["h", GROUP], ["p", BOB]], created_at=230))
    assert repo.is_member(GROUP, BOB) is False


def test_create_invite(plain):
    svc, repo, _, _, _ = plain
    _create_group(svc)
    svc.apply_event(
        _event(9009, OWNER, [["h", GROUP], ["code", "abc"], ["max_usage_count", "5"]], created_at=200)
    )
    invites = repo.list_invites(GROUP)
    assert [(i.code, i.max_usage_count, i.usage_count) for i in invites] == [("abc", 5, 0)]
    with pytest.raises(ProjectionError, match="invite event missing code"):
        svc.apply_event(_event(9009, OWNER, [["h", GROUP]], created_at=210))


def test_delete_group_closes_it(plain):
    svc, repo, _, _, _ = plain
    _create_group(svc)
    with pytest.raises(PermissionDeniedError):
        svc.apply_event(_event(9008, ALICE, [["h", GROUP]], created_at=200))
    svc.apply_event(_event(9008, OWNER, [["h", GROUP]], created_at=200))
    group = repo.get_group(GROUP)
    assert group.is_closed is True
    assert group.is_hidden is True


def test_moderation_delete_marks_event_deleted(plain):
    svc, _, events_repo, _, conn = plain
    _create_group(svc)
    message = _event(1, ALICE, [["h", GROUP]], created_at=150)
    events_repo.insert_event(message)
    svc.apply_event(message)
    svc.apply_event(_event(9005, OWNER, [["h", GROUP], ["e", message.id]], created_at=200))
    assert [e.id for e in events_repo.query_events(EventFilter(author=ALICE))] == []
    assert [e.id for e in events_repo.query_events(EventFilter(author=ALICE, include_deleted=True))] == [
        message.id
    ]
    reason = conn.execute(
        "SELECT reason FROM deleted_events WHERE event_id = ?", (message.id,)
    ).fetchone()[0]
    assert reason == "group moderation delete"


def test_apply_deletion_drops_group_association(plain):
    svc, repo, _, metrics, conn = plain
    repo.add_group_event(GroupEvent(group_id=GROUP, event_id="x1", created_at=5))
    svc.apply_deletion("x1")
    count = conn.execute("SELECT COUNT(*) FROM group_events WHERE event_id = 'x1'").fetchone()[0]
    assert count == 0
    assert metrics.get("group_projection_deletion_applied_total") == 1


def test_sync_skips_without_relay_signing_context(plain):
    svc, _, events_repo, _, _ = plain
    svc.sync_canonical_state_events(Event(kind=9007, created_at=1), GROUP, True, True)
    assert events_repo.query_events(EventFilter(include_deleted=True)) == []


def test_relay_only_kind_uses_d_tag(plain):
    svc, _, _, metrics, conn = plain
    event = _event(39000, "relay", [["d", GROUP]], created_at=100)
    svc.apply_event(event)
    assert metrics.get("group_projection_applied_total") == 1
    row = conn.execute("SELECT group_id FROM group_events WHERE event_id = ?", (event.id,)).fetchone()
    assert row[0] == GROUP