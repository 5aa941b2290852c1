"""Projection of group events into queryable group state and canonical state events."""

from __future__ import annotations

from typing import Optional

from cityrelay.db import NotFoundError
from cityrelay.events_repo import EventsRepo
from cityrelay.group_repo import GroupRepo
from cityrelay.group_tags import (
    KIND_CREATE_GROUP,
    KIND_CREATE_INVITE,
    KIND_CREATE_ROLE,
    KIND_DELETE_EVENT,
    KIND_DELETE_GROUP,
    KIND_DELETE_ROLE,
    KIND_EDIT_METADATA,
    KIND_GROUP_ADMINS,
    KIND_GROUP_MEMBERS,
    KIND_GROUP_METADATA,
    KIND_GROUP_ROLES,
    KIND_JOIN_REQUEST,
    KIND_LEAVE_REQUEST,
    KIND_PUT_USER,
    KIND_REMOVE_USER,
    admin_assignment_changed,
    canonical_state_kinds_for_source,
    default_string,
    first_tag_value,
    group_members_state_tags,
    group_metadata_state_tags,
    group_roles_state_tags,
    has_tag,
    join_request_pubkey,
    normalize_role_name,
    owner_role_permissions,
    parse_csv_tag,
    parse_int_tag,
    parse_put_user_tag,
    relay_only_kind,
    role_grants_admin,
    tag_bool_value,
    truncate_geohash,
)
from cityrelay.group_vetting import GroupVettingService
from cityrelay.metrics import Metrics
from cityrelay.models import (
    DeletedEvent,
    Event,
    Group,
    GroupBan,
    GroupEvent,
    GroupInvite,
    GroupJoinRequest,
    GroupMember,
    GroupRole,
    Permission,
)
from cityrelay.validation import sign_event

_FLAG_FIELDS = (
    ("private", "is_private"),
    ("restricted", "is_restricted"),
    ("vetted", "is_vetted"),
    ("hidden", "is_hidden"),
    ("closed", "is_closed"),
)


class ProjectionError(ValueError):
    """A group event could not be applied to the projection."""


class PermissionDeniedError(ProjectionError):
    """The author of a group event lacks the permission it needs."""


class GroupProjectionService:
    """Applies group-related events to the group projection tables."""

    def __init__(
        self,
        repo: GroupRepo,
        events_repo: Optional[EventsRepo],
        relay_pubkey: str,
        relay_private_key: str,
        vetting: Optional[GroupVettingService],
        metrics: Optional[Metrics],
    ) -> None:
        self._repo = repo
        self._events_repo = events_repo
        self._relay_pubkey = relay_pubkey or ""
        self._relay_private_key = relay_private_key or ""
        self._vetting = vetting if vetting is not None else GroupVettingService(repo)
        self._metrics = metrics if metrics is not None else Metrics()

    def apply_event(self, event: Event) -> None:
        """Apply one event; events without a group reference are ignored."""
        group_id = first_tag_value(event.tags, "h")
        if not group_id and relay_only_kind(event.kind):
            group_id = first_tag_value(event.tags, "d")
        if not group_id:
            return

        membership_changed = False
        admins_changed = False
        kind = event.kind

        if kind == KIND_CREATE_GROUP:
            self._create_group(event, group_id)
            membership_changed = True
            admins_changed = True
        elif kind == KIND_EDIT_METADATA:
            self._edit_metadata(event, group_id)
        elif kind == KIND_CREATE_ROLE:
            self._create_role(event, group_id)
        elif kind == KIND_DELETE_ROLE:
            self._require_permission(group_id, event.pubkey, Permission.DELETE_ROLE)
            role_name = first_tag_value(event.tags, "role") or first_tag_value(event.tags, "d")
            if not role_name:
                raise ProjectionError("delete-role missing role tag")
            self._repo.delete_role(group_id, role_name)
        elif kind == KIND_PUT_USER:
            admins_changed = self._put_user(event, group_id)
            membership_changed = True
        elif kind == KIND_REMOVE_USER:
            self._remove_user(event, group_id)
            membership_changed = True
        elif kind == KIND_CREATE_INVITE:
            self._create_invite(event, group_id)
        elif kind == KIND_JOIN_REQUEST:
            membership_changed = self._join_request(event, group_id)
        elif kind == KIND_LEAVE_REQUEST:
            self._repo.remove_member(group_id, event.pubkey)
            self._repo.delete_join_request(group_id, event.pubkey)
            membership_changed = True
        elif kind == KIND_DELETE_GROUP:
            self._require_permission(group_id, event.pubkey, Permission.DELETE_GROUP)
            self._repo.close_group(group_id, event.created_at, event.pubkey)
        elif kind == KIND_DELETE_EVENT:
            self._moderation_delete(event, group_id)

        self.sync_canonical_state_events(event, group_id, membership_changed, admins_changed)
        self._repo.add_group_event(
            GroupEvent(group_id=group_id, event_id=event.id, created_at=event.created_at)
        )
        self._metrics.inc("group_projection_applied_total")

    def approve_join_request(self, group_id: str, pubkey: str, approved_by: str, approved_at: int) -> None:
        """Admit a pending requester as a member on behalf of approved_by."""
        self._require_permission(group_id, approved_by, Permission.ADD_USER)
        self._repo.upsert_member(
            GroupMember(
                group_id=group_id,
                pubkey=pubkey,
                added_at=approved_at,
                added_by=approved_by,
                role_name="member",
                promoted_at=approved_at,
                promoted_by=approved_by,
            )
        )
        self._repo.delete_join_request(group_id, pubkey)
        self._emit_members_state(group_id, approved_at)
        self._metrics.inc("group_join_approved_total")

    def apply_deletion(self, event_id: str) -> None:
        """Drop the group associations of a deleted event."""
        self._repo.remove_group_event_by_event_id(event_id)
        self._metrics.inc("group_projection_deletion_applied_total")

    def sync_canonical_state_events(
        self, source: Event, group_id: str, membership_changed: bool, admins_changed: bool
    ) -> None:
        """Re-emit the relay-signed state events affected by a source event.

        Does nothing unless storage and relay keys are configured.
        """
        if not self._can_sign():
            return
        emitters = {
            KIND_GROUP_METADATA: self._emit_metadata_state,
            KIND_GROUP_ADMINS: self._emit_admins_state,
            KIND_GROUP_MEMBERS: self._emit_members_state,
            KIND_GROUP_ROLES: self._emit_roles_state,
        }
        for state_kind in canonical_state_kinds_for_source(source.kind, membership_changed, admins_changed):
            emitters[state_kind](group_id, source.created_at)

    def _can_sign(self) -> bool:
        return (
            self._events_repo is not None
            and bool(self._relay_pubkey.strip())
            and bool(self._relay_private_key.strip())
        )

    def _require_permission(self, group_id: str, pubkey: str, permission) -> None:
        name = str(permission)
        if self._repo.has_permission(group_id, pubkey, name):
            return
        if not name.strip():
            raise PermissionDeniedError("not authorized")
        raise PermissionDeniedError(f"not authorized: missing {name} permission")

    def _create_group(self, event: Event, group_id: str) -> None:
        flags = {field: tag_bool_value(event.tags, tag)[0] for tag, field in _FLAG_FIELDS}
        self._repo.upsert_group(
            Group(
                group_id=group_id,
                name=first_tag_value(event.tags, "name"),
                about=first_tag_value(event.tags, "about"),
                picture=first_tag_value(event.tags, "picture"),
                geohash=truncate_geohash(first_tag_value(event.tags, "g")),
                created_at=event.created_at,
                created_by=event.pubkey,
                updated_at=event.created_at,
                updated_by=event.pubkey,
                **flags,
            )
        )
        self._repo.upsert_role(
            GroupRole(
                group_id=group_id,
                role_name="owner",
                description="Group owner",
                permissions=owner_role_permissions(),
                created_at=event.created_at,
                created_by=event.pubkey,
                updated_at=event.created_at,
                updated_by=event.pubkey,
            )
        )
        self._repo.upsert_member(
            GroupMember(
                group_id=group_id,
                pubkey=event.pubkey,
                added_at=event.created_at,
                added_by=event.pubkey,
                role_name="owner",
            )
        )

    def _edit_metadata(self, event: Event, group_id: str) -> None:
        try:
            group = self._repo.get_group(group_id)
        except NotFoundError:
            group = Group(group_id=group_id, created_at=event.created_at, created_by=event.pubkey)
        else:
            self._require_permission(group_id, event.pubkey, Permission.EDIT_METADATA)

        for tag in ("name", "about", "picture"):
            value = first_tag_value(event.tags, tag)
            if value:
                setattr(group, tag, value)
        geohash = first_tag_value(event.tags, "g")
        if geohash:
            group.geohash = truncate_geohash(geohash)
        for tag, field in _FLAG_FIELDS:
            value, found = tag_bool_value(event.tags, tag)
            if found:
                setattr(group, field, value)
        group.updated_at = event.created_at
        group.updated_by = event.pubkey
        if group.created_at == 0:
            group.created_at = event.created_at
            group.created_by = event.pubkey
        self._repo.upsert_group(group)

    def _create_role(self, event: Event, group_id: str) -> None:
        self._require_permission(group_id, event.pubkey, Permission.CREATE_ROLE)
        role_name = first_tag_value(event.tags, "role") or first_tag_value(event.tags, "d")
        if not role_name:
            raise ProjectionError("role update missing role tag")
        permissions = parse_csv_tag(first_tag_value(event.tags, "permissions"))
        if not permissions:
            permissions = parse_csv_tag(first_tag_value(event.tags, "perm"))
        self._repo.upsert_role(
            GroupRole(
                group_id=group_id,
                role_name=role_name,
                description=first_tag_value(event.tags, "description"),
                permissions=permissions,
                created_at=event.created_at,
                created_by=event.pubkey,
                updated_at=event.created_at,
                updated_by=event.pubkey,
            )
        )

    def _put_user(self, event: Event, group_id: str) -> bool:
        try:
            member_key, requested_role = parse_put_user_tag(event.tags)
        except ValueError as exc:
            raise ProjectionError(str(exc)) from exc
        if not requested_role:
            requested_role = first_tag_value(event.tags, "role").strip()
        if not requested_role:
            requested_role = "member"

        previous_role, exists = self._repo.get_member_role(group_id, member_key)
        required = Permission.PROMOTE_USER if exists else Permission.ADD_USER
        self._require_permission(group_id, event.pubkey, required)
        if requested_role != "member":
            self._require_permission(group_id, event.pubkey, Permission.PROMOTE_USER)
        admins_changed = admin_assignment_changed(
            previous_role, requested_role, self._role_permissions_by_name(group_id)
        )

        self._repo.upsert_member(
            GroupMember(
                group_id=group_id,
                pubkey=member_key,
                added_at=event.created_at,
                added_by=event.pubkey,
                role_name=requested_role,
                promoted_at=event.created_at,
                promoted_by=event.pubkey,
            )
        )
        self._repo.delete_join_request(group_id, member_key)
        return admins_changed

    def _remove_user(self, event: Event, group_id: str) -> None:
        self._require_permission(group_id, event.pubkey, Permission.REMOVE_USER)
        member_key = first_tag_value(event.tags, "p")
        if not member_key:
            raise ProjectionError("remove-user missing p tag")
        self._repo.remove_member(group_id, member_key)
        if has_tag(event.tags, "ban"):
            reason = first_tag_value(event.tags, "reason").strip() or first_tag_value(event.tags, "ban").strip()
            self._repo.upsert_ban(
                GroupBan(
                    group_id=group_id,
                    pubkey=member_key,
                    reason=reason,
                    banned_at=event.created_at,
                    banned_by=event.pubkey,
                    expires_at=parse_int_tag(first_tag_value(event.tags, "expires_at")),
                )
            )

    def _create_invite(self, event: Event, group_id: str) -> None:
        self._require_permission(group_id, event.pubkey, Permission.CREATE_INVITE)
        code = first_tag_value(event.tags, "code") or first_tag_value(event.tags, "invite")
        if not code:
            raise ProjectionError("invite event missing code")
        self._repo.upsert_invite(
            GroupInvite(
                group_id=group_id,
                code=code,
                expires_at=parse_int_tag(first_tag_value(event.tags, "expires_at")),
                max_usage_count=parse_int_tag(first_tag_value(event.tags, "max_usage_count")),
                usage_count=parse_int_tag(first_tag_value(event.tags, "usage_count")),
                created_at=event.created_at,
                created_by=event.pubkey,
            )
        )

    def _join_request(self, event: Event, group_id: str) -> bool:
        try:
            request_key = join_request_pubkey(event)
        except ValueError as exc:
            raise ProjectionError(str(exc)) from exc
        if self._repo.is_member(group_id, request_key):
            raise ProjectionError("duplicate: user already member")
        if self._repo.is_banned(group_id, request_key):
            raise ProjectionError("user is banned")

        if self._vetting.can_auto_approve(group_id, request_key):
            self._repo.upsert_member(
                GroupMember(
                    group_id=group_id,
                    pubkey=request_key,
                    added_at=event.created_at,
                    added_by=event.pubkey,
                    role_name="member",
                )
            )
            return True
        self._repo.upsert_join_request(
            GroupJoinRequest(group_id=group_id, pubkey=request_key, created_at=event.created_at)
        )
        return False

    def _moderation_delete(self, event: Event, group_id: str) -> None:
        self._require_permission(group_id, event.pubkey, Permission.DELETE_EVENT)
        event_id = first_tag_value(event.tags, "e").strip()
        if not event_id:
            return
        self._repo.remove_group_event_by_event_id(event_id)
        if self._events_repo is None:
            return
        try:
            self._events_repo.get_event(event_id)
        except NotFoundError:
            return
        reason = first_tag_value(event.tags, "reason").strip() or "group moderation delete"
        self._events_repo.mark_deleted(
            DeletedEvent(
                event_id=event_id,
                deleted_at=event.created_at,
                deleted_by=event.pubkey,
                reason=reason,
            )
        )

    def _role_permissions_by_name(self, group_id: str) -> dict[str, list[str]]:
        return {
            normalize_role_name(role.role_name): list(role.permissions)
            for role in self._repo.list_roles(group_id)
        }

    def _emit_metadata_state(self, group_id: str, created_at: int) -> None:
        group = self._repo.get_group(group_id)
        self._upsert_canonical(KIND_GROUP_METADATA, group_id, created_at, group_metadata_state_tags(group))

    def _emit_members_state(self, group_id: str, created_at: int) -> None:
        members = self._repo.list_members(group_id)
        self._upsert_canonical(
            KIND_GROUP_MEMBERS, group_id, created_at, group_members_state_tags(group_id, members)
        )

    def _emit_roles_state(self, group_id: str, created_at: int) -> None:
        roles = self._repo.list_roles(group_id)
        self._upsert_canonical(KIND_GROUP_ROLES, group_id, created_at, group_roles_state_tags(group_id, roles))

    def _emit_admins_state(self, group_id: str, created_at: int) -> None:
        group = self._repo.get_group(group_id)
        members = self._repo.list_members(group_id)
        permissions_by_role = self._role_permissions_by_name(group_id)

        admin_roles: dict[str, str] = {}
        for member in members:
            role_name = default_string(member.role_name, "member")
            normalized = normalize_role_name(role_name)
            if role_grants_admin(normalized, permissions_by_role.get(normalized)):
                admin_roles[member.pubkey] = role_name
        if group.created_by:
            admin_roles.setdefault(group.created_by, "owner")

        tags = [["d", group_id]]
        tags.extend(
            ["p", pubkey, default_string(admin_roles[pubkey], "owner")] for pubkey in sorted(admin_roles)
        )
        self._upsert_canonical(KIND_GROUP_ADMINS, group_id, created_at, tags)

    def _upsert_canonical(self, kind: int, group_id: str, created_at: int, tags: list[list[str]]) -> None:
        if not self._can_sign():
            raise ProjectionError(f"sign canonical state event kind {kind}: relay signing is not configured")
        try:
            signed = sign_event(self._relay_private_key, created_at, kind, tags, "")
        except ValueError as exc:
            raise ProjectionError(f"sign canonical state event kind {kind}: {exc}") from exc
        if signed.pubkey.lower() != self._relay_pubkey.lower():
            raise ProjectionError("signed canonical state event pubkey does not match relay pubkey")

        event = Event(
            id=signed.id,
            pubkey=signed.pubkey.lower(),
            created_at=created_at,
            kind=kind,
            tags=[list(tag) for tag in tags],
            content="",
            sig=signed.sig,
        )
        assert self._events_repo is not None
        self._events_repo.upsert_parameterized_replaceable_event(event, group_id)
        self._repo.add_group_event(GroupEvent(group_id=group_id, event_id=event.id, created_at=created_at))