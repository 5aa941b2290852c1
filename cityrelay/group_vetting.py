"""Membership rules for vetted groups."""

from __future__ import annotations

from cityrelay.db import NotFoundError
from cityrelay.group_repo import GroupRepo


class GroupVettingService:
    """Decides whether a join request may be approved automatically."""

    def __init__(self, repo: GroupRepo) -> None:
        self._repo = repo

    def join_requires_approval(self, group_id: str) -> bool:
        """Return True for vetted or unknown groups."""
        try:
            group = self._repo.get_group(group_id)
        except NotFoundError:
            return True
        return group.is_vetted

    def can_auto_approve(self, group_id: str, pubkey: str) -> bool:
        """Return whether pubkey may join without approval."""
        if self.join_requires_approval(group_id):
            return False
        return not self._repo.is_banned(group_id, pubkey)