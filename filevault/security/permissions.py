"""
FileVault Permissions: effective access of a user on an entity.

Resolution order:
    1. entity.owner_id == user_id              → owner
    2. a direct share grant for the user       → its permission (read / write)
    3. the nearest grant on an ancestor
       container (folder shares cover contents) → its permission
    4. otherwise                               → none

Administrative roles never reach the evaluator: require_access() lets them
through before resolution. That override is role-based, not a grant.

Required levels per operation (OPERATION_ACCESS):
    read : get, download, list versions, list children, breadcrumbs
    write: update content, rename, move, soft-delete, create or move inside
    owner: share, unshare, restore, purge, restore to version
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional, Sequence

from filevault.documents.models import AccessLevel
from filevault.engine.context import RequestContext
from filevault.engine.errors import ForbiddenError

logger = logging.getLogger("filevault.security.permissions")

OPERATION_ACCESS: Dict[str, AccessLevel] = {
    "get": AccessLevel.READ,
    "download": AccessLevel.READ,
    "list_versions": AccessLevel.READ,
    "list_children": AccessLevel.READ,
    "breadcrumbs": AccessLevel.READ,
    "create_in": AccessLevel.WRITE,
    "move_into": AccessLevel.WRITE,
    "update_content": AccessLevel.WRITE,
    "rename": AccessLevel.WRITE,
    "move": AccessLevel.WRITE,
    "soft_delete": AccessLevel.WRITE,
    "share": AccessLevel.OWNER,
    "unshare": AccessLevel.OWNER,
    "restore": AccessLevel.OWNER,
    "purge": AccessLevel.OWNER,
    "restore_version": AccessLevel.OWNER,
}


def _grant_level(entity: Any, user_id: str) -> Optional[AccessLevel]:
    """The permission a direct grant on ``entity`` gives ``user_id``, if any."""
    for grant in getattr(entity, "shares", None) or ():
        if grant.user_id == user_id:
            permission = getattr(grant.permission, "value", grant.permission)
            return AccessLevel(permission)
    return None


class PermissionEvaluator:
    """
    Stateless resolver over already-loaded records.

    Works on anything exposing ``owner_id`` and ``shares`` (a list of objects
    with ``user_id`` / ``permission``): ORM EntityRecord rows or Entity models.
    """

    def __init__(self, inherit_grants: bool = True):
        self._inherit_grants = inherit_grants

    def effective_access(
        self,
        entity: Any,
        user_id: str,
        ancestors: Sequence[Any] = (),
    ) -> AccessLevel:
        """
        Resolve the access ``user_id`` holds on ``entity``.

        Args:
            entity: The target record.
            user_id: The requesting identity.
            ancestors: The entity's container chain, nearest first. Only
                consulted when no direct grant exists.
        """
        if entity.owner_id == user_id:
            return AccessLevel.OWNER

        level = _grant_level(entity, user_id)
        if level is not None:
            return level

        if self._inherit_grants:
            for ancestor in ancestors:
                level = _grant_level(ancestor, user_id)
                if level is not None:
                    return level

        return AccessLevel.NONE

    def has_access(
        self,
        ctx: RequestContext,
        entity: Any,
        required: AccessLevel,
        ancestors: Sequence[Any] = (),
    ) -> bool:
        if ctx.is_admin:
            return True
        return self.effective_access(entity, ctx.user_id, ancestors).satisfies(required)

    def require_access(
        self,
        ctx: RequestContext,
        entity: Any,
        operation: str,
        ancestors: Sequence[Any] = (),
        required: Optional[AccessLevel] = None,
    ) -> AccessLevel:
        """
        Check that ``ctx`` may perform ``operation`` on ``entity``.

        Returns:
            The effective access level (OWNER for admins).

        Raises:
            ForbiddenError: the user's access is below the required level.
        """
        required = required or OPERATION_ACCESS[operation]
        if ctx.is_admin:
            return AccessLevel.OWNER

        actual = self.effective_access(entity, ctx.user_id, ancestors)
        if not actual.satisfies(required):
            logger.info(
                f"Denied {operation} on '{entity.id}' for user {ctx.user_id}: "
                f"has {actual.value}, needs {required.value}"
            )
            raise ForbiddenError(
                f"'{operation}' requires {required.value} access",
                request_id=ctx.request_id,
                entity_id=entity.id,
                operation=operation,
                user_id=ctx.user_id,
                required_access=required.value,
                actual_access=actual.value,
            )
        return actual

    def filter_visible(
        self,
        ctx: RequestContext,
        entities: Iterable[Any],
        ancestors_of: Optional[Any] = None,
    ) -> list:
        """
        Keep only entities ``ctx`` can read. ``ancestors_of`` is an optional
        callable returning an entity's ancestor chain.
        """
        visible = []
        for entity in entities:
            chain = ancestors_of(entity) if ancestors_of is not None else ()
            if self.has_access(ctx, entity, AccessLevel.READ, chain):
                visible.append(entity)
        return visible
