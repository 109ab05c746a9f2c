"""
Permission Service — DB-driven RBAC with cache.

Evaluation is deterministic and deny-by-default:
  - a user's permissions are the union of the codenames granted to their roles
  - superuser roles pass every check
  - the system actor (automatic transitions) is never permission-gated

``PermissionChecker`` is the seam the workflow engine consumes; tests swap
it for a stub with the same two methods.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

from admissions.models import db
from admissions.models.auth import (
    Permission,
    Role,
    RolePermission,
    User,
    UserRole,
)

logger = logging.getLogger(__name__)

CACHE_TTL = 300  # 5 minutes

# Cache key: user_id
_permission_cache: dict[int, tuple[float, set[str]]] = {}
_cache_lock = threading.Lock()

SUPERUSER_ROLES = {"admin"}


@dataclass(frozen=True)
class Actor:
    """Who is performing a workflow operation."""

    user_id: int | None = None
    name: str = "system"
    is_system: bool = False

    @classmethod
    def system(cls, name: str = "system") -> "Actor":
        return cls(user_id=None, name=name, is_system=True)

    @classmethod
    def for_user(cls, user: User) -> "Actor":
        return cls(user_id=user.id, name=user.display_name, is_system=False)

    @property
    def label(self) -> str:
        return self.name or (f"user:{self.user_id}" if self.user_id is not None else "anonymous")


# ── Cache ────────────────────────────────────────────────────────────────────

def _get_cached(key: int) -> Optional[set[str]]:
    with _cache_lock:
        entry = _permission_cache.get(key)
        if entry is None:
            return None
        cached_at, perms = entry
        if time.time() - cached_at > CACHE_TTL:
            del _permission_cache[key]
            return None
        return perms


def _set_cached(key: int, perms: set[str]) -> None:
    with _cache_lock:
        _permission_cache[key] = (time.time(), perms)


def invalidate_cache(user_id: int) -> None:
    with _cache_lock:
        _permission_cache.pop(user_id, None)


def invalidate_all_cache() -> None:
    with _cache_lock:
        _permission_cache.clear()


# ── Queries ──────────────────────────────────────────────────────────────────

def get_user_role_names(user_id: int) -> list[str]:
    rows = (
        db.session.query(Role.name)
        .join(UserRole, UserRole.role_id == Role.id)
        .filter(UserRole.user_id == user_id)
        .all()
    )
    return sorted({r[0] for r in rows})


def get_user_permissions(user_id: int) -> set[str]:
    cached = _get_cached(user_id)
    if cached is not None:
        return cached

    rows = (
        db.session.query(Permission.codename)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .join(UserRole, UserRole.role_id == RolePermission.role_id)
        .filter(UserRole.user_id == user_id)
        .distinct()
        .all()
    )
    perms = {r[0] for r in rows}
    _set_cached(user_id, perms)
    return perms


def has_permission(user_id: int, codename: str) -> bool:
    if any(r in SUPERUSER_ROLES for r in get_user_role_names(user_id)):
        return True
    return codename in get_user_permissions(user_id)


def get_known_permissions() -> set[str]:
    """All permission codenames in the catalogue (used by the workflow validator)."""
    return {r[0] for r in db.session.query(Permission.codename).all()}


def get_user_ids_with_role(role_name: str) -> list[int]:
    """Active users holding *role_name*, ordered by id."""
    rows = (
        db.session.query(User.id)
        .join(UserRole, UserRole.user_id == User.id)
        .join(Role, Role.id == UserRole.role_id)
        .filter(Role.name == role_name, User.status == "active")
        .order_by(User.id)
        .all()
    )
    return [r[0] for r in rows]


class PermissionChecker:
    """Answers permission questions about an ``Actor`` for the workflow engine."""

    def has_permission(self, actor: Actor, codename: str) -> bool:
        if actor.is_system:
            return True
        if actor.user_id is None:
            return False
        return has_permission(actor.user_id, codename)

    def missing_permissions(self, actor: Actor, codenames) -> list[str]:
        """Codenames from *codenames* the actor lacks, in declared order."""
        return [c for c in (codenames or []) if not self.has_permission(actor, c)]
