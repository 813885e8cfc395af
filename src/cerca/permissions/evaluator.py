"""Policy evaluator: decides (user, permission key, target) → allow/deny.

Per-user grant snapshots are cached under a version number. Saving a policy or
changing an assignment calls :meth:`PolicyEvaluator.invalidate`, which swaps
in a fresh cache map instead of mutating the one readers may be holding.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from cerca.config import get_settings
from cerca.permissions import keys
from cerca.permissions.document import (
    AllowGlobal,
    AllowScoped,
    Deny,
    PolicyDocument,
    PolicyDocumentError,
    ScopeTargets,
    parse_policy_document,
)
from cerca.permissions.targets import PermissionTarget, TargetResolver
from cerca.repository import policies as policy_repo

logger = logging.getLogger(__name__)

ADMIN_POLICY_NAME = "admin"


@dataclass(frozen=True)
class ListScopeFilter:
    """Union of the scoped grants a user holds for one permission key."""

    has_global: bool = False
    targets: ScopeTargets = field(default_factory=ScopeTargets)

    @property
    def no_access(self) -> bool:
        return not self.has_global and self.targets.is_empty()


@dataclass(frozen=True)
class _UserGrants:
    version: int
    expires_at: float
    documents: tuple[PolicyDocument, ...]


@dataclass(frozen=True)
class _CacheState:
    version: int
    grants: dict[int, _UserGrants]
    documents: dict[tuple[int, str], PolicyDocument]


class PolicyEvaluator:
    """App-scoped evaluator with a versioned per-user grant cache."""

    def __init__(self, ttl_seconds: float = 600.0) -> None:
        self.ttl_seconds = ttl_seconds
        self.targets = TargetResolver(ttl=ttl_seconds)
        self._write_lock = threading.Lock()
        self._state = _CacheState(version=1, grants={}, documents={})

    @property
    def version(self) -> int:
        return self._state.version

    def invalidate(self) -> None:
        """Publish a new, empty cache version. Call after any policy or assignment change."""
        with self._write_lock:
            self._state = _CacheState(version=self._state.version + 1, grants={}, documents={})

    def invalidate_targets(self) -> None:
        self.targets.clear()

    # ------------------------------------------------------------------
    # Grant snapshots
    # ------------------------------------------------------------------

    async def documents_for_user(self, db: AsyncSession, user_id: int) -> tuple[PolicyDocument, ...]:
        state = self._state
        now = time.monotonic()
        cached = state.grants.get(user_id)
        if cached is not None and cached.version == state.version and cached.expires_at > now:
            return cached.documents

        policy_ids = await policy_repo.list_policy_ids_for_user(db, user_id)
        policies = await policy_repo.list_policies_by_ids(db, policy_ids)
        documents: list[PolicyDocument] = []
        for policy in policies:
            doc_key = (policy.id, policy.permisos or "")
            document = state.documents.get(doc_key)
            if document is None:
                try:
                    document = parse_policy_document(policy.permisos)
                except PolicyDocumentError as exc:
                    logger.warning("Ignoring malformed permission document of policy %s: %s", policy.id, exc)
                    document = PolicyDocument()
                if policy.nom.strip().lower() == ADMIN_POLICY_NAME and not document.admin:
                    document = PolicyDocument(admin=True, grants=document.grants)
                state.documents[doc_key] = document
            documents.append(document)

        snapshot = tuple(documents)
        state.grants[user_id] = _UserGrants(state.version, now + self.ttl_seconds, snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    async def has_permission(
        self,
        db: AsyncSession,
        user_id: int | None,
        permission_key: str,
        target: PermissionTarget | None = None,
    ) -> bool:
        """Deny wins, then admin or a global allow, then any scoped allow matching the target."""
        if not user_id or not keys.is_known_key(permission_key):
            return False
        documents = await self.documents_for_user(db, user_id)
        permissions = [doc.get(permission_key) for doc in documents]
        if any(isinstance(p, Deny) for p in permissions):
            return False
        if any(doc.admin for doc in documents) or any(isinstance(p, AllowGlobal) for p in permissions):
            return True
        scoped = [p.targets for p in permissions if isinstance(p, AllowScoped)]
        if not scoped or target is None or target.is_empty():
            return False
        resolved = await self.targets.resolve(db, target)
        return any(resolved.matches(targets) for targets in scoped)

    async def has_any_grant(self, db: AsyncSession, user_id: int | None, permission_key: str) -> bool:
        """True when the user holds the key globally or for at least one scope."""
        mask = await self.build_list_scope_filter(db, user_id, permission_key)
        return not mask.no_access

    async def build_list_scope_filter(
        self, db: AsyncSession, user_id: int | None, permission_key: str
    ) -> ListScopeFilter:
        if not user_id or not keys.is_known_key(permission_key):
            return ListScopeFilter()
        documents = await self.documents_for_user(db, user_id)
        permissions = [doc.get(permission_key) for doc in documents]
        if any(isinstance(p, Deny) for p in permissions):
            return ListScopeFilter()
        if any(doc.admin for doc in documents) or any(isinstance(p, AllowGlobal) for p in permissions):
            return ListScopeFilter(has_global=True)
        union = ScopeTargets()
        for permission in permissions:
            if isinstance(permission, AllowScoped):
                union = union.union(permission.targets)
        return ListScopeFilter(targets=union)

    async def permissions_for_user(self, db: AsyncSession, user_id: int | None) -> dict[str, bool]:
        """Coarse capability bundle: admin, moderator, and view/create/edit per domain."""
        bundle: dict[str, bool] = {
            "admin": False,
            "moderator": False,
            "policies": False,
            "points_admin": False,
            "achievements_admin": False,
            "cognoms_merge": False,
        }
        if not user_id:
            return bundle
        documents = await self.documents_for_user(db, user_id)
        bundle["admin"] = any(doc.admin for doc in documents)
        bundle["moderator"] = await self.has_any_grant(db, user_id, keys.MODERACIO_MODERATE)
        bundle["policies"] = await self.has_any_grant(db, user_id, keys.ADMIN_POLITIQUES)
        bundle["points_admin"] = await self.has_any_grant(db, user_id, keys.ADMIN_PUNTS_EDIT)
        bundle["achievements_admin"] = await self.has_any_grant(db, user_id, keys.ADMIN_ACHIEVEMENTS_EDIT)
        bundle["cognoms_merge"] = await self.has_any_grant(db, user_id, keys.ADMIN_COGNOMS_MERGE)
        for prefix in keys.DOMAIN_PREFIXES:
            for action in ("view", "create", "edit"):
                bundle[f"{prefix}.{action}"] = await self.has_any_grant(db, user_id, f"{prefix}.{action}")
        return bundle


_evaluator: PolicyEvaluator | None = None
_evaluator_lock = threading.Lock()


def get_policy_evaluator() -> PolicyEvaluator:
    """Return the app-scoped evaluator, creating it on first use."""
    global _evaluator  # noqa: PLW0603
    if _evaluator is None:
        with _evaluator_lock:
            if _evaluator is None:
                _evaluator = PolicyEvaluator(ttl_seconds=get_settings().policy_cache_ttl_seconds)
    return _evaluator


def reset_policy_evaluator() -> None:
    """Drop the app-scoped evaluator (tests, settings reload)."""
    global _evaluator  # noqa: PLW0603
    with _evaluator_lock:
        _evaluator = None
