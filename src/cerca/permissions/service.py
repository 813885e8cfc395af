"""Policy administration: document validation, saving and assignments."""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.db.models import Policy
from cerca.errors import Conflict, NotFound, ValidationError
from cerca.permissions import keys
from cerca.permissions.document import PolicyDocumentError, parse_policy_document
from cerca.repository import policies as policy_repo
from cerca.repository import users as user_repo

logger = logging.getLogger(__name__)


def normalize_document(permisos: str | dict[str, Any] | None) -> str:
    """Validate a permission document and return its canonical JSON text.

    Unknown permission keys are rejected at save time.
    """
    if permisos is None or (isinstance(permisos, str) and not permisos.strip()):
        return "{}"
    try:
        data = json.loads(permisos) if isinstance(permisos, str) else permisos
        document = parse_policy_document(data)
    except (json.JSONDecodeError, PolicyDocumentError) as exc:
        raise ValidationError("policy.document.invalid", reason=str(exc)) from exc
    unknown = sorted(k for k in document.grants if not keys.is_known_key(k))
    if unknown:
        raise ValidationError("policy.document.invalid", reason=", ".join(unknown))
    return json.dumps(data, ensure_ascii=False, sort_keys=True)


async def save_policy(
    db: AsyncSession,
    *,
    policy_id: int | None,
    nom: str,
    descripcio: str | None,
    permisos: str | dict[str, Any] | None,
) -> Policy:
    nom = nom.strip()
    if not nom:
        raise ValidationError("error.validation")
    document = normalize_document(permisos)
    if policy_id:
        policy = await policy_repo.get_policy(db, policy_id)
        if policy is None:
            raise NotFound()
        policy.nom = nom
        policy.descripcio = descripcio
        policy.permisos = document
    else:
        policy = Policy(nom=nom, descripcio=descripcio, permisos=document)
        db.add(policy)
    try:
        await db.flush()
    except IntegrityError as exc:
        await db.rollback()
        raise Conflict("error.conflict") from exc
    logger.info("Saved policy %s (%s)", policy.id, policy.nom)
    return policy


async def change_user_assignment(db: AsyncSession, policy_id: int, user_id: int, action: str) -> bool:
    if await policy_repo.get_policy(db, policy_id) is None or await user_repo.get_user_by_id(db, user_id) is None:
        raise NotFound()
    if action == "remove":
        return await policy_repo.unassign_policy_from_user(db, policy_id, user_id)
    if action == "add":
        return await policy_repo.assign_policy_to_user(db, policy_id, user_id)
    raise ValidationError("error.validation")


async def change_group_assignment(db: AsyncSession, policy_id: int, group_id: int, action: str) -> bool:
    if await policy_repo.get_policy(db, policy_id) is None or await user_repo.get_group(db, group_id) is None:
        raise NotFound()
    if action == "remove":
        return await policy_repo.unassign_policy_from_group(db, policy_id, group_id)
    if action == "add":
        return await policy_repo.assign_policy_to_group(db, policy_id, group_id)
    raise ValidationError("error.validation")
