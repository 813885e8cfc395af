"""Policy and group administration endpoints plus the caller's capability bundle."""

from __future__ import annotations

import json

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.auth.dependencies import get_request_context
from cerca.context import RequestContext
from cerca.database import get_session
from cerca.db.models import Policy
from cerca.errors import NotFound
from cerca.middleware.csrf import verify_csrf
from cerca.permissions import keys
from cerca.permissions.dependencies import require_permission_key
from cerca.permissions.evaluator import get_policy_evaluator
from cerca.permissions.schemas import (
    AssignmentsResponse,
    ChangedResponse,
    GroupAssignmentRequest,
    GroupCreateRequest,
    GroupMemberRequest,
    GroupResponse,
    PolicyResponse,
    PolicySaveRequest,
    UserAssignmentRequest,
)
from cerca.permissions.service import change_group_assignment, change_user_assignment, save_policy
from cerca.repository import policies as policy_repo
from cerca.repository import users as user_repo

router = APIRouter(tags=["Policies"])

_manage = require_permission_key(keys.ADMIN_POLITIQUES)


def _policy_response(policy: Policy) -> PolicyResponse:
    try:
        permisos = json.loads(policy.permisos or "{}")
    except json.JSONDecodeError:
        permisos = {}
    return PolicyResponse(id=policy.id, nom=policy.nom, descripcio=policy.descripcio, permisos=permisos)


@router.get("/admin/politiques", response_model=list[PolicyResponse])
async def list_policies(
    _ctx: RequestContext = Depends(_manage),
    db: AsyncSession = Depends(get_session),
) -> list[PolicyResponse]:
    return [_policy_response(p) for p in await policy_repo.list_policies(db)]


@router.post("/admin/politiques", response_model=PolicyResponse, dependencies=[Depends(verify_csrf)])
async def save_policy_endpoint(
    body: PolicySaveRequest,
    _ctx: RequestContext = Depends(_manage),
    db: AsyncSession = Depends(get_session),
) -> PolicyResponse:
    """Create or update a policy. The permission document is validated before saving."""
    policy = await save_policy(
        db, policy_id=body.id, nom=body.nom, descripcio=body.descripcio, permisos=body.permisos
    )
    await db.commit()
    get_policy_evaluator().invalidate()
    return _policy_response(policy)


@router.get("/admin/politiques/assignacions", response_model=AssignmentsResponse)
async def list_assignments(
    _ctx: RequestContext = Depends(_manage),
    db: AsyncSession = Depends(get_session),
) -> AssignmentsResponse:
    users = await policy_repo.list_user_assignments(db)
    groups = await policy_repo.list_group_assignments(db)
    return AssignmentsResponse(
        users=[{"politica_id": a.policy_id, "user_id": a.user_id} for a in users],
        groups=[{"politica_id": a.policy_id, "grup_id": a.group_id} for a in groups],
    )


@router.post(
    "/admin/politiques/assignacions/user", response_model=ChangedResponse, dependencies=[Depends(verify_csrf)]
)
async def assign_user(
    body: UserAssignmentRequest,
    _ctx: RequestContext = Depends(_manage),
    db: AsyncSession = Depends(get_session),
) -> ChangedResponse:
    changed = await change_user_assignment(db, body.politica_id, body.user_id, body.action)
    await db.commit()
    get_policy_evaluator().invalidate()
    return ChangedResponse(changed=changed)


@router.post(
    "/admin/politiques/assignacions/grup", response_model=ChangedResponse, dependencies=[Depends(verify_csrf)]
)
async def assign_group(
    body: GroupAssignmentRequest,
    _ctx: RequestContext = Depends(_manage),
    db: AsyncSession = Depends(get_session),
) -> ChangedResponse:
    changed = await change_group_assignment(db, body.politica_id, body.grup_id, body.action)
    await db.commit()
    get_policy_evaluator().invalidate()
    return ChangedResponse(changed=changed)


@router.post("/admin/grups", response_model=GroupResponse, dependencies=[Depends(verify_csrf)])
async def create_group(
    body: GroupCreateRequest,
    _ctx: RequestContext = Depends(_manage),
    db: AsyncSession = Depends(get_session),
) -> GroupResponse:
    group = await user_repo.create_group(db, body.nom, body.descripcio)
    await db.commit()
    return GroupResponse(id=group.id, nom=group.nom, descripcio=group.descripcio)


@router.post("/admin/grups/{group_id}/membres", response_model=ChangedResponse, dependencies=[Depends(verify_csrf)])
async def add_group_member(
    group_id: int,
    body: GroupMemberRequest,
    _ctx: RequestContext = Depends(_manage),
    db: AsyncSession = Depends(get_session),
) -> ChangedResponse:
    if await user_repo.get_group(db, group_id) is None or await user_repo.get_user_by_id(db, body.user_id) is None:
        raise NotFound()
    changed = await user_repo.add_user_to_group(db, body.user_id, group_id)
    await db.commit()
    get_policy_evaluator().invalidate()
    return ChangedResponse(changed=changed)


@router.get("/api/me/permisos")
async def my_permissions(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_session),
) -> dict[str, bool]:
    """Coarse capability bundle for the caller (all false for anonymous users)."""
    return await get_policy_evaluator().permissions_for_user(db, ctx.user_id)
