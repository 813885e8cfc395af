"""Policy and policy-assignment queries."""

from __future__ import annotations

from sqlalchemy import delete, select, union
from sqlalchemy.ext.asyncio import AsyncSession

from cerca.db.models import Policy, PolicyGroup, PolicyUser, UserGroup


async def get_policy(db: AsyncSession, policy_id: int) -> Policy | None:
    return await db.get(Policy, policy_id)


async def get_policy_by_name(db: AsyncSession, nom: str) -> Policy | None:
    result = await db.execute(select(Policy).where(Policy.nom == nom))
    return result.scalar_one_or_none()


async def list_policies(db: AsyncSession) -> list[Policy]:
    result = await db.execute(select(Policy).order_by(Policy.nom))
    return list(result.scalars())


async def list_policies_by_ids(db: AsyncSession, policy_ids: list[int]) -> list[Policy]:
    if not policy_ids:
        return []
    result = await db.execute(select(Policy).where(Policy.id.in_(policy_ids)).order_by(Policy.id))
    return list(result.scalars())


async def list_policy_ids_for_user(db: AsyncSession, user_id: int) -> list[int]:
    """Policies attached directly or through any of the user's groups, deduplicated."""
    direct = select(PolicyUser.policy_id.label("policy_id")).where(PolicyUser.user_id == user_id)
    via_groups = (
        select(PolicyGroup.policy_id.label("policy_id"))
        .join(UserGroup, UserGroup.group_id == PolicyGroup.group_id)
        .where(UserGroup.user_id == user_id)
    )
    result = await db.execute(select(union(direct, via_groups).subquery().c.policy_id))
    return sorted(set(result.scalars()))


async def list_user_assignments(db: AsyncSession) -> list[PolicyUser]:
    result = await db.execute(select(PolicyUser).order_by(PolicyUser.policy_id, PolicyUser.user_id))
    return list(result.scalars())


async def list_group_assignments(db: AsyncSession) -> list[PolicyGroup]:
    result = await db.execute(select(PolicyGroup).order_by(PolicyGroup.policy_id, PolicyGroup.group_id))
    return list(result.scalars())


async def assign_policy_to_user(db: AsyncSession, policy_id: int, user_id: int) -> bool:
    if await db.get(PolicyUser, (policy_id, user_id)) is not None:
        return False
    db.add(PolicyUser(policy_id=policy_id, user_id=user_id))
    await db.flush()
    return True


async def unassign_policy_from_user(db: AsyncSession, policy_id: int, user_id: int) -> bool:
    result = await db.execute(
        delete(PolicyUser).where(PolicyUser.policy_id == policy_id, PolicyUser.user_id == user_id)
    )
    return bool(result.rowcount)


async def assign_policy_to_group(db: AsyncSession, policy_id: int, group_id: int) -> bool:
    if await db.get(PolicyGroup, (policy_id, group_id)) is not None:
        return False
    db.add(PolicyGroup(policy_id=policy_id, group_id=group_id))
    await db.flush()
    return True


async def unassign_policy_from_group(db: AsyncSession, policy_id: int, group_id: int) -> bool:
    result = await db.execute(
        delete(PolicyGroup).where(PolicyGroup.policy_id == policy_id, PolicyGroup.group_id == group_id)
    )
    return bool(result.rowcount)
