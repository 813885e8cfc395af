"""Policy evaluator: scoped grants, deny precedence, admin, list masks, cache versions."""

from __future__ import annotations

import pytest
import pytest_asyncio

from cerca.db.models import Arxiu, Municipi, NivellAdministratiu, Pais
from cerca.permissions.evaluator import get_policy_evaluator
from cerca.permissions.targets import PermissionTarget


@pytest_asyncio.fixture
async def arxius(db_session):
    """Two archives: A10 in municipality 42 and A11 in municipality 99."""
    db = db_session
    db.add_all(
        [
            Municipi(id=42, nom="Vic", moderation_state="publicat"),
            Municipi(id=99, nom="Olot", moderation_state="publicat"),
        ]
    )
    await db.flush()
    db.add_all(
        [
            Arxiu(id=10, nom="Arxiu Episcopal", municipi_id=42, moderation_state="publicat"),
            Arxiu(id=11, nom="Arxiu Comarcal", municipi_id=99, moderation_state="publicat"),
        ]
    )
    await db.flush()
    return db


class TestScopedGrants:
    """A scoped grant reaches objects anchored under its territory."""

    @pytest.mark.asyncio
    async def test_municipi_scope_matches_arxiu_inside(self, arxius, make_user, grant_policy):
        db = arxius
        user = await make_user(db)
        await grant_policy(
            db, user.id, {"documentals.arxius.edit": "allow-scoped", "targets": {"municipi_id": [42]}}
        )
        evaluator = get_policy_evaluator()

        assert await evaluator.has_permission(db, user.id, "documentals.arxius.edit", PermissionTarget(arxiu_id=10))
        assert not await evaluator.has_permission(
            db, user.id, "documentals.arxius.edit", PermissionTarget(arxiu_id=11)
        )

    @pytest.mark.asyncio
    async def test_scoped_grant_needs_a_target(self, arxius, make_user, grant_policy):
        db = arxius
        user = await make_user(db)
        await grant_policy(db, user.id, {"persones.edit": "allow-scoped", "targets": {"municipi_id": [42]}})
        evaluator = get_policy_evaluator()

        assert not await evaluator.has_permission(db, user.id, "persones.edit")
        assert not await evaluator.has_permission(db, user.id, "persones.edit", PermissionTarget())

    @pytest.mark.asyncio
    async def test_provincia_scope_walks_municipi_levels(self, db_session, make_user, grant_policy):
        db = db_session
        pais = Pais(codi_iso2="ES", nom="Espanya", moderation_state="publicat")
        db.add(pais)
        await db.flush()
        provincia = NivellAdministratiu(pais_id=pais.id, nivel=3, nom_nivell="Barcelona", moderation_state="publicat")
        db.add(provincia)
        await db.flush()
        municipi = Municipi(nom="Manlleu", nivell_3_id=provincia.id, moderation_state="publicat")
        db.add(municipi)
        await db.flush()

        user = await make_user(db)
        await grant_policy(db, user.id, {"persones.edit": "allow-scoped", "targets": {"provincia_id": [provincia.id]}})
        evaluator = get_policy_evaluator()

        target = PermissionTarget(municipi_id=municipi.id)
        assert await evaluator.has_permission(db, user.id, "persones.edit", target)

    @pytest.mark.asyncio
    async def test_pais_scope_reached_through_nivell(self, db_session, make_user, grant_policy):
        db = db_session
        pais = Pais(codi_iso2="AD", nom="Andorra", moderation_state="publicat")
        db.add(pais)
        await db.flush()
        nivell = NivellAdministratiu(pais_id=pais.id, nivel=1, nom_nivell="Andorra", moderation_state="publicat")
        db.add(nivell)
        await db.flush()
        municipi = Municipi(nom="Canillo", nivell_1_id=nivell.id, moderation_state="publicat")
        db.add(municipi)
        await db.flush()

        user = await make_user(db)
        await grant_policy(db, user.id, {"persones.create": "allow-scoped", "targets": {"pais_id": [pais.id]}})

        assert await get_policy_evaluator().has_permission(
            db, user.id, "persones.create", PermissionTarget(municipi_id=municipi.id)
        )

    @pytest.mark.asyncio
    async def test_adding_an_allow_policy_never_removes_access(self, arxius, make_user, grant_policy):
        db = arxius
        user = await make_user(db)
        await grant_policy(
            db,
            user.id,
            {"documentals.arxius.edit": "allow-scoped", "persones.edit": "allow-global", "targets": {"municipi_id": [42]}},
        )
        evaluator = get_policy_evaluator()
        checks = [
            ("documentals.arxius.edit", PermissionTarget(arxiu_id=10)),
            ("documentals.arxius.edit", PermissionTarget(arxiu_id=11)),
            ("persones.edit", None),
            ("persones.create", None),
            ("cognoms.edit", None),
        ]
        before = [await evaluator.has_permission(db, user.id, key, target) for key, target in checks]

        await grant_policy(
            db, user.id, {"documentals.arxius.edit": "allow-scoped", "cognoms.edit": "allow-global", "targets": {"municipi_id": [99]}}
        )
        after = [await evaluator.has_permission(db, user.id, key, target) for key, target in checks]

        assert before == [True, False, True, False, False]
        assert after == [True, True, True, False, True]
        assert all(a or not b for b, a in zip(before, after))


class TestPrecedence:
    """Deny wins over every allow; admin allows everything else."""

    @pytest.mark.asyncio
    async def test_deny_wins_across_policies(self, arxius, make_user, grant_policy):
        db = arxius
        user = await make_user(db)
        await grant_policy(db, user.id, {"persones.edit": "allow-global"})
        await grant_policy(db, user.id, {"persones.edit": "deny"})

        assert not await get_policy_evaluator().has_permission(db, user.id, "persones.edit")

    @pytest.mark.asyncio
    async def test_deny_wins_over_admin(self, arxius, make_user, grant_policy):
        db = arxius
        user = await make_user(db)
        await grant_policy(db, user.id, {"admin": True})
        await grant_policy(db, user.id, {"cognoms.edit": "deny"})
        evaluator = get_policy_evaluator()

        assert not await evaluator.has_permission(db, user.id, "cognoms.edit")
        assert await evaluator.has_permission(db, user.id, "cognoms.view")

    @pytest.mark.asyncio
    async def test_policy_named_admin_grants_admin(self, arxius, make_user, grant_policy):
        db = arxius
        user = await make_user(db)
        await grant_policy(db, user.id, {}, nom="admin")

        assert await get_policy_evaluator().has_permission(db, user.id, "admin.cognoms.merge")

    @pytest.mark.asyncio
    async def test_unknown_key_is_denied_even_for_admin(self, arxius, make_user, grant_policy):
        db = arxius
        user = await make_user(db)
        await grant_policy(db, user.id, {"admin": True})

        assert not await get_policy_evaluator().has_permission(db, user.id, "planetes.edit")

    @pytest.mark.asyncio
    async def test_anonymous_is_denied(self, arxius):
        assert not await get_policy_evaluator().has_permission(arxius, None, "persones.view")

    @pytest.mark.asyncio
    async def test_malformed_policy_is_ignored(self, arxius, make_user, grant_policy):
        db = arxius
        user = await make_user(db)
        await grant_policy(db, user.id, {"persones.edit": "allow-global"})
        bad = await grant_policy(db, user.id, {"persones.view": "allow-global"})
        bad.permisos = "{broken"
        await db.flush()
        get_policy_evaluator().invalidate()
        evaluator = get_policy_evaluator()

        assert await evaluator.has_permission(db, user.id, "persones.edit")
        assert not await evaluator.has_permission(db, user.id, "persones.view")


class TestListScopeFilter:
    @pytest.mark.asyncio
    async def test_global_mask(self, arxius, make_user, grant_policy):
        db = arxius
        user = await make_user(db)
        await grant_policy(db, user.id, {"persones.view": "allow-global"})

        mask = await get_policy_evaluator().build_list_scope_filter(db, user.id, "persones.view")
        assert mask.has_global
        assert not mask.no_access

    @pytest.mark.asyncio
    async def test_scoped_mask_is_union(self, arxius, make_user, grant_policy):
        db = arxius
        user = await make_user(db)
        await grant_policy(db, user.id, {"persones.view": "allow-scoped", "targets": {"municipi_id": [42]}})
        await grant_policy(db, user.id, {"persones.view": "allow-scoped", "targets": {"arxiu_id": [11]}})

        mask = await get_policy_evaluator().build_list_scope_filter(db, user.id, "persones.view")
        assert not mask.has_global
        assert mask.targets.municipi_ids == frozenset({42})
        assert mask.targets.arxiu_ids == frozenset({11})

    @pytest.mark.asyncio
    async def test_no_grant_means_no_access(self, arxius, make_user):
        user = await make_user(arxius)
        mask = await get_policy_evaluator().build_list_scope_filter(arxius, user.id, "persones.view")
        assert mask.no_access


class TestCacheVersion:
    @pytest.mark.asyncio
    async def test_invalidate_picks_up_new_grants(self, arxius, make_user, grant_policy):
        db = arxius
        user = await make_user(db)
        evaluator = get_policy_evaluator()
        assert not await evaluator.has_permission(db, user.id, "wiki.revert")

        version = evaluator.version
        await grant_policy(db, user.id, {"wiki.revert": "allow-global"})

        assert evaluator.version == version + 1
        assert await evaluator.has_permission(db, user.id, "wiki.revert")
