"""Surname redirects, merge suggestions, search and heatmap."""

from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy import update

from cerca.activity.rules import PENDENT, VALIDAT
from cerca.cognoms import service as cognoms
from cerca.db.models import Cognom, CognomRedirectSuggestion, CognomVariant, Municipi, Persona, UserActivity
from cerca.errors import Conflict, NotFound, ValidationError
from cerca.repository import cognoms as cognom_repo


@pytest_asyncio.fixture
async def surnames(db_session):
    """Published surnames 5, 8, 12 and 20 with redirects 5→8 and 8→12."""
    db = db_session
    db.add_all(
        [
            Cognom(id=5, forma="Puig", moderation_state="publicat"),
            Cognom(id=8, forma="Puigg", moderation_state="publicat"),
            Cognom(id=12, forma="Puig i Serra", moderation_state="publicat"),
            Cognom(id=20, forma="Serra", moderation_state="publicat"),
        ]
    )
    await db.flush()
    await cognom_repo.set_cognom_redirect(db, 5, 8, "variant", None)
    await cognom_repo.set_cognom_redirect(db, 8, 12, "variant", None)
    return db


class TestResolveCanonical:
    @pytest.mark.asyncio
    async def test_follows_chain(self, surnames):
        assert await cognoms.resolve_canonical(surnames, 5) == (12, True)
        assert await cognoms.resolve_canonical(surnames, 8) == (12, True)

    @pytest.mark.asyncio
    async def test_canonical_is_not_redirected(self, surnames):
        assert await cognoms.resolve_canonical(surnames, 12) == (12, False)

    @pytest.mark.asyncio
    async def test_unknown_id_resolves_to_itself(self, surnames):
        assert await cognoms.resolve_canonical(surnames, 999) == (999, False)


class TestMaterializeMerge:
    @pytest.mark.asyncio
    async def test_cycle_is_rejected(self, surnames, make_user):
        admin = await make_user(surnames)
        with pytest.raises(Conflict) as exc_info:
            await cognoms.materialize_merge(surnames, admin.id, 12, 5, None)
        assert exc_info.value.message_key == "cognoms.redirect.cycle"

    @pytest.mark.asyncio
    async def test_cycle_through_a_long_chain_is_rejected(self, db_session, make_user):
        db = db_session
        admin = await make_user(db)
        ids = list(range(100, 126))
        db.add_all([Cognom(id=i, forma=f"Variant {i}", moderation_state="publicat") for i in ids])
        await db.flush()
        for left, right in zip(ids, ids[1:]):
            await cognom_repo.set_cognom_redirect(db, left, right, "variant", None)

        with pytest.raises(Conflict) as exc_info:
            await cognoms.materialize_merge(db, admin.id, ids[-1], ids[0], None)
        assert exc_info.value.message_key == "cognoms.redirect.cycle"
        assert await cognom_repo.get_cognom_redirect(db, ids[-1]) is None

    @pytest.mark.asyncio
    async def test_self_merge_is_rejected(self, surnames, make_user):
        admin = await make_user(surnames)
        with pytest.raises(ValidationError):
            await cognoms.materialize_merge(surnames, admin.id, 20, 20, None)

    @pytest.mark.asyncio
    async def test_missing_surname(self, surnames, make_user):
        admin = await make_user(surnames)
        with pytest.raises(NotFound):
            await cognoms.materialize_merge(surnames, admin.id, 20, 404, None)

    @pytest.mark.asyncio
    async def test_merge_overwrites_outgoing_redirect(self, surnames, make_user):
        db = surnames
        admin = await make_user(db)
        redirect = await cognoms.materialize_merge(db, admin.id, 8, 20, "error")
        assert redirect.to_id == 20
        assert await cognoms.resolve_canonical(db, 5) == (20, True)

    @pytest.mark.asyncio
    async def test_materialize_many_and_delete(self, surnames, make_user):
        db = surnames
        admin = await make_user(db)
        db.add(Cognom(id=30, forma="Pujol", moderation_state="publicat"))
        await db.flush()

        assert await cognoms.materialize_many(db, admin.id, 20, [30, 12], None) == 2
        assert await cognoms.resolve_canonical(db, 5) == (20, True)

        await cognoms.delete_redirect(db, 12)
        assert await cognoms.resolve_canonical(db, 5) == (12, True)
        with pytest.raises(NotFound):
            await cognoms.delete_redirect(db, 12)


class TestParseIdList:
    def test_string(self):
        assert cognoms.parse_id_list("3, 4;5  6") == [3, 4, 5, 6]

    def test_drops_invalid_and_duplicates(self):
        assert cognoms.parse_id_list("4,x,0,-2,4,7") == [4, 7]

    def test_iterable(self):
        assert cognoms.parse_id_list([9, "2", 9]) == [9, 2]

    def test_none(self):
        assert cognoms.parse_id_list(None) == []

    def test_merge_reason(self):
        assert cognoms.merge_reason("variant", "grafia antiga") == "variant - grafia antiga"
        assert cognoms.merge_reason(" ", "") is None
        assert cognoms.merge_reason("variant", None) == "variant"


class TestSuggestMerge:
    """Suggestions target the canonical surname and skip ids that cannot be merged."""

    @pytest.mark.asyncio
    async def test_creates_pending_suggestions(self, surnames, make_user, ctx_for):
        db = surnames
        user = await make_user(db)
        db.add(Cognom(id=30, forma="Pujol", moderation_state="publicat"))
        await db.flush()

        created = await cognoms.suggest_merge(db, ctx_for(user), 5, [30, 20], "variant")

        assert created == 2
        suggestions = await cognom_repo.list_suggestions(db, created_by=user.id)
        assert {(s.from_id, s.to_id) for s in suggestions} == {(30, 12), (20, 12)}
        assert all(s.moderation_state == "pendent" for s in suggestions)

    @pytest.mark.asyncio
    async def test_skips_canonical_redirected_missing_and_duplicates(self, surnames, make_user, ctx_for):
        db = surnames
        user = await make_user(db)
        ctx = ctx_for(user)

        # 12 is the target itself, 8 already redirects, 404 does not exist.
        assert await cognoms.suggest_merge(db, ctx, 12, [12, 8, 404], None) == 0
        assert await cognoms.suggest_merge(db, ctx, 12, [20], None) == 1
        assert await cognoms.suggest_merge(db, ctx, 12, [20], None) == 0

    @pytest.mark.asyncio
    async def test_missing_target(self, surnames, make_user, ctx_for):
        user = await make_user(surnames)
        with pytest.raises(NotFound):
            await cognoms.suggest_merge(surnames, ctx_for(user), 404, [20], None)

    @pytest.mark.asyncio
    async def test_empty_alias_list(self, surnames, make_user, ctx_for):
        user = await make_user(surnames)
        with pytest.raises(ValidationError):
            await cognoms.suggest_merge(surnames, ctx_for(user), 12, [], None)

    @pytest.mark.asyncio
    async def test_accepting_materializes_and_validates_activity(self, surnames, make_user, ctx_for):
        db = surnames
        user = await make_user(db)
        admin = await make_user(db)
        await cognoms.suggest_merge(db, ctx_for(user), 12, [20], None)
        suggestion = (await cognom_repo.list_suggestions(db, created_by=user.id))[0]

        await cognoms.moderate_suggestion(db, admin.id, suggestion.id, accept=True)

        assert suggestion.moderation_state == "publicat"
        assert await cognoms.resolve_canonical(db, 20) == (12, True)
        activity = await db.get(UserActivity, 1)
        assert activity.object_type == cognoms.MERGE_OBJECT_TYPE
        assert activity.status == VALIDAT
        with pytest.raises(ValidationError):
            await cognoms.moderate_suggestion(db, admin.id, suggestion.id, accept=False)

    @pytest.mark.asyncio
    async def test_rejecting_keeps_surname_canonical(self, surnames, make_user, ctx_for):
        db = surnames
        user = await make_user(db)
        admin = await make_user(db)
        await cognoms.suggest_merge(db, ctx_for(user), 12, [20], None)
        suggestion = (await cognom_repo.list_suggestions(db, created_by=user.id))[0]

        await cognoms.moderate_suggestion(db, admin.id, suggestion.id, accept=False)

        assert suggestion.moderation_state == "rebutjat"
        assert await cognoms.resolve_canonical(db, 20) == (20, False)
        activity = await db.get(UserActivity, 1)
        assert activity.status != PENDENT

    @pytest.mark.asyncio
    async def test_suggestion_settled_elsewhere_is_not_materialized(self, surnames, make_user, ctx_for):
        db = surnames
        user = await make_user(db)
        admin = await make_user(db)
        await cognoms.suggest_merge(db, ctx_for(user), 12, [20], None)
        suggestion = (await cognom_repo.list_suggestions(db, created_by=user.id))[0]
        table = CognomRedirectSuggestion.__table__
        await db.execute(update(table).where(table.c.id == suggestion.id).values(moderation_state="rebutjat"))

        with pytest.raises(ValidationError):
            await cognoms.moderate_suggestion(db, admin.id, suggestion.id, accept=True)
        assert await cognoms.resolve_canonical(db, 20) == (20, False)


class TestSearchAndHeatmap:
    @pytest.mark.asyncio
    async def test_search_returns_canonical_ids(self, surnames):
        db = surnames
        db.add(CognomVariant(cognom_id=20, variant="Puigserra", moderation_state="publicat"))
        await db.flush()

        results = await cognoms.search(db, "puig")

        ids = [r["id"] for r in results]
        assert ids.count(12) == 1
        assert 20 in ids
        assert {"id": 12, "forma": "Puig i Serra"} in results

    @pytest.mark.asyncio
    async def test_empty_query(self, surnames):
        assert await cognoms.search(surnames, "  ") == []

    @pytest.mark.asyncio
    async def test_heatmap_counts_aliases(self, surnames):
        db = surnames
        db.add(Municipi(id=42, nom="Vic", latitud=41.93, longitud=2.25, moderation_state="publicat"))
        await db.flush()
        db.add_all(
            [
                Persona(nom="Joan", cognom1="Puig", any_naixement=1850, municipi_id=42, moderation_state="publicat"),
                Persona(nom="Anna", cognom2="puig i serra", any_naixement=1870, municipi_id=42, moderation_state="publicat"),
                Persona(nom="Pere", cognom1="Puig", any_naixement=1950, municipi_id=42, moderation_state="publicat"),
                Persona(nom="Maria", cognom1="Puig", any_naixement=1860, municipi_id=42, moderation_state="pendent"),
            ]
        )
        await db.flush()

        result = await cognoms.heatmap(db, 5, 1800, 1900)

        assert result["cognom_id"] == 12
        assert result["points"] == [{"municipi_id": 42, "name": "Vic", "lat": 41.93, "lon": 2.25, "w": 2}]

    @pytest.mark.asyncio
    async def test_heatmap_inverted_range(self, surnames):
        with pytest.raises(ValidationError):
            await cognoms.heatmap(surnames, 12, 1900, 1800)
