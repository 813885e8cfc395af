"""Wiki proposals on published entities, their history, versions, reverts and moderation."""

from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy import func, select, update

from cerca.activity.rules import ANULAT, PENDENT, VALIDAT
from cerca.config import get_settings
from cerca.db.models import Persona, UserActivity, WikiChange
from cerca.entities.registry import get_adapter
from cerca.entities.service import create_entity, update_entity
from cerca.errors import AuthorizationDenied, NotFound, PendingUserLimit, RateLimited, ValidationError
from cerca.moderation import service as moderation
from cerca.repository import wiki as wiki_repo
from cerca.wiki import service as wiki_service
from cerca.wiki.snapshot import decode_metadata, diff_snapshots


@pytest_asyncio.fixture
async def people(db_session, make_user, grant_policy):
    """Published persona #7, an editor (U2) and a moderator (U3)."""
    db = db_session
    editor = await make_user(db, "editor")
    moderator = await make_user(db, "moderador")
    await grant_policy(db, editor.id, {"persones.edit": "allow-global", "persones.create": "allow-global"})
    await grant_policy(
        db,
        moderator.id,
        {"persones.edit": "allow-global", "moderacio.moderate": "allow-global", "moderacio.view": "allow-global"},
    )
    db.add(Persona(id=7, nom="Joan", cognom1="Puig", moderation_state="publicat"))
    await db.flush()
    return db, editor, moderator


async def _propose(db, ctx, persona, payload, caller_key="u:test"):
    outcome = await update_entity(db, ctx, get_adapter("persona"), persona, payload, caller_key=caller_key)
    assert outcome.proposed
    return outcome.change_id


class TestProposalLifecycle:
    """A published persona is only written when a moderator approves the change."""

    @pytest.mark.asyncio
    async def test_propose_then_approve(self, people, ctx_for):
        db, editor, moderator = people
        persona = await db.get(Persona, 7)

        change_id = await _propose(db, ctx_for(editor), persona, {"cognom1": "Puig i Serra"})

        change = await wiki_repo.get_wiki_change(db, change_id)
        meta = decode_metadata(change.change_metadata)
        assert change.moderation_state == "pendent"
        assert meta.before["cognom1"] == "Puig"
        assert meta.after["cognom1"] == "Puig i Serra"
        assert persona.cognom1 == "Puig"

        result = await moderation.moderate_change(db, ctx_for(moderator), change_id, approve=True)

        assert result.moderation_state == "publicat"
        assert persona.nom == "Joan"
        assert persona.cognom1 == "Puig i Serra"
        assert persona.moderation_state == "publicat"
        assert change.moderation_state == "publicat"
        assert change.moderated_by == moderator.id

    @pytest.mark.asyncio
    async def test_author_activity_follows_the_change(self, people, ctx_for):
        db, editor, moderator = people
        persona = await db.get(Persona, 7)
        approved = await _propose(db, ctx_for(editor), persona, {"cognom1": "Serra"})
        rejected = await _propose(db, ctx_for(editor), persona, {"ofici": "pagès"})

        await moderation.moderate_change(db, ctx_for(moderator), approved, approve=True)
        await moderation.moderate_change(db, ctx_for(moderator), rejected, approve=False, reason="sense font")

        rows = (
            await db.execute(select(UserActivity).where(UserActivity.user_id == editor.id).order_by(UserActivity.id))
        ).scalars().all()
        assert [r.status for r in rows] == [VALIDAT, ANULAT]
        own = (
            await db.execute(select(UserActivity.action).where(UserActivity.user_id == moderator.id))
        ).scalars().all()
        assert sorted(own) == ["aprovar", "rebutjar"]
        change = await wiki_repo.get_wiki_change(db, rejected)
        assert change.moderation_reason == "sense font"
        assert persona.ofici is None

    @pytest.mark.asyncio
    async def test_transitions_only_from_pendent(self, people, ctx_for):
        db, editor, moderator = people
        persona = await db.get(Persona, 7)
        change_id = await _propose(db, ctx_for(editor), persona, {"cognom1": "Serra"})
        await moderation.moderate_change(db, ctx_for(moderator), change_id, approve=False)

        with pytest.raises(ValidationError):
            await moderation.moderate_change(db, ctx_for(moderator), change_id, approve=True)

    @pytest.mark.asyncio
    async def test_editor_cannot_moderate(self, people, ctx_for):
        db, editor, _ = people
        persona = await db.get(Persona, 7)
        change_id = await _propose(db, ctx_for(editor), persona, {"cognom1": "Serra"})

        with pytest.raises(AuthorizationDenied):
            await moderation.moderate_change(db, ctx_for(editor), change_id, approve=True)

    @pytest.mark.asyncio
    async def test_empty_change_is_rejected(self, people, ctx_for):
        db, editor, _ = people
        persona = await db.get(Persona, 7)
        with pytest.raises(ValidationError):
            await update_entity(db, ctx_for(editor), get_adapter("persona"), persona, {"nom": "Joan"}, caller_key="u:x")

    @pytest.mark.asyncio
    async def test_invalid_value_is_rejected(self, people, ctx_for):
        db, editor, _ = people
        persona = await db.get(Persona, 7)
        with pytest.raises(ValidationError):
            await update_entity(db, ctx_for(editor), get_adapter("persona"), persona, {"sexe": "X"}, caller_key="u:x")


class TestEntityModeration:
    @pytest.mark.asyncio
    async def test_create_then_approve(self, people, ctx_for):
        db, editor, moderator = people
        persona = await create_entity(db, ctx_for(editor), get_adapter("persona"), {"nom": "Anna", "sexe": "D"})
        assert persona.moderation_state == "pendent"

        result = await moderation.moderate_entity(db, ctx_for(moderator), "persona", persona.id, approve=True)

        assert result.moderation_state == "publicat"
        assert persona.moderated_by == moderator.id
        with pytest.raises(ValidationError):
            await moderation.moderate_entity(db, ctx_for(moderator), "persona", persona.id, approve=False)

    @pytest.mark.asyncio
    async def test_reject_keeps_reason(self, people, ctx_for):
        db, editor, moderator = people
        persona = await create_entity(db, ctx_for(editor), get_adapter("persona"), {"nom": "Anna"})

        await moderation.moderate_entity(
            db, ctx_for(moderator), "persona", persona.id, approve=False, reason="duplicada"
        )

        assert persona.moderation_state == "rebutjat"
        assert persona.moderation_reason == "duplicada"

    @pytest.mark.asyncio
    async def test_unknown_object_type(self, people, ctx_for):
        db, _, moderator = people
        with pytest.raises(ValidationError):
            await moderation.moderate_entity(db, ctx_for(moderator), "planeta", 1, approve=True)

    @pytest.mark.asyncio
    async def test_queue_lists_pending_items(self, people, ctx_for):
        db, editor, moderator = people
        persona = await db.get(Persona, 7)
        await create_entity(db, ctx_for(editor), get_adapter("persona"), {"nom": "Anna"})
        change_id = await _propose(db, ctx_for(editor), persona, {"cognom1": "Serra"})

        queue = await moderation.pending_queue(db, ctx_for(moderator))

        assert [e["values"]["nom"] for e in queue["entities"]] == ["Anna"]
        assert [c["id"] for c in queue["changes"]] == [change_id]
        assert queue["changes"][0]["object_id"] == 7
        assert queue["raw_changes"] == []


class TestHistoryAndVersions:
    @pytest.mark.asyncio
    async def test_pending_change_hidden_from_others(self, people, make_user, ctx_for):
        db, editor, moderator = people
        persona = await db.get(Persona, 7)
        change_id = await _propose(db, ctx_for(editor), persona, {"cognom1": "Serra"})
        stranger = await make_user(db)
        adapter = get_adapter("persona")

        assert [h["id"] for h in await wiki_service.list_history(db, ctx_for(editor), adapter, persona)] == [change_id]
        assert [h["id"] for h in await wiki_service.list_history(db, ctx_for(moderator), adapter, persona)] == [change_id]
        assert await wiki_service.list_history(db, ctx_for(stranger), adapter, persona) == []
        with pytest.raises(NotFound):
            await wiki_service.resolve_version(db, ctx_for(stranger), adapter, persona, str(change_id))

    @pytest.mark.asyncio
    async def test_history_row_lists_changed_fields(self, people, ctx_for):
        db, editor, _ = people
        persona = await db.get(Persona, 7)
        await _propose(db, ctx_for(editor), persona, {"cognom1": "Serra", "ofici": "pagès"})

        rows = await wiki_service.list_history(db, ctx_for(editor), get_adapter("persona"), persona)
        assert rows[0]["fields"] == ["cognom1", "ofici"]
        assert rows[0]["change_type"] == "form"

    @pytest.mark.asyncio
    async def test_version_tokens(self, people, ctx_for):
        db, editor, moderator = people
        persona = await db.get(Persona, 7)
        adapter = get_adapter("persona")
        ctx = ctx_for(moderator)

        # Without any published change, "published" is the live row.
        assert (await wiki_service.resolve_version(db, ctx, adapter, persona, "published"))["cognom1"] == "Puig"

        first = await _propose(db, ctx_for(editor), persona, {"cognom1": "Serra"})
        await moderation.moderate_change(db, ctx, first, approve=True)
        pending = await _propose(db, ctx_for(editor), persona, {"cognom1": "Pujol"})

        assert (await wiki_service.resolve_version(db, ctx, adapter, persona, "current"))["cognom1"] == "Serra"
        assert (await wiki_service.resolve_version(db, ctx, adapter, persona, "published"))["cognom1"] == "Serra"
        assert (await wiki_service.resolve_version(db, ctx, adapter, persona, str(pending)))["cognom1"] == "Pujol"

        rows = await wiki_service.compare_versions(db, ctx, adapter, persona, "current", str(pending))
        changed = [r for r in rows if r.changed]
        assert [(r.label, r.before, r.after) for r in changed] == [("cognom1", "Serra", "Pujol")]

    @pytest.mark.asyncio
    async def test_bad_version_token(self, people, ctx_for):
        db, _, moderator = people
        persona = await db.get(Persona, 7)
        with pytest.raises(ValidationError):
            await wiki_service.resolve_version(db, ctx_for(moderator), get_adapter("persona"), persona, "ahir")
        with pytest.raises(ValidationError):
            await wiki_service.resolve_version(db, ctx_for(moderator), get_adapter("persona"), persona, "999")


class TestRevert:
    @pytest.mark.asyncio
    async def test_revert_proposes_earlier_state(self, people, ctx_for):
        db, editor, moderator = people
        persona = await db.get(Persona, 7)
        adapter = get_adapter("persona")
        first = await _propose(db, ctx_for(editor), persona, {"cognom1": "Serra"})
        await moderation.moderate_change(db, ctx_for(moderator), first, approve=True)
        second = await _propose(db, ctx_for(editor), persona, {"cognom1": "Pujol"})
        await moderation.moderate_change(db, ctx_for(moderator), second, approve=True)

        revert_id = await wiki_service.revert(db, ctx_for(editor), adapter, persona, first, "vandalisme", caller_key="u:r")

        change = await wiki_repo.get_wiki_change(db, revert_id)
        meta = decode_metadata(change.change_metadata)
        assert change.change_type == "revert"
        assert change.moderation_state == "pendent"
        assert meta.source_change_id == first
        assert meta.reason == "vandalisme"
        assert meta.after["cognom1"] == "Serra"
        assert persona.cognom1 == "Pujol"

        await moderation.moderate_change(db, ctx_for(moderator), revert_id, approve=True)
        assert persona.cognom1 == "Serra"

    @pytest.mark.asyncio
    async def test_revert_to_current_state_is_empty(self, people, ctx_for):
        db, editor, moderator = people
        persona = await db.get(Persona, 7)
        first = await _propose(db, ctx_for(editor), persona, {"cognom1": "Serra"})
        await moderation.moderate_change(db, ctx_for(moderator), first, approve=True)

        with pytest.raises(ValidationError):
            await wiki_service.revert(db, ctx_for(editor), get_adapter("persona"), persona, first, None, caller_key="u:r")

    @pytest.mark.asyncio
    async def test_revert_needs_revert_or_edit_permission(self, people, make_user, ctx_for):
        db, editor, moderator = people
        persona = await db.get(Persona, 7)
        first = await _propose(db, ctx_for(editor), persona, {"cognom1": "Serra"})
        await moderation.moderate_change(db, ctx_for(moderator), first, approve=True)
        stranger = await make_user(db)

        with pytest.raises(AuthorizationDenied):
            await wiki_service.revert(db, ctx_for(stranger), get_adapter("persona"), persona, first, None, caller_key="u:s")


class TestGuardrails:
    @pytest.mark.asyncio
    async def test_thirty_first_proposal_is_rate_limited(self, people, ctx_for, monkeypatch):
        monkeypatch.setenv("CG_WIKI_PENDING_PER_USER", "100")
        get_settings.cache_clear()
        db, editor, _ = people
        persona = await db.get(Persona, 7)
        ctx = ctx_for(editor)

        for n in range(30):
            await _propose(db, ctx, persona, {"ofici": f"ofici {n}"}, caller_key="u:burst")
        with pytest.raises(RateLimited) as exc_info:
            await _propose(db, ctx, persona, {"ofici": "ofici 30"}, caller_key="u:burst")

        assert exc_info.value.message_key == "wiki.guardrail.rate"
        count = await db.scalar(select(func.count(WikiChange.id)))
        assert count == 30

    @pytest.mark.asyncio
    async def test_pending_limit_per_user(self, people, ctx_for, monkeypatch):
        monkeypatch.setenv("CG_WIKI_PENDING_PER_USER", "2")
        get_settings.cache_clear()
        db, editor, _ = people
        persona = await db.get(Persona, 7)

        await _propose(db, ctx_for(editor), persona, {"ofici": "a"})
        await _propose(db, ctx_for(editor), persona, {"ofici": "b"})
        with pytest.raises(PendingUserLimit):
            await _propose(db, ctx_for(editor), persona, {"ofici": "c"})

        pending = await db.scalar(select(func.count(UserActivity.id)).where(UserActivity.status == PENDENT))
        assert pending == 2


class TestApplyOrdering:
    """Approval writes exactly the approved snapshot, in whatever order changes are moderated."""

    @pytest.mark.asyncio
    async def test_older_change_approved_first(self, people, ctx_for, caplog):
        db, editor, moderator = people
        persona = await db.get(Persona, 7)
        older = await _propose(db, ctx_for(editor), persona, {"cognom1": "Serra"})
        newer = await _propose(db, ctx_for(editor), persona, {"ofici": "pagès"})

        with caplog.at_level("WARNING", logger="cerca.wiki.service"):
            await moderation.moderate_change(db, ctx_for(moderator), older, approve=True)

        assert persona.cognom1 == "Serra"
        assert persona.ofici is None
        assert (await wiki_repo.get_wiki_change(db, newer)).moderation_state == "pendent"
        assert any("Out-of-order approval" in record.getMessage() for record in caplog.records)

    @pytest.mark.asyncio
    async def test_live_entity_matches_approved_after(self, people, ctx_for):
        db, editor, moderator = people
        persona = await db.get(Persona, 7)
        change_id = await _propose(db, ctx_for(editor), persona, {"cognom1": "Puig i Serra", "ofici": "teixidor"})

        await moderation.moderate_change(db, ctx_for(moderator), change_id, approve=True)

        after = decode_metadata((await wiki_repo.get_wiki_change(db, change_id)).change_metadata).after
        live = await get_adapter("persona").snapshot(db, persona)
        assert diff_snapshots(after, live, only_changed=True) == []

    @pytest.mark.asyncio
    async def test_change_claimed_elsewhere_is_not_applied_again(self, people, ctx_for):
        db, editor, moderator = people
        persona = await db.get(Persona, 7)
        change_id = await _propose(db, ctx_for(editor), persona, {"cognom1": "Serra"})
        change = await wiki_repo.get_wiki_change(db, change_id)
        # Another moderator's transaction already published it; this session still holds it as pendent.
        await db.execute(
            update(WikiChange.__table__)
            .where(WikiChange.__table__.c.id == change_id)
            .values(moderation_state="publicat")
        )
        assert change.moderation_state == "pendent"

        with pytest.raises(ValidationError):
            await wiki_service.apply_change(db, get_adapter("persona"), change, moderator.id)
        assert persona.cognom1 == "Puig"
