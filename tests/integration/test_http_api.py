"""HTTP-level tests: CSRF, authentication, permissions, moderation and redirects."""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import AsyncClient

from cerca.config import get_settings
from cerca.db.models import Cognom, Persona
from cerca.repository import cognoms as cognom_repo

PASSWORD = "contrasenya-2024"


@pytest_asyncio.fixture
async def accounts(session_factory, make_user, grant_policy):
    """An editor allowed to create people and a moderator for them, committed."""
    async with session_factory() as db:
        editor = await make_user(db, "editora")
        moderator = await make_user(db, "moderador")
        plain = await make_user(db, "lector")
        await grant_policy(db, editor.id, {"persones.create": "allow-global", "persones.edit": "allow-global"})
        await grant_policy(
            db,
            moderator.id,
            {"persones.edit": "allow-global", "moderacio.moderate": "allow-global", "moderacio.view": "allow-global"},
        )
        await db.commit()
    return editor, moderator, plain


class TestCsrf:
    @pytest.mark.asyncio
    async def test_post_without_token_is_rejected(self, client: AsyncClient):
        response = await client.post(
            "/auth/login", json={"login": "x", "password": "y"}, headers={"X-CSRF-Token": ""}
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "csrf.invalid"

    @pytest.mark.asyncio
    async def test_mismatched_token_is_rejected(self, client: AsyncClient):
        response = await client.post(
            "/auth/login", json={"login": "x", "password": "y"}, headers={"X-CSRF-Token": "not-the-cookie"}
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_form_field_is_accepted(self, client: AsyncClient):
        token = client.headers["X-CSRF-Token"]
        response = await client.post(
            "/persones/1/desmarca",
            data={"csrf_token": token},
            headers={"X-CSRF-Token": ""},
        )
        # Past the CSRF check, the anonymous caller is stopped by authentication.
        assert response.status_code == 401


class TestAuthFlow:
    """Register, activate and log in through the API."""

    @pytest.mark.asyncio
    async def test_register_activate_login(self, client: AsyncClient):
        response = await client.post(
            "/auth/register",
            json={"username": "maria", "email": "Maria@Example.org", "password": PASSWORD},
        )
        assert response.status_code == 201
        data = response.json()
        assert data["activation_token"]

        response = await client.post("/auth/login", json={"login": "maria", "password": PASSWORD})
        assert response.status_code == 401
        assert response.json()["detail"] == "auth.inactive"

        response = await client.post("/auth/activate", json={"token": data["activation_token"]})
        assert response.status_code == 200
        assert response.json() == {"user_id": data["user_id"], "active": True}

        response = await client.post(
            "/auth/login", json={"login": "maria@example.org", "password": PASSWORD}
        )
        assert response.status_code == 200
        assert response.json()["access_token"]
        assert response.json()["user_id"] == data["user_id"]

    @pytest.mark.asyncio
    async def test_activation_token_is_single_use(self, client: AsyncClient):
        response = await client.post(
            "/auth/register", json={"username": "pere", "email": "pere@example.org", "password": PASSWORD}
        )
        token = response.json()["activation_token"]
        assert (await client.post("/auth/activate", json={"token": token})).status_code == 200
        response = await client.post("/auth/activate", json={"token": token})
        assert response.status_code == 400
        assert response.json()["detail"] == "auth.invalid_token"

    @pytest.mark.asyncio
    async def test_duplicate_username(self, client: AsyncClient):
        body = {"username": "anna", "email": "anna@example.org", "password": PASSWORD}
        assert (await client.post("/auth/register", json=body)).status_code == 201
        response = await client.post("/auth/register", json={**body, "email": "altra@example.org"})
        assert response.status_code == 400
        assert response.json()["detail"] == "auth.duplicate"

    @pytest.mark.asyncio
    async def test_wrong_password(self, client: AsyncClient, accounts):
        response = await client.post("/auth/login", json={"login": "lector", "password": "incorrecta"})
        assert response.status_code == 401


class TestEntityModeration:
    @pytest.mark.asyncio
    async def test_create_requires_login(self, client: AsyncClient):
        response = await client.post("/persones", json={"nom": "Anna"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_create_without_grant_is_forbidden(self, client: AsyncClient, accounts, auth_headers):
        _, _, plain = accounts
        response = await client.post("/persones", json={"nom": "Anna"}, headers=auth_headers(plain))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_create_then_approve(self, client: AsyncClient, accounts, auth_headers):
        editor, moderator, _ = accounts

        response = await client.post(
            "/persones", json={"nom": "Anna", "cognom1": "Serra", "sexe": "D"}, headers=auth_headers(editor)
        )
        assert response.status_code == 201
        created = response.json()
        assert created["moderation_state"] == "pendent"
        persona_id = created["id"]

        # Pending entities are hidden from anonymous readers.
        assert (await client.get(f"/persones/{persona_id}")).status_code == 404

        queue = await client.get("/moderacio", headers=auth_headers(moderator))
        assert queue.status_code == 200
        assert any(item["values"]["id"] == persona_id for item in queue.json()["entities"])

        denied = await client.post(f"/moderacio/persona/{persona_id}/aprovar", headers=auth_headers(editor))
        assert denied.status_code == 403

        response = await client.post(f"/moderacio/persona/{persona_id}/aprovar", headers=auth_headers(moderator))
        assert response.status_code == 200
        assert response.json()["moderation_state"] == "publicat"

        detail = await client.get(f"/persones/{persona_id}")
        assert detail.status_code == 200
        assert detail.json()["nom"] == "Anna"

    @pytest.mark.asyncio
    async def test_form_descriptors(self, client: AsyncClient, accounts, auth_headers, session_factory):
        editor, _, plain = accounts
        async with session_factory() as db:
            db.add(Persona(id=8, nom="Rosa", moderation_state="publicat"))
            await db.commit()

        new_form = await client.get("/persones/new", headers=auth_headers(editor))
        assert new_form.status_code == 200
        assert new_form.json()["required"] == ["nom"]
        assert "cognom1" in new_form.json()["fields"]

        edit_form = await client.get("/persones/8/edit", headers=auth_headers(editor))
        assert edit_form.status_code == 200
        assert edit_form.json()["values"]["nom"] == "Rosa"
        assert edit_form.json()["proposal"] is True

        assert (await client.get("/persones/8/edit", headers=auth_headers(plain))).status_code == 403
        assert (await client.get("/persones/new")).status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_field_value(self, client: AsyncClient, accounts, auth_headers):
        editor, _, _ = accounts
        response = await client.post("/persones", json={"nom": "Anna", "sexe": "X"}, headers=auth_headers(editor))
        assert response.status_code == 400
        assert "message" in response.json()

    @pytest.mark.asyncio
    async def test_edit_of_published_persona_is_a_proposal(
        self, client: AsyncClient, accounts, auth_headers, session_factory
    ):
        editor, moderator, _ = accounts
        async with session_factory() as db:
            db.add(Persona(id=7, nom="Joan", cognom1="Puig", moderation_state="publicat"))
            await db.commit()

        response = await client.post("/persones/7", json={"cognom1": "Puig i Serra"}, headers=auth_headers(editor))
        assert response.status_code == 200
        data = response.json()
        assert data["proposed"] is True
        assert data["moderation_state"] == "pendent"
        assert (await client.get("/persones/7")).json()["cognom1"] == "Puig"

        response = await client.post(
            f"/moderacio/canvis/{data['change_id']}/aprovar", headers=auth_headers(moderator)
        )
        assert response.status_code == 200
        assert (await client.get("/persones/7")).json()["cognom1"] == "Puig i Serra"

        history = await client.get("/persones/7/historial")
        assert history.status_code == 200
        assert [entry["id"] for entry in history.json()] == [data["change_id"]]


class TestCognomRedirects:
    @pytest.mark.asyncio
    async def test_history_of_merged_surname_redirects(self, client: AsyncClient, session_factory):
        async with session_factory() as db:
            db.add_all(
                [
                    Cognom(id=5, forma="Puig", moderation_state="publicat"),
                    Cognom(id=12, forma="Puig i Serra", moderation_state="publicat"),
                ]
            )
            await db.flush()
            await cognom_repo.set_cognom_redirect(db, 5, 12, "variant", None)
            await db.commit()

        response = await client.get("/cognoms/5/historial?token=current")
        assert response.status_code == 303
        assert response.headers["location"].endswith("/cognoms/12/historial?token=current")

        assert (await client.get("/cognoms/12/historial")).status_code == 200

    @pytest.mark.asyncio
    async def test_detail_of_merged_surname_redirects(self, client: AsyncClient, session_factory):
        async with session_factory() as db:
            db.add_all(
                [
                    Cognom(id=6, forma="Vila", moderation_state="publicat"),
                    Cognom(id=13, forma="Vilà", moderation_state="publicat"),
                ]
            )
            await db.flush()
            await cognom_repo.set_cognom_redirect(db, 6, 13, "variant", None)
            await db.commit()

        response = await client.get("/cognoms/6")
        assert response.status_code == 303
        assert response.headers["location"].endswith("/cognoms/13")

        detail = await client.get("/cognoms/13")
        assert detail.status_code == 200
        assert detail.json()["forma"] == "Vilà"


class TestRateLimit:
    @pytest.mark.asyncio
    async def test_marks_are_rate_limited(
        self, client: AsyncClient, accounts, auth_headers, session_factory, monkeypatch
    ):
        monkeypatch.setenv("CG_WIKI_MARK_BURST", "2")
        monkeypatch.setenv("CG_WIKI_MARK_RATE", "0.01")
        get_settings.cache_clear()
        _, _, plain = accounts
        async with session_factory() as db:
            db.add(Persona(id=9, nom="Pau", moderation_state="publicat"))
            await db.commit()

        for tipus in ("interes", "politic"):
            response = await client.post("/persones/9/marca", json={"tipus": tipus}, headers=auth_headers(plain))
            assert response.status_code == 200

        response = await client.post("/persones/9/marca", json={"tipus": "interes"}, headers=auth_headers(plain))

        assert response.status_code == 429
        assert response.json()["detail"] == "wiki.guardrail.rate"
        assert int(response.headers["Retry-After"]) >= 1
