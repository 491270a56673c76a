"""Tests for magic-link sign-in, the JWT helpers and the /me profile."""

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

import pytest
from jose import JWTError, jwt
from sqlalchemy import select

from conftest import auth_headers
from portivo.auth.jwt import ALGORITHM, ISSUER, create_access_token, decode_access_token
from portivo.config import settings
from portivo.models import User
from portivo.services.auth_service import AuthService
from portivo.services.notifications import NotificationKind, NotificationOutbox


# ── JWT utility tests ─────────────────────────────────────────────────────────

class TestJWTUtils:
    def test_create_and_decode_access_token(self):
        token = create_access_token("abc123", "user@agency.test")
        claims = decode_access_token(token)
        assert claims["sub"] == "abc123"
        assert claims["email"] == "user@agency.test"
        assert claims["type"] == "access"

    def test_decode_invalid_token_raises(self):
        with pytest.raises(JWTError):
            decode_access_token("invalid.token.here")

    def test_decode_rejects_other_token_types(self):
        token = jwt.encode(
            {
                "iss": ISSUER,
                "sub": "abc123",
                "type": "refresh",
                "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
            },
            settings.secret_key,
            algorithm=ALGORITHM,
        )
        with pytest.raises(JWTError):
            decode_access_token(token)

    def test_decode_rejects_foreign_issuer(self):
        token = jwt.encode(
            {"iss": "elsewhere", "sub": "abc123", "type": "access",
             "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
            settings.secret_key,
            algorithm=ALGORITHM,
        )
        with pytest.raises(JWTError):
            decode_access_token(token)

    def test_decode_rejects_expired_token(self):
        token = jwt.encode(
            {"sub": "abc123", "type": "access", "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
            settings.secret_key,
            algorithm=ALGORITHM,
        )
        with pytest.raises(JWTError):
            decode_access_token(token)


# ── Magic link ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestMagicLink:
    async def test_request_creates_user_and_queues_sign_in_mail(self, http, link_store, queue, session_factory):
        resp = await http.post("/api/auth/magic-link", json={"email": "New.Person@Example.com"})
        assert resp.status_code == 202
        assert resp.json()["message"] == "Check your email for a sign-in link"

        async with session_factory() as session:
            user = (await session.execute(select(User).where(User.email == "new.person@example.com"))).scalar_one()

        assert list(link_store.tokens.values()) == [user.id]
        mails = queue.of_kind(NotificationKind.SIGN_IN)
        assert len(mails) == 1
        assert mails[0].recipient_email == "new.person@example.com"
        token = next(iter(link_store.tokens))
        assert f"token={token}" in mails[0].template_data["magic_link_url"]

    async def test_redirect_path_is_carried_in_the_link(self, http, queue):
        await http.post(
            "/api/auth/magic-link",
            json={"email": "someone@example.com", "redirect_path": "/portal/acme"},
        )
        url = queue.of_kind(NotificationKind.SIGN_IN)[0].template_data["magic_link_url"]
        assert url.endswith("&next=/portal/acme")

    @pytest.mark.parametrize(
        "redirect_path",
        ["//evil.example/phish", "/\\evil.example", "https://evil.example/", "portal/acme", "/ok\nSet-Cookie: x"],
    )
    async def test_off_site_redirects_are_rejected(self, http, queue, redirect_path):
        resp = await http.post(
            "/api/auth/magic-link", json={"email": "someone@example.com", "redirect_path": redirect_path}
        )
        assert resp.status_code == 422
        assert "redirect_path" in resp.json()["errors"]
        assert queue.pushed == []

    async def test_redirect_path_cannot_smuggle_query_parameters(self, http, link_store, queue):
        await http.post(
            "/api/auth/magic-link",
            json={"email": "someone@example.com", "redirect_path": "/x&token=attacker"},
        )
        url = queue.of_kind(NotificationKind.SIGN_IN)[0].template_data["magic_link_url"]
        params = parse_qs(urlsplit(url).query)
        assert params["token"] == [next(iter(link_store.tokens))]
        assert params["next"] == ["/x&token=attacker"]

    async def test_service_drops_a_non_local_redirect(self, db_session, link_store):
        outbox = NotificationOutbox()
        await AuthService(db_session, link_store, outbox).request_magic_link(
            "direct@example.com", redirect_path="//evil.example"
        )
        [notification] = outbox.pending
        assert "next=" not in notification.template_data["magic_link_url"]

    async def test_invalid_email_is_validation_failed(self, http, queue):
        resp = await http.post("/api/auth/magic-link", json={"email": "not-an-email"})
        assert resp.status_code == 422
        body = resp.json()
        assert body["kind"] == "validation_failed"
        assert "email" in body["errors"]
        assert queue.pushed == []

    async def test_verify_exchanges_token_once(self, http, link_store, session_factory):
        await http.post("/api/auth/magic-link", json={"email": "verify@example.com"})
        token = next(iter(link_store.tokens))

        resp = await http.post("/api/auth/verify", json={"token": token})
        assert resp.status_code == 200
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["user"]["email"] == "verify@example.com"
        assert decode_access_token(data["access_token"])["sub"] == data["user"]["id"]

        async with session_factory() as session:
            user = await session.get(User, data["user"]["id"])
            assert user.email_verified_at is not None

        again = await http.post("/api/auth/verify", json={"token": token})
        assert again.status_code == 401
        assert again.json()["kind"] == "unauthenticated"

    async def test_verify_unknown_token(self, http):
        resp = await http.post("/api/auth/verify", json={"token": "never-issued"})
        assert resp.status_code == 401


# ── Authenticated identity ────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestMe:
    async def test_missing_header_is_unauthenticated(self, http):
        resp = await http.get("/api/auth/me")
        assert resp.status_code == 401
        assert resp.json() == {"kind": "unauthenticated", "message": "Missing or invalid Authorization header"}

    async def test_garbage_token_is_unauthenticated(self, http):
        resp = await http.get("/api/auth/me", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401
        assert resp.json()["message"] == "Invalid or expired token"

    async def test_me_shows_both_sides_of_identity(self, http, seed):
        workspace, owner = await seed.workspace()
        other, _ = await seed.workspace(owner_email="boss@other.test", slug="other", name="Other Co")
        client, _ = await seed.client(other, name="Initech", contact_email="owner@agency.test")
        await seed.commit()

        resp = await http.get("/api/auth/me", headers=auth_headers(owner))
        assert resp.status_code == 200
        data = resp.json()
        assert data["user"]["email"] == "owner@agency.test"
        assert data["membership"]["role"] == "owner"
        assert data["membership"]["workspace"]["slug"] == "acme"
        assert len(data["client_contacts"]) == 1
        contact = data["client_contacts"][0]
        assert contact["client"]["id"] == client.id
        assert contact["workspace"]["slug"] == "other"
        assert contact["is_primary"] is True

    async def test_update_profile(self, http, seed):
        _, owner = await seed.workspace()
        await seed.commit()

        resp = await http.patch("/api/user/profile", json={"name": "Olivia"}, headers=auth_headers(owner))
        assert resp.status_code == 200
        assert resp.json()["name"] == "Olivia"

        empty = await http.patch("/api/user/profile", json={"name": ""}, headers=auth_headers(owner))
        assert empty.status_code == 422
