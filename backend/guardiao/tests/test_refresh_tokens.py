from __future__ import annotations

import asyncio
import json

import pytest

from backend.guardiao.app.config import settings
from backend.guardiao.app.errors import UnauthorizedError
from backend.guardiao.app.refresh_tokens import INVALID_REFRESH_MESSAGE, RefreshTokenStore
from backend.guardiao.app.security import decode_access_token, hash_token
from backend.guardiao.app.storage import MemoryCache
from backend.guardiao.db.models import User, UserRole

from .utils import DEFAULT_PASSWORD, create_user, login


COOKIE_NAME = settings.auth.refresh_cookie_name


@pytest.mark.asyncio
async def test_refresh_rotates_and_rejects_replay(client, db_session):
    await create_user(db_session, email="outro@example.com", tipo=UserRole.DPO)
    owner = await create_user(db_session, email="rot@example.com", tipo=UserRole.DPO)
    first = await login(client, "rot@example.com")

    rotated = await client.post("/auth/refresh", json={"refresh_token": first["refresh_token"]})
    assert rotated.status_code == 200
    rotated_payload = rotated.json()
    assert rotated_payload["refresh_token"] != first["refresh_token"]
    assert rotated_payload["access_token"]
    assert rotated_payload["user"]["email"] == "rot@example.com"
    assert rotated_payload["user"]["id"] == owner.id
    assert decode_access_token(rotated_payload["access_token"]).subject == owner.id

    replay = await client.post("/auth/refresh", json={"refresh_token": first["refresh_token"]})
    assert replay.status_code == 401
    assert replay.json()["message"] == INVALID_REFRESH_MESSAGE

    again = await client.post("/auth/refresh", json={"refresh_token": rotated_payload["refresh_token"]})
    assert again.status_code == 200


@pytest.mark.asyncio
async def test_refresh_reads_cookie_when_body_is_missing(client, db_session):
    await create_user(db_session, email="cookie@example.com", tipo=UserRole.COLABORADOR)
    await login(client, "cookie@example.com")
    assert client.cookies.get(COOKIE_NAME)

    response = await client.post("/auth/refresh")
    assert response.status_code == 200
    assert response.json()["refresh_token"] == client.cookies.get(COOKIE_NAME)


@pytest.mark.asyncio
async def test_refresh_without_token_is_rejected(client):
    response = await client.post("/auth/refresh", json={})
    assert response.status_code == 401
    assert response.json()["error"] == "INVALID_REFRESH_TOKEN"


@pytest.mark.asyncio
async def test_logout_revokes_refresh_token(client, db_session):
    await create_user(db_session, email="sair@example.com", tipo=UserRole.TITULAR)
    payload = await login(client, "sair@example.com")

    response = await client.post("/auth/logout", json={"refresh_token": payload["refresh_token"]})
    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Logout realizado com sucesso"}

    refresh = await client.post("/auth/refresh", json={"refresh_token": payload["refresh_token"]})
    assert refresh.status_code == 401


@pytest.mark.asyncio
async def test_refresh_fails_for_deactivated_user(client, db_session, session_factory):
    user = await create_user(db_session, email="desligado@example.com", tipo=UserRole.COLABORADOR)
    first = await login(client, "desligado@example.com")
    second = await login(client, "desligado@example.com")

    async with session_factory() as session:
        stored = await session.get(User, user.id)
        stored.ativo = False
        await session.commit()

    response = await client.post("/auth/refresh", json={"refresh_token": first["refresh_token"]})
    assert response.status_code == 401

    async with session_factory() as session:
        stored = await session.get(User, user.id)
        stored.ativo = True
        await session.commit()

    # every session of the deactivated account was revoked, not just the presented one
    other = await client.post("/auth/refresh", json={"refresh_token": second["refresh_token"]})
    assert other.status_code == 401
    fresh = await login(client, "desligado@example.com")
    renewed = await client.post("/auth/refresh", json={"refresh_token": fresh["refresh_token"]})
    assert renewed.status_code == 200


@pytest.mark.asyncio
async def test_store_keeps_only_token_hashes():
    cache = MemoryCache()
    store = RefreshTokenStore(cache=cache, ttl_seconds=3600, namespace="test:refresh")

    token, _ = await store.issue("user-1")
    raw = await cache.get(f"test:refresh:{hash_token(token)}")
    assert raw is not None
    assert token not in raw.decode("utf-8")
    assert json.loads(raw)["user_id"] == "user-1"


@pytest.mark.asyncio
async def test_store_rejects_expired_record():
    cache = MemoryCache()
    store = RefreshTokenStore(cache=cache, ttl_seconds=3600, namespace="test:refresh")
    await cache.set(
        f"test:refresh:{hash_token('stale')}",
        json.dumps({"user_id": "u", "expires_at": "2000-01-01T00:00:00+00:00"}).encode("utf-8"),
    )

    with pytest.raises(UnauthorizedError):
        await store.rotate("stale")


@pytest.mark.asyncio
async def test_concurrent_rotation_has_a_single_winner():
    cache = MemoryCache()
    store = RefreshTokenStore(cache=cache, ttl_seconds=3600, namespace="test:refresh")
    token, _ = await store.issue("user-1")

    results = await asyncio.gather(
        *(store.rotate(token) for _ in range(5)),
        return_exceptions=True,
    )
    winners = [result for result in results if not isinstance(result, Exception)]
    losers = [result for result in results if isinstance(result, UnauthorizedError)]
    assert len(winners) == 1
    assert len(losers) == 4
    assert winners[0][0] == "user-1"


@pytest.mark.asyncio
async def test_password_change_revokes_existing_refresh_tokens(client, db_session):
    await create_user(db_session, email="senha@example.com", tipo=UserRole.COLABORADOR)
    payload = await login(client, "senha@example.com")
    headers = {"Authorization": f"Bearer {payload['access_token']}"}

    changed = await client.patch(
        "/auth/me/password",
        headers=headers,
        json={"currentPassword": DEFAULT_PASSWORD, "newPassword": "Nova@Senha9"},
    )
    assert changed.status_code == 200

    stale = await client.post("/auth/refresh", json={"refresh_token": payload["refresh_token"]})
    assert stale.status_code == 401

    fresh = await login(client, "senha@example.com", "Nova@Senha9")
    renewed = await client.post("/auth/refresh", json={"refresh_token": fresh["refresh_token"]})
    assert renewed.status_code == 200


@pytest.mark.asyncio
async def test_revoke_for_user_only_touches_that_user():
    cache = MemoryCache()
    store = RefreshTokenStore(cache=cache, ttl_seconds=3600, namespace="test:refresh")
    mine, _ = await store.issue("user-1")
    theirs, _ = await store.issue("user-2")

    await store.revoke_for_user("user-1")
    later, _ = await store.issue("user-1")

    with pytest.raises(UnauthorizedError):
        await store.rotate(mine)
    assert (await store.rotate(theirs))[0] == "user-2"
    assert (await store.rotate(later))[0] == "user-1"
