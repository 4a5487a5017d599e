import asyncio
from datetime import timedelta

import pytest

from supportdesk.core.encryption import decrypt_token
from supportdesk.core.exceptions import AuthError
from supportdesk.db.enums import TokenProvider
from supportdesk.db.models import ExternalToken
from supportdesk.db.types import utcnow
from supportdesk.services.token_service import TokenManager


@pytest.mark.asyncio
async def test_token_is_exchanged_once_and_cached(db, fake_commerce):
    tokens = TokenManager(db, {TokenProvider.IKAS: fake_commerce})

    first = await tokens.get_token(TokenProvider.IKAS)
    second = await tokens.get_token("ikas")

    assert first.value == second.value == "token-1"
    assert fake_commerce.exchanges == 1


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_exchange(db, fake_commerce):
    tokens = TokenManager(db, {TokenProvider.IKAS: fake_commerce})

    results = await asyncio.gather(*(tokens.get_token(TokenProvider.IKAS) for _ in range(5)))

    assert {t.value for t in results} == {"token-1"}
    assert fake_commerce.exchanges == 1


@pytest.mark.asyncio
async def test_token_is_persisted_encrypted_and_reused(db, fake_commerce):
    await TokenManager(db, {TokenProvider.IKAS: fake_commerce}).get_token(TokenProvider.IKAS)

    row = db.query(ExternalToken).one()
    assert row.access_token_encrypted != "token-1"
    assert decrypt_token(row.access_token_encrypted) == "token-1"
    assert row.expires_at <= utcnow() + timedelta(seconds=3600 - 60)

    # A later invocation starts with an empty cache
    token = await TokenManager(db, {TokenProvider.IKAS: fake_commerce}).get_token(TokenProvider.IKAS)
    assert token.value == "token-1"
    assert fake_commerce.exchanges == 1


@pytest.mark.asyncio
async def test_expired_persisted_token_is_refreshed(db, fake_commerce):
    tokens = TokenManager(db, {TokenProvider.IKAS: fake_commerce})
    await tokens.get_token(TokenProvider.IKAS)
    row = db.query(ExternalToken).one()
    row.expires_at = utcnow() - timedelta(seconds=1)
    db.commit()

    token = await TokenManager(db, {TokenProvider.IKAS: fake_commerce}).get_token(TokenProvider.IKAS)

    assert token.value == "token-2"


@pytest.mark.asyncio
async def test_call_with_token_refreshes_once_on_auth_error(db, fake_commerce):
    tokens = TokenManager(db, {TokenProvider.IKAS: fake_commerce})
    seen = []

    async def call(token):
        seen.append(token)
        if token == "token-1":
            raise AuthError("401")
        return "ok"

    assert await tokens.call_with_token(TokenProvider.IKAS, call) == "ok"
    assert seen == ["token-1", "token-2"]


@pytest.mark.asyncio
async def test_call_with_token_second_auth_error_propagates(db, fake_commerce):
    tokens = TokenManager(db, {TokenProvider.IKAS: fake_commerce})

    async def call(_token):
        raise AuthError("401")

    with pytest.raises(AuthError):
        await tokens.call_with_token(TokenProvider.IKAS, call)
    assert fake_commerce.exchanges == 2
