"""Provider access-token manager.

Tokens are cached in memory for the life of one worker invocation and
persisted (Fernet-encrypted) in external_tokens so later invocations skip the
exchange. A per-provider asyncio.Lock single-flights refreshes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Protocol, TypeVar

from sqlalchemy.orm import Session

from supportdesk.core.encryption import decrypt_token, encrypt_token
from supportdesk.core.exceptions import AuthError
from supportdesk.db.enums import TokenProvider
from supportdesk.db.models import ExternalToken
from supportdesk.db.types import utcnow

logger = logging.getLogger(__name__)

# Subtracted from the provider's expires_in
EXPIRY_SAFETY_MARGIN_SECONDS = 60

T = TypeVar("T")


@dataclass(frozen=True)
class AccessToken:
    provider: str
    value: str
    expires_at: datetime

    def is_valid(self, now: datetime | None = None) -> bool:
        return bool(self.value) and (now or utcnow()) < self.expires_at


class TokenExchanger(Protocol):
    async def exchange_token(self, client_id: str | None = None, client_secret: str | None = None): ...


class TokenManager:
    """
    Access tokens per provider.

    Built once per worker invocation and passed to handlers through
    WorkerContext; holds no module-level state.
    """

    def __init__(self, db: Session, exchangers: dict[str, TokenExchanger]):
        self.db = db
        self.exchangers = {str(TokenProvider(k).value): v for k, v in exchangers.items()}
        self._cache: dict[str, AccessToken] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.exchange_count = 0

    def _lock(self, provider: str) -> asyncio.Lock:
        if provider not in self._locks:
            self._locks[provider] = asyncio.Lock()
        return self._locks[provider]

    def _load_persisted(self, provider: str) -> AccessToken | None:
        row = self.db.query(ExternalToken).filter(ExternalToken.provider == provider).first()
        if row is None:
            return None
        try:
            value = decrypt_token(row.access_token_encrypted)
        except ValueError:
            logger.warning("Discarding undecryptable %s token", provider)
            return None
        return AccessToken(provider=provider, value=value, expires_at=row.expires_at)

    def _persist(self, token: AccessToken) -> None:
        row = self.db.query(ExternalToken).filter(ExternalToken.provider == token.provider).first()
        encrypted = encrypt_token(token.value)
        if row is None:
            row = ExternalToken(
                provider=token.provider,
                access_token_encrypted=encrypted,
                expires_at=token.expires_at,
            )
            self.db.add(row)
        else:
            row.access_token_encrypted = encrypted
            row.expires_at = token.expires_at
        self.db.commit()

    async def _exchange(self, provider: str) -> AccessToken:
        exchanger = self.exchangers.get(provider)
        if exchanger is None:
            raise AuthError(f"No token exchanger configured for {provider}")
        grant = await exchanger.exchange_token()
        self.exchange_count += 1
        lifetime = max(int(grant.expires_in) - EXPIRY_SAFETY_MARGIN_SECONDS, 0)
        token = AccessToken(
            provider=provider,
            value=grant.access_token,
            expires_at=utcnow() + timedelta(seconds=lifetime),
        )
        self._persist(token)
        logger.info("Obtained %s access token, valid for %ss", provider, lifetime)
        return token

    async def get_token(self, provider: TokenProvider | str) -> AccessToken:
        """Return an unexpired token, exchanging credentials when needed."""
        provider = TokenProvider(provider).value
        cached = self._cache.get(provider)
        if cached and cached.is_valid():
            return cached

        async with self._lock(provider):
            # Another caller may have refreshed while we waited
            cached = self._cache.get(provider)
            if cached and cached.is_valid():
                return cached

            persisted = self._load_persisted(provider)
            if persisted and persisted.is_valid():
                self._cache[provider] = persisted
                return persisted

            token = await self._exchange(provider)
            self._cache[provider] = token
            return token

    def invalidate(self, provider: TokenProvider | str) -> None:
        """Drop the in-memory and persisted token."""
        provider = TokenProvider(provider).value
        self._cache.pop(provider, None)
        deleted = (
            self.db.query(ExternalToken)
            .filter(ExternalToken.provider == provider)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        if deleted:
            logger.info("Invalidated cached %s token", provider)

    async def call_with_token(
        self,
        provider: TokenProvider | str,
        fn: Callable[[str], Awaitable[T]],
    ) -> T:
        """
        Run fn(token). On AuthError, force one refresh and retry once.

        A second AuthError propagates.
        """
        token = await self.get_token(provider)
        try:
            return await fn(token.value)
        except AuthError:
            logger.warning("%s rejected access token, refreshing once", TokenProvider(provider).value)
            self.invalidate(provider)
            token = await self.get_token(provider)
            return await fn(token.value)
