"""Persist and refresh OAuth bearer tokens per provider.

Tokens live in LocalStorage under ``tokens:<namespace>:<provider>``.  Every
successful exchange or refresh overwrites the stored record in one atomic
write.  Concurrent refreshes from overlapping poll ticks are not
serialized: the last writer wins.

Token endpoint requests are form-encoded::

    POST {token_url}
    code=...&client_id=...&client_secret=...&redirect_uri=...&grant_type=authorization_code
    refresh_token=...&client_id=...&client_secret=...&grant_type=refresh_token
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from athlete_sync.wearables.base import ProviderId, TokenRecord
from athlete_sync.wearables.errors import (
    AuthExchangeError,
    NetworkError,
    NoRefreshTokenError,
)
from athlete_sync.wearables.storage import LocalStorage

logger = logging.getLogger("athlete_sync.wearables.token_store")


@dataclass(frozen=True)
class ProviderCredentials:
    """Client registration for one OAuth provider."""

    token_url: str
    client_id: str
    client_secret: str
    redirect_uri: str


class TokenStore:
    """Read, exchange, and refresh tokens for the OAuth providers."""

    def __init__(
        self,
        storage: LocalStorage,
        credentials: dict[ProviderId, ProviderCredentials],
        namespace: str = "default",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            storage:     Local persistent storage.
            credentials: Client registration per OAuth provider.
            namespace:   Key prefix separating accounts sharing one storage file.
            http_client: Optional pre-configured httpx client (for testing).
        """
        self._storage = storage
        self._credentials = credentials
        self._namespace = namespace
        self._http_client = http_client

    def get_token(self, provider_id: ProviderId) -> TokenRecord | None:
        """Return the stored token, or None.  No network call."""
        data = self._storage.get(self._key(provider_id))
        if not data:
            return None
        try:
            return TokenRecord.from_dict(data)
        except (KeyError, TypeError):
            logger.warning("Discarding unreadable stored token for %s", provider_id.value)
            return None

    async def exchange_authorization_code(
        self, provider_id: ProviderId, code: str
    ) -> TokenRecord:
        """Exchange an authorization code for access + refresh tokens.

        Raises:
            AuthExchangeError: Non-2xx response or malformed body.
            NetworkError:      The token endpoint could not be reached.
        """
        creds = self._credentials_for(provider_id)
        logger.info("%s: exchanging authorization code", provider_id.value)
        data = await self._post_token(
            provider_id,
            creds.token_url,
            {
                "code": code,
                "client_id": creds.client_id,
                "client_secret": creds.client_secret,
                "redirect_uri": creds.redirect_uri,
                "grant_type": "authorization_code",
            },
        )
        token = self._token_from_response(provider_id, data, previous_refresh=None)
        self.save(provider_id, token)
        return token

    async def refresh(self, provider_id: ProviderId) -> TokenRecord:
        """Exchange the stored refresh token for a new access token.

        Raises:
            NoRefreshTokenError: Nothing stored to refresh with.
            AuthExchangeError:   Non-2xx response or malformed body.
            NetworkError:        The token endpoint could not be reached.
        """
        current = self.get_token(provider_id)
        if current is None or not current.refresh_token:
            raise NoRefreshTokenError(
                "No refresh token available", provider=provider_id.value
            )

        creds = self._credentials_for(provider_id)
        logger.info("%s: refreshing access token", provider_id.value)
        data = await self._post_token(
            provider_id,
            creds.token_url,
            {
                "refresh_token": current.refresh_token,
                "client_id": creds.client_id,
                "client_secret": creds.client_secret,
                "grant_type": "refresh_token",
            },
        )
        token = self._token_from_response(
            provider_id, data, previous_refresh=current.refresh_token
        )
        self.save(provider_id, token)
        return token

    def save(self, provider_id: ProviderId, token: TokenRecord) -> None:
        """Overwrite the stored token in one write."""
        self._storage.set(self._key(provider_id), token.to_dict())

    def clear(self, provider_id: ProviderId) -> None:
        self._storage.remove(self._key(provider_id))

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _key(self, provider_id: ProviderId) -> str:
        return f"tokens:{self._namespace}:{provider_id.value}"

    def _credentials_for(self, provider_id: ProviderId) -> ProviderCredentials:
        try:
            return self._credentials[provider_id]
        except KeyError:
            raise AuthExchangeError(
                f"No OAuth client registered for {provider_id.value}",
                provider=provider_id.value,
            ) from None

    @staticmethod
    def _token_from_response(
        provider_id: ProviderId, data: object, previous_refresh: str | None
    ) -> TokenRecord:
        if not isinstance(data, dict) or not data.get("access_token"):
            raise AuthExchangeError(
                "Token response has no access_token", provider=provider_id.value
            )
        scope = data.get("scope") or []
        if isinstance(scope, str):
            scope = scope.replace(",", " ").split()
        known = {"access_token", "refresh_token", "token_type", "scope", "expires_in"}
        return TokenRecord(
            access_token=str(data["access_token"]),
            refresh_token=data.get("refresh_token") or previous_refresh,
            token_type=data.get("token_type", "Bearer"),
            scope=list(scope),
            extra={k: v for k, v in data.items() if k not in known},
        )

    async def _post_token(
        self, provider_id: ProviderId, url: str, form: dict[str, str]
    ) -> object:
        try:
            if self._http_client:
                response = await self._http_client.post(url, data=form)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, data=form)
        except httpx.TransportError as exc:
            raise NetworkError(
                f"Token endpoint unreachable: {exc}", provider=provider_id.value
            ) from exc

        if not response.is_success:
            raise AuthExchangeError(
                f"Token endpoint returned {response.status_code}",
                provider=provider_id.value,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise AuthExchangeError(
                "Token endpoint returned a non-JSON body", provider=provider_id.value
            ) from exc
