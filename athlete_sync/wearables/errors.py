"""Error taxonomy for wearable sync.

Where each error stops:

    AuthExchangeError        — token endpoint failure; surfaced to the caller.
    NoRefreshTokenError      — nothing to refresh with; full re-authorization needed.
    AuthExpiredError         — a 401 survived one refresh + retry; forces disconnect.
    AuthorizationDeniedError — user declined the consent screen; no retry.
    DeviceNotFoundError      — no compatible bluetooth peripheral answered; no retry.
    NetworkError             — transient transport / HTTP failure; next poll tick retries.
    MalformedResponseError   — provider or plan payload could not be parsed.
"""

from __future__ import annotations


class WearableSyncError(Exception):
    """Base class for every error raised by the sync pipeline."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class AuthExchangeError(WearableSyncError):
    """The provider's token endpoint rejected the exchange or returned garbage."""


class NoRefreshTokenError(WearableSyncError):
    """No refresh token is stored for the provider."""


class AuthExpiredError(WearableSyncError):
    """The access token is still rejected after one refresh and one retry."""


class AuthorizationDeniedError(WearableSyncError):
    """The user declined (or abandoned) the authorization flow."""


class DeviceNotFoundError(WearableSyncError):
    """No compatible bluetooth peripheral responded to the pairing request."""


class NetworkError(WearableSyncError):
    """Transient failure talking to a remote service."""


class MalformedResponseError(WearableSyncError):
    """A response body did not have the documented shape."""


class UnauthorizedResponse(WearableSyncError):
    """A provider answered 401.

    Raised by adapters inside a fetch so that ``with_single_reauth`` can
    decide whether to refresh and retry.  Never escapes the reauth wrapper.
    """
