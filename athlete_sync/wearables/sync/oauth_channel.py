"""In-process channel for OAuth callback messages.

The redirect target (a separate HTTP request, standing in for the popup
window of a browser flow) posts an ``oauth_callback`` message; the session
waiting in ``Connecting`` picks it up.  Messages whose origin differs from
the application's own origin are dropped without touching any state.

Each provider has at most one waiter.  A message that arrives while no one
is waiting for that provider is logged and discarded.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import ValidationError

from athlete_sync.models.wearables import OAuthCallbackMessage
from athlete_sync.wearables.base import ProviderId
from athlete_sync.wearables.errors import AuthorizationDeniedError

logger = logging.getLogger("athlete_sync.sync.oauth_channel")


class OAuthMessageChannel:
    """Deliver one callback message per pending connect.

    Usage::

        channel = OAuthMessageChannel(expected_origin="https://app.example.com")
        message = await channel.wait_for(ProviderId.CLOUD_FITNESS, timeout=300)
        # elsewhere, from the callback route:
        channel.post({"type": "oauth_callback", ...}, origin=request_origin)
    """

    def __init__(self, expected_origin: str) -> None:
        self._expected_origin = expected_origin.rstrip("/")
        self._waiters: dict[ProviderId, asyncio.Future[OAuthCallbackMessage]] = {}

    @property
    def expected_origin(self) -> str:
        return self._expected_origin

    def is_waiting(self, provider_id: ProviderId) -> bool:
        waiter = self._waiters.get(provider_id)
        return waiter is not None and not waiter.done()

    async def wait_for(
        self, provider_id: ProviderId, timeout: float | None
    ) -> OAuthCallbackMessage:
        """Suspend until a trusted message for ``provider_id`` arrives.

        Raises:
            AuthorizationDeniedError: Nothing arrived within ``timeout`` seconds,
                or the wait was cancelled by a disconnect.
        """
        self.cancel(provider_id)
        waiter: asyncio.Future[OAuthCallbackMessage] = asyncio.get_running_loop().create_future()
        self._waiters[provider_id] = waiter
        try:
            return await asyncio.wait_for(waiter, timeout=timeout)
        except asyncio.TimeoutError:
            raise AuthorizationDeniedError(
                f"No authorization callback within {timeout:g}s; treating as abandoned",
                provider=provider_id.value,
            ) from None
        finally:
            if self._waiters.get(provider_id) is waiter:
                del self._waiters[provider_id]

    def post(self, data: Any, origin: str | None) -> bool:
        """Offer a message to the channel.

        Returns:
            True if a waiter accepted it, False if it was ignored (wrong
            origin, wrong shape, or nobody waiting).
        """
        if (origin or "").rstrip("/") != self._expected_origin:
            logger.warning("Ignoring OAuth message from untrusted origin %r", origin)
            return False

        try:
            message = OAuthCallbackMessage.model_validate(data)
        except ValidationError as exc:
            logger.warning("Ignoring malformed OAuth message: %s", exc.errors()[:1])
            return False

        waiter = self._waiters.get(message.provider)
        if waiter is None or waiter.done():
            logger.info("No pending connect for %s; dropping callback", message.provider.value)
            return False

        waiter.set_result(message)
        return True

    def cancel(self, provider_id: ProviderId) -> None:
        """Abandon any pending wait for ``provider_id``.

        The waiter fails with AuthorizationDeniedError rather than being
        cancelled, so the task awaiting it is not torn down.
        """
        waiter = self._waiters.pop(provider_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_exception(
                AuthorizationDeniedError("Authorization abandoned", provider=provider_id.value)
            )
