"""Retry-once-after-refresh policy for token-authenticated fetches."""

from __future__ import annotations

import functools
import logging
from typing import Awaitable, Callable, TypeVar

from athlete_sync.wearables.base import TokenRecord
from athlete_sync.wearables.errors import AuthExpiredError, UnauthorizedResponse

logger = logging.getLogger("athlete_sync.wearables.reauth")

T = TypeVar("T")


def with_single_reauth(
    fetch: Callable[[TokenRecord], Awaitable[T]],
    refresh: Callable[[], Awaitable[TokenRecord]],
) -> Callable[[TokenRecord], Awaitable[T]]:
    """Wrap ``fetch`` so a 401 triggers exactly one refresh and one retry.

    ``fetch`` signals a 401 by raising UnauthorizedResponse.  A second 401
    becomes AuthExpiredError; no further refresh is attempted.  Errors from
    ``refresh`` itself propagate unchanged.
    """

    @functools.wraps(fetch)
    async def wrapper(token: TokenRecord) -> T:
        try:
            return await fetch(token)
        except UnauthorizedResponse as first:
            logger.info("Access token rejected (%s); refreshing once", first)

        fresh = await refresh()
        try:
            return await fetch(fresh)
        except UnauthorizedResponse as second:
            raise AuthExpiredError(
                "Access token rejected after refresh", provider=second.provider
            ) from second

    return wrapper
