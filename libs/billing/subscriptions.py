"""Read-only access to the caller's current subscription."""

from __future__ import annotations

import logging
from typing import Tuple, Union

from libs.schemas.billing import ScheduledChange, SubscriptionSnapshot

from .cache import QueryCache
from .client import BillingApiClient, BillingApiError
from .errors import FetchFailed

logger = logging.getLogger(__name__)

SUBSCRIPTION_KEY = ("subscription", "current")
SCHEDULED_CHANGES_KEY = ("subscription", "scheduled")


class _NoSubscription:
    def __repr__(self) -> str:
        return "NO_SUBSCRIPTION"

    def __bool__(self) -> bool:
        return False


NO_SUBSCRIPTION = _NoSubscription()

SubscriptionView = Union[SubscriptionSnapshot, _NoSubscription]


class SubscriptionStateFetcher:
    """Fetch and cache the current subscription snapshot.

    Snapshots are never patched locally; mutations invalidate the cached one
    so the next read goes back to the server.
    """

    def __init__(self, api: BillingApiClient, *, cache: QueryCache | None = None) -> None:
        self._api = api
        self._cache = cache or QueryCache()

    async def _fetch(self) -> SubscriptionView:
        try:
            response = await self._api.get_current_subscription()
        except BillingApiError as exc:
            raise FetchFailed.from_error(exc) from exc
        if not response.success:
            raise FetchFailed()
        if not response.has_subscription or response.subscription is None:
            return NO_SUBSCRIPTION
        return response.subscription

    async def get_current_subscription(self) -> SubscriptionView:
        return await self._cache.get_or_fetch(SUBSCRIPTION_KEY, self._fetch)

    def peek(self) -> SubscriptionView | None:
        """Cached view, or ``None`` when nothing has been fetched yet."""

        return self._cache.peek(SUBSCRIPTION_KEY)

    async def _fetch_scheduled(self) -> Tuple[ScheduledChange, ...]:
        try:
            changes = await self._api.list_scheduled_changes()
        except BillingApiError as exc:
            raise FetchFailed.from_error(exc) from exc
        return tuple(changes)

    async def get_scheduled_changes(self) -> Tuple[ScheduledChange, ...]:
        """Downgrades and cancellations waiting for the end of the period."""

        return await self._cache.get_or_fetch(SCHEDULED_CHANGES_KEY, self._fetch_scheduled)

    def invalidate(self) -> None:
        self._cache.invalidate(SUBSCRIPTION_KEY)
        self._cache.invalidate(SCHEDULED_CHANGES_KEY)


__all__ = [
    "NO_SUBSCRIPTION",
    "SCHEDULED_CHANGES_KEY",
    "SUBSCRIPTION_KEY",
    "SubscriptionStateFetcher",
    "SubscriptionView",
]
