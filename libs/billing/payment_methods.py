"""Saved payment methods of the signed-in customer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Tuple, Union

from libs.schemas.billing import PaymentMethod

from .cache import QueryCache
from .client import BillingApiClient, BillingApiError
from .collector import (
    PAYMENT_METHOD_COLLECTION,
    SUBSCRIPTION_COLLECTION,
    BillingProviderAdapter,
    CollectionResult,
)
from .errors import CollectionInProgress, DefaultUpdateFailed, FetchFailed, PaymentConfirmationFailed

logger = logging.getLogger(__name__)

PAYMENT_METHODS_KEY = ("payment-methods",)


class _NoMethodNeeded:
    """Marker returned when a flow requires no payment method at all."""

    def __repr__(self) -> str:
        return "NO_METHOD_NEEDED"

    def __bool__(self) -> bool:
        return False


NO_METHOD_NEEDED = _NoMethodNeeded()


@dataclass(frozen=True)
class PaymentMethodListing:
    methods: Tuple[PaymentMethod, ...] = ()

    @property
    def default(self) -> PaymentMethod | None:
        for method in self.methods:
            if method.is_default:
                return method
        return None

    def get(self, method_id: str) -> PaymentMethod | None:
        for method in self.methods:
            if method.id == method_id:
                return method
        return None

    def __len__(self) -> int:
        return len(self.methods)

    def __iter__(self):
        return iter(self.methods)


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Collecting:
    client_secret: str


StoreState = Union[Idle, Collecting]


class PaymentMethodStore:
    """Read-through view of the saved methods plus the add/default operations.

    At most one collection is active per session. The secret lives in the
    provider adapter, shared with the subscription coordinator:
    :meth:`begin_add_method` drops any earlier secret of the store and is
    refused while a plan change waits for payment.
    """

    def __init__(
        self,
        api: BillingApiClient,
        provider: BillingProviderAdapter,
        *,
        cache: QueryCache | None = None,
    ) -> None:
        self._api = api
        self._provider = provider
        self._cache = cache or QueryCache()

    @property
    def state(self) -> StoreState:
        pending = self._provider.pending
        if pending is not None and pending.owner == PAYMENT_METHOD_COLLECTION:
            return Collecting(client_secret=pending.client_secret)
        return Idle()

    @property
    def collecting(self) -> bool:
        return isinstance(self.state, Collecting)

    async def _fetch(self) -> PaymentMethodListing:
        try:
            methods = await self._api.list_payment_methods()
        except BillingApiError as exc:
            raise FetchFailed.from_error(exc) from exc
        return PaymentMethodListing(methods=tuple(methods))

    async def list_methods(self) -> PaymentMethodListing:
        return await self._cache.get_or_fetch(PAYMENT_METHODS_KEY, self._fetch)

    def peek(self) -> PaymentMethodListing | None:
        return self._cache.peek(PAYMENT_METHODS_KEY)

    def invalidate(self) -> None:
        self._cache.invalidate(PAYMENT_METHODS_KEY)

    async def select_for_charge(self, immediate_charge: float) -> PaymentMethodListing | _NoMethodNeeded:
        """Return the methods usable for a charge, or ``NO_METHOD_NEEDED`` for zero amounts."""

        if immediate_charge <= 0:
            return NO_METHOD_NEEDED
        return await self.list_methods()

    async def begin_add_method(self) -> str:
        pending = self._provider.pending
        if pending is not None and pending.owner == SUBSCRIPTION_COLLECTION:
            raise CollectionInProgress()
        if pending is not None:
            logger.debug("Replacing pending payment method collection")
        # An earlier secret is dead even when the new session cannot be created.
        self._provider.release(PAYMENT_METHOD_COLLECTION)
        client_secret = await self._provider.create_collection_session()
        self._provider.claim(PAYMENT_METHOD_COLLECTION, client_secret)
        return client_secret

    async def confirm_add_method(
        self, client_secret: str, *, payment_method: str | None = None
    ) -> CollectionResult:
        if not self._provider.holds(PAYMENT_METHOD_COLLECTION, client_secret):
            raise PaymentConfirmationFailed("This payment form has expired. Please start again.")

        result = await self._provider.confirm_collection_session(
            client_secret, payment_method=payment_method
        )
        self._provider.release(PAYMENT_METHOD_COLLECTION)
        self.invalidate()
        logger.info("Payment method collected through %s", result.intent_id)
        return result

    def cancel_add_method(self) -> None:
        self._provider.release(PAYMENT_METHOD_COLLECTION)

    async def set_default(self, method_id: str) -> None:
        try:
            ack = await self._api.set_default_payment_method(method_id)
        except BillingApiError as exc:
            raise DefaultUpdateFailed.from_error(exc) from exc
        if not ack.success:
            raise DefaultUpdateFailed(ack.message)
        self.invalidate()


__all__ = [
    "Collecting",
    "Idle",
    "NO_METHOD_NEEDED",
    "PAYMENT_METHODS_KEY",
    "PaymentMethodListing",
    "PaymentMethodStore",
    "StoreState",
]
