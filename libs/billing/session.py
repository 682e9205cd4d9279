"""Wiring of the billing flow for one signed-in user."""

from __future__ import annotations

import logging
from typing import Mapping, Tuple

import httpx

from .cache import QueryCache
from .client import BillingApiClient
from .collector import BillingProviderAdapter, PaymentCollector
from .config import BillingClientSettings, get_client_settings
from .coordinator import SubscriptionCoordinator
from .notifications import NotificationCenter, surface_errors
from .payment_methods import PaymentMethodListing, PaymentMethodStore
from .subscriptions import SubscriptionStateFetcher, SubscriptionView

logger = logging.getLogger(__name__)


class BillingSession:
    """Components sharing one cache, one API client and one notification center.

    The ``add_payment_method``/``make_default``/``refresh`` helpers catch billing
    errors and turn them into notifications; they return ``False`` or ``None``
    on failure.
    """

    def __init__(
        self,
        api: BillingApiClient,
        provider: BillingProviderAdapter,
        *,
        cache: QueryCache | None = None,
        notifier: NotificationCenter | None = None,
    ) -> None:
        self.api = api
        self.provider = provider
        self.cache = cache or QueryCache()
        self.notifier = notifier or NotificationCenter()
        self.payment_methods = PaymentMethodStore(api, provider, cache=self.cache)
        self.subscriptions = SubscriptionStateFetcher(api, cache=self.cache)
        self.coordinator = SubscriptionCoordinator(
            api,
            provider,
            self.subscriptions,
            self.payment_methods,
            notifier=self.notifier,
        )

    @classmethod
    def from_settings(
        cls,
        settings: BillingClientSettings | None = None,
        *,
        cookies: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        collector: PaymentCollector | None = None,
    ) -> "BillingSession":
        settings = settings or get_client_settings()
        api = BillingApiClient(
            base_url=settings.api_base_url,
            timeout=settings.timeout,
            cookies=cookies,
            headers=dict(headers or {}),
            transport=transport,
        )
        if collector is not None:
            provider = BillingProviderAdapter(api, collector, return_url=settings.return_url)
        else:
            provider = BillingProviderAdapter.from_settings(api, settings)
        return cls(api, provider)

    async def __aenter__(self) -> "BillingSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self.cache.clear()
        await self.api.aclose()

    async def refresh(self) -> Tuple[SubscriptionView | None, PaymentMethodListing | None]:
        subscription = methods = None
        async with surface_errors(self.notifier, "Subscription Error"):
            subscription = await self.subscriptions.get_current_subscription()
        async with surface_errors(self.notifier, "Payment Error"):
            methods = await self.payment_methods.list_methods()
        return subscription, methods

    async def add_payment_method(self, payment_method: str | None = None) -> bool:
        async with surface_errors(self.notifier, "Payment Method Setup Failed") as capture:
            secret = await self.payment_methods.begin_add_method()
            await self.payment_methods.confirm_add_method(secret, payment_method=payment_method)
        if capture.failed:
            return False
        self.notifier.success("Payment Method Added", "Your payment method has been successfully added!")
        return True

    async def make_default(self, method_id: str) -> bool:
        async with surface_errors(self.notifier, "Payment Error") as capture:
            await self.payment_methods.set_default(method_id)
        if capture.failed:
            return False
        self.notifier.success(
            "Default Payment Method Updated",
            "Your default payment method has been updated successfully.",
        )
        return True


__all__ = ["BillingSession"]
