"""Hosted payment collection behind a small capability interface.

The reconciliation flow never inspects the provider's internals: it asks the
adapter for a collection session (a client secret) and later asks it to
confirm that session.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import Any, Literal

import stripe

from .client import BillingApiClient, BillingApiError
from .config import BillingClientSettings
from .errors import PaymentConfirmationFailed, ProviderUnavailable, SetupRequestFailed

logger = logging.getLogger(__name__)

_SECRET_SEPARATOR = "_secret_"


@dataclass(frozen=True)
class CollectionResult:
    intent_id: str
    status: str


# Owners of the pending collection slot.
PAYMENT_METHOD_COLLECTION = "payment-methods"
SUBSCRIPTION_COLLECTION = "subscription"


@dataclass(frozen=True)
class PendingCollection:
    owner: str
    client_secret: str


def parse_client_secret(client_secret: str) -> tuple[Literal["setup", "payment"], str]:
    """Return the intent kind and identifier encoded in ``client_secret``."""

    intent_id, separator, _ = client_secret.partition(_SECRET_SEPARATOR)
    if not separator or not intent_id:
        raise PaymentConfirmationFailed("The payment session is invalid. Please start again.")
    if intent_id.startswith("seti_"):
        return "setup", intent_id
    if intent_id.startswith("pi_"):
        return "payment", intent_id
    raise PaymentConfirmationFailed("The payment session is invalid. Please start again.")


class PaymentCollector(abc.ABC):
    """Hosted widget able to confirm a collection session."""

    @abc.abstractmethod
    async def confirm(
        self,
        client_secret: str,
        *,
        return_url: str,
        payment_method: str | None = None,
    ) -> CollectionResult:
        """Confirm the session; raise :class:`PaymentConfirmationFailed` on refusal."""


class StripeHostedCollector(PaymentCollector):
    """Confirm SetupIntents and PaymentIntents with the publishable key."""

    def __init__(self, publishable_key: str) -> None:
        if not publishable_key or not publishable_key.strip():
            raise ProviderUnavailable()
        self._publishable_key = publishable_key.strip()

    async def confirm(
        self,
        client_secret: str,
        *,
        return_url: str,
        payment_method: str | None = None,
    ) -> CollectionResult:
        kind, intent_id = parse_client_secret(client_secret)
        params: dict[str, Any] = {
            "api_key": self._publishable_key,
            "client_secret": client_secret,
            "return_url": return_url,
        }
        if payment_method:
            params["payment_method"] = payment_method
        resource = stripe.SetupIntent if kind == "setup" else stripe.PaymentIntent
        try:
            intent = await resource.confirm_async(intent_id, **params)
        except stripe.APIConnectionError as exc:
            logger.warning("Stripe unreachable while confirming %s: %s", intent_id, exc)
            raise PaymentConfirmationFailed(
                "We could not reach the payment provider. Check your connection and try again."
            ) from exc
        except stripe.StripeError as exc:
            message = getattr(exc, "user_message", None) or str(exc) or None
            logger.info("Hosted confirmation of %s refused: %s", intent_id, message)
            raise PaymentConfirmationFailed(message) from exc

        status = str(intent.get("status") or "")
        if status in {"succeeded", "processing"}:
            return CollectionResult(intent_id=intent_id, status=status)
        if status == "requires_action":
            next_action = intent.get("next_action") or {}
            redirect = (next_action.get("redirect_to_url") or {}).get("url")
            raise PaymentConfirmationFailed(
                "Additional authentication is required to complete this step.",
                redirect_url=redirect,
            )
        last_error = intent.get("last_setup_error") or intent.get("last_payment_error") or {}
        raise PaymentConfirmationFailed(last_error.get("message"))


class BillingProviderAdapter:
    """Create collection sessions through the API and confirm them with a collector.

    The adapter also holds the single pending collection of the session. The
    payment method store and the subscription coordinator both claim it, so
    starting one flow drops the secret of the other.
    """

    def __init__(
        self,
        api: BillingApiClient,
        collector: PaymentCollector | None,
        *,
        return_url: str,
    ) -> None:
        self._api = api
        self._collector = collector
        self._return_url = return_url
        self._pending: PendingCollection | None = None

    @classmethod
    def from_settings(cls, api: BillingApiClient, settings: BillingClientSettings) -> "BillingProviderAdapter":
        try:
            collector: PaymentCollector | None = StripeHostedCollector(settings.stripe_publishable_key)
        except ProviderUnavailable:
            logger.warning("Stripe publishable key missing; payment collection disabled")
            collector = None
        return cls(api, collector, return_url=settings.return_url)

    @property
    def available(self) -> bool:
        return self._collector is not None

    @property
    def pending(self) -> PendingCollection | None:
        return self._pending

    def claim(self, owner: str, client_secret: str) -> None:
        previous = self._pending
        if previous is not None and previous.owner != owner:
            logger.info("Pending %s collection replaced by %s", previous.owner, owner)
        self._pending = PendingCollection(owner=owner, client_secret=client_secret)

    def release(self, owner: str) -> None:
        if self._pending is not None and self._pending.owner == owner:
            self._pending = None

    def holds(self, owner: str, client_secret: str) -> bool:
        return self._pending == PendingCollection(owner=owner, client_secret=client_secret)

    async def create_collection_session(self) -> str:
        if self._collector is None:
            raise ProviderUnavailable()
        try:
            return await self._api.create_setup_intent()
        except BillingApiError as exc:
            raise SetupRequestFailed.from_error(exc) from exc

    async def confirm_collection_session(
        self, client_secret: str, *, payment_method: str | None = None
    ) -> CollectionResult:
        if self._collector is None:
            raise ProviderUnavailable()
        return await self._collector.confirm(
            client_secret, return_url=self._return_url, payment_method=payment_method
        )


__all__ = [
    "BillingProviderAdapter",
    "CollectionResult",
    "PAYMENT_METHOD_COLLECTION",
    "PaymentCollector",
    "PendingCollection",
    "SUBSCRIPTION_COLLECTION",
    "StripeHostedCollector",
    "parse_client_secret",
]
