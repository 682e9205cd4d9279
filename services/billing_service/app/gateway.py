"""Billing provider gateway used by the billing service."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping

import stripe

from libs.schemas.billing import CardDetails, LinkDetails, PaymentMethod

from .config import Settings, get_settings

logger = logging.getLogger(__name__)

# Subscriptions in these states grant access. ``incomplete`` ones wait for a
# first payment and must not change what the customer sees.
LIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing", "past_due"})

# Metadata key marking a subscription created to start when another one ends.
SCHEDULED_FROM_KEY = "scheduled_from"


class GatewayError(RuntimeError):
    """Raised when the billing provider rejects a call or is unreachable."""

    def __init__(self, message: str, *, user_message: str | None = None) -> None:
        super().__init__(message)
        self.user_message = user_message or message


class PaymentMethodNotFound(GatewayError):
    pass


@dataclass(frozen=True)
class RemoteSubscription:
    id: str
    customer_id: str
    status: str
    price_id: str | None
    item_id: str | None
    created: int = 0
    current_period_start: int | None = None
    current_period_end: int | None = None
    cancel_at_period_end: bool = False
    payment_intent_status: str | None = None
    payment_intent_client_secret: str | None = None
    trial_end: int | None = None
    scheduled_from: str | None = None
    pending_price_id: str | None = None

    @property
    def live(self) -> bool:
        return self.status in LIVE_SUBSCRIPTION_STATUSES

    @property
    def scheduled(self) -> bool:
        """Created by a downgrade and not started yet."""

        return self.scheduled_from is not None and self.status == "trialing"

    @property
    def requires_payment_method(self) -> bool:
        return self.payment_intent_status in {"requires_payment_method", "requires_action"}


class BillingGateway(abc.ABC):
    """Operations the service needs from the billing provider."""

    @abc.abstractmethod
    def create_customer(self, *, user_id: str, email: str | None) -> str: ...

    @abc.abstractmethod
    def list_payment_methods(self, customer_id: str) -> List[PaymentMethod]: ...

    @abc.abstractmethod
    def get_default_payment_method(self, customer_id: str) -> str | None: ...

    @abc.abstractmethod
    def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None: ...

    @abc.abstractmethod
    def create_setup_intent(self, customer_id: str) -> str: ...

    @abc.abstractmethod
    def list_subscriptions(self, customer_id: str) -> List[RemoteSubscription]: ...

    @abc.abstractmethod
    def create_subscription(self, customer_id: str, price_id: str) -> RemoteSubscription: ...

    @abc.abstractmethod
    def change_subscription_price(
        self, subscription: RemoteSubscription, price_id: str
    ) -> RemoteSubscription: ...

    @abc.abstractmethod
    def schedule_subscription(
        self, customer_id: str, price_id: str, *, start_at: int, replaces: str
    ) -> RemoteSubscription: ...

    @abc.abstractmethod
    def cancel_at_period_end(self, subscription_id: str) -> RemoteSubscription: ...

    @abc.abstractmethod
    def resume_subscription(self, subscription_id: str) -> RemoteSubscription: ...

    @abc.abstractmethod
    def cancel_now(self, subscription_id: str) -> None: ...


def _as_dict(obj: Any) -> dict:
    if obj is None or isinstance(obj, str):
        return {}
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return dict(to_dict())
    if isinstance(obj, Mapping):
        return dict(obj)
    return {}


def _data(listing: Any) -> Iterable[dict]:
    return [_as_dict(item) for item in _as_dict(listing).get("data") or []]


def _identifier(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    return _as_dict(value).get("id")


def payment_method_from_stripe(obj: Any, *, default_id: str | None) -> PaymentMethod:
    data = _as_dict(obj)
    card = None
    link = None
    if data.get("card"):
        raw = _as_dict(data["card"])
        card = CardDetails(
            brand=str(raw.get("brand") or "card"),
            last4=str(raw.get("last4") or ""),
            exp_month=int(raw.get("exp_month") or 0),
            exp_year=int(raw.get("exp_year") or 0),
        )
    if data.get("link"):
        link = LinkDetails(email=str(_as_dict(data["link"]).get("email") or ""))
    return PaymentMethod(
        id=data["id"],
        type=str(data.get("type") or ("card" if card else "unknown")),
        is_default=data["id"] == default_id,
        created=int(data.get("created") or 0),
        card=card,
        link=link,
    )


def subscription_from_stripe(obj: Any) -> RemoteSubscription:
    data = _as_dict(obj)
    items = list(_data(data.get("items")))
    first_item = items[0] if items else {}
    price = _as_dict(first_item.get("price"))
    # Recent API versions report the period on the item instead of the subscription.
    period_start = data.get("current_period_start") or first_item.get("current_period_start")
    period_end = data.get("current_period_end") or first_item.get("current_period_end")

    invoice = _as_dict(data.get("latest_invoice"))
    intent = _as_dict(invoice.get("payment_intent"))
    metadata = _as_dict(data.get("metadata"))
    pending_update = _as_dict(data.get("pending_update"))
    pending_items = [_as_dict(item) for item in pending_update.get("subscription_items") or []]
    pending_price = _as_dict(pending_items[0].get("price")) if pending_items else {}
    trial_end = data.get("trial_end")
    return RemoteSubscription(
        id=data["id"],
        customer_id=_identifier(data.get("customer")) or "",
        status=str(data.get("status") or ""),
        price_id=price.get("id") or _identifier(first_item.get("price")),
        item_id=first_item.get("id"),
        created=int(data.get("created") or 0),
        current_period_start=int(period_start) if period_start else None,
        current_period_end=int(period_end) if period_end else None,
        cancel_at_period_end=bool(data.get("cancel_at_period_end")),
        payment_intent_status=intent.get("status"),
        payment_intent_client_secret=intent.get("client_secret"),
        trial_end=int(trial_end) if trial_end else None,
        scheduled_from=metadata.get(SCHEDULED_FROM_KEY) or None,
        pending_price_id=pending_price.get("id"),
    )


class StripeBillingGateway(BillingGateway):
    """Gateway backed by the Stripe API using the service secret key."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def _options(self) -> dict[str, Any]:
        api_key = self._settings.stripe_secret_key.strip()
        if not api_key:
            raise GatewayError("Stripe secret key is not configured", user_message="Payments are currently unavailable.")
        options: dict[str, Any] = {"api_key": api_key}
        if self._settings.stripe_api_version:
            options["stripe_version"] = self._settings.stripe_api_version
        return options

    def _call(self, operation: str, func, *args, **params):
        try:
            return func(*args, **params, **self._options())
        except stripe.StripeError as exc:
            logger.warning("Stripe %s failed: %s", operation, exc)
            raise GatewayError(
                f"Stripe {operation} failed: {exc}",
                user_message=getattr(exc, "user_message", None) or "The billing provider rejected the request.",
            ) from exc

    def create_customer(self, *, user_id: str, email: str | None) -> str:
        params: dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            params["email"] = email
        customer = self._call("customer creation", stripe.Customer.create, **params)
        logger.info("Created Stripe customer %s for user %s", _identifier(customer), user_id)
        return _identifier(customer)

    def list_payment_methods(self, customer_id: str) -> List[PaymentMethod]:
        default_id = self.get_default_payment_method(customer_id)
        listing = self._call(
            "payment method listing", stripe.PaymentMethod.list, customer=customer_id, limit=100
        )
        return [payment_method_from_stripe(item, default_id=default_id) for item in _data(listing)]

    def get_default_payment_method(self, customer_id: str) -> str | None:
        customer = _as_dict(self._call("customer lookup", stripe.Customer.retrieve, customer_id))
        settings = _as_dict(customer.get("invoice_settings"))
        return _identifier(settings.get("default_payment_method"))

    def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        try:
            method = _as_dict(stripe.PaymentMethod.retrieve(payment_method_id, **self._options()))
        except stripe.InvalidRequestError as exc:
            raise PaymentMethodNotFound(
                f"Payment method {payment_method_id} not found",
                user_message="Payment method not found.",
            ) from exc
        except stripe.StripeError as exc:
            raise GatewayError(f"Stripe payment method lookup failed: {exc}") from exc
        if _identifier(method.get("customer")) != customer_id:
            raise PaymentMethodNotFound(
                f"Payment method {payment_method_id} is not attached to {customer_id}",
                user_message="Payment method not found.",
            )
        self._call(
            "default payment method update",
            stripe.Customer.modify,
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
        )

    def create_setup_intent(self, customer_id: str) -> str:
        intent = _as_dict(
            self._call(
                "setup intent creation",
                stripe.SetupIntent.create,
                customer=customer_id,
                usage="off_session",
                automatic_payment_methods={"enabled": True},
            )
        )
        secret = intent.get("client_secret")
        if not secret:
            raise GatewayError("Stripe setup intent has no client secret")
        return secret

    def list_subscriptions(self, customer_id: str) -> List[RemoteSubscription]:
        listing = self._call(
            "subscription listing",
            stripe.Subscription.list,
            customer=customer_id,
            status="all",
            limit=20,
            expand=["data.latest_invoice.payment_intent"],
        )
        return [subscription_from_stripe(item) for item in _data(listing)]

    def create_subscription(self, customer_id: str, price_id: str) -> RemoteSubscription:
        subscription = self._call(
            "subscription creation",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id}],
            payment_behavior="allow_incomplete",
            expand=["latest_invoice.payment_intent"],
        )
        return subscription_from_stripe(subscription)

    def change_subscription_price(
        self, subscription: RemoteSubscription, price_id: str
    ) -> RemoteSubscription:
        # The new price applies only once the proration invoice is paid.
        if subscription.cancel_at_period_end:
            self.resume_subscription(subscription.id)
        updated = self._call(
            "subscription update",
            stripe.Subscription.modify,
            subscription.id,
            items=[{"id": subscription.item_id, "price": price_id}],
            proration_behavior="always_invoice",
            payment_behavior="pending_if_incomplete",
            expand=["latest_invoice.payment_intent"],
        )
        return subscription_from_stripe(updated)

    def schedule_subscription(
        self, customer_id: str, price_id: str, *, start_at: int, replaces: str
    ) -> RemoteSubscription:
        subscription = self._call(
            "scheduled subscription creation",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id}],
            trial_end=start_at,
            proration_behavior="none",
            metadata={SCHEDULED_FROM_KEY: replaces},
        )
        logger.info("Scheduled %s for %s to start at %s", price_id, customer_id, start_at)
        return subscription_from_stripe(subscription)

    def cancel_at_period_end(self, subscription_id: str) -> RemoteSubscription:
        updated = self._call(
            "subscription cancellation",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=True,
        )
        return subscription_from_stripe(updated)

    def resume_subscription(self, subscription_id: str) -> RemoteSubscription:
        updated = self._call(
            "subscription reactivation",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=False,
        )
        return subscription_from_stripe(updated)

    def cancel_now(self, subscription_id: str) -> None:
        self._call("subscription cancellation", stripe.Subscription.cancel, subscription_id)


__all__ = [
    "BillingGateway",
    "GatewayError",
    "LIVE_SUBSCRIPTION_STATUSES",
    "PaymentMethodNotFound",
    "RemoteSubscription",
    "SCHEDULED_FROM_KEY",
    "StripeBillingGateway",
    "payment_method_from_stripe",
    "subscription_from_stripe",
]
