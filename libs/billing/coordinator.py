"""Plan changes and cancellations, including the payment-collection detour.

The coordinator is an explicit state machine::

    Idle --change_plan--> Requesting --success--> Idle
                          Requesting --requiresPayment--> AwaitingPaymentSetup
    AwaitingPaymentSetup --confirm_payment--> Requesting (same plan) --> Idle
    AwaitingPaymentSetup --abandon_payment--> Idle

Any failure returns to ``Idle`` carrying the error, except a refused payment
confirmation which keeps the pending collection so the user can retry. Only
one mutation runs at a time; calls made while busy are ignored.

Entering ``AwaitingPaymentSetup`` claims the pending collection slot of the
provider adapter, which ends a payment method collection in progress.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from typing import Union

from libs.schemas.billing import BillingInterval, SubscriptionSnapshot

from .client import BillingApiClient, BillingApiError
from .collector import SUBSCRIPTION_COLLECTION, BillingProviderAdapter
from .display import format_date
from .errors import BillingError, FetchFailed, MutationFailed, PaymentConfirmationFailed
from .notifications import NotificationCenter
from .payment_methods import PaymentMethodStore
from .subscriptions import SubscriptionStateFetcher, SubscriptionView

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Idle:
    error: BillingError | None = None


@dataclass(frozen=True)
class Requesting:
    plan_id: str | None = None
    cancelling: bool = False


@dataclass(frozen=True)
class AwaitingPaymentSetup:
    plan_id: str
    client_secret: str
    prior: SubscriptionSnapshot | None = None
    error: PaymentConfirmationFailed | None = None


CoordinatorState = Union[Idle, Requesting, AwaitingPaymentSetup]


class ChangeCategory(str, enum.Enum):
    FREE_TO_PAID = "free_to_paid"
    PAID_TO_FREE = "paid_to_free"
    MONTHLY_TO_YEARLY = "monthly_to_yearly"
    YEARLY_TO_MONTHLY = "yearly_to_monthly"
    PLAN_CHANGE = "plan_change"


def categorize_change(
    prior: SubscriptionSnapshot | None, current: SubscriptionSnapshot | None
) -> ChangeCategory:
    """Classify a completed change for the success message only."""

    if prior is None or current is None:
        return ChangeCategory.PLAN_CHANGE
    if prior.is_free and not current.is_free:
        return ChangeCategory.FREE_TO_PAID
    if not prior.is_free and current.is_free:
        return ChangeCategory.PAID_TO_FREE
    if prior.interval != current.interval:
        if current.interval == BillingInterval.YEAR:
            return ChangeCategory.MONTHLY_TO_YEARLY
        return ChangeCategory.YEARLY_TO_MONTHLY
    return ChangeCategory.PLAN_CHANGE


def success_message(category: ChangeCategory, current: SubscriptionSnapshot | None) -> str:
    name = current.plan_name if current is not None else "your new plan"
    if category is ChangeCategory.FREE_TO_PAID:
        return f"Your subscription has been activated. Welcome to {name}!"
    if category is ChangeCategory.PAID_TO_FREE:
        return f"You are now on the {name} plan."
    if category is ChangeCategory.MONTHLY_TO_YEARLY:
        return f"Switched to yearly billing on {name}."
    if category is ChangeCategory.YEARLY_TO_MONTHLY:
        return f"Switched to monthly billing on {name}."
    return f"Successfully updated to {name}."


def _snapshot(view: SubscriptionView | None) -> SubscriptionSnapshot | None:
    return view if isinstance(view, SubscriptionSnapshot) else None


class SubscriptionCoordinator:
    def __init__(
        self,
        api: BillingApiClient,
        provider: BillingProviderAdapter,
        subscriptions: SubscriptionStateFetcher,
        payment_methods: PaymentMethodStore,
        *,
        notifier: NotificationCenter | None = None,
    ) -> None:
        self._api = api
        self._provider = provider
        self._subscriptions = subscriptions
        self._payment_methods = payment_methods
        self._notifier = notifier or NotificationCenter()
        self._state: CoordinatorState = Idle()

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def busy(self) -> bool:
        return not isinstance(self._state, Idle)

    @property
    def notifier(self) -> NotificationCenter:
        return self._notifier

    async def change_plan(self, plan_id: str) -> CoordinatorState:
        if self.busy:
            logger.info("Ignoring plan change to %s while %s", plan_id, type(self._state).__name__)
            return self._state
        prior = _snapshot(self._subscriptions.peek())
        self._state = Requesting(plan_id=plan_id)
        return await self._request_change(plan_id, prior)

    async def confirm_payment(self, *, payment_method: str | None = None) -> CoordinatorState:
        state = self._state
        if not isinstance(state, AwaitingPaymentSetup):
            logger.info("No pending payment to confirm")
            return state
        try:
            await self._provider.confirm_collection_session(
                state.client_secret, payment_method=payment_method
            )
        except PaymentConfirmationFailed as exc:
            self._notifier.error("Payment Failed", exc.user_message)
            self._state = replace(state, error=exc)
            return self._state
        except BillingError as exc:
            self._provider.release(SUBSCRIPTION_COLLECTION)
            return self._fail(exc, "Payment Error")

        self._provider.release(SUBSCRIPTION_COLLECTION)
        self._payment_methods.invalidate()
        self._state = Requesting(plan_id=state.plan_id)
        return await self._request_change(state.plan_id, state.prior)

    def abandon_payment(self) -> CoordinatorState:
        if isinstance(self._state, AwaitingPaymentSetup):
            logger.info("Abandoned payment collection for %s", self._state.plan_id)
            self._provider.release(SUBSCRIPTION_COLLECTION)
            self._state = Idle()
        return self._state

    async def cancel_subscription(self) -> CoordinatorState:
        if self.busy:
            logger.info("Ignoring cancellation while %s", type(self._state).__name__)
            return self._state
        self._state = Requesting(cancelling=True)
        try:
            response = await self._api.cancel_subscription()
        except BillingApiError as exc:
            return self._fail(MutationFailed.from_error(exc), "Subscription Error")
        if not response.success:
            return self._fail(MutationFailed(response.message), "Subscription Error")

        self._invalidate()
        message = response.message or "Subscription cancellation initiated"
        if response.effective_until is not None:
            message = f"{message}. Access until {format_date(response.effective_until)}."
        self._notifier.success("Subscription Updated", message)
        self._state = Idle()
        return self._state

    async def cancel_scheduled_change(self) -> CoordinatorState:
        """Keep the current plan: drop a scheduled downgrade or a pending cancellation."""

        if self.busy:
            logger.info("Ignoring scheduled change cancellation while %s", type(self._state).__name__)
            return self._state
        self._state = Requesting(cancelling=True)
        try:
            response = await self._api.cancel_scheduled_change()
        except BillingApiError as exc:
            return self._fail(MutationFailed.from_error(exc), "Subscription Error")
        if not response.success:
            return self._fail(MutationFailed(response.message), "Subscription Error")

        self._invalidate()
        self._notifier.success("Scheduled Change Cancelled", response.message or "Your current plan will continue.")
        self._state = Idle()
        return self._state

    async def _request_change(
        self, plan_id: str, prior: SubscriptionSnapshot | None
    ) -> CoordinatorState:
        try:
            response = await self._api.update_subscription(plan_id)
        except BillingApiError as exc:
            return self._fail(MutationFailed.from_error(exc), "Subscription Error")
        if not response.success:
            return self._fail(MutationFailed(response.message), "Subscription Error")

        if response.requires_payment:
            if not response.client_secret:
                return self._fail(MutationFailed(), "Subscription Error")
            logger.info("Plan change to %s requires payment collection", plan_id)
            # Claiming the slot ends any payment method collection in progress.
            self._provider.claim(SUBSCRIPTION_COLLECTION, response.client_secret)
            self._state = AwaitingPaymentSetup(
                plan_id=response.plan_id or plan_id,
                client_secret=response.client_secret,
                prior=prior,
            )
            return self._state

        self._invalidate()
        if response.scheduled_date is not None:
            message = response.message or f"Your plan will change on {format_date(response.scheduled_date)}."
            self._notifier.success("Change Scheduled", message)
            self._state = Idle()
            return self._state

        current: SubscriptionSnapshot | None = None
        try:
            current = _snapshot(await self._subscriptions.get_current_subscription())
        except FetchFailed:
            logger.warning("Plan changed to %s but the refreshed subscription could not be loaded", plan_id)
        category = categorize_change(prior, current)
        self._notifier.success("Subscription Updated", success_message(category, current))
        self._state = Idle()
        return self._state

    def _invalidate(self) -> None:
        self._subscriptions.invalidate()
        self._payment_methods.invalidate()

    def _fail(self, error: BillingError, title: str) -> CoordinatorState:
        logger.info("%s: %s", title, error.user_message)
        self._notifier.error(title, error.user_message)
        self._state = Idle(error=error)
        return self._state


__all__ = [
    "AwaitingPaymentSetup",
    "ChangeCategory",
    "CoordinatorState",
    "Idle",
    "Requesting",
    "SubscriptionCoordinator",
    "categorize_change",
    "success_message",
]
