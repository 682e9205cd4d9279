"""Business logic of the billing service.

Stripe is the source of truth for customers, payment methods and
subscriptions; the local database only remembers which Stripe customer
belongs to which user, plus the usage counters.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Tuple

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from infra import BillingAccount, UsageRecord
from libs.observability.metrics import record_billing_event
from libs.schemas.billing import (
    Acknowledgement,
    BillingCycleUsage,
    CancelSubscriptionResponse,
    CurrentSubscriptionResponse,
    PaymentMethodList,
    ScheduledChange,
    ScheduledChangeList,
    SetupIntentResponse,
    SubscriptionChangePreview,
    SubscriptionSnapshot,
    SubscriptionUpdateResponse,
    UsageCounters,
    UsageHistory,
    UsageHistoryEntry,
)

from .gateway import BillingGateway, RemoteSubscription
from .plans import Plan, PlanCatalog, UnknownPlan

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 60 * 60 * 24


@dataclass(frozen=True)
class Customer:
    user_id: str
    email: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _from_timestamp(value: int | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _month_bounds(now: datetime) -> Tuple[datetime, datetime]:
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def _add_months(value: datetime, months: int) -> datetime:
    index = value.year * 12 + value.month - 1 + months
    return value.replace(year=index // 12, month=index % 12 + 1)


class BillingService:
    def __init__(
        self,
        db: Session,
        gateway: BillingGateway,
        catalog: PlanCatalog,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db = db
        self._gateway = gateway
        self._catalog = catalog
        self._clock = clock

    # -- accounts -----------------------------------------------------------------

    def _account(self, customer: Customer) -> BillingAccount:
        account = self._db.scalar(select(BillingAccount).where(BillingAccount.user_id == customer.user_id))
        if account is None:
            account = BillingAccount(user_id=customer.user_id, email=customer.email)
            self._db.add(account)
            self._db.flush()
        elif customer.email and account.email != customer.email:
            account.email = customer.email
        return account

    def _customer_id(self, customer: Customer) -> Tuple[BillingAccount, str]:
        account = self._account(customer)
        if not account.stripe_customer_id:
            account.stripe_customer_id = self._gateway.create_customer(
                user_id=customer.user_id, email=account.email
            )
            self._db.commit()
        return account, account.stripe_customer_id

    def _plan_for(self, remote: RemoteSubscription) -> Plan:
        plan = self._catalog.by_price_id(remote.price_id)
        if plan is None:
            logger.warning("Subscription %s uses unknown price %s", remote.id, remote.price_id)
            return Plan(
                code=remote.price_id or "unknown",
                name="Custom plan",
                family="custom",
                interval=self._catalog.default.interval,
                amount=0.0,
                word_limit=0,
            )
        return plan

    # -- usage --------------------------------------------------------------------

    def _words_since(self, user_id: str, since: datetime) -> int:
        total = self._db.scalar(
            select(func.coalesce(func.sum(UsageRecord.words), 0)).where(
                UsageRecord.user_id == user_id, UsageRecord.recorded_at >= since
            )
        )
        return int(total or 0)

    def record_usage(self, customer: Customer, words: int) -> Acknowledgement:
        self._db.add(UsageRecord(user_id=customer.user_id, words=words, recorded_at=self._clock()))
        self._db.commit()
        return Acknowledgement(success=True, message=f"Recorded {words} words")

    # -- payment methods ----------------------------------------------------------

    def list_payment_methods(self, customer: Customer) -> PaymentMethodList:
        _, customer_id = self._customer_id(customer)
        return PaymentMethodList(payment_methods=self._gateway.list_payment_methods(customer_id))

    def create_setup_intent(self, customer: Customer) -> SetupIntentResponse:
        _, customer_id = self._customer_id(customer)
        return SetupIntentResponse(client_secret=self._gateway.create_setup_intent(customer_id))

    def set_default_payment_method(self, customer: Customer, payment_method_id: str) -> Acknowledgement:
        _, customer_id = self._customer_id(customer)
        self._gateway.set_default_payment_method(customer_id, payment_method_id)
        logger.info("Default payment method of %s set to %s", customer.user_id, payment_method_id)
        return Acknowledgement(success=True, message="Default payment method updated")

    # -- subscriptions ------------------------------------------------------------

    def _subscriptions(
        self, customer_id: str
    ) -> Tuple[List[RemoteSubscription], List[RemoteSubscription], List[RemoteSubscription]]:
        """Split the customer's subscriptions into live, scheduled and all.

        Live ones are newest first and never include a scheduled downgrade.
        """

        remote = self._gateway.list_subscriptions(customer_id)
        live = sorted(
            (sub for sub in remote if sub.live and not sub.scheduled),
            key=lambda sub: sub.created,
            reverse=True,
        )
        scheduled = [sub for sub in remote if sub.scheduled]
        return live, scheduled, remote

    def _live_subscriptions(self, customer_id: str) -> List[RemoteSubscription]:
        live, _, _ = self._subscriptions(customer_id)
        return live

    def _cancel_scheduled(self, scheduled: List[RemoteSubscription]) -> None:
        for sub in scheduled:
            logger.info("Dropping scheduled subscription %s", sub.id)
            self._gateway.cancel_now(sub.id)

    def _snapshot(self, user_id: str, remote: RemoteSubscription) -> SubscriptionSnapshot:
        plan = self._plan_for(remote)
        period_start = _from_timestamp(remote.current_period_start)
        period_end = _from_timestamp(remote.current_period_end)
        if period_start is None:
            period_start, _ = _month_bounds(self._clock())
        return SubscriptionSnapshot(
            id=remote.id,
            plan_code=plan.code,
            plan_name=plan.name,
            status=remote.status,
            amount=plan.amount,
            currency=plan.currency,
            interval=plan.interval,
            is_free=plan.is_free,
            current_period_start=period_start,
            current_period_end=period_end,
            next_renewal_date=period_end,
            cancel_at_period_end=remote.cancel_at_period_end,
            usage=UsageCounters(consumed=self._words_since(user_id, period_start), limit=plan.word_limit),
        )

    def _free_snapshot(self, user_id: str, plan: Plan) -> SubscriptionSnapshot:
        start, end = _month_bounds(self._clock())
        return SubscriptionSnapshot(
            id=f"free_{user_id}",
            plan_code=plan.code,
            plan_name=plan.name,
            status="active",
            amount=0.0,
            currency=plan.currency,
            interval=plan.interval,
            is_free=True,
            current_period_start=start,
            current_period_end=end,
            next_renewal_date=end,
            usage=UsageCounters(consumed=self._words_since(user_id, start), limit=plan.word_limit),
        )

    def current_subscription(self, customer: Customer) -> CurrentSubscriptionResponse:
        account, customer_id = self._customer_id(customer)
        live = self._live_subscriptions(customer_id)
        if live:
            current = live[0]
            if len(live) > 1:
                logger.warning("Customer %s has %d live subscriptions; using %s", customer_id, len(live), current.id)
        else:
            default_plan = self._catalog.default
            if not default_plan.stripe_price_id:
                return CurrentSubscriptionResponse(
                    success=True,
                    has_subscription=True,
                    subscription=self._free_snapshot(customer.user_id, default_plan),
                )
            current = self._gateway.create_subscription(customer_id, default_plan.stripe_price_id)
            logger.info("Enrolled %s in default plan %s", customer.user_id, default_plan.code)
            record_billing_event("default_enrollment")

        if account.stripe_subscription_id != current.id:
            account.stripe_subscription_id = current.id
            self._db.commit()
        return CurrentSubscriptionResponse(
            success=True,
            has_subscription=True,
            subscription=self._snapshot(customer.user_id, current),
        )

    def _resolve_plan(self, plan_id: str) -> Plan:
        try:
            return self._catalog.get(plan_id)
        except UnknownPlan:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription plan not found")

    def _is_scheduled_downgrade(
        self, current: RemoteSubscription | None, current_plan: Plan, new_plan: Plan
    ) -> bool:
        """Paid plans move to cheaper ones only when the paid period is over."""

        return (
            current is not None
            and current.current_period_end is not None
            and not current_plan.is_free
            and new_plan.amount < current_plan.amount
        )

    def preview_change(self, customer: Customer, plan_id: str) -> SubscriptionChangePreview:
        new_plan = self._resolve_plan(plan_id)
        _, customer_id = self._customer_id(customer)
        live = self._live_subscriptions(customer_id)
        current = live[0] if live else None
        current_plan = self._plan_for(current) if current else self._catalog.default

        if new_plan.amount > current_plan.amount:
            change_type = "upgrade"
        elif new_plan.amount < current_plan.amount:
            change_type = "downgrade"
        else:
            change_type = "same"

        immediate_charge = 0.0
        prorated_credit = 0.0
        timing = "immediate"
        scheduled_date = None
        if change_type == "upgrade":
            immediate_charge = new_plan.amount
            if current and current.current_period_start and current.current_period_end and not current_plan.is_free:
                now = int(self._clock().timestamp())
                total_days = max(1, -(-(current.current_period_end - current.current_period_start) // SECONDS_PER_DAY))
                remaining_days = max(0, -(-(current.current_period_end - now) // SECONDS_PER_DAY))
                remaining_days = min(remaining_days, total_days)
                difference = new_plan.amount - current_plan.amount
                immediate_charge = round(difference * remaining_days / total_days, 2)
                prorated_credit = round(current_plan.amount * remaining_days / total_days, 2)
            description = (
                f"Upgrade to {new_plan.name}. You'll be charged ${immediate_charge:.2f} immediately "
                "for the prorated difference and gain access to new features right away."
            )
        elif self._is_scheduled_downgrade(current, current_plan, new_plan):
            timing = "end_of_period"
            scheduled_date = _from_timestamp(current.current_period_end)
            description = (
                f"Downgrade to {new_plan.name} will take effect at the end of your current billing "
                f"period ({scheduled_date:%Y-%m-%d}). You'll keep all current features until then."
            )
        elif change_type == "downgrade":
            description = f"Switch to {new_plan.name}. The change applies right away."
        else:
            description = f"Switch to {new_plan.name}. No billing changes, just feature/limit adjustments."

        return SubscriptionChangePreview(
            change_type=change_type,
            current_plan=current_plan.name,
            new_plan=new_plan.name,
            immediate_charge=immediate_charge,
            prorated_credit=prorated_credit,
            next_billing_amount=new_plan.amount,
            currency=new_plan.currency,
            timing=timing,
            scheduled_date=scheduled_date,
            description=description,
        )

    def _ensure_default_payment_method(self, customer_id: str) -> str | None:
        """Return the default method, promoting the first saved one when none is set."""

        default_id = self._gateway.get_default_payment_method(customer_id)
        if default_id:
            return default_id
        methods = self._gateway.list_payment_methods(customer_id)
        if not methods:
            return None
        self._gateway.set_default_payment_method(customer_id, methods[0].id)
        logger.info("Promoted %s to default payment method of %s", methods[0].id, customer_id)
        return methods[0].id

    def _start_subscription(
        self, customer_id: str, remote: List[RemoteSubscription], plan: Plan
    ) -> RemoteSubscription:
        """Create the subscription, reusing an unpaid attempt for the same price."""

        reused = None
        for attempt in remote:
            if attempt.status != "incomplete":
                continue
            if reused is None and attempt.price_id == plan.stripe_price_id:
                reused = attempt
                continue
            logger.info("Cancelling abandoned subscription attempt %s of %s", attempt.id, customer_id)
            self._gateway.cancel_now(attempt.id)
        if reused is not None:
            return reused
        return self._gateway.create_subscription(customer_id, plan.stripe_price_id)

    def _schedule_downgrade(
        self,
        customer_id: str,
        current: RemoteSubscription,
        scheduled: List[RemoteSubscription],
        plan: Plan,
    ) -> SubscriptionUpdateResponse:
        self._cancel_scheduled(scheduled)
        if not current.cancel_at_period_end:
            current = self._gateway.cancel_at_period_end(current.id)
        start_at = current.current_period_end
        self._gateway.schedule_subscription(
            customer_id, plan.stripe_price_id, start_at=start_at, replaces=current.id
        )
        effective = _from_timestamp(start_at)
        logger.info("Downgrade of %s to %s scheduled for %s", customer_id, plan.code, effective)
        record_billing_event("downgrade_scheduled")
        return SubscriptionUpdateResponse(
            success=True,
            plan_id=plan.code,
            scheduled_date=effective,
            message=f"Downgrade scheduled successfully. Change will take effect on {effective:%B} {effective.day}, {effective.year}.",
        )

    def _move_to_unpriced_free_plan(
        self,
        current: RemoteSubscription | None,
        scheduled: List[RemoteSubscription],
        plan: Plan,
    ) -> SubscriptionUpdateResponse:
        self._cancel_scheduled(scheduled)
        effective = None
        if current is not None:
            if not current.cancel_at_period_end:
                current = self._gateway.cancel_at_period_end(current.id)
            effective = _from_timestamp(current.current_period_end)
        record_billing_event("downgrade_scheduled")
        return SubscriptionUpdateResponse(
            success=True,
            plan_id=plan.code,
            scheduled_date=effective,
            message="Subscription updated successfully to free plan",
        )

    def update_subscription(self, customer: Customer, plan_id: str) -> SubscriptionUpdateResponse:
        plan = self._resolve_plan(plan_id)
        account, customer_id = self._customer_id(customer)
        live, scheduled, remote_subscriptions = self._subscriptions(customer_id)
        current = live[0] if live else None
        for duplicate in live[1:]:
            logger.warning("Cancelling duplicate subscription %s of %s", duplicate.id, customer_id)
            self._gateway.cancel_now(duplicate.id)

        if not plan.stripe_price_id:
            if not plan.is_free:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f"Plan {plan.code} is not available for purchase",
                )
            return self._move_to_unpriced_free_plan(current, scheduled, plan)

        if not plan.is_free and self._ensure_default_payment_method(customer_id) is None:
            client_secret = self._gateway.create_setup_intent(customer_id)
            logger.info("Plan change of %s to %s waits for a payment method", customer.user_id, plan.code)
            record_billing_event("payment_method_required")
            return SubscriptionUpdateResponse(
                success=True,
                requires_payment=True,
                client_secret=client_secret,
                plan_id=plan.code,
                message="Please add a payment method to update your subscription",
            )

        current_plan = self._plan_for(current) if current else self._catalog.default
        if current is not None and current.price_id == plan.stripe_price_id:
            self._cancel_scheduled(scheduled)
            remote = self._gateway.resume_subscription(current.id) if current.cancel_at_period_end else current
        elif self._is_scheduled_downgrade(current, current_plan, plan):
            return self._schedule_downgrade(customer_id, current, scheduled, plan)
        else:
            self._cancel_scheduled(scheduled)
            if current is None:
                remote = self._start_subscription(customer_id, remote_subscriptions, plan)
            else:
                remote = self._gateway.change_subscription_price(current, plan.stripe_price_id)

        account.stripe_subscription_id = remote.id
        self._db.commit()

        if remote.requires_payment_method and remote.payment_intent_client_secret:
            record_billing_event("payment_required")
            return SubscriptionUpdateResponse(
                success=True,
                requires_payment=True,
                client_secret=remote.payment_intent_client_secret,
                plan_id=plan.code,
                message="Please complete payment to finalize subscription update",
            )
        logger.info("Subscription of %s moved to %s", customer.user_id, plan.code)
        record_billing_event("subscription_updated")
        return SubscriptionUpdateResponse(
            success=True,
            plan_id=plan.code,
            message="Subscription updated successfully to free plan" if plan.is_free else "Subscription updated successfully",
        )

    def cancel_subscription(self, customer: Customer) -> CancelSubscriptionResponse:
        _, customer_id = self._customer_id(customer)
        live, scheduled, _ = self._subscriptions(customer_id)
        if not live:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active subscription found")
        self._cancel_scheduled(scheduled)
        remote = self._gateway.cancel_at_period_end(live[0].id)
        logger.info("Subscription %s of %s cancels at period end", remote.id, customer.user_id)
        record_billing_event("subscription_cancelled")
        return CancelSubscriptionResponse(
            success=True,
            message="Subscription cancelled successfully. You'll retain access until your current billing period ends.",
            cancel_at_period_end=remote.cancel_at_period_end,
            effective_until=_from_timestamp(remote.current_period_end),
        )

    # -- scheduled changes --------------------------------------------------------

    def scheduled_changes(self, customer: Customer) -> ScheduledChangeList:
        _, customer_id = self._customer_id(customer)
        live, scheduled, _ = self._subscriptions(customer_id)
        current = live[0] if live else None
        current_name = self._plan_for(current).name if current else self._catalog.default.name

        changes: List[ScheduledChange] = []
        for sub in scheduled:
            plan = self._plan_for(sub)
            changes.append(
                ScheduledChange(
                    id=sub.id,
                    kind="downgrade",
                    current_plan=current_name,
                    scheduled_plan=plan.name,
                    scheduled_plan_code=plan.code,
                    scheduled_date=_from_timestamp(sub.trial_end),
                )
            )
        if not changes and current is not None and current.cancel_at_period_end:
            fallback = self._catalog.default
            changes.append(
                ScheduledChange(
                    id=current.id,
                    kind="cancellation",
                    current_plan=current_name,
                    scheduled_plan=fallback.name,
                    scheduled_plan_code=fallback.code,
                    scheduled_date=_from_timestamp(current.current_period_end),
                )
            )
        return ScheduledChangeList(scheduled_changes=changes)

    def cancel_scheduled_change(self, customer: Customer) -> Acknowledgement:
        """Drop pending downgrades and keep the current subscription renewing."""

        _, customer_id = self._customer_id(customer)
        live, scheduled, _ = self._subscriptions(customer_id)
        current = live[0] if live else None
        cancelling = current is not None and current.cancel_at_period_end
        if not scheduled and not cancelling:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No scheduled change found")
        self._cancel_scheduled(scheduled)
        if cancelling:
            self._gateway.resume_subscription(current.id)
        logger.info("Scheduled change of %s cancelled", customer.user_id)
        record_billing_event("scheduled_change_cancelled")
        return Acknowledgement(success=True, message="Scheduled change cancelled successfully.")

    # -- usage reports ------------------------------------------------------------

    def billing_cycle_usage(self, customer: Customer) -> BillingCycleUsage:
        snapshot = self.current_subscription(customer).subscription
        usage = snapshot.usage or UsageCounters()
        days_remaining = 0
        if snapshot.current_period_end is not None:
            seconds = (snapshot.current_period_end - self._clock()).total_seconds()
            days_remaining = max(0, math.ceil(seconds / SECONDS_PER_DAY))
        return BillingCycleUsage(
            current_usage=usage.consumed,
            word_limit=usage.limit,
            usage_percentage=min(100, usage.percentage),
            has_exceeded_limit=usage.exceeded,
            cycle_start=snapshot.current_period_start,
            cycle_end=snapshot.current_period_end,
            days_remaining=days_remaining,
        )

    def usage_history(self, customer: Customer, months: int = 6) -> UsageHistory:
        current_start, _ = _month_bounds(self._clock())
        periods = [
            (_add_months(current_start, -offset), _add_months(current_start, 1 - offset))
            for offset in range(months - 1, -1, -1)
        ]
        rows = self._db.execute(
            select(UsageRecord.words, UsageRecord.recorded_at).where(
                UsageRecord.user_id == customer.user_id, UsageRecord.recorded_at >= periods[0][0]
            )
        ).all()

        totals = [0] * len(periods)
        for words, recorded_at in rows:
            if recorded_at.tzinfo is None:
                recorded_at = recorded_at.replace(tzinfo=timezone.utc)
            for index, (start, end) in enumerate(periods):
                if start <= recorded_at < end:
                    totals[index] += words
                    break

        total = sum(totals)
        return UsageHistory(
            monthly_history=[
                UsageHistoryEntry(period_start=start, period_end=end, words=words)
                for (start, end), words in zip(periods, totals)
            ],
            total_usage=total,
            average_usage=round(total / len(periods), 2),
        )


__all__ = ["BillingService", "Customer"]
