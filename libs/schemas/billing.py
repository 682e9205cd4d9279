"""Pydantic contracts exchanged between the billing service and its clients.

Payloads travel as camelCase JSON; Python code uses the snake_case attribute
names. Every model accepts both spellings on input.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class BillingModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BillingInterval(str, Enum):
    MONTH = "month"
    YEAR = "year"


class CardDetails(BillingModel):
    brand: str
    last4: str
    exp_month: int
    exp_year: int


class LinkDetails(BillingModel):
    email: str = ""


class PaymentMethod(BillingModel):
    """A payment method saved on the provider customer."""

    id: str
    type: str
    is_default: bool = False
    created: int = Field(default=0, description="Creation time in unix seconds")
    card: CardDetails | None = None
    link: LinkDetails | None = None


class PaymentMethodList(BillingModel):
    payment_methods: List[PaymentMethod] = Field(default_factory=list)


class SetupIntentResponse(BillingModel):
    client_secret: str


class SetDefaultPaymentMethodRequest(BillingModel):
    payment_method_id: str = Field(min_length=1)


class Acknowledgement(BillingModel):
    success: bool = True
    message: str | None = None


class UsageCounters(BillingModel):
    """Consumed units against the plan allowance for the current cycle."""

    consumed: int = 0
    limit: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.consumed)

    @property
    def exceeded(self) -> bool:
        return self.consumed > self.limit

    @property
    def percentage(self) -> int:
        if self.limit <= 0:
            return 0
        return round(self.consumed / self.limit * 100)


class SubscriptionSnapshot(BillingModel):
    """Point-in-time view of the caller's subscription as reported by the provider."""

    id: str
    plan_code: str
    plan_name: str
    status: str
    amount: float = 0.0
    currency: str = "usd"
    interval: BillingInterval = BillingInterval.MONTH
    is_free: bool = False
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    next_renewal_date: datetime | None = None
    cancel_at_period_end: bool = False
    usage: UsageCounters | None = None


class CurrentSubscriptionResponse(BillingModel):
    success: bool = True
    has_subscription: bool = False
    subscription: SubscriptionSnapshot | None = None


class SubscriptionUpdateRequest(BillingModel):
    plan_id: str = Field(min_length=1)


class SubscriptionUpdateResponse(BillingModel):
    """Outcome of a plan change.

    When ``requires_payment`` is set the change is pending until the client
    secret has been confirmed with the hosted payment form. A set
    ``scheduled_date`` means the change only applies at that date.
    """

    success: bool = True
    requires_payment: bool = False
    client_secret: str | None = None
    plan_id: str | None = None
    message: str | None = None
    scheduled_date: datetime | None = None


class ScheduledChange(BillingModel):
    """A plan change or cancellation waiting for the end of the billing period."""

    id: str
    kind: Literal["downgrade", "cancellation"]
    current_plan: str
    scheduled_plan: str
    scheduled_plan_code: str
    scheduled_date: datetime | None = None


class ScheduledChangeList(BillingModel):
    scheduled_changes: List[ScheduledChange] = Field(default_factory=list)


class CancelSubscriptionResponse(BillingModel):
    success: bool = True
    message: str | None = None
    cancel_at_period_end: bool = True
    effective_until: datetime | None = None


class PriceOption(BillingModel):
    amount: float
    currency: str = "usd"


class ProductPricing(BillingModel):
    monthly: PriceOption | None = None
    yearly: PriceOption | None = None


class BillingProduct(BillingModel):
    id: str
    code: str
    name: str
    description: str = ""
    interval: BillingInterval = BillingInterval.MONTH
    pricing: ProductPricing = Field(default_factory=ProductPricing)
    word_limit: int = 0
    features: List[str] = Field(default_factory=list)
    is_default: bool = False


class SubscriptionChangePreview(BillingModel):
    """Billing impact of switching to another plan, computed before committing."""

    change_type: Literal["upgrade", "downgrade", "same"]
    current_plan: str
    new_plan: str
    immediate_charge: float = 0.0
    prorated_credit: float = 0.0
    next_billing_amount: float = 0.0
    currency: str = "usd"
    timing: Literal["immediate", "end_of_period"] = "immediate"
    scheduled_date: datetime | None = None
    description: str = ""


class UsageReport(BillingModel):
    words: int = Field(gt=0)


class BillingCycleUsage(BillingModel):
    current_usage: int = 0
    word_limit: int = 0
    usage_percentage: int = 0
    has_exceeded_limit: bool = False
    cycle_start: datetime | None = None
    cycle_end: datetime | None = None
    days_remaining: int = 0


class UsageHistoryEntry(BillingModel):
    period_start: datetime
    period_end: datetime
    words: int = 0


class UsageHistory(BillingModel):
    """Words consumed per calendar month, oldest month first."""

    monthly_history: List[UsageHistoryEntry] = Field(default_factory=list)
    total_usage: int = 0
    average_usage: float = 0.0


class ErrorResponse(BillingModel):
    error: str


__all__ = [
    "Acknowledgement",
    "BillingCycleUsage",
    "BillingInterval",
    "BillingProduct",
    "CancelSubscriptionResponse",
    "CardDetails",
    "CurrentSubscriptionResponse",
    "ErrorResponse",
    "LinkDetails",
    "PaymentMethod",
    "PaymentMethodList",
    "PriceOption",
    "ProductPricing",
    "ScheduledChange",
    "ScheduledChangeList",
    "SetDefaultPaymentMethodRequest",
    "SetupIntentResponse",
    "SubscriptionChangePreview",
    "SubscriptionSnapshot",
    "SubscriptionUpdateRequest",
    "SubscriptionUpdateResponse",
    "UsageCounters",
    "UsageHistory",
    "UsageHistoryEntry",
    "UsageReport",
]
