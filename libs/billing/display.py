"""Display formatting applied at the presentation boundary.

Formatted strings are for rendering only; compare raw plan codes and
timestamps on :class:`SubscriptionSnapshot` instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from libs.schemas.billing import PaymentMethod, SubscriptionSnapshot

_CURRENCY_SYMBOLS = {"usd": "$", "eur": "€", "gbp": "£", "cad": "CA$", "aud": "A$"}


def format_amount(amount: float, currency: str) -> str:
    symbol = _CURRENCY_SYMBOLS.get(currency.lower())
    if symbol is None:
        return f"{amount:,.2f} {currency.upper()}"
    return f"{symbol}{amount:,.2f}"


def format_date(value: datetime | None) -> str:
    if value is None:
        return "N/A"
    return f"{value:%B} {value.day}, {value.year}"


@dataclass(frozen=True)
class SubscriptionDisplay:
    plan_name: str
    price: str
    status: str
    next_renewal: str
    usage: str | None
    usage_percentage: int
    cancellation_notice: str | None


def format_subscription(snapshot: SubscriptionSnapshot) -> SubscriptionDisplay:
    if snapshot.is_free:
        price = "Free"
    else:
        price = f"{format_amount(snapshot.amount, snapshot.currency)} / {snapshot.interval.value}"

    usage = None
    percentage = 0
    if snapshot.usage is not None:
        usage = f"{snapshot.usage.consumed:,} / {snapshot.usage.limit:,} words"
        percentage = min(100, snapshot.usage.percentage)

    notice = None
    if snapshot.cancel_at_period_end:
        notice = f"Access until {format_date(snapshot.current_period_end or snapshot.next_renewal_date)}"

    return SubscriptionDisplay(
        plan_name=snapshot.plan_name,
        price=price,
        status=snapshot.status.replace("_", " ").capitalize(),
        next_renewal=format_date(snapshot.next_renewal_date),
        usage=usage,
        usage_percentage=percentage,
        cancellation_notice=notice,
    )


def format_payment_method(method: PaymentMethod) -> str:
    """Short label such as ``VISA •••• 4242`` or ``Link (jane@example.com)``."""

    if method.type == "card" and method.card is not None:
        return f"{method.card.brand.upper()} •••• {method.card.last4}"
    if method.type == "link" and method.link is not None:
        return f"Link ({method.link.email})"
    return f"{method.type[:1].upper()}{method.type[1:]} Payment"


__all__ = [
    "SubscriptionDisplay",
    "format_amount",
    "format_date",
    "format_payment_method",
    "format_subscription",
]
