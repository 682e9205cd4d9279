"""Catalog of subscription plans offered by the app."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, Iterable, Iterator, List, Mapping, Tuple

from libs.schemas.billing import BillingInterval, BillingProduct, PriceOption, ProductPricing


class UnknownPlan(KeyError):
    pass


@dataclass(frozen=True)
class Plan:
    code: str
    name: str
    family: str
    interval: BillingInterval
    amount: float
    word_limit: int
    currency: str = "usd"
    features: Tuple[str, ...] = ()
    is_default: bool = False
    stripe_price_id: str | None = None

    @property
    def is_free(self) -> bool:
        return self.amount == 0


DEFAULT_PLANS: Tuple[Plan, ...] = (
    Plan(
        code="starter",
        name="Starter",
        family="starter",
        interval=BillingInterval.MONTH,
        amount=0.0,
        word_limit=500,
        features=("500 words per month", "Basic analytics", "Up to 3 leader models"),
        is_default=True,
    ),
    Plan(
        code="leader_monthly",
        name="Leader",
        family="leader",
        interval=BillingInterval.MONTH,
        amount=9.99,
        word_limit=15000,
        features=("15,000 words per month", "Advanced analytics", "Up to 5 leader models", "Priority support"),
    ),
    Plan(
        code="leader_yearly",
        name="Leader",
        family="leader",
        interval=BillingInterval.YEAR,
        amount=99.0,
        word_limit=15000,
        features=("15,000 words per month", "Advanced analytics", "Up to 5 leader models", "Priority support"),
    ),
    Plan(
        code="exec_monthly",
        name="Executive",
        family="exec",
        interval=BillingInterval.MONTH,
        amount=29.0,
        word_limit=50000,
        features=(
            "50,000 words per month",
            "Premium analytics",
            "Unlimited leader models",
            "Custom leader models",
        ),
    ),
    Plan(
        code="exec_yearly",
        name="Executive",
        family="exec",
        interval=BillingInterval.YEAR,
        amount=199.0,
        word_limit=50000,
        features=(
            "50,000 words per month",
            "Premium analytics",
            "Unlimited leader models",
            "Custom leader models",
        ),
    ),
)


class PlanCatalog:
    def __init__(self, plans: Iterable[Plan], *, default_code: str | None = None) -> None:
        self._plans: Dict[str, Plan] = {plan.code: plan for plan in plans}
        if not self._plans:
            raise ValueError("Plan catalog cannot be empty")
        if default_code is None:
            default_code = next((p.code for p in self._plans.values() if p.is_default), None)
        if default_code not in self._plans:
            raise ValueError(f"Default plan {default_code!r} is not in the catalog")
        self._default_code = default_code

    def __iter__(self) -> Iterator[Plan]:
        return iter(self._plans.values())

    def __contains__(self, code: object) -> bool:
        return code in self._plans

    @property
    def default(self) -> Plan:
        return self._plans[self._default_code]

    def get(self, code: str) -> Plan:
        try:
            return self._plans[code]
        except KeyError as exc:
            raise UnknownPlan(code) from exc

    def by_price_id(self, price_id: str | None) -> Plan | None:
        if not price_id:
            return None
        for plan in self._plans.values():
            if plan.stripe_price_id == price_id:
                return plan
        return None

    def products(self) -> List[BillingProduct]:
        by_family: Dict[str, Dict[BillingInterval, Plan]] = {}
        for plan in self._plans.values():
            by_family.setdefault(plan.family, {})[plan.interval] = plan

        products: List[BillingProduct] = []
        for plan in self._plans.values():
            siblings = by_family[plan.family]
            monthly = siblings.get(BillingInterval.MONTH)
            yearly = siblings.get(BillingInterval.YEAR)
            products.append(
                BillingProduct(
                    id=plan.stripe_price_id or plan.code,
                    code=plan.code,
                    name=plan.name,
                    description=f"{plan.word_limit:,} words per month",
                    interval=plan.interval,
                    pricing=ProductPricing(
                        monthly=PriceOption(amount=monthly.amount, currency=monthly.currency) if monthly else None,
                        yearly=PriceOption(amount=yearly.amount, currency=yearly.currency) if yearly else None,
                    ),
                    word_limit=plan.word_limit,
                    features=list(plan.features),
                    is_default=plan.code == self._default_code,
                )
            )
        return products


def build_catalog(price_ids: Mapping[str, str], *, default_code: str | None = None) -> PlanCatalog:
    """Default catalog with Stripe price ids attached from configuration."""

    plans = [replace(plan, stripe_price_id=price_ids.get(plan.code)) for plan in DEFAULT_PLANS]
    return PlanCatalog(plans, default_code=default_code)


__all__ = ["DEFAULT_PLANS", "Plan", "PlanCatalog", "UnknownPlan", "build_catalog"]
