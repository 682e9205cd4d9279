"""Dependency helpers for the billing service."""

from __future__ import annotations

from functools import lru_cache

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from .config import get_settings
from .database import get_db
from .gateway import BillingGateway, StripeBillingGateway
from .plans import PlanCatalog, build_catalog
from .service import BillingService, Customer


def get_actor_id(request: Request) -> str:
    # SessionAuthMiddleware populates request.state.customer_id
    actor_id = getattr(request.state, "customer_id", None)
    if not actor_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return actor_id


def get_customer(request: Request, actor_id: str = Depends(get_actor_id)) -> Customer:
    return Customer(user_id=actor_id, email=getattr(request.state, "customer_email", None))


@lru_cache
def _billing_gateway() -> StripeBillingGateway:
    return StripeBillingGateway(get_settings())


def get_gateway() -> BillingGateway:
    return _billing_gateway()


@lru_cache
def _plan_catalog() -> PlanCatalog:
    settings = get_settings()
    return build_catalog(settings.price_ids, default_code=settings.default_plan_code)


def get_catalog() -> PlanCatalog:
    return _plan_catalog()


def get_billing_service(
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_gateway),
    catalog: PlanCatalog = Depends(get_catalog),
) -> BillingService:
    return BillingService(db, gateway, catalog)


__all__ = [
    "get_actor_id",
    "get_billing_service",
    "get_catalog",
    "get_customer",
    "get_gateway",
]
