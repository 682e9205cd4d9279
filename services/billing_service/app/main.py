"""FastAPI application exposing the billing service."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from infra import BillingBase
from libs.observability.logging import RequestContextMiddleware, configure_logging
from libs.observability.metrics import setup_metrics
from libs.schemas.billing import (
    Acknowledgement,
    BillingCycleUsage,
    BillingProduct,
    CancelSubscriptionResponse,
    CurrentSubscriptionResponse,
    PaymentMethodList,
    ScheduledChangeList,
    SetDefaultPaymentMethodRequest,
    SetupIntentResponse,
    SubscriptionChangePreview,
    SubscriptionUpdateRequest,
    SubscriptionUpdateResponse,
    UsageHistory,
    UsageReport,
)

from .auth import SessionAuthMiddleware
from .config import get_settings
from .database import SessionLocal, engine
from .dependencies import get_billing_service, get_catalog, get_customer
from .gateway import GatewayError, PaymentMethodNotFound
from .plans import PlanCatalog
from .service import BillingService, Customer

configure_logging("billing_service")
logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(title="Billing Service", version="0.1.0")

BillingBase.metadata.create_all(bind=engine)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(
    SessionAuthMiddleware,
    session_factory=SessionLocal,
    cookie_name=settings.session_cookie_name,
    skip_paths={"/health", "/metrics", "/billing/products"},
)
app.add_middleware(RequestContextMiddleware, service_name="billing_service")
setup_metrics(app, service_name="billing_service")


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(status_code=422, content={"error": message})


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    status_code = 404 if isinstance(exc, PaymentMethodNotFound) else 502
    logger.warning("Billing provider error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"error": exc.user_message})


router = APIRouter(prefix="/billing", tags=["billing"])


@router.get("/products", response_model=list[BillingProduct])
def list_products(catalog: PlanCatalog = Depends(get_catalog)):
    return catalog.products()


@router.get("/payment-methods", response_model=PaymentMethodList)
def list_payment_methods(
    customer: Customer = Depends(get_customer),
    service: BillingService = Depends(get_billing_service),
):
    return service.list_payment_methods(customer)


@router.post("/payment-methods/setup", response_model=SetupIntentResponse)
def create_setup_intent(
    customer: Customer = Depends(get_customer),
    service: BillingService = Depends(get_billing_service),
):
    return service.create_setup_intent(customer)


@router.post("/payment-methods/set-default", response_model=Acknowledgement)
def set_default_payment_method(
    payload: SetDefaultPaymentMethodRequest,
    customer: Customer = Depends(get_customer),
    service: BillingService = Depends(get_billing_service),
):
    return service.set_default_payment_method(customer, payload.payment_method_id)


@router.get("/subscriptions/current", response_model=CurrentSubscriptionResponse)
def current_subscription(
    customer: Customer = Depends(get_customer),
    service: BillingService = Depends(get_billing_service),
):
    return service.current_subscription(customer)


@router.get("/subscriptions/preview", response_model=SubscriptionChangePreview)
def preview_subscription_change(
    plan_id: str = Query(..., alias="planId", min_length=1),
    customer: Customer = Depends(get_customer),
    service: BillingService = Depends(get_billing_service),
):
    return service.preview_change(customer, plan_id)


@router.post("/subscriptions/update", response_model=SubscriptionUpdateResponse)
def update_subscription(
    payload: SubscriptionUpdateRequest,
    customer: Customer = Depends(get_customer),
    service: BillingService = Depends(get_billing_service),
):
    return service.update_subscription(customer, payload.plan_id)


@router.post("/subscriptions/cancel", response_model=CancelSubscriptionResponse)
def cancel_subscription(
    customer: Customer = Depends(get_customer),
    service: BillingService = Depends(get_billing_service),
):
    return service.cancel_subscription(customer)


@router.get("/subscriptions/scheduled", response_model=ScheduledChangeList)
def list_scheduled_changes(
    customer: Customer = Depends(get_customer),
    service: BillingService = Depends(get_billing_service),
):
    return service.scheduled_changes(customer)


@router.post("/subscriptions/scheduled/cancel", response_model=Acknowledgement)
def cancel_scheduled_change(
    customer: Customer = Depends(get_customer),
    service: BillingService = Depends(get_billing_service),
):
    return service.cancel_scheduled_change(customer)


@router.post("/usage", response_model=Acknowledgement)
def record_usage(
    payload: UsageReport,
    customer: Customer = Depends(get_customer),
    service: BillingService = Depends(get_billing_service),
):
    return service.record_usage(customer, payload.words)


@router.get("/usage/billing-cycle", response_model=BillingCycleUsage)
def billing_cycle_usage(
    customer: Customer = Depends(get_customer),
    service: BillingService = Depends(get_billing_service),
):
    return service.billing_cycle_usage(customer)


@router.get("/usage/history", response_model=UsageHistory)
def usage_history(
    months: int = Query(6, ge=1, le=24),
    customer: Customer = Depends(get_customer),
    service: BillingService = Depends(get_billing_service),
):
    return service.usage_history(customer, months)


app.include_router(router)


@app.get("/health")
def healthcheck():
    return {"status": "ok"}
