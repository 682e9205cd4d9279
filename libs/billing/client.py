"""Async HTTP client for the billing REST API."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Type, TypeVar

import httpx
from pydantic import BaseModel, TypeAdapter, ValidationError

from libs.schemas.billing import (
    Acknowledgement,
    BillingCycleUsage,
    BillingProduct,
    CancelSubscriptionResponse,
    CurrentSubscriptionResponse,
    PaymentMethod,
    PaymentMethodList,
    ScheduledChange,
    ScheduledChangeList,
    SetDefaultPaymentMethodRequest,
    SetupIntentResponse,
    SubscriptionChangePreview,
    SubscriptionUpdateRequest,
    SubscriptionUpdateResponse,
    UsageHistory,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_PRODUCTS_ADAPTER = TypeAdapter(List[BillingProduct])


class BillingApiError(RuntimeError):
    """Raised when the billing API is unreachable or answers with an error."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        server_message: str | None = None,
        response: httpx.Response | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.server_message = server_message
        self.response = response


def _error_message(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, Mapping):
        message = body.get("error") or body.get("detail")
        if isinstance(message, str) and message.strip():
            return message
    return None


@dataclass
class BillingApiClient:
    """Thin wrapper around the billing routes.

    Session credentials travel as cookies so the client mirrors what a browser
    session sends.
    """

    base_url: str
    timeout: float = 10.0
    cookies: Mapping[str, str] | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    transport: httpx.AsyncBaseTransport | None = None

    def __post_init__(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self.base_url.rstrip("/"),
            timeout=self.timeout,
            cookies=dict(self.cookies or {}),
            headers={"accept": "application/json", **dict(self.headers)},
            transport=self.transport,
        )

    async def __aenter__(self) -> "BillingApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, *, json: Any = None, params: Any = None) -> Any:
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.HTTPError as exc:
            logger.warning("Billing API %s %s unreachable: %s", method, path, exc)
            raise BillingApiError(f"Billing API unreachable: {exc}") from exc

        if response.is_error:
            server_message = _error_message(response)
            logger.info(
                "Billing API %s %s failed with %s: %s",
                method,
                path,
                response.status_code,
                server_message,
            )
            raise BillingApiError(
                server_message or f"Billing API returned HTTP {response.status_code}",
                status_code=response.status_code,
                server_message=server_message,
                response=response,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise BillingApiError("Billing API returned non JSON payload", response=response) from exc

    async def _call(
        self, model: Type[ModelT], method: str, path: str, *, json: Any = None, params: Any = None
    ) -> ModelT:
        payload = await self._request(method, path, json=json, params=params)
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise BillingApiError("Unable to parse billing API payload") from exc

    async def list_payment_methods(self) -> List[PaymentMethod]:
        listing = await self._call(PaymentMethodList, "GET", "/billing/payment-methods")
        return listing.payment_methods

    async def create_setup_intent(self) -> str:
        intent = await self._call(SetupIntentResponse, "POST", "/billing/payment-methods/setup")
        return intent.client_secret

    async def set_default_payment_method(self, payment_method_id: str) -> Acknowledgement:
        body = SetDefaultPaymentMethodRequest(payment_method_id=payment_method_id)
        return await self._call(
            Acknowledgement,
            "POST",
            "/billing/payment-methods/set-default",
            json=body.model_dump(by_alias=True),
        )

    async def get_current_subscription(self) -> CurrentSubscriptionResponse:
        return await self._call(CurrentSubscriptionResponse, "GET", "/billing/subscriptions/current")

    async def preview_subscription_change(self, plan_id: str) -> SubscriptionChangePreview:
        return await self._call(
            SubscriptionChangePreview,
            "GET",
            "/billing/subscriptions/preview",
            params={"planId": plan_id},
        )

    async def update_subscription(self, plan_id: str) -> SubscriptionUpdateResponse:
        body = SubscriptionUpdateRequest(plan_id=plan_id)
        return await self._call(
            SubscriptionUpdateResponse,
            "POST",
            "/billing/subscriptions/update",
            json=body.model_dump(by_alias=True),
        )

    async def cancel_subscription(self) -> CancelSubscriptionResponse:
        return await self._call(CancelSubscriptionResponse, "POST", "/billing/subscriptions/cancel")

    async def list_scheduled_changes(self) -> List[ScheduledChange]:
        listing = await self._call(ScheduledChangeList, "GET", "/billing/subscriptions/scheduled")
        return listing.scheduled_changes

    async def cancel_scheduled_change(self) -> Acknowledgement:
        return await self._call(Acknowledgement, "POST", "/billing/subscriptions/scheduled/cancel")

    async def get_billing_cycle_usage(self) -> BillingCycleUsage:
        return await self._call(BillingCycleUsage, "GET", "/billing/usage/billing-cycle")

    async def get_usage_history(self, months: int = 6) -> UsageHistory:
        return await self._call(UsageHistory, "GET", "/billing/usage/history", params={"months": months})

    async def list_products(self) -> List[BillingProduct]:
        payload = await self._request("GET", "/billing/products")
        try:
            return _PRODUCTS_ADAPTER.validate_python(payload)
        except ValidationError as exc:
            raise BillingApiError("Unable to parse billing API payload") from exc


__all__ = ["BillingApiClient", "BillingApiError"]
