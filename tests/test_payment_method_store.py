from __future__ import annotations

import asyncio

import httpx
import pytest
import respx

from libs.billing.client import BillingApiClient
from libs.billing.collector import BillingProviderAdapter, CollectionResult, PaymentCollector
from libs.billing.errors import (
    DefaultUpdateFailed,
    FetchFailed,
    PaymentConfirmationFailed,
    ProviderUnavailable,
    SetupRequestFailed,
)
from libs.billing.payment_methods import NO_METHOD_NEEDED, Collecting, Idle, PaymentMethodStore

BASE_URL = "https://billing.test"

CARD = {
    "id": "pm_card",
    "type": "card",
    "isDefault": True,
    "created": 1700000000,
    "card": {"brand": "visa", "last4": "4242", "expMonth": 1, "expYear": 2031},
}
LINK = {"id": "pm_link", "type": "link", "created": 1700000500, "link": {"email": "jane@example.com"}}


class RecordingCollector(PaymentCollector):
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.secrets: list[str] = []

    async def confirm(self, client_secret, *, return_url, payment_method=None):
        self.secrets.append(client_secret)
        if self.error is not None:
            raise self.error
        return CollectionResult(intent_id=client_secret.split("_secret_")[0], status="succeeded")


def _run(scenario, collector: PaymentCollector | None = None):
    collector = RecordingCollector() if collector is None else collector

    async def runner():
        async with BillingApiClient(base_url=BASE_URL) as api:
            provider = BillingProviderAdapter(api, collector, return_url="https://app.test/subscription")
            return await scenario(PaymentMethodStore(api, provider))

    return asyncio.run(runner())


def _listing(*methods) -> httpx.Response:
    return httpx.Response(200, json={"paymentMethods": list(methods)})


@respx.mock
def test_list_methods_is_cached_and_exposes_default() -> None:
    route = respx.get(f"{BASE_URL}/billing/payment-methods").mock(return_value=_listing(CARD, LINK))

    async def scenario(store: PaymentMethodStore):
        first = await store.list_methods()
        second = await store.list_methods()
        return first, second

    first, second = _run(scenario)
    assert first is second
    assert route.call_count == 1
    assert first.default.id == "pm_card"
    assert first.get("pm_link").link.email == "jane@example.com"


@respx.mock
def test_network_failure_reports_fetch_failed_and_allows_retry() -> None:
    respx.get(f"{BASE_URL}/billing/payment-methods").mock(
        side_effect=[httpx.ConnectError("offline"), _listing(CARD)]
    )

    async def scenario(store: PaymentMethodStore):
        with pytest.raises(FetchFailed) as excinfo:
            await store.list_methods()
        return excinfo.value, await store.list_methods()

    error, listing = _run(scenario)
    assert error.user_message == "Could not load billing information. Please try again."
    assert len(listing) == 1


@respx.mock
def test_zero_charge_needs_no_method_and_no_network() -> None:
    async def scenario(store: PaymentMethodStore):
        return await store.select_for_charge(0)

    assert _run(scenario) is NO_METHOD_NEEDED
    assert respx.calls.call_count == 0


@respx.mock
def test_positive_charge_lists_methods() -> None:
    respx.get(f"{BASE_URL}/billing/payment-methods").mock(return_value=_listing(CARD))

    async def scenario(store: PaymentMethodStore):
        return await store.select_for_charge(19.99)

    assert _run(scenario).default.id == "pm_card"


@respx.mock
def test_added_method_appears_in_next_listing() -> None:
    respx.post(f"{BASE_URL}/billing/payment-methods/setup").mock(
        return_value=httpx.Response(200, json={"clientSecret": "seti_1_secret_a"})
    )
    list_route = respx.get(f"{BASE_URL}/billing/payment-methods").mock(
        side_effect=[_listing(), _listing(CARD)]
    )
    collector = RecordingCollector()

    async def scenario(store: PaymentMethodStore):
        before = await store.list_methods()
        secret = await store.begin_add_method()
        collecting = store.state
        await store.confirm_add_method(secret)
        after = await store.list_methods()
        return before, collecting, store.state, after

    before, collecting, final_state, after = _run(scenario, collector)
    assert len(before) == 0
    assert collecting == Collecting(client_secret="seti_1_secret_a")
    assert final_state == Idle()
    assert [m.id for m in after] == ["pm_card"]
    assert collector.secrets == ["seti_1_secret_a"]
    assert list_route.call_count == 2


@respx.mock
def test_new_collection_replaces_previous_secret() -> None:
    respx.post(f"{BASE_URL}/billing/payment-methods/setup").mock(
        side_effect=[
            httpx.Response(200, json={"clientSecret": "seti_1_secret_a"}),
            httpx.Response(200, json={"clientSecret": "seti_2_secret_b"}),
        ]
    )
    collector = RecordingCollector()

    async def scenario(store: PaymentMethodStore):
        first = await store.begin_add_method()
        await store.begin_add_method()
        with pytest.raises(PaymentConfirmationFailed):
            await store.confirm_add_method(first)
        return store.state

    assert _run(scenario, collector) == Collecting(client_secret="seti_2_secret_b")
    assert collector.secrets == []


@respx.mock
def test_refused_confirmation_stays_collecting() -> None:
    respx.post(f"{BASE_URL}/billing/payment-methods/setup").mock(
        return_value=httpx.Response(200, json={"clientSecret": "seti_1_secret_a"})
    )
    collector = RecordingCollector(error=PaymentConfirmationFailed("Your card was declined."))

    async def scenario(store: PaymentMethodStore):
        secret = await store.begin_add_method()
        with pytest.raises(PaymentConfirmationFailed) as excinfo:
            await store.confirm_add_method(secret)
        return excinfo.value, store.state

    error, state = _run(scenario, collector)
    assert error.user_message == "Your card was declined."
    assert state == Collecting(client_secret="seti_1_secret_a")


@respx.mock
def test_cancel_add_method_returns_to_idle() -> None:
    respx.post(f"{BASE_URL}/billing/payment-methods/setup").mock(
        return_value=httpx.Response(200, json={"clientSecret": "seti_1_secret_a"})
    )

    async def scenario(store: PaymentMethodStore):
        await store.begin_add_method()
        store.cancel_add_method()
        return store.state

    assert _run(scenario) == Idle()


@respx.mock
def test_missing_provider_disables_collection() -> None:
    async def scenario(store: PaymentMethodStore):
        with pytest.raises(ProviderUnavailable):
            await store.begin_add_method()
        return store.state

    async def runner():
        async with BillingApiClient(base_url=BASE_URL) as api:
            provider = BillingProviderAdapter(api, None, return_url="https://app.test/subscription")
            assert provider.available is False
            return await scenario(PaymentMethodStore(api, provider))

    assert asyncio.run(runner()) == Idle()
    assert respx.calls.call_count == 0


@respx.mock
def test_setup_request_failure_uses_server_message() -> None:
    respx.post(f"{BASE_URL}/billing/payment-methods/setup").mock(
        return_value=httpx.Response(502, json={"error": "Stripe is down"})
    )

    async def scenario(store: PaymentMethodStore):
        with pytest.raises(SetupRequestFailed) as excinfo:
            await store.begin_add_method()
        return excinfo.value, store.state

    error, state = _run(scenario)
    assert error.user_message == "Stripe is down"
    assert state == Idle()


@respx.mock
def test_set_default_refreshes_listing_after_confirmation() -> None:
    respx.post(f"{BASE_URL}/billing/payment-methods/set-default").mock(
        return_value=httpx.Response(200, json={"success": True})
    )
    list_route = respx.get(f"{BASE_URL}/billing/payment-methods").mock(
        side_effect=[
            _listing(CARD, LINK),
            _listing({**CARD, "isDefault": False}, {**LINK, "isDefault": True}),
        ]
    )

    async def scenario(store: PaymentMethodStore):
        await store.list_methods()
        await store.set_default("pm_link")
        return await store.list_methods()

    listing = _run(scenario)
    assert list_route.call_count == 2
    assert [m.id for m in listing if m.is_default] == ["pm_link"]


@respx.mock
def test_set_default_failure_keeps_cached_listing() -> None:
    respx.post(f"{BASE_URL}/billing/payment-methods/set-default").mock(
        return_value=httpx.Response(404, json={"error": "Payment method not found."})
    )
    list_route = respx.get(f"{BASE_URL}/billing/payment-methods").mock(return_value=_listing(CARD))

    async def scenario(store: PaymentMethodStore):
        before = await store.list_methods()
        with pytest.raises(DefaultUpdateFailed) as excinfo:
            await store.set_default("pm_123")
        return before, excinfo.value, await store.list_methods()

    before, error, after = _run(scenario)
    assert error.user_message == "Payment method not found."
    assert after is before
    assert list_route.call_count == 1


@respx.mock
def test_failed_setup_request_drops_previous_secret() -> None:
    respx.post(f"{BASE_URL}/billing/payment-methods/setup").mock(
        side_effect=[
            httpx.Response(200, json={"clientSecret": "seti_1_secret_a"}),
            httpx.Response(502, json={"error": "Stripe is down"}),
        ]
    )
    collector = RecordingCollector()

    async def scenario(store: PaymentMethodStore):
        first = await store.begin_add_method()
        with pytest.raises(SetupRequestFailed):
            await store.begin_add_method()
        state = store.state
        with pytest.raises(PaymentConfirmationFailed) as excinfo:
            await store.confirm_add_method(first)
        return state, excinfo.value

    state, error = _run(scenario, collector)
    assert state == Idle()
    assert error.user_message == "This payment form has expired. Please start again."
    assert collector.secrets == []
