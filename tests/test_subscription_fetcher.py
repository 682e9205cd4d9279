from __future__ import annotations

import asyncio

import httpx
import pytest
import respx

from libs.billing.client import BillingApiClient
from libs.billing.errors import FetchFailed
from libs.billing.subscriptions import NO_SUBSCRIPTION, SubscriptionStateFetcher

BASE_URL = "https://billing.test"
CURRENT_URL = f"{BASE_URL}/billing/subscriptions/current"

SNAPSHOT = {
    "id": "sub_1",
    "planCode": "exec_monthly",
    "planName": "Executive",
    "status": "active",
    "amount": 29.0,
    "currency": "usd",
    "interval": "month",
    "isFree": False,
    "currentPeriodStart": "2026-10-01T00:00:00Z",
    "currentPeriodEnd": "2026-11-01T00:00:00Z",
    "nextRenewalDate": "2026-11-01T00:00:00Z",
    "cancelAtPeriodEnd": False,
    "usage": {"consumed": 1200, "limit": 50000},
}


def _run(scenario):
    async def runner():
        async with BillingApiClient(base_url=BASE_URL) as api:
            return await scenario(SubscriptionStateFetcher(api))

    return asyncio.run(runner())


@respx.mock
def test_snapshot_is_parsed_and_cached() -> None:
    route = respx.get(CURRENT_URL).mock(
        return_value=httpx.Response(200, json={"success": True, "hasSubscription": True, "subscription": SNAPSHOT})
    )

    async def scenario(fetcher: SubscriptionStateFetcher):
        first = await fetcher.get_current_subscription()
        second = await fetcher.get_current_subscription()
        return first, second, fetcher.peek()

    first, second, peeked = _run(scenario)
    assert route.call_count == 1
    assert first is second is peeked
    assert first.plan_code == "exec_monthly"
    assert first.next_renewal_date.year == 2026
    assert first.usage.remaining == 48800


@respx.mock
def test_missing_subscription_returns_sentinel() -> None:
    respx.get(CURRENT_URL).mock(return_value=httpx.Response(200, json={"success": True, "hasSubscription": False}))

    async def scenario(fetcher: SubscriptionStateFetcher):
        return await fetcher.get_current_subscription()

    result = _run(scenario)
    assert result is NO_SUBSCRIPTION
    assert not result


@respx.mock
def test_invalidate_forces_a_refetch() -> None:
    route = respx.get(CURRENT_URL).mock(
        side_effect=[
            httpx.Response(200, json={"success": True, "hasSubscription": True, "subscription": SNAPSHOT}),
            httpx.Response(
                200,
                json={
                    "success": True,
                    "hasSubscription": True,
                    "subscription": {**SNAPSHOT, "cancelAtPeriodEnd": True},
                },
            ),
        ]
    )

    async def scenario(fetcher: SubscriptionStateFetcher):
        before = await fetcher.get_current_subscription()
        fetcher.invalidate()
        assert fetcher.peek() is None
        return before, await fetcher.get_current_subscription()

    before, after = _run(scenario)
    assert route.call_count == 2
    assert before.cancel_at_period_end is False
    assert after.cancel_at_period_end is True


@respx.mock
def test_server_error_raises_fetch_failed() -> None:
    respx.get(CURRENT_URL).mock(return_value=httpx.Response(500, json={"error": "Failed to fetch subscription"}))

    async def scenario(fetcher: SubscriptionStateFetcher):
        with pytest.raises(FetchFailed) as excinfo:
            await fetcher.get_current_subscription()
        return excinfo.value, fetcher.peek()

    error, peeked = _run(scenario)
    assert error.user_message == "Failed to fetch subscription"
    assert error.status_code == 500
    assert peeked is None


@respx.mock
def test_unsuccessful_payload_raises_fetch_failed() -> None:
    respx.get(CURRENT_URL).mock(return_value=httpx.Response(200, json={"success": False}))

    async def scenario(fetcher: SubscriptionStateFetcher):
        with pytest.raises(FetchFailed):
            await fetcher.get_current_subscription()

    _run(scenario)
