from __future__ import annotations

import asyncio

import pytest
import stripe

from libs.billing.client import BillingApiClient
from libs.billing.collector import BillingProviderAdapter, StripeHostedCollector, parse_client_secret
from libs.billing.config import BillingClientSettings
from libs.billing.errors import PaymentConfirmationFailed, ProviderUnavailable

RETURN_URL = "https://app.test/subscription"


def _recorder(calls: list, response: dict):
    async def confirm(intent_id, **params):
        calls.append((intent_id, params))
        return response

    return confirm


def test_client_secret_identifies_intent_kind() -> None:
    assert parse_client_secret("seti_123_secret_abc") == ("setup", "seti_123")
    assert parse_client_secret("pi_456_secret_def") == ("payment", "pi_456")
    with pytest.raises(PaymentConfirmationFailed):
        parse_client_secret("cs_test_1")
    with pytest.raises(PaymentConfirmationFailed):
        parse_client_secret("src_1_secret_x")


def test_setup_intent_is_confirmed_with_publishable_key(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list = []
    monkeypatch.setattr(
        "libs.billing.collector.stripe.SetupIntent.confirm_async",
        _recorder(calls, {"id": "seti_123", "status": "succeeded"}),
    )
    collector = StripeHostedCollector("pk_test_123")

    result = asyncio.run(
        collector.confirm("seti_123_secret_abc", return_url=RETURN_URL, payment_method="pm_card_visa")
    )

    assert result.intent_id == "seti_123"
    assert result.status == "succeeded"
    intent_id, params = calls[0]
    assert intent_id == "seti_123"
    assert params == {
        "api_key": "pk_test_123",
        "client_secret": "seti_123_secret_abc",
        "return_url": RETURN_URL,
        "payment_method": "pm_card_visa",
    }


def test_payment_intent_processing_counts_as_confirmed(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list = []
    monkeypatch.setattr(
        "libs.billing.collector.stripe.PaymentIntent.confirm_async",
        _recorder(calls, {"id": "pi_456", "status": "processing"}),
    )

    result = asyncio.run(StripeHostedCollector("pk_test_123").confirm("pi_456_secret_def", return_url=RETURN_URL))

    assert result.status == "processing"
    assert "payment_method" not in calls[0][1]


def test_redirect_step_is_reported(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "libs.billing.collector.stripe.PaymentIntent.confirm_async",
        _recorder(
            [],
            {
                "status": "requires_action",
                "next_action": {"redirect_to_url": {"url": "https://hooks.stripe.test/3ds"}},
            },
        ),
    )

    with pytest.raises(PaymentConfirmationFailed) as excinfo:
        asyncio.run(StripeHostedCollector("pk_test_123").confirm("pi_456_secret_def", return_url=RETURN_URL))

    assert excinfo.value.redirect_url == "https://hooks.stripe.test/3ds"


def test_declined_setup_surfaces_provider_message(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "libs.billing.collector.stripe.SetupIntent.confirm_async",
        _recorder(
            [],
            {"status": "requires_payment_method", "last_setup_error": {"message": "Your card was declined."}},
        ),
    )

    with pytest.raises(PaymentConfirmationFailed) as excinfo:
        asyncio.run(StripeHostedCollector("pk_test_123").confirm("seti_1_secret_a", return_url=RETURN_URL))

    assert excinfo.value.user_message == "Your card was declined."


def test_stripe_errors_become_confirmation_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    async def failing(intent_id, **params):
        raise stripe.InvalidRequestError("No such setupintent: 'seti_1'", param=None)

    monkeypatch.setattr("libs.billing.collector.stripe.SetupIntent.confirm_async", failing)

    with pytest.raises(PaymentConfirmationFailed) as excinfo:
        asyncio.run(StripeHostedCollector("pk_test_123").confirm("seti_1_secret_a", return_url=RETURN_URL))

    assert "No such setupintent" in excinfo.value.user_message


def test_missing_publishable_key_disables_provider() -> None:
    with pytest.raises(ProviderUnavailable):
        StripeHostedCollector("  ")

    async def scenario():
        async with BillingApiClient(base_url="https://billing.test") as api:
            adapter = BillingProviderAdapter.from_settings(
                api, BillingClientSettings(stripe_publishable_key="", return_url=RETURN_URL)
            )
            with pytest.raises(ProviderUnavailable):
                await adapter.create_collection_session()
            with pytest.raises(ProviderUnavailable):
                await adapter.confirm_collection_session("seti_1_secret_a")
            return adapter.available

    assert asyncio.run(scenario()) is False


def test_connection_error_becomes_confirmation_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    async def offline(intent_id, **params):
        raise stripe.APIConnectionError("Network error: Connection reset by peer")

    monkeypatch.setattr("libs.billing.collector.stripe.PaymentIntent.confirm_async", offline)

    with pytest.raises(PaymentConfirmationFailed) as excinfo:
        asyncio.run(StripeHostedCollector("pk_test_123").confirm("pi_3_secret_c", return_url=RETURN_URL))

    assert excinfo.value.user_message == (
        "We could not reach the payment provider. Check your connection and try again."
    )
    assert excinfo.value.redirect_url is None
