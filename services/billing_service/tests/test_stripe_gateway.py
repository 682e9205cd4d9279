from __future__ import annotations

import pytest
import stripe

from services.billing_service.app.config import Settings
from services.billing_service.app.gateway import (
    SCHEDULED_FROM_KEY,
    GatewayError,
    PaymentMethodNotFound,
    StripeBillingGateway,
    subscription_from_stripe,
)

MODULE = "services.billing_service.app.gateway.stripe"


@pytest.fixture()
def gateway() -> StripeBillingGateway:
    return StripeBillingGateway(Settings(stripe_secret_key="sk_test_123", stripe_api_version="2024-06-20"))


def test_payment_methods_carry_default_flag(monkeypatch: pytest.MonkeyPatch, gateway: StripeBillingGateway) -> None:
    seen: dict = {}
    monkeypatch.setattr(
        f"{MODULE}.Customer.retrieve",
        lambda customer_id, **kwargs: {"id": customer_id, "invoice_settings": {"default_payment_method": "pm_2"}},
    )

    def fake_list(**kwargs):
        seen.update(kwargs)
        return {
            "data": [
                {
                    "id": "pm_1",
                    "type": "card",
                    "created": 1700000000,
                    "card": {"brand": "mastercard", "last4": "4444", "exp_month": 3, "exp_year": 2029},
                },
                {"id": "pm_2", "type": "link", "created": 1700000100, "link": {"email": "jane@example.com"}},
            ]
        }

    monkeypatch.setattr(f"{MODULE}.PaymentMethod.list", fake_list)

    methods = gateway.list_payment_methods("cus_1")

    assert [(m.id, m.is_default) for m in methods] == [("pm_1", False), ("pm_2", True)]
    assert methods[0].card.last4 == "4444"
    assert methods[1].link.email == "jane@example.com"
    assert seen["customer"] == "cus_1"
    assert seen["api_key"] == "sk_test_123"
    assert seen["stripe_version"] == "2024-06-20"


def test_setting_default_requires_attached_method(
    monkeypatch: pytest.MonkeyPatch, gateway: StripeBillingGateway
) -> None:
    monkeypatch.setattr(
        f"{MODULE}.PaymentMethod.retrieve", lambda method_id, **kwargs: {"id": method_id, "customer": "cus_other"}
    )

    with pytest.raises(PaymentMethodNotFound):
        gateway.set_default_payment_method("cus_1", "pm_1")


def test_unknown_method_is_not_found(monkeypatch: pytest.MonkeyPatch, gateway: StripeBillingGateway) -> None:
    def missing(method_id, **kwargs):
        raise stripe.InvalidRequestError(f"No such PaymentMethod: '{method_id}'", param="id")

    monkeypatch.setattr(f"{MODULE}.PaymentMethod.retrieve", missing)

    with pytest.raises(PaymentMethodNotFound) as excinfo:
        gateway.set_default_payment_method("cus_1", "pm_123")

    assert excinfo.value.user_message == "Payment method not found."


def test_default_is_written_to_invoice_settings(monkeypatch: pytest.MonkeyPatch, gateway: StripeBillingGateway) -> None:
    modified: dict = {}
    monkeypatch.setattr(
        f"{MODULE}.PaymentMethod.retrieve", lambda method_id, **kwargs: {"id": method_id, "customer": "cus_1"}
    )

    def fake_modify(customer_id, **kwargs):
        modified["customer"] = customer_id
        modified.update(kwargs)
        return {"id": customer_id}

    monkeypatch.setattr(f"{MODULE}.Customer.modify", fake_modify)

    gateway.set_default_payment_method("cus_1", "pm_1")

    assert modified["customer"] == "cus_1"
    assert modified["invoice_settings"] == {"default_payment_method": "pm_1"}


def test_price_change_stays_pending_until_invoice_is_paid(
    monkeypatch: pytest.MonkeyPatch, gateway: StripeBillingGateway
) -> None:
    captured: dict = {}
    current = subscription_from_stripe(
        {
            "id": "sub_1",
            "customer": "cus_1",
            "status": "active",
            "created": 1,
            "items": {"data": [{"id": "si_1", "price": {"id": "price_starter"}}]},
        }
    )

    def fake_modify(subscription_id, **kwargs):
        captured["id"] = subscription_id
        captured.update(kwargs)
        return {
            "id": subscription_id,
            "customer": "cus_1",
            "status": "active",
            "items": {
                "data": [
                    {
                        "id": "si_1",
                        "price": {"id": "price_starter"},
                        "current_period_start": 1760000000,
                        "current_period_end": 1762592000,
                    }
                ]
            },
            "pending_update": {"subscription_items": [{"id": "si_1", "price": {"id": "price_exec_monthly"}}]},
            "latest_invoice": {
                "payment_intent": {"status": "requires_payment_method", "client_secret": "pi_1_secret_x"}
            },
        }

    monkeypatch.setattr(f"{MODULE}.Subscription.modify", fake_modify)

    updated = gateway.change_subscription_price(current, "price_exec_monthly")

    assert captured["items"] == [{"id": "si_1", "price": "price_exec_monthly"}]
    assert captured["proration_behavior"] == "always_invoice"
    assert captured["payment_behavior"] == "pending_if_incomplete"
    assert updated.live is True
    assert updated.price_id == "price_starter"
    assert updated.pending_price_id == "price_exec_monthly"
    assert updated.current_period_end == 1762592000
    assert updated.requires_payment_method is True
    assert updated.payment_intent_client_secret == "pi_1_secret_x"


def test_incomplete_subscription_is_not_live() -> None:
    subscription = subscription_from_stripe(
        {
            "id": "sub_2",
            "customer": "cus_1",
            "status": "incomplete",
            "items": {"data": [{"id": "si_2", "price": {"id": "price_exec_monthly"}}]},
        }
    )

    assert subscription.live is False


def test_downgrade_is_scheduled_as_trial_ending_at_period_end(
    monkeypatch: pytest.MonkeyPatch, gateway: StripeBillingGateway
) -> None:
    created: dict = {}

    def fake_create(**kwargs):
        created.update(kwargs)
        return {
            "id": "sub_next",
            "customer": "cus_1",
            "status": "trialing",
            "trial_end": kwargs["trial_end"],
            "metadata": dict(kwargs["metadata"]),
            "items": {"data": [{"id": "si_9", "price": {"id": "price_leader_monthly"}}]},
        }

    monkeypatch.setattr(f"{MODULE}.Subscription.create", fake_create)

    scheduled = gateway.schedule_subscription(
        "cus_1", "price_leader_monthly", start_at=1762592000, replaces="sub_1"
    )

    assert created["trial_end"] == 1762592000
    assert created["proration_behavior"] == "none"
    assert created["metadata"] == {SCHEDULED_FROM_KEY: "sub_1"}
    assert scheduled.scheduled is True
    assert scheduled.scheduled_from == "sub_1"
    assert scheduled.trial_end == 1762592000


def test_price_change_reactivates_cancelling_subscription(
    monkeypatch: pytest.MonkeyPatch, gateway: StripeBillingGateway
) -> None:
    calls: list = []
    current = subscription_from_stripe(
        {
            "id": "sub_1",
            "customer": "cus_1",
            "status": "active",
            "cancel_at_period_end": True,
            "items": {"data": [{"id": "si_1", "price": {"id": "price_leader_monthly"}}]},
        }
    )

    def fake_modify(subscription_id, **kwargs):
        calls.append(kwargs)
        return {"id": subscription_id, "customer": "cus_1", "status": "active", "items": {"data": []}}

    monkeypatch.setattr(f"{MODULE}.Subscription.modify", fake_modify)

    gateway.change_subscription_price(current, "price_exec_monthly")

    assert calls[0]["cancel_at_period_end"] is False
    assert calls[1]["items"] == [{"id": "si_1", "price": "price_exec_monthly"}]


def test_stripe_failures_are_wrapped(monkeypatch: pytest.MonkeyPatch, gateway: StripeBillingGateway) -> None:
    def failing(**kwargs):
        raise stripe.APIConnectionError("Network error")

    monkeypatch.setattr(f"{MODULE}.SetupIntent.create", failing)

    with pytest.raises(GatewayError):
        gateway.create_setup_intent("cus_1")


def test_missing_secret_key_is_reported() -> None:
    gateway = StripeBillingGateway(Settings(stripe_secret_key=""))

    with pytest.raises(GatewayError) as excinfo:
        gateway.create_customer(user_id="user-1", email=None)

    assert excinfo.value.user_message == "Payments are currently unavailable."


def test_customer_creation_records_user(monkeypatch: pytest.MonkeyPatch, gateway: StripeBillingGateway) -> None:
    created: dict = {}

    def fake_create(**kwargs):
        created.update(kwargs)
        return {"id": "cus_new"}

    monkeypatch.setattr(f"{MODULE}.Customer.create", fake_create)

    assert gateway.create_customer(user_id="user-1", email="jane@example.com") == "cus_new"
    assert created["metadata"] == {"user_id": "user-1"}
    assert created["email"] == "jane@example.com"
