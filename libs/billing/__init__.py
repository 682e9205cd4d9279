"""Client-side payment method and subscription reconciliation."""

from .cache import QueryCache
from .client import BillingApiClient, BillingApiError
from .collector import BillingProviderAdapter, CollectionResult, PaymentCollector, StripeHostedCollector
from .config import BillingClientSettings, get_client_settings
from .coordinator import (
    AwaitingPaymentSetup,
    ChangeCategory,
    Idle,
    Requesting,
    SubscriptionCoordinator,
    categorize_change,
)
from .display import format_payment_method, format_subscription
from .errors import (
    BillingError,
    CollectionInProgress,
    DefaultUpdateFailed,
    FetchFailed,
    MutationFailed,
    PaymentConfirmationFailed,
    ProviderUnavailable,
    SetupRequestFailed,
)
from .notifications import Notification, NotificationCenter, surface_errors
from .payment_methods import NO_METHOD_NEEDED, PaymentMethodListing, PaymentMethodStore
from .session import BillingSession
from .subscriptions import NO_SUBSCRIPTION, SubscriptionStateFetcher

__all__ = [
    "AwaitingPaymentSetup",
    "BillingApiClient",
    "BillingApiError",
    "BillingClientSettings",
    "BillingError",
    "BillingProviderAdapter",
    "BillingSession",
    "ChangeCategory",
    "CollectionInProgress",
    "CollectionResult",
    "DefaultUpdateFailed",
    "FetchFailed",
    "Idle",
    "MutationFailed",
    "NO_METHOD_NEEDED",
    "NO_SUBSCRIPTION",
    "Notification",
    "NotificationCenter",
    "PaymentCollector",
    "PaymentConfirmationFailed",
    "PaymentMethodListing",
    "PaymentMethodStore",
    "ProviderUnavailable",
    "QueryCache",
    "Requesting",
    "SetupRequestFailed",
    "StripeHostedCollector",
    "SubscriptionCoordinator",
    "SubscriptionStateFetcher",
    "categorize_change",
    "format_payment_method",
    "format_subscription",
    "get_client_settings",
    "surface_errors",
]
