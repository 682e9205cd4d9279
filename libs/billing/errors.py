"""Error taxonomy of the billing reconciliation flow.

Every error is recoverable: callers convert it into a user-visible
notification and offer a retry or cancel action.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class carrying the message shown to the user."""

    default_message = "Something went wrong with billing. Please try again."

    def __init__(self, user_message: str | None = None, *, status_code: int | None = None) -> None:
        self.user_message = user_message or self.default_message
        self.status_code = status_code
        super().__init__(self.user_message)

    @classmethod
    def from_error(cls, exc: Exception) -> "BillingError":
        """Wrap ``exc`` keeping any server-provided message."""

        message = getattr(exc, "server_message", None)
        status_code = getattr(exc, "status_code", None)
        return cls(message, status_code=status_code)


class ProviderUnavailable(BillingError):
    default_message = "Payments are currently unavailable."


class FetchFailed(BillingError):
    default_message = "Could not load billing information. Please try again."


class SetupRequestFailed(BillingError):
    default_message = "Failed to setup payment method. Please try again."


class DefaultUpdateFailed(BillingError):
    default_message = "Failed to update default payment method."


class MutationFailed(BillingError):
    default_message = "Failed to update your subscription. Please try again."


class CollectionInProgress(BillingError):
    default_message = "Finish or cancel the pending payment before adding a payment method."


class PaymentConfirmationFailed(BillingError):
    default_message = "An unexpected error occurred. Please try again."

    def __init__(
        self,
        user_message: str | None = None,
        *,
        status_code: int | None = None,
        redirect_url: str | None = None,
    ) -> None:
        super().__init__(user_message, status_code=status_code)
        self.redirect_url = redirect_url


__all__ = [
    "BillingError",
    "CollectionInProgress",
    "DefaultUpdateFailed",
    "FetchFailed",
    "MutationFailed",
    "PaymentConfirmationFailed",
    "ProviderUnavailable",
    "SetupRequestFailed",
]
