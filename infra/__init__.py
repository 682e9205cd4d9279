from .billing_models import BillingAccount, BillingBase, UsageRecord, UserSession

__all__ = ["BillingAccount", "BillingBase", "UsageRecord", "UserSession"]
