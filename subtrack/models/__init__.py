from subtrack.models.access import (
    PaymentWebhookEvent,
    SubscriptionStatus,
    UserAccess,
    UserPreferences,
    UserType,
)
from subtrack.models.feedback import Feedback
from subtrack.models.subscription import BillingCycle, Category, Subscription

__all__ = [
    "BillingCycle",
    "Category",
    "Feedback",
    "PaymentWebhookEvent",
    "Subscription",
    "SubscriptionStatus",
    "UserAccess",
    "UserPreferences",
    "UserType",
]
