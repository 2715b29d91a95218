from __future__ import annotations

from typing import Optional


class BillingError(RuntimeError):
    """Base for billing failures surfaced at the HTTP boundary.

    ``status_code`` is what the caller sees; for webhook deliveries it also
    decides whether the provider retries: 4xx means the delivery itself is
    bad, 5xx means redeliver once an operator fixed things.
    """

    error_code = "UNEXPECTED_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        event_type: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.event_type = event_type
        self.subscription_id = subscription_id


class SubscriptionWebhookError(BillingError):
    pass


class WebhookUnauthorizedError(SubscriptionWebhookError):
    error_code = "WEBHOOK_SIGNATURE_INVALID"
    status_code = 401


class WebhookConfigurationError(SubscriptionWebhookError):
    error_code = "WEBHOOK_SECRET_MISSING"
    status_code = 500


class MalformedEventError(SubscriptionWebhookError):
    error_code = "WEBHOOK_PAYLOAD_INVALID"
    status_code = 400


class UnknownProductError(SubscriptionWebhookError):
    error_code = "UNKNOWN_PRODUCT"
    status_code = 500

    def __init__(self, message: str, *, product_id: Optional[str] = None, **kwargs: Optional[str]) -> None:
        super().__init__(message, **kwargs)
        self.product_id = product_id


class MissingUserReferenceError(SubscriptionWebhookError):
    error_code = "MISSING_USER_REFERENCE"
    status_code = 400


class SubscriptionNotFoundError(SubscriptionWebhookError):
    error_code = "SUBSCRIPTION_NOT_FOUND"
    status_code = 500


class SubscriptionLockTimeoutError(SubscriptionWebhookError):
    error_code = "SUBSCRIPTION_LOCK_TIMEOUT"
    status_code = 503


class ActiveSubscriptionExistsError(BillingError):
    error_code = "ACTIVE_SUBSCRIPTION_EXISTS"
    status_code = 409


class ProductNotFoundError(BillingError):
    error_code = "PRODUCT_NOT_FOUND"
    status_code = 404


class ProviderNotConfiguredError(BillingError):
    error_code = "POLAR_NOT_CONFIGURED"
    status_code = 500


class ProviderRequestError(BillingError):
    error_code = "POLAR_API_ERROR"
    status_code = 502
