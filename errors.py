from typing import Dict

ERROR_CODE_MAP: Dict[str, Dict[str, str]] = {
    "WEBHOOK_SIGNATURE_INVALID": {
        "message": "Webhook signature rejected",
        "hint": "Check that the provider signs with the secret configured in POLAR_WEBHOOK_SECRET.",
    },
    "WEBHOOK_SECRET_MISSING": {
        "message": "Webhook secret not configured",
        "hint": "Set POLAR_WEBHOOK_SECRET in the service environment and redeploy.",
    },
    "WEBHOOK_PAYLOAD_INVALID": {
        "message": "Webhook payload is malformed",
        "hint": "The body must be a JSON object with type, timestamp and data.",
    },
    "UNKNOWN_PRODUCT": {
        "message": "Product is not mapped to a plan",
        "hint": "Add the product id to POLAR_PRODUCT_PRO or POLAR_PRODUCT_MAP; the provider will redeliver.",
    },
    "MISSING_USER_REFERENCE": {
        "message": "Event carries no owning user",
        "hint": "Checkouts must set metadata.userId so the first subscription event can create state.",
    },
    "SUBSCRIPTION_NOT_FOUND": {
        "message": "Renewal target subscription not found",
        "hint": "The creating subscription event has not been applied yet; the provider will redeliver.",
    },
    "SUBSCRIPTION_LOCK_TIMEOUT": {
        "message": "Subscription is busy",
        "hint": "Another delivery for the same subscription is still running; the provider will redeliver.",
    },
    "ACTIVE_SUBSCRIPTION_EXISTS": {
        "message": "User already has an active subscription",
        "hint": "Cancel the current subscription or wait for it to end before starting a new checkout.",
    },
    "PRODUCT_NOT_FOUND": {
        "message": "Product is not available for checkout",
        "hint": "Pick a product_id listed by GET /billing/plans.",
    },
    "POLAR_NOT_CONFIGURED": {
        "message": "Billing provider not configured",
        "hint": "Set POLAR_ACCESS_TOKEN and POLAR_CHECKOUT_SUCCESS_URL in the service environment.",
    },
    "POLAR_API_ERROR": {
        "message": "Billing provider request failed",
        "hint": "Polar rejected or did not answer the request; retry later and check the service logs.",
    },
    "UNEXPECTED_ERROR": {
        "message": "Unexpected error",
        "hint": "Check the service logs with the trace id.",
    },
}


def explain_error(code: str | None) -> Dict[str, str] | None:
    if not code:
        return None
    return ERROR_CODE_MAP.get(code)
