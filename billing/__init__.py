from .checkout import CancellationRequest, create_checkout, request_cancellation
from .db import (
    SessionLocal,
    build_session_factory,
    check_database,
    init_billing_db,
    session_scope,
)
from .entitlements import UserPlan, resolve_user_plan
from .errors import (
    ActiveSubscriptionExistsError,
    BillingError,
    MalformedEventError,
    MissingUserReferenceError,
    ProductNotFoundError,
    ProviderNotConfiguredError,
    ProviderRequestError,
    SubscriptionLockTimeoutError,
    SubscriptionNotFoundError,
    SubscriptionWebhookError,
    UnknownProductError,
    WebhookConfigurationError,
    WebhookUnauthorizedError,
)
from .events import parse_event
from .guard import OrderingGuard
from .locks import SubscriptionLockManager
from .models import (
    Base,
    BillingInterval,
    Plan,
    Subscription,
    SubscriptionProvider,
    SubscriptionStatus,
    WebhookAuditLog,
)
from .plans import PlanDetails, ProductMapping, list_plan_catalog, map_product, plan_benefits
from .provider import CheckoutSession, PolarClient
from .reconciler import ReconcileResult, SubscriptionReconciler
from .repository import SubscriptionRepository
from .settings import BillingConfig, load_billing_config
from .verifier import VerifiedEvent, sign_payload, verify_polar_webhook

__all__ = [
    "Base",
    "SessionLocal",
    "Subscription",
    "WebhookAuditLog",
    "SubscriptionStatus",
    "SubscriptionProvider",
    "Plan",
    "BillingInterval",
    "BillingConfig",
    "load_billing_config",
    "ProductMapping",
    "PlanDetails",
    "map_product",
    "plan_benefits",
    "list_plan_catalog",
    "OrderingGuard",
    "SubscriptionLockManager",
    "SubscriptionRepository",
    "SubscriptionReconciler",
    "ReconcileResult",
    "UserPlan",
    "resolve_user_plan",
    "VerifiedEvent",
    "verify_polar_webhook",
    "sign_payload",
    "parse_event",
    "PolarClient",
    "CheckoutSession",
    "CancellationRequest",
    "create_checkout",
    "request_cancellation",
    "BillingError",
    "SubscriptionWebhookError",
    "WebhookUnauthorizedError",
    "WebhookConfigurationError",
    "MalformedEventError",
    "UnknownProductError",
    "MissingUserReferenceError",
    "SubscriptionNotFoundError",
    "SubscriptionLockTimeoutError",
    "ActiveSubscriptionExistsError",
    "ProductNotFoundError",
    "ProviderNotConfiguredError",
    "ProviderRequestError",
    "build_session_factory",
    "check_database",
    "init_billing_db",
    "session_scope",
]
