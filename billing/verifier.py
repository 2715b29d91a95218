from __future__ import annotations

import base64
import binascii
import datetime as dt
import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any, Final, Mapping, Optional

from .errors import MalformedEventError, WebhookConfigurationError, WebhookUnauthorizedError
from .events import parse_timestamp

WEBHOOK_ID_HEADER: Final[str] = "webhook-id"
WEBHOOK_TIMESTAMP_HEADER: Final[str] = "webhook-timestamp"
WEBHOOK_SIGNATURE_HEADER: Final[str] = "webhook-signature"
SIGNATURE_VERSION: Final[str] = "v1"
SECRET_PREFIX: Final[str] = "whsec_"
DEFAULT_TOLERANCE_SECONDS: Final[int] = 300


@dataclass(frozen=True)
class VerifiedEvent:
    webhook_id: str
    event_type: str
    payload: Any
    event_at: dt.datetime


def _signing_key(secret: str) -> bytes:
    if secret.startswith(SECRET_PREFIX):
        try:
            return base64.b64decode(secret[len(SECRET_PREFIX):], validate=True)
        except binascii.Error as exc:
            raise WebhookConfigurationError("webhook secret has an invalid whsec_ encoding") from exc
    return secret.encode("utf-8")


def _digest(key: bytes, webhook_id: str, timestamp: int, raw_body: bytes) -> str:
    signed = f"{webhook_id}.{int(timestamp)}.".encode("utf-8") + raw_body
    return base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode("ascii")


def sign_payload(*, webhook_id: str, timestamp: int, raw_body: bytes, secret: str) -> str:
    """Compute the ``v1,<base64>`` signature a provider sends for ``raw_body``."""

    return f"{SIGNATURE_VERSION},{_digest(_signing_key(secret), webhook_id, timestamp, raw_body)}"


def _candidate_signatures(header_value: str) -> list[str]:
    out: list[str] = []
    for token in header_value.split():
        version, _, value = token.partition(",")
        if version == SIGNATURE_VERSION and value:
            out.append(value)
    return out


def verify_polar_webhook(
    raw_body: bytes,
    headers: Mapping[str, str],
    secret: Optional[str],
    *,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[dt.datetime] = None,
) -> VerifiedEvent:
    """
    Verify a Standard Webhooks signed delivery and return its envelope.

    - Signs ``"{id}.{timestamp}.{raw body}"``; the body is never re-serialized.
    - A missing secret is a deployment fault (``WebhookConfigurationError``),
      not a caller fault.
    - Deliveries outside the timestamp tolerance are rejected like bad signatures.
    """

    secret_value = str(secret or "").strip()
    if not secret_value:
        raise WebhookConfigurationError("webhook secret is not configured")
    key = _signing_key(secret_value)

    normalized = {str(name).lower(): str(value) for name, value in headers.items()}
    webhook_id = normalized.get(WEBHOOK_ID_HEADER, "").strip()
    raw_timestamp = normalized.get(WEBHOOK_TIMESTAMP_HEADER, "").strip()
    signature_header = normalized.get(WEBHOOK_SIGNATURE_HEADER, "").strip()
    if not webhook_id or not raw_timestamp or not signature_header:
        raise WebhookUnauthorizedError("missing webhook signature headers")

    try:
        sent_at = int(raw_timestamp)
    except ValueError as exc:
        raise WebhookUnauthorizedError("invalid webhook timestamp header") from exc
    current = int((now or dt.datetime.now(dt.timezone.utc)).timestamp())
    if abs(current - sent_at) > int(tolerance_seconds):
        raise WebhookUnauthorizedError("webhook timestamp outside tolerance")

    expected = _digest(key, webhook_id, sent_at, raw_body)
    if not any(hmac.compare_digest(expected, provided) for provided in _candidate_signatures(signature_header)):
        raise WebhookUnauthorizedError("invalid webhook signature")

    try:
        envelope = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedEventError(f"webhook body is not valid JSON: {exc}") from exc
    if not isinstance(envelope, dict):
        raise MalformedEventError("webhook body must be a JSON object")

    event_type = str(envelope.get("type") or "").strip()
    if not event_type:
        raise MalformedEventError("webhook event type is required")
    event_at = parse_timestamp(envelope.get("timestamp"))
    if event_at is None:
        raise MalformedEventError("webhook event timestamp is missing or invalid", event_type=event_type)
    if "data" not in envelope:
        raise MalformedEventError("webhook event data is required", event_type=event_type)

    return VerifiedEvent(
        webhook_id=webhook_id,
        event_type=event_type,
        payload=envelope.get("data"),
        event_at=event_at,
    )
