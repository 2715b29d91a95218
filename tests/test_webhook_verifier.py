from __future__ import annotations

import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from billing import (
    MalformedEventError,
    WebhookConfigurationError,
    WebhookUnauthorizedError,
    sign_payload,
    verify_polar_webhook,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
RAW_SECRET = b"polar-signing-key-0001"
SECRET = "whsec_" + base64.b64encode(RAW_SECRET).decode("ascii")


def _delivery(body: dict | bytes, *, secret: str = SECRET, sent_at: datetime = NOW, webhook_id: str = "msg_001"):
    raw = body if isinstance(body, bytes) else json.dumps(body).encode("utf-8")
    timestamp = int(sent_at.timestamp())
    headers = {
        "webhook-id": webhook_id,
        "webhook-timestamp": str(timestamp),
        "webhook-signature": sign_payload(webhook_id=webhook_id, timestamp=timestamp, raw_body=raw, secret=secret),
    }
    return raw, headers


def _event() -> dict:
    return {
        "type": "subscription.active",
        "timestamp": "2026-03-01T11:59:58Z",
        "data": {"id": "sub_1", "productId": "prod_pro_monthly"},
    }


def test_valid_signature_returns_envelope() -> None:
    raw, headers = _delivery(_event())
    verified = verify_polar_webhook(raw, headers, SECRET, now=NOW)
    assert verified.webhook_id == "msg_001"
    assert verified.event_type == "subscription.active"
    assert verified.payload["id"] == "sub_1"
    assert verified.event_at == datetime(2026, 3, 1, 11, 59, 58, tzinfo=timezone.utc)


def test_plain_secret_without_prefix_is_supported() -> None:
    raw, headers = _delivery(_event(), secret="plain-secret")
    verified = verify_polar_webhook(raw, headers, "plain-secret", now=NOW)
    assert verified.event_type == "subscription.active"


def test_headers_are_case_insensitive() -> None:
    raw, headers = _delivery(_event())
    upper = {key.title(): value for key, value in headers.items()}
    assert verify_polar_webhook(raw, upper, SECRET, now=NOW).webhook_id == "msg_001"


def test_any_matching_signature_in_header_is_accepted() -> None:
    raw, headers = _delivery(_event())
    headers["webhook-signature"] = "v1,bm90LXRoZS1yaWdodC1vbmU= " + headers["webhook-signature"]
    assert verify_polar_webhook(raw, headers, SECRET, now=NOW).event_type == "subscription.active"


def test_tampered_body_is_rejected() -> None:
    raw, headers = _delivery(_event())
    tampered = raw.replace(b"prod_pro_monthly", b"prod_pro_yearly_")
    with pytest.raises(WebhookUnauthorizedError):
        verify_polar_webhook(tampered, headers, SECRET, now=NOW)


def test_wrong_secret_is_rejected() -> None:
    raw, headers = _delivery(_event(), secret="other-secret")
    with pytest.raises(WebhookUnauthorizedError):
        verify_polar_webhook(raw, headers, SECRET, now=NOW)


def test_missing_headers_are_rejected() -> None:
    raw, headers = _delivery(_event())
    headers.pop("webhook-signature")
    with pytest.raises(WebhookUnauthorizedError, match="missing"):
        verify_polar_webhook(raw, headers, SECRET, now=NOW)


def test_timestamp_outside_tolerance_is_rejected() -> None:
    raw, headers = _delivery(_event(), sent_at=NOW - timedelta(seconds=301))
    with pytest.raises(WebhookUnauthorizedError, match="tolerance"):
        verify_polar_webhook(raw, headers, SECRET, now=NOW)


def test_non_numeric_timestamp_is_rejected() -> None:
    raw, headers = _delivery(_event())
    headers["webhook-timestamp"] = "yesterday"
    with pytest.raises(WebhookUnauthorizedError):
        verify_polar_webhook(raw, headers, SECRET, now=NOW)


def test_missing_secret_is_a_configuration_error() -> None:
    raw, headers = _delivery(_event())
    with pytest.raises(WebhookConfigurationError) as caught:
        verify_polar_webhook(raw, headers, "", now=NOW)
    assert caught.value.status_code == 500


def test_signed_but_non_json_body_is_malformed() -> None:
    raw, headers = _delivery(b"not json")
    with pytest.raises(MalformedEventError):
        verify_polar_webhook(raw, headers, SECRET, now=NOW)


def test_signed_body_without_timestamp_is_malformed() -> None:
    body = _event()
    body.pop("timestamp")
    raw, headers = _delivery(body)
    with pytest.raises(MalformedEventError, match="timestamp"):
        verify_polar_webhook(raw, headers, SECRET, now=NOW)
