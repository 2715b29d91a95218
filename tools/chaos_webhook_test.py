#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import os
import random
import sys
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Literal

import httpx

# Make project modules importable when script is run from tools/.
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from billing import sign_payload  # noqa: E402

SignatureMode = Literal["valid", "invalid", "missing"]

CATEGORIES = (
    "happy_path",
    "duplicate",
    "out_of_order",
    "bad_signature",
    "missing_user",
    "unknown_product",
    "malformed",
)

# Status codes a correct deployment answers with, per category.
EXPECTED_STATUS: Dict[str, set[int]] = {
    "happy_path": {201},
    "duplicate": {201},
    "out_of_order": {201},
    "bad_signature": {401},
    "missing_user": {400},
    "unknown_product": {500},
    "malformed": {400},
}


@dataclass
class ChaosCase:
    case_id: str
    category: str
    signature_mode: SignatureMode
    body: bytes
    note: str = ""


def getenv_required(name: str) -> str:
    value = str(os.getenv(name, "")).strip()
    if not value:
        raise RuntimeError(f"missing required env var: {name}")
    return value


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Chaos test for /webhooks/subscriptions/polar")
    parser.add_argument(
        "--webhook-url",
        default=os.getenv("POLAR_WEBHOOK_URL", "http://127.0.0.1:8020/webhooks/subscriptions/polar"),
        help="Target webhook URL",
    )
    parser.add_argument(
        "--product-id",
        default=os.getenv("POLAR_PRODUCT_PRO", "prod_pro_monthly"),
        help="Mapped product id used for valid cases",
    )
    parser.add_argument(
        "--count",
        type=int,
        default=int(os.getenv("CHAOS_CASE_COUNT", "42")),
        help="Number of chaos deliveries",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=int(os.getenv("CHAOS_CONCURRENCY", "8")),
        help="Concurrent requests",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=float(os.getenv("CHAOS_HTTP_TIMEOUT", "15")),
        help="HTTP timeout seconds",
    )
    parser.add_argument("--seed", type=int, default=None, help="Shuffle seed for reproducible runs")
    parser.add_argument(
        "--report-json",
        default=os.getenv("CHAOS_REPORT_PATH", ""),
        help="Optional path to write a JSON report",
    )
    return parser.parse_args()


def _envelope(event_type: str, event_at: datetime, data: Any) -> bytes:
    payload = {"type": event_type, "timestamp": event_at.isoformat(), "data": data}
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def _subscription(sub_id: str, user_id: str | None, product_id: str, *, cancel: bool = False) -> Dict[str, Any]:
    return {
        "id": sub_id,
        "productId": product_id,
        "recurringInterval": "month",
        "amount": 900,
        "currency": "usd",
        "status": "active",
        "cancelAtPeriodEnd": cancel,
        "metadata": {"userId": user_id} if user_id else {},
    }


def build_cases(count: int, product_id: str, *, rng: random.Random | None = None) -> List[ChaosCase]:
    rng = rng or random.Random()
    run_nonce = f"{rng.randint(0, 16**6 - 1):06x}"
    base = datetime.now(timezone.utc) - timedelta(hours=1)
    out: List[ChaosCase] = []
    index = 0
    while len(out) < count:
        category = CATEGORIES[index % len(CATEGORIES)]
        sub_id = f"sub_{run_nonce}_{index:04d}"
        user_id = f"user_{index % 7}"
        event_at = base + timedelta(seconds=index)

        if category == "happy_path":
            body = _envelope("subscription.active", event_at, _subscription(sub_id, user_id, product_id))
            out.append(ChaosCase(f"case_{index:03d}", category, "valid", body, "first active event"))
        elif category == "duplicate":
            body = _envelope("subscription.active", event_at, _subscription(sub_id, user_id, product_id))
            out.append(ChaosCase(f"case_{index:03d}a", category, "valid", body, "original delivery"))
            out.append(ChaosCase(f"case_{index:03d}b", category, "valid", body, "byte-identical redelivery"))
        elif category == "out_of_order":
            newer = _envelope(
                "subscription.canceled",
                event_at + timedelta(minutes=5),
                _subscription(sub_id, user_id, product_id, cancel=True),
            )
            older = _envelope("subscription.active", event_at, _subscription(sub_id, user_id, product_id))
            out.append(ChaosCase(f"case_{index:03d}a", category, "valid", newer, "newer event first"))
            out.append(ChaosCase(f"case_{index:03d}b", category, "valid", older, "older event arrives late"))
        elif category == "bad_signature":
            body = _envelope("subscription.active", event_at, _subscription(sub_id, user_id, product_id))
            mode: SignatureMode = "missing" if (index // len(CATEGORIES)) % 2 else "invalid"
            out.append(ChaosCase(f"case_{index:03d}", category, mode, body, "valid payload, bad signature"))
        elif category == "missing_user":
            body = _envelope("subscription.active", event_at, _subscription(sub_id, None, product_id))
            out.append(ChaosCase(f"case_{index:03d}", category, "valid", body, "no metadata.userId"))
        elif category == "unknown_product":
            body = _envelope("subscription.active", event_at, _subscription(sub_id, user_id, f"prod_unmapped_{run_nonce}"))
            out.append(ChaosCase(f"case_{index:03d}", category, "valid", body, "product not in mapping"))
        else:
            body = b'{"type":"subscription.active","data":'
            out.append(ChaosCase(f"case_{index:03d}", category, "valid", body, "truncated JSON"))
        index += 1
    return out[:count]


def signed_headers(case: ChaosCase, webhook_secret: str) -> Dict[str, str]:
    headers: Dict[str, str] = {"Content-Type": "application/json"}
    if case.signature_mode == "missing":
        return headers
    webhook_id = f"msg_{uuid.uuid4().hex}"
    timestamp = int(time.time())
    headers["webhook-id"] = webhook_id
    headers["webhook-timestamp"] = str(timestamp)
    if case.signature_mode == "valid":
        headers["webhook-signature"] = sign_payload(
            webhook_id=webhook_id, timestamp=timestamp, raw_body=case.body, secret=webhook_secret
        )
    else:
        headers["webhook-signature"] = "v1," + "ZGVhZGJlZWY=" * 4
    return headers


async def send_case(
    client: httpx.AsyncClient,
    webhook_url: str,
    webhook_secret: str,
    case: ChaosCase,
) -> Dict[str, Any]:
    headers = signed_headers(case, webhook_secret)
    start = time.perf_counter()
    try:
        response = await client.post(webhook_url, content=case.body, headers=headers)
        latency_ms = int((time.perf_counter() - start) * 1000)
        snippet = response.text.strip().replace("\n", " ")[:220]
        return {
            "case_id": case.case_id,
            "category": case.category,
            "signature_mode": case.signature_mode,
            "status_code": response.status_code,
            "latency_ms": latency_ms,
            "response": snippet,
        }
    except httpx.RequestError as exc:
        latency_ms = int((time.perf_counter() - start) * 1000)
        return {
            "case_id": case.case_id,
            "category": case.category,
            "signature_mode": case.signature_mode,
            "status_code": 0,
            "latency_ms": latency_ms,
            "response": f"request_error: {exc}",
        }


async def run_attack(cases: List[ChaosCase], webhook_url: str, webhook_secret: str, timeout: float, concurrency: int):
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async with httpx.AsyncClient(timeout=timeout, trust_env=False) as client:
        async def wrapped(case: ChaosCase):
            async with semaphore:
                return await send_case(client, webhook_url, webhook_secret, case)

        # With --concurrency 1 paired deliveries arrive in list order.
        tasks = [wrapped(case) for case in cases]
        return await asyncio.gather(*tasks)


def summarize(results: List[Dict[str, Any]], cases: List[ChaosCase]) -> Dict[str, Any]:
    by_category: Dict[str, Dict[str, int]] = {}
    unexpected: List[Dict[str, Any]] = []
    for case, result in zip(cases, results):
        status = int(result["status_code"])
        group = by_category.setdefault(case.category, {"total": 0, "expected": 0, "unexpected": 0})
        group["total"] += 1
        if status in EXPECTED_STATUS.get(case.category, set()):
            group["expected"] += 1
        else:
            group["unexpected"] += 1
            unexpected.append(result)
    blocked = sum(
        1
        for case, result in zip(cases, results)
        if case.signature_mode != "valid" and int(result["status_code"]) == 401
    )
    bad_signature_total = sum(1 for case in cases if case.signature_mode != "valid")
    return {
        "total": len(results),
        "by_category": by_category,
        "signature_blocked": blocked,
        "signature_cases": bad_signature_total,
        "unexpected": unexpected,
    }


def print_summary(summary: Dict[str, Any]) -> None:
    print("\n=== Chaos Webhook Test Summary ===")
    print(f"Total deliveries:       {summary['total']}")
    print(f"Signature intercept:    {summary['signature_blocked']}/{summary['signature_cases']}")
    print("\nPer-category:")
    for category, stats in sorted(summary["by_category"].items()):
        print(
            f"- {category:<16} total={stats['total']:>2} "
            f"expected={stats['expected']:>2} unexpected={stats['unexpected']:>2}"
        )
    if summary["unexpected"]:
        print("\nUnexpected responses (showing up to 10):")
        for result in summary["unexpected"][:10]:
            print(
                f"- {result['case_id']} category={result['category']} "
                f"status={result['status_code']} response={result['response']}"
            )


def main() -> int:
    args = parse_args()
    webhook_secret = getenv_required("POLAR_WEBHOOK_SECRET")

    cases = build_cases(args.count, args.product_id, rng=random.Random(args.seed))
    print(f"[chaos] case_count={len(cases)} target={args.webhook_url}")
    results = asyncio.run(
        run_attack(
            cases=cases,
            webhook_url=args.webhook_url,
            webhook_secret=webhook_secret,
            timeout=args.timeout,
            concurrency=args.concurrency,
        )
    )

    summary = summarize(results, cases)
    print_summary(summary)

    if args.report_json:
        report_path = Path(args.report_json)
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(
            json.dumps({"meta": {"webhook_url": args.webhook_url}, "summary": summary, "results": results}, indent=2),
            encoding="utf-8",
        )
        print(f"\n[chaos] report written: {report_path}")

    return 1 if summary["unexpected"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
