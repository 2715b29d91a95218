from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from .errors import ProviderNotConfiguredError, ProviderRequestError
from .settings import BillingConfig


@dataclass(frozen=True)
class CheckoutSession:
    """
    Normalized Polar checkout session.

    Only the hosted checkout URL matters to callers; the raw body is kept for
    debugging and never returned to end users.
    """

    checkout_id: str
    checkout_url: str
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


class PolarClient:
    """Thin synchronous wrapper over the Polar REST API."""

    def __init__(
        self,
        *,
        base_url: str,
        access_token: str,
        timeout: float = 20.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if not access_token:
            raise ProviderNotConfiguredError("POLAR_ACCESS_TOKEN is missing")
        if not base_url:
            raise ProviderNotConfiguredError("POLAR_API_BASE_URL is missing")
        self._client = httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
            trust_env=False,
        )

    @classmethod
    def from_config(cls, config: BillingConfig, *, transport: Optional[httpx.BaseTransport] = None) -> "PolarClient":
        return cls(
            base_url=config.api_base_url,
            access_token=config.api_access_token,
            timeout=config.api_timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, *, json_body: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            return self._client.request(method, path, json=json_body)
        except httpx.HTTPError as exc:
            raise ProviderRequestError(f"polar {method} {path} failed: {type(exc).__name__}: {exc}") from exc

    @staticmethod
    def _json(resp: httpx.Response, what: str) -> Dict[str, Any]:
        if resp.status_code >= 400:
            raise ProviderRequestError(f"polar {what} failed: status={resp.status_code} body={(resp.text or '')[:200]}")
        try:
            data = resp.json() if resp.content else {}
        except ValueError as exc:
            raise ProviderRequestError(f"polar {what} returned invalid JSON: status={resp.status_code}") from exc
        if not isinstance(data, dict):
            raise ProviderRequestError(f"polar {what} returned a non-object body")
        return data

    def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        """Product as Polar sees it, or None when Polar does not know the id."""

        resp = self._request("GET", f"/v1/products/{quote(product_id, safe='')}")
        if resp.status_code == 404:
            return None
        return self._json(resp, "get product")

    def create_checkout(
        self,
        *,
        product_id: str,
        user_id: str,
        success_url: str,
        return_url: Optional[str] = None,
        customer_email: Optional[str] = None,
        customer_name: Optional[str] = None,
    ) -> CheckoutSession:
        # metadata.userId is what ties the first subscription event back to the user.
        payload: Dict[str, Any] = {
            "products": [product_id],
            "success_url": success_url,
            "metadata": {"userId": user_id},
            "customer_metadata": {"userId": user_id},
        }
        if return_url:
            payload["return_url"] = return_url
        if customer_email:
            payload["customer_email"] = customer_email
        if customer_name:
            payload["customer_name"] = customer_name

        data = self._json(self._request("POST", "/v1/checkouts/", json_body=payload), "create checkout")
        url = str(data.get("url") or "").strip()
        if not url:
            raise ProviderRequestError(f"polar checkout url missing: keys={sorted(data)}")
        return CheckoutSession(checkout_id=str(data.get("id") or ""), checkout_url=url, raw=data)

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Ask Polar to cancel at period end. The row changes when the webhook lands."""

        resp = self._request(
            "PATCH",
            f"/v1/subscriptions/{quote(subscription_id, safe='')}",
            json_body={"cancel_at_period_end": True},
        )
        return self._json(resp, "cancel subscription")
