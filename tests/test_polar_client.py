from __future__ import annotations

import httpx
import pytest

from billing import BillingConfig, PolarClient, ProviderNotConfiguredError, ProviderRequestError


def _client(handler) -> PolarClient:
    return PolarClient(base_url="https://polar.test", access_token="tok", transport=httpx.MockTransport(handler))


def test_missing_access_token_is_rejected_before_any_request() -> None:
    with pytest.raises(ProviderNotConfiguredError):
        PolarClient.from_config(BillingConfig(api_access_token=""))


def test_get_product_returns_none_for_unknown_product() -> None:
    client = _client(lambda request: httpx.Response(404, json={"detail": "Not found"}))
    try:
        assert client.get_product("prod/../x") is None
    finally:
        client.close()


def test_product_ids_are_path_escaped() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.raw_path.decode("ascii"))
        return httpx.Response(200, json={"id": "x"})

    client = _client(handler)
    try:
        client.get_product("prod/../x")
    finally:
        client.close()
    assert seen == ["/v1/products/prod%2F..%2Fx"]


def test_checkout_without_url_is_a_provider_error() -> None:
    client = _client(lambda request: httpx.Response(201, json={"id": "chk_1"}))
    try:
        with pytest.raises(ProviderRequestError, match="url missing"):
            client.create_checkout(product_id="prod_1", user_id="u_1", success_url="https://ok.test")
    finally:
        client.close()


def test_transport_failures_become_provider_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    try:
        with pytest.raises(ProviderRequestError) as caught:
            client.cancel_subscription("sub_1")
    finally:
        client.close()
    assert caught.value.status_code == 502
    assert isinstance(caught.value.__cause__, httpx.ConnectError)


def test_error_status_is_a_provider_error() -> None:
    client = _client(lambda request: httpx.Response(422, json={"detail": "already canceled"}))
    try:
        with pytest.raises(ProviderRequestError, match="status=422"):
            client.cancel_subscription("sub_1")
    finally:
        client.close()
