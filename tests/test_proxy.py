"""Tests for the pass-through relay."""
import asyncio

import httpx

from erpsync.fetch.proxy import ProxyRequest, relay


def _relay(request: ProxyRequest, handler):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await relay(request, client=client)

    return asyncio.run(run())


def test_rejects_missing_and_non_http_urls():
    """Test only http/https targets are relayed."""
    def never(request):
        raise AssertionError("upstream must not be called")

    assert _relay(ProxyRequest(url="  "), never).status_code == 400
    assert _relay(ProxyRequest(url="file:///etc/passwd"), never).status_code == 400


def test_json_passthrough():
    """Test a JSON upstream body is returned parsed."""
    result = _relay(
        ProxyRequest(url="https://erp.example.com/r?page=1"),
        lambda request: httpx.Response(200, json={"data": [1]}),
    )
    assert result.status_code == 200
    assert result.content == {"data": [1]}


def test_non_json_is_wrapped_as_raw():
    """Test a text upstream body comes back as {"raw": text}."""
    result = _relay(
        ProxyRequest(url="https://erp.example.com/r"),
        lambda request: httpx.Response(200, text="plain text"),
    )
    assert result.content == {"raw": "plain text"}


def test_upstream_error_keeps_status():
    """Test upstream failures are returned with their status and details."""
    result = _relay(
        ProxyRequest(url="https://erp.example.com/r"),
        lambda request: httpx.Response(503, text="maintenance"),
    )
    assert result.status_code == 503
    assert "503" in result.content["error"]
    assert result.content["details"] == "maintenance"


def test_headers_method_and_body_are_forwarded():
    """Test the described request is sent as-is."""
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = request.content
        return httpx.Response(200, json={"ok": True})

    _relay(
        ProxyRequest(
            url="https://erp.example.com/r",
            method="POST",
            headers={"Authorization": "Bearer abc"},
            body={"a": 1},
        ),
        handler,
    )
    assert seen["method"] == "POST"
    assert seen["auth"] == "Bearer abc"
    assert seen["body"] == b'{"a":1}'


def test_unreachable_upstream():
    """Test transport failures become 502."""

    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    result = _relay(ProxyRequest(url="https://erp.example.com/r"), handler)
    assert result.status_code == 502
