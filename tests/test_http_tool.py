from __future__ import annotations

import json

import httpx
import pytest

from storepilot.core.config import HttpToolSettings
from storepilot.tools.exceptions import ToolInvocationError, ToolTimeoutError
from storepilot.tools.http import HttpToolGateway
from storepilot.tools.registry import ToolRegistry


def _gateway(handler, **settings) -> HttpToolGateway:
    config = HttpToolSettings(enabled=True, base_url="https://tools.example.test", **settings)
    client = httpx.AsyncClient(base_url=config.base_url, transport=httpx.MockTransport(handler))
    return HttpToolGateway(config, client=client)


@pytest.mark.asyncio
async def test_adapter_posts_parameters_and_unwraps_result() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"success": True, "result": {"results": [{"id": "sku-1"}]}, "latency_ms": 12})

    gateway = _gateway(handler)
    result = await gateway.adapter("semanticRetrieval")({"query": "desk lamp", "limit": 5})
    await gateway.aclose()

    assert seen["path"] == "/tools/semanticRetrieval/invoke"
    assert seen["body"] == {"parameters": {"query": "desk lamp", "limit": 5}}
    assert result.success is True
    assert result.result == {"results": [{"id": "sku-1"}]}
    assert result.latency_ms == pytest.approx(12.0)


def test_gateway_sets_authorization_header() -> None:
    settings = HttpToolSettings(api_key="secret", extra_headers={"X-Merchant": "shop-1"})

    gateway = HttpToolGateway(settings)

    assert gateway._client.headers["Authorization"] == "Bearer secret"
    assert gateway._client.headers["X-Merchant"] == "shop-1"


@pytest.mark.asyncio
async def test_tool_level_failure_is_reported_as_retryable_failure() -> None:
    gateway = _gateway(lambda request: httpx.Response(200, json={"success": False, "error": "index warming up"}))

    result = await gateway.adapter("knowledgeContext")({})

    assert result.success is False
    assert result.retryable is True
    assert result.error == "index warming up"


@pytest.mark.asyncio
async def test_client_errors_are_not_retryable() -> None:
    gateway = _gateway(lambda request: httpx.Response(422, json={"detail": "bad cart"}))

    result = await gateway.adapter("cartValidation")({})

    assert result.success is False
    assert result.retryable is False
    assert "422" in result.error


@pytest.mark.asyncio
async def test_server_errors_raise_invocation_error() -> None:
    gateway = _gateway(lambda request: httpx.Response(503, text="unavailable"))

    with pytest.raises(ToolInvocationError):
        await gateway.adapter("processCheckout")({})


@pytest.mark.asyncio
async def test_non_json_body_raises_invocation_error() -> None:
    gateway = _gateway(lambda request: httpx.Response(200, text="<html>oops</html>"))

    with pytest.raises(ToolInvocationError):
        await gateway.adapter("semanticRetrieval")({})


@pytest.mark.asyncio
async def test_transport_timeout_surfaces_as_timed_out_result() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    gateway = _gateway(handler)
    registry = ToolRegistry()
    registry.register("productPrediction", gateway.adapter("productPrediction"))

    with pytest.raises(ToolTimeoutError):
        await gateway.adapter("productPrediction")({})
    result = await registry.invoke("productPrediction", {}, timeout=1.0)

    assert result.success is False
    assert result.timed_out is True


@pytest.mark.asyncio
async def test_registry_routes_calls_through_http_adapter() -> None:
    gateway = _gateway(lambda request: httpx.Response(200, json={"context": "Free returns", "relevance": 0.8}))
    registry = ToolRegistry()
    registry.register("knowledgeContext", gateway.adapter("knowledgeContext"))

    result = await registry.invoke("knowledgeContext", {"query": "returns"}, timeout=1.0)

    assert result.success is True
    assert result.result == {"context": "Free returns", "relevance": 0.8}
