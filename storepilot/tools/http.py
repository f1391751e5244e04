from __future__ import annotations

from typing import Any, Dict, Mapping

import httpx

from ..core.config import HttpToolSettings
from ..core.logging import get_logger
from .base import ToolAdapter, ToolInvocationResult
from .exceptions import ToolInvocationError, ToolTimeoutError

logger = get_logger(name=__name__)


class HttpToolGateway:
    """Shared httpx client for tools served by a remote gateway."""

    def __init__(self, settings: HttpToolSettings, *, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        headers = dict(settings.extra_headers)
        if settings.api_key:
            prefix = f"{settings.auth_scheme} " if settings.auth_scheme else ""
            headers[settings.api_key_header] = f"{prefix}{settings.api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=httpx.Timeout(settings.timeout_seconds),
            verify=settings.verify_ssl,
            headers=headers,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def adapter(self, tool: str) -> "HttpToolAdapter":
        return HttpToolAdapter(tool, gateway=self)

    async def post(self, tool: str, payload: Mapping[str, Any]) -> httpx.Response:
        path = self._settings.invoke_path_template.format(tool=tool)
        return await self._client.post(path, json={"parameters": dict(payload)})


class HttpToolAdapter(ToolAdapter):
    """Invokes a remote tool over HTTP and maps the reply onto ToolInvocationResult."""

    def __init__(self, name: str, *, gateway: HttpToolGateway) -> None:
        self.name = name
        self._gateway = gateway

    async def __call__(self, payload: Mapping[str, Any]) -> ToolInvocationResult:
        try:
            response = await self._gateway.post(self.name, payload)
        except httpx.TimeoutException as exc:
            logger.warning("http_tool_timeout", tool=self.name, error=str(exc))
            raise ToolTimeoutError(f"Tool '{self.name}' timed out", tool=self.name) from exc
        except httpx.RequestError as exc:
            logger.warning("http_tool_request_failed", tool=self.name, error=str(exc))
            raise ToolInvocationError(f"Tool '{self.name}' request failed", tool=self.name) from exc

        if response.status_code >= 500:
            raise ToolInvocationError(f"Tool '{self.name}' returned HTTP {response.status_code}", tool=self.name)
        if response.status_code >= 400:
            return ToolInvocationResult.failed(
                f"Tool '{self.name}' rejected the request with HTTP {response.status_code}",
                retryable=False,
            )

        body = self._decode(response)
        if body.get("success", True) is False:
            return ToolInvocationResult.failed(str(body.get("error") or "tool reported failure"))
        result = body.get("result", body)
        return ToolInvocationResult.ok(result, latency_ms=float(body.get("latency_ms", 0.0) or 0.0))

    def _decode(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise ToolInvocationError(f"Tool '{self.name}' returned a non-JSON body", tool=self.name) from exc
        if isinstance(body, dict):
            return body
        return {"result": body}
