"""
ToolProvider Client - JSON-RPC transport layer for the catalog tool server.

This module handles communication with the ToolProvider (an MCP-style
server exposing catalog tools and policy documents over HTTP).
It is a TRANSPORT LAYER only - no business logic.

RESPONSIBILITIES:
1. Wrap calls in the JSON-RPC 2.0 envelope ({jsonrpc, id, method, params})
2. POST them to {base_url}/mcp
3. Handle HTTP transport concerns (timeouts, status codes, bad JSON)
4. Surface RPC `error` objects and tool-level errors as typed exceptions
5. Return tool text verbatim (typed helpers decode the JSON payloads)

This module does NOT:
- Decide which tool to call
- Format answers for the customer
- Retry (failures are handled once by the owning pipeline stage)
"""

import json
import logging
import random
from dataclasses import dataclass
from typing import Any

import httpx

from voice_agent.config import TOOL_PROVIDER_URL, TOOL_REQUEST_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
MCP_PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "voice-agent", "version": "1.0.0"}
TOOL_ERROR_PREFIX = "Error:"


# =============================================================================
# EXCEPTIONS (Transport-level only)
# =============================================================================

class ToolProviderError(Exception):
    """Base exception for ToolProvider client errors."""
    pass


class ToolProviderConnectionError(ToolProviderError):
    """Failed to connect to the ToolProvider."""
    pass


class ToolProviderTimeoutError(ToolProviderError):
    """ToolProvider request timed out."""
    pass


class ToolProviderHTTPError(ToolProviderError):
    """ToolProvider returned an HTTP error."""

    def __init__(self, message: str, status_code: int, response_body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class ToolProviderRPCError(ToolProviderError):
    """The JSON-RPC response carried an `error` object."""

    def __init__(self, message: str, code: int | None = None, method: str = ""):
        super().__init__(message)
        self.code = code
        self.method = method


class ToolExecutionError(ToolProviderError):
    """The tool ran but reported a tool-level error result."""

    def __init__(self, message: str, tool_name: str, text: str = ""):
        super().__init__(message)
        self.tool_name = tool_name
        self.text = text


class ToolProviderResponseError(ToolProviderError):
    """The response was not a valid JSON-RPC envelope or tool payload."""
    pass


# =============================================================================
# RESULT WRAPPER
# =============================================================================

@dataclass(frozen=True)
class ToolCallResult:
    """
    Result of a `tools/call`.

    `text` is the first text content block, verbatim.
    """
    tool_name: str
    text: str
    is_error: bool = False

    @classmethod
    def from_rpc_result(cls, tool_name: str, result: dict[str, Any]) -> "ToolCallResult":
        content = result.get("content") or []
        text = ""
        if content and isinstance(content[0], dict):
            text = content[0].get("text") or ""
        is_error = bool(result.get("isError")) or text.startswith(TOOL_ERROR_PREFIX)
        return cls(tool_name=tool_name, text=text, is_error=is_error)

    def raise_for_error(self) -> "ToolCallResult":
        if self.is_error:
            raise ToolExecutionError(
                f"Tool '{self.tool_name}' failed: {self.text}",
                tool_name=self.tool_name,
                text=self.text,
            )
        return self

    def json(self) -> Any:
        """Decode the text payload as JSON."""
        try:
            return json.loads(self.text)
        except json.JSONDecodeError as e:
            raise ToolProviderResponseError(
                f"Tool '{self.tool_name}' returned non-JSON text: {e}"
            ) from e


# =============================================================================
# CLIENT CLASS
# =============================================================================

class ToolProviderClient:
    """
    Async JSON-RPC client for the ToolProvider.

    Usage:
        client = ToolProviderClient("http://mcp:4000")
        categories = await client.get_categories()
        result = await client.call_tool("query_stock", {"productId": "12345"})
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize ToolProvider client.

        Args:
            base_url: ToolProvider base URL (default: from env MCP_SERVER_URL)
            timeout: Request timeout in seconds (default: from env TOOL_REQUEST_TIMEOUT)
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.base_url = (base_url or TOOL_PROVIDER_URL).rstrip("/")
        self.timeout = timeout or TOOL_REQUEST_TIMEOUT_SECONDS
        self._transport = transport

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout or self.timeout, transport=self._transport)

    def _generate_request_id(self) -> int:
        return random.randint(1, 999_999)

    def _build_envelope(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        return {
            "jsonrpc": JSONRPC_VERSION,
            "id": self._generate_request_id(),
            "method": method,
            "params": params,
        }

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def rpc(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """
        Execute one JSON-RPC call and return its `result` member.

        Raises:
            ToolProviderConnectionError: Cannot connect
            ToolProviderTimeoutError: Request timed out
            ToolProviderHTTPError: Non-2xx status
            ToolProviderRPCError: Envelope carried an `error` object
            ToolProviderResponseError: Body was not a JSON-RPC envelope
        """
        url = f"{self.base_url}/mcp"
        envelope = self._build_envelope(method, params or {})
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        try:
            async with self._client() as client:
                response = await client.post(url, json=envelope, headers=headers)
        except httpx.ConnectError as e:
            raise ToolProviderConnectionError(f"Cannot connect to ToolProvider at {url}: {e}") from e
        except httpx.TimeoutException as e:
            raise ToolProviderTimeoutError(f"ToolProvider request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise ToolProviderConnectionError(f"HTTP error: {e}") from e

        if response.status_code >= 400:
            try:
                error_body = response.json()
            except ValueError:
                error_body = response.text
            raise ToolProviderHTTPError(
                f"ToolProvider returned HTTP {response.status_code}",
                status_code=response.status_code,
                response_body=error_body,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ToolProviderResponseError(f"Invalid JSON response from ToolProvider: {e}") from e

        if not isinstance(body, dict):
            raise ToolProviderResponseError("JSON-RPC response must be an object")

        error = body.get("error")
        if error:
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            raise ToolProviderRPCError(f"ToolProvider error: {message}", code=code, method=method)

        if "result" not in body:
            raise ToolProviderResponseError("JSON-RPC response has neither result nor error")

        return body["result"]

    async def ping(self, timeout: float | None = None) -> bool:
        """GET {base_url}/health; True on a 2xx answer."""
        async with self._client(timeout) as client:
            response = await client.get(f"{self.base_url}/health")
        return response.is_success

    # -------------------------------------------------------------------------
    # Protocol operations
    # -------------------------------------------------------------------------

    async def initialize(self) -> dict[str, Any]:
        return await self.rpc(
            "initialize",
            {
                "protocolVersion": MCP_PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": CLIENT_INFO,
            },
        )

    async def list_tools(self) -> list[dict[str, Any]]:
        result = await self.rpc("tools/list", {})
        return result.get("tools", []) if isinstance(result, dict) else []

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> ToolCallResult:
        """Call a tool and return its text verbatim (tool-level errors are flagged, not raised)."""
        result = await self.rpc("tools/call", {"name": name, "arguments": arguments or {}})
        if not isinstance(result, dict):
            raise ToolProviderResponseError(f"Tool '{name}' returned a non-object result")
        return ToolCallResult.from_rpc_result(name, result)

    async def read_resource(self, uri: str) -> str:
        result = await self.rpc("resources/read", {"uri": uri})
        contents = result.get("contents") if isinstance(result, dict) else None
        if not contents:
            return ""
        if not isinstance(contents, list) or not isinstance(contents[0], dict):
            raise ToolProviderResponseError(f"Resource '{uri}' returned malformed contents")
        return contents[0].get("text") or ""

    # -------------------------------------------------------------------------
    # Typed catalog helpers
    # -------------------------------------------------------------------------

    async def _call_json(self, name: str, arguments: dict[str, Any] | None = None) -> Any:
        result = await self.call_tool(name, arguments)
        return result.raise_for_error().json()

    async def get_categories(self) -> list[str]:
        data = await self._call_json("get_categories")
        return [str(c) for c in data] if isinstance(data, list) else []

    async def get_product_types(self, category: str | None = None) -> list[dict[str, Any]]:
        arguments = {"category": category} if category else {}
        data = await self._call_json("get_product_types", arguments)
        if not isinstance(data, list):
            return []
        # Backend rows use master_category/article_type/product_count
        return [
            {
                "category": row.get("category", row.get("master_category")),
                "type": row.get("type", row.get("article_type")),
                "count": row.get("count", row.get("product_count")),
            }
            for row in data
            if isinstance(row, dict)
        ]

    async def get_attributes(self, category: str | None = None, type: str | None = None) -> dict[str, list[str]]:
        arguments: dict[str, Any] = {}
        if category:
            arguments["category"] = category
        if type:
            arguments["type"] = type
        data = await self._call_json("get_attributes", arguments)
        return data if isinstance(data, dict) else {}
