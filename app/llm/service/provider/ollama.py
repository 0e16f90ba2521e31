# app/llm/service/provider/ollama.py
from typing import Any, Dict, Mapping, Optional

import httpx
from pydantic import ValidationError

from .base_provider import BaseProvider
from app.core.exceptions import BackendUnreachable, MalformedUpstreamResponse
from app.core.logger import get_logger
from app.llm.api.dto import ChatRequest, GenerateRequest, ModelListResponse
from app.llm.service.stream_sink import StreamSink

# Headers that belong to a single connection and must not be forwarded
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})


def _filter_headers(headers, drop: frozenset) -> list[tuple[str, str]]:
    return [(k, v) for k, v in headers if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() not in drop]


class OllamaProvider(BaseProvider):
    """Relays requests to a local Ollama server without touching the payload."""

    name = "ollama"
    display_name = "Ollama"
    supports_passthrough = True

    def __init__(
        self,
        host: str = "localhost",
        port: int | str = 11434,
        connect_timeout: float = 10.0,
        request_timeout: Optional[float] = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.host = host
        self.port = port
        self.base_url = f"http://{host}:{port}"
        self.timeout = httpx.Timeout(request_timeout, connect=connect_timeout)
        self._transport = transport
        self._logger = get_logger("OllamaProvider")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def list_models(self) -> ModelListResponse:
        try:
            async with self._client() as client:
                res = await client.get("/api/tags")
        except httpx.TransportError as e:
            self._logger.error(f"Ollama unreachable at {self.base_url}: {e!r}")
            raise BackendUnreachable(f"Failed to connect to Ollama server at {self.base_url}: {e}") from e

        try:
            data = res.json()
        except ValueError as e:
            raise MalformedUpstreamResponse("Failed to parse Ollama response") from e
        if res.status_code != 200:
            detail = data.get("error") if isinstance(data, dict) else None
            raise MalformedUpstreamResponse(f"Ollama answered {res.status_code}: {detail or res.text}")
        try:
            return ModelListResponse.model_validate(data)
        except ValidationError as e:
            raise MalformedUpstreamResponse(f"Unexpected Ollama model list: {e.error_count()} invalid field(s)") from e

    async def chat(self, request: ChatRequest, sink: StreamSink) -> None:
        self._logger.debug(f"chat -> model={request.model} messages={len(request.messages)} stream={request.stream}")
        await self._relay("POST", "/api/chat", sink, json_body=request.model_dump(exclude_none=True))

    async def generate(self, request: GenerateRequest, sink: StreamSink) -> None:
        self._logger.debug(f"generate -> model={request.model} stream={request.stream}")
        await self._relay("POST", "/api/generate", sink, json_body=request.model_dump(exclude_none=True))

    async def proxy(
        self,
        method: str,
        path: str,
        query: str,
        headers: Mapping[str, str],
        body: bytes,
        sink: StreamSink,
    ) -> None:
        target = f"{path}?{query}" if query else path
        self._logger.debug(f"proxy -> {method} {target}")
        forward_headers = _filter_headers(headers.items(), frozenset({"host", "content-length"}))
        await self._relay(method, target, sink, content=body, headers=forward_headers)

    async def _relay(
        self,
        method: str,
        target: str,
        sink: StreamSink,
        json_body: Optional[Dict[str, Any]] = None,
        content: Optional[bytes] = None,
        headers: Optional[list] = None,
    ) -> None:
        """Stream the backend answer to the sink, status and headers included."""
        try:
            async with self._client() as client:
                async with client.stream(method, target, json=json_body, content=content or None, headers=headers) as resp:
                    await sink.start(
                        resp.status_code,
                        _filter_headers(resp.headers.multi_items(), frozenset({"content-length"})),
                    )
                    async for data in resp.aiter_raw():
                        await sink.write(data)
                    await sink.close()
        except httpx.TransportError as e:
            self._logger.error(f"Proxy error on {method} {target}: {e!r}")
            raise BackendUnreachable(f"Failed to connect to Ollama server: {e}") from e
