import json
from datetime import datetime, timezone
from functools import partial
from typing import Type, Union

from fastapi import Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ValidationError

from app.core.exceptions import UnsupportedEndpoint
from app.core.logger import get_logger
from app.llm.api.dto import ChatRequest, ErrorResponse, GenerateRequest
from app.llm.api.streaming import SinkResponse
from app.llm.service.chunks import CHUNK_BUILDERS
from app.llm.service.provider.base_provider import BaseProvider
from app.llm.service.stream_sink import StreamSink

logger = get_logger("LLMHandler")
intercept_logger = get_logger("DiagnosticInterceptor")

SEPARATOR = "═" * 60


def format_intercepted_request(method: str, url: str, headers, body: bytes) -> str:
    """Render a captured request as the block written to the diagnostic log."""
    lines = [
        "",
        SEPARATOR,
        f"[TEST MODE] Request Intercepted @ {datetime.now(timezone.utc).isoformat()}",
        SEPARATOR,
        f"URL:     {url}",
        f"Method:  {method}",
        "Headers:",
    ]
    for key, value in headers.items():
        lines.append(f"   {key}: {value}")

    if body:
        try:
            parsed = json.loads(body)
            lines.append("Body (JSON):")
            lines.append(json.dumps(parsed, indent=2, ensure_ascii=False))
        except ValueError:
            lines.append("Body (Raw):")
            lines.append(body.decode("utf-8", errors="replace"))
    else:
        lines.append("Body: (empty)")
    lines.append(SEPARATOR)
    return "\n".join(lines)


def _error(status_code: int, error: str, **fields) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=error, **fields).to_content())


class LLMHandler:
    """
    Dispatches /api requests to the active provider.

    In test mode every POST is captured, logged and answered with a fixed 500
    without ever reaching the provider.
    """

    def __init__(self, provider: BaseProvider, test_mode: bool = False, passthrough: bool = False):
        self.provider = provider
        self.test_mode = test_mode
        self.passthrough = passthrough

    async def intercept(self, request: Request) -> JSONResponse:
        body = await request.body()
        url = request.url.path + (f"?{request.url.query}" if request.url.query else "")
        intercept_logger.info(format_intercepted_request(request.method, url, request.headers, body))
        return _error(500, "Test mode enabled", message="Request intercepted for debugging purposes")

    async def list_models(self) -> JSONResponse:
        try:
            result = await self.provider.list_models()
        except Exception as e:
            logger.error(f"Failed to list models: {e}")
            return _error(502, "Failed to fetch models", details=str(e))
        return JSONResponse(content=result.model_dump())

    async def chat(self, request: Request) -> Response:
        return await self._stream_operation("chat", ChatRequest, request)

    async def generate(self, request: Request) -> Response:
        return await self._stream_operation("generate", GenerateRequest, request)

    async def fallback(self, request: Request) -> Response:
        """Anything under /api besides tags, chat and generate."""
        if self.test_mode and request.method == "POST":
            return await self.intercept(request)

        if not self.provider.supports_passthrough:
            return _error(404, "Endpoint not supported", message=str(UnsupportedEndpoint(self.provider.display_name)))

        if not self.passthrough:
            return _error(404, "Unknown endpoint", message="Use /api/tags, /api/chat, or /api/generate")

        body = await request.body()
        return SinkResponse(partial(
            self._run_proxy,
            request.method,
            request.url.path,
            request.url.query,
            request.headers,
            body,
        ))

    async def _stream_operation(
        self,
        operation: str,
        request_model: Type[Union[ChatRequest, GenerateRequest]],
        request: Request,
    ) -> Response:
        if self.test_mode:
            return await self.intercept(request)

        parsed = await self._parse(request_model, request)
        if not isinstance(parsed, BaseModel):
            return parsed
        return SinkResponse(partial(self._run, operation, parsed))

    @staticmethod
    async def _parse(request_model, request: Request):
        raw = await request.body()
        try:
            return request_model.model_validate_json(raw or b"{}")
        except ValidationError as e:
            logger.warning(f"Rejected {request.url.path} body: {e.error_count()} validation error(s)")
            return _error(400, "Invalid request body", details=str(e))

    async def _run(self, operation: str, body: Union[ChatRequest, GenerateRequest], sink: StreamSink) -> None:
        try:
            await getattr(self.provider, operation)(body, sink)
        except Exception as e:
            logger.error(f"{operation.capitalize()} error: {e}")
            if not sink.headers_sent:
                await sink.send_json(502, ErrorResponse(
                    error=f"Failed to process {operation} request",
                    details=str(e),
                ).to_content())
                return
            await self._fold_error(sink, str(e), operation, body.model)

    async def _run_proxy(self, method, path, query, headers, body: bytes, sink: StreamSink) -> None:
        try:
            await self.provider.proxy(method, path, query, headers, body, sink)
        except Exception as e:
            logger.error(f"Proxy error: {e}")
            if not sink.headers_sent:
                await sink.send_json(502, ErrorResponse(
                    error="Failed to connect to Ollama server",
                    details=str(e),
                ).to_content())
                return
            await self._fold_error(sink, str(e))

    @staticmethod
    async def _fold_error(sink: StreamSink, message: str, operation: str | None = None, model: str = "") -> None:
        """Headers are committed: report the failure inside the stream body."""
        if sink.closed:
            return
        if sink.terminated:
            # nothing may follow the terminal chunk
            logger.warning(f"Failure after terminal chunk, closing stream: {message}")
            await sink.close()
            return
        if sink.line_open:
            await sink.write(b"\n")
        await sink.write({"error": message or "Backend request failed"})
        if operation is not None:
            await sink.write(CHUNK_BUILDERS[operation](model, "", True, "error"))
        await sink.close()
