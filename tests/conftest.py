import json
from typing import AsyncIterator, Callable, List, Optional

import httpx
import pytest

from app.core.config import Settings
from app.core.application import create_app
from app.llm.service.provider.gemini import GeminiProvider
from app.llm.service.provider.ollama import OllamaProvider
from app.llm.service.stream_sink import StreamSink


class MemorySink(StreamSink):
    """Records everything a provider writes."""

    def __init__(self):
        super().__init__()
        self.status_code = None
        self.headers = []
        self.body = b""

    async def _emit_start(self, status_code, headers):
        self.status_code = status_code
        self.headers = headers

    async def _emit_body(self, payload):
        self.body += payload

    async def _emit_end(self):
        pass

    @property
    def lines(self) -> List[dict]:
        return [json.loads(line) for line in self.body.decode("utf-8").splitlines() if line.strip()]

    def header(self, name: str) -> Optional[str]:
        for k, v in self.headers:
            if k.lower() == name.lower():
                return v
        return None


class ByteChunks(httpx.AsyncByteStream):
    """Unread response body delivered in the given chunks, optionally ending in a transport error."""

    def __init__(self, chunks: List[bytes], error: Optional[Exception] = None):
        self.chunks = chunks
        self.error = error

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error


def streamed(
    status_code: int,
    *chunks: bytes,
    headers: Optional[dict] = None,
    error: Optional[Exception] = None,
) -> httpx.Response:
    return httpx.Response(status_code, headers=headers, stream=ByteChunks(list(chunks), error))


class RecordingTransport(httpx.MockTransport):
    """
    MockTransport that keeps every request it receives.

    `httpx.Response(content=...)` reads its body on construction, so such
    responses are rebuilt around an unread stream to allow `aiter_raw`.
    """

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.requests: List[httpx.Request] = []

        def record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            response = handler(request)
            if response.is_stream_consumed:
                response = streamed(response.status_code, response.content, headers=response.headers)
            return response

        super().__init__(record)


def sse_body(*events: dict) -> bytes:
    return "".join(f"data: {json.dumps(e)}\r\n\r\n" for e in events).encode("utf-8")


def gemini_event(text: str, finish_reason: Optional[str] = None, usage: Optional[dict] = None) -> dict:
    candidate = {"content": {"role": "model", "parts": [{"text": text}]}}
    if finish_reason:
        candidate["finishReason"] = finish_reason
    event = {"candidates": [candidate]}
    if usage:
        event["usageMetadata"] = usage
    return event


@pytest.fixture
def memory_sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
def make_gemini():
    def _make(handler) -> tuple[GeminiProvider, RecordingTransport]:
        transport = RecordingTransport(handler)
        return GeminiProvider(api_key="test-key", transport=transport), transport
    return _make


@pytest.fixture
def make_ollama():
    def _make(handler) -> tuple[OllamaProvider, RecordingTransport]:
        transport = RecordingTransport(handler)
        return OllamaProvider(host="ollama.local", port=11434, transport=transport), transport
    return _make


@pytest.fixture
def make_client():
    """AsyncClient bound to an app built around the given provider."""
    def _make(provider, **overrides) -> httpx.AsyncClient:
        settings = Settings(_env_file=None, **overrides)
        app = create_app(settings, provider=provider)
        return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")
    return _make
