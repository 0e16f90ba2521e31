import json

import httpx

from app.llm.api.dto import ModelListResponse
from app.llm.service.chunks import chat_chunk
from app.llm.service.provider.base_provider import BaseProvider
from conftest import gemini_event, sse_body, streamed


def _refuse(request):
    raise httpx.ConnectError("Connection refused", request=request)


def _ndjson(response: httpx.Response) -> list:
    return [json.loads(line) for line in response.text.splitlines() if line.strip()]


class FailingMidStreamProvider(BaseProvider):
    """Writes one chunk, then fails with headers already committed."""

    name = "failing"
    display_name = "Failing"

    async def list_models(self):
        return ModelListResponse(models=[])

    async def chat(self, request, sink):
        await sink.write(chat_chunk(request.model, "partial", False))
        raise RuntimeError("backend went away")

    async def generate(self, request, sink):
        raise RuntimeError("never started")


async def test_diagnostic_mode_never_reaches_backend(make_ollama, make_client):
    provider, transport = make_ollama(lambda r: httpx.Response(200, json={}))

    async with make_client(provider, TEST_MODE=True) as client:
        chat = await client.post("/api/chat", json={"model": "m", "messages": [{"role": "user", "content": "hi"}]})
        generate = await client.post("/api/generate", content=b"not even json")
        other = await client.post("/api/pull", json={"name": "llama3.2"})

    for res in (chat, generate, other):
        assert res.status_code == 500
        assert res.json() == {"error": "Test mode enabled", "message": "Request intercepted for debugging purposes"}
    assert transport.requests == []


async def test_diagnostic_log_format(make_ollama, make_client, caplog):
    provider, _ = make_ollama(lambda r: httpx.Response(200, json={}))

    with caplog.at_level("INFO", logger="DiagnosticInterceptor"):
        async with make_client(provider, TEST_MODE=True) as client:
            await client.post("/api/chat?debug=1", json={"model": "m", "messages": []})

    block = [r for r in caplog.records if r.name == "DiagnosticInterceptor"][-1].getMessage()
    assert "[TEST MODE] Request Intercepted @" in block
    assert "URL:     /api/chat?debug=1" in block
    assert "Method:  POST" in block
    assert "Body (JSON):" in block
    assert '"model": "m"' in block


async def test_diagnostic_mode_still_lists_models(make_ollama, make_client):
    provider, transport = make_ollama(lambda r: httpx.Response(200, json={"models": []}))
    async with make_client(provider, TEST_MODE=True) as client:
        res = await client.get("/api/tags")
    assert res.status_code == 200
    assert res.json() == {"models": []}
    assert len(transport.requests) == 1


async def test_tags_backend_down_is_502(make_ollama, make_client):
    provider, _ = make_ollama(_refuse)
    async with make_client(provider) as client:
        res = await client.get("/api/tags")

    assert res.status_code == 502
    body = res.json()
    assert body["error"] == "Failed to fetch models"
    assert "Connection refused" in body["details"]


async def test_tags_with_gemini(make_gemini, make_client):
    provider, _ = make_gemini(_refuse)
    async with make_client(provider) as client:
        res = await client.get("/api/tags")
    assert res.status_code == 200
    assert [m["name"] for m in res.json()["models"]][0] == "gemini-2.5-flash"


async def test_chat_streams_through_gemini(make_gemini, make_client):
    provider, _ = make_gemini(lambda r: httpx.Response(
        200, content=sse_body(gemini_event("Hel"), gemini_event("lo"), gemini_event(", world", "STOP")),
    ))
    async with make_client(provider) as client:
        res = await client.post("/api/chat", json={
            "model": "gemini-2.0-flash",
            "messages": [{"role": "system", "content": "Translate"}, {"role": "user", "content": "hi"}],
        })

    assert res.status_code == 200
    assert res.headers["content-type"] == "application/x-ndjson"
    lines = _ndjson(res)
    assert "".join(l["message"]["content"] for l in lines) == "Hello, world"
    assert [l["done"] for l in lines] == [False, False, False, True]


async def test_chat_relays_ollama_stream(make_ollama, make_client):
    upstream = b'{"message":{"role":"assistant","content":"Hi"},"done":false}\n{"done":true}\n'
    provider, transport = make_ollama(lambda r: httpx.Response(
        200, content=upstream, headers={"content-type": "application/x-ndjson"},
    ))
    async with make_client(provider) as client:
        res = await client.post("/api/chat", json={"model": "llama3.2", "messages": [{"role": "user", "content": "hi"}]})

    assert res.status_code == 200
    assert res.content == upstream
    assert transport.requests[0].url.path == "/api/chat"


async def test_chat_backend_down_before_headers_is_502(make_ollama, make_client):
    provider, _ = make_ollama(_refuse)
    async with make_client(provider) as client:
        res = await client.post("/api/chat", json={"model": "m", "messages": [{"role": "user", "content": "hi"}]})

    assert res.status_code == 502
    assert res.json()["error"] == "Failed to process chat request"
    assert "Connection refused" in res.json()["details"]


async def test_generate_gemini_error_before_headers_is_502(make_gemini, make_client):
    provider, _ = make_gemini(lambda r: httpx.Response(429, json={"error": {"message": "Quota exceeded"}}))
    async with make_client(provider) as client:
        res = await client.post("/api/generate", json={"model": "m", "prompt": "hi"})

    assert res.status_code == 502
    assert res.json()["error"] == "Failed to process generate request"
    assert "Quota exceeded" in res.json()["details"]


async def test_failure_after_headers_is_folded_into_stream(make_client):
    async with make_client(FailingMidStreamProvider()) as client:
        res = await client.post("/api/chat", json={"model": "m", "messages": [{"role": "user", "content": "hi"}]})

    assert res.status_code == 200
    lines = _ndjson(res)
    assert lines[0]["message"]["content"] == "partial"
    assert lines[1] == {"error": "backend went away"}
    assert lines[2]["done"] is True
    assert lines[2]["done_reason"] == "error"
    assert len(lines) == 3


async def test_invalid_body_rejected_without_backend_call(make_ollama, make_client):
    provider, transport = make_ollama(lambda r: httpx.Response(200))
    async with make_client(provider) as client:
        res = await client.post("/api/chat", json={"model": "m", "messages": [{"role": "robot", "content": "x"}]})

    assert res.status_code == 400
    assert res.json()["error"] == "Invalid request body"
    assert transport.requests == []


async def test_unknown_endpoint_with_gemini(make_gemini, make_client):
    provider, transport = make_gemini(_refuse)
    async with make_client(provider) as client:
        res = await client.get("/api/unknown-op")

    assert res.status_code == 404
    assert res.json()["error"] == "Endpoint not supported"
    assert "not available when using Gemini" in res.json()["message"]
    assert transport.requests == []


async def test_unknown_endpoint_with_ollama_defaults_to_404(make_ollama, make_client):
    provider, transport = make_ollama(lambda r: httpx.Response(200))
    async with make_client(provider) as client:
        res = await client.get("/api/ps")

    assert res.status_code == 404
    assert res.json() == {"error": "Unknown endpoint", "message": "Use /api/tags, /api/chat, or /api/generate"}
    assert transport.requests == []


async def test_unknown_endpoint_passthrough_when_enabled(make_ollama, make_client):
    provider, transport = make_ollama(lambda r: httpx.Response(200, json={"models": [{"name": "llama3.2"}]}))
    async with make_client(provider, OLLAMA_PASSTHROUGH=True) as client:
        res = await client.get("/api/ps?all=1")

    assert res.status_code == 200
    assert res.json() == {"models": [{"name": "llama3.2"}]}
    assert transport.requests[0].url.path == "/api/ps"
    assert transport.requests[0].url.params["all"] == "1"


async def test_passthrough_backend_down_is_502(make_ollama, make_client):
    provider, _ = make_ollama(_refuse)
    async with make_client(provider, OLLAMA_PASSTHROUGH=True) as client:
        res = await client.post("/api/show", json={"model": "llama3.2"})

    assert res.status_code == 502
    assert res.json()["error"] == "Failed to connect to Ollama server"


class FailingAfterTerminalProvider(FailingMidStreamProvider):
    """Writes its terminal chunk, then fails before the stream is closed."""

    async def chat(self, request, sink):
        await sink.write(chat_chunk(request.model, "all", False))
        await sink.write(chat_chunk(request.model, "", True, "stop"))
        raise RuntimeError("close failed")


async def test_failure_after_terminal_chunk_only_closes(make_client):
    async with make_client(FailingAfterTerminalProvider()) as client:
        res = await client.post("/api/chat", json={"model": "m", "messages": [{"role": "user", "content": "hi"}]})

    assert res.status_code == 200
    lines = _ndjson(res)
    assert [l["done"] for l in lines] == [False, True]
    assert lines[-1]["done_reason"] == "stop"
    assert all("error" not in l for l in lines)


async def test_ollama_drop_mid_line_starts_error_on_new_line(make_ollama, make_client):
    head = b'{"model":"m","message":{"role":"assistant","content":"Hi"},"done":false}\n'
    cut = b'{"model":"m","message":{"role":"assistant","content":"th'
    provider, _ = make_ollama(lambda r: streamed(
        200, head, cut,
        headers={"content-type": "application/x-ndjson"},
        error=httpx.ReadError("connection reset"),
    ))
    async with make_client(provider) as client:
        res = await client.post("/api/chat", json={"model": "m", "messages": [{"role": "user", "content": "hi"}]})

    assert res.status_code == 200
    assert res.content.startswith(head + cut + b"\n")
    folded = [json.loads(line) for line in res.content[len(head + cut) + 1:].splitlines()]
    assert folded[0] == {"error": "Failed to connect to Ollama server: connection reset"}
    assert folded[1]["done"] is True
    assert folded[1]["done_reason"] == "error"
    assert len(folded) == 2


async def test_ollama_drop_after_done_line_adds_nothing(make_ollama, make_client):
    upstream = (
        b'{"model":"m","message":{"role":"assistant","content":"Hi"},"done":false}\n'
        b'{"model":"m","message":{"role":"assistant","content":""},"done":true,"done_reason":"stop"}\n'
    )
    provider, _ = make_ollama(lambda r: streamed(
        200, upstream,
        headers={"content-type": "application/x-ndjson"},
        error=httpx.ReadError("connection reset"),
    ))
    async with make_client(provider) as client:
        res = await client.post("/api/chat", json={"model": "m", "messages": [{"role": "user", "content": "hi"}]})

    assert res.status_code == 200
    assert res.content == upstream
    assert [l["done"] for l in _ndjson(res)] == [False, True]
