import httpx
import json
import time
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Tuple
from .base_provider import BaseProvider
from app.core.exceptions import (
    BackendRequestFailed,
    BackendUnreachable,
    ConfigurationError,
    MalformedUpstreamResponse,
)
from app.core.logger import get_logger
from app.llm.api.dto import ChatMessage, ChatRequest, GenerateRequest, GenerationOptions, ModelListResponse
from app.llm.service.chunks import chat_chunk, generate_chunk, timestamp
from app.llm.service.stream_sink import NDJSON_HEADERS, StreamSink

# Curated catalog served by /api/tags
GEMINI_MODELS = [
    {"name": "gemini-2.5-flash", "size": "Medium", "family": "Gemini 2.5"},
    {"name": "gemini-2.0-flash", "size": "Medium", "family": "Gemini 2.0"},
    {"name": "gemini-2.0-flash-lite", "size": "Small", "family": "Gemini 2.0"},
]

FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
}

# Ollama option name -> Gemini generationConfig key
OPTION_MAP = {
    "temperature": "temperature",
    "top_p": "topP",
    "top_k": "topK",
    "num_predict": "maxOutputTokens",
    "stop": "stopSequences",
    "seed": "seed",
}


def convert_messages(messages: List[ChatMessage]) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    """
    Split Ollama chat messages into Gemini `contents` and a system instruction.

    Gemini has no inline system turn: system messages are joined into one
    instruction, assistant turns become the `model` role and everything else
    is sent as `user`.
    """
    contents = []
    system_parts = []
    for msg in messages:
        if msg.role == "system":
            system_parts.append(msg.content)
        else:
            contents.append({
                "role": "model" if msg.role == "assistant" else "user",
                "parts": [{"text": msg.content}],
            })
    system_instruction = "\n\n".join(system_parts) if system_parts else None
    return contents, system_instruction


def build_generation_config(options: Optional[GenerationOptions]) -> Dict[str, Any]:
    if options is None:
        return {}
    config = {}
    for ollama_key, gemini_key in OPTION_MAP.items():
        value = getattr(options, ollama_key)
        if value is None:
            continue
        if ollama_key == "stop" and isinstance(value, str):
            value = [value]
        config[gemini_key] = value
    return config


def extract_text(payload: Dict[str, Any]) -> str:
    """Concatenate the text parts of the first candidate."""
    candidates = payload.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(p.get("text", "") for p in parts if isinstance(p, dict))


def extract_finish_reason(payload: Dict[str, Any]) -> Optional[str]:
    candidates = payload.get("candidates") or []
    if not candidates or not candidates[0].get("finishReason"):
        return None
    reason = candidates[0]["finishReason"]
    return FINISH_REASONS.get(reason, reason.lower())


def usage_stats(payload: Optional[Dict[str, Any]]) -> Dict[str, int]:
    usage = (payload or {}).get("usageMetadata") or {}
    stats = {}
    if "promptTokenCount" in usage:
        stats["prompt_eval_count"] = usage["promptTokenCount"]
    if "candidatesTokenCount" in usage:
        stats["eval_count"] = usage["candidatesTokenCount"]
    return stats


class GeminiProvider(BaseProvider):
    """Handles Google Gemini models and re-encodes answers as Ollama NDJSON."""

    name = "gemini"
    display_name = "Gemini"

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gemini-2.0-flash",
        endpoint: str = "https://generativelanguage.googleapis.com",
        connect_timeout: float = 10.0,
        request_timeout: Optional[float] = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise ConfigurationError("GEMINI_API_KEY is required for Gemini provider")
        self.api_key = api_key
        self.default_model = model or "gemini-2.0-flash"
        self.endpoint = endpoint.rstrip("/")
        self.timeout = httpx.Timeout(request_timeout, connect=connect_timeout)
        self._transport = transport
        self._logger = get_logger("GeminiProvider")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.endpoint,
            timeout=self.timeout,
            transport=self._transport,
            headers={"x-goog-api-key": self.api_key},
        )

    async def list_models(self) -> ModelListResponse:
        now = timestamp()
        return ModelListResponse.model_validate({
            "models": [
                {
                    "name": m["name"],
                    "model": m["name"],
                    "modified_at": now,
                    "size": 0,
                    "digest": "",
                    "details": {
                        "parent_model": "",
                        "format": "gemini",
                        "family": m["family"],
                        "parameter_size": m["size"],
                        "quantization_level": "",
                    },
                }
                for m in GEMINI_MODELS
            ]
        })

    async def chat(self, request: ChatRequest, sink: StreamSink) -> None:
        contents, system_instruction = convert_messages(request.messages)
        await self._run(
            model=request.model or self.default_model,
            contents=contents,
            system_instruction=system_instruction,
            options=request.options,
            stream=request.stream,
            build_chunk=chat_chunk,
            sink=sink,
        )

    async def generate(self, request: GenerateRequest, sink: StreamSink) -> None:
        contents = [{"role": "user", "parts": [{"text": request.prompt}]}]
        await self._run(
            model=request.model or self.default_model,
            contents=contents,
            system_instruction=request.system or None,
            options=request.options,
            stream=request.stream,
            build_chunk=generate_chunk,
            sink=sink,
        )

    def _payload(self, contents, system_instruction, options) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"contents": contents}
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        generation_config = build_generation_config(options)
        if generation_config:
            payload["generationConfig"] = generation_config
        return payload

    async def _run(
        self,
        model: str,
        contents: List[Dict[str, Any]],
        system_instruction: Optional[str],
        options: Optional[GenerationOptions],
        stream: bool,
        build_chunk: Callable[..., Dict[str, Any]],
        sink: StreamSink,
    ) -> None:
        payload = self._payload(contents, system_instruction, options)
        started = time.perf_counter_ns()
        self._logger.debug(f"Gemini request | model={model} turns={len(contents)} stream={stream}")

        try:
            async with self._client() as client:
                if not stream:
                    res = await client.post(f"/v1beta/models/{model}:generateContent", json=payload)
                    if res.status_code != 200:
                        raise self._api_error(res.status_code, res.content)
                    data = self._decode(res.content)
                    await sink.start(200, NDJSON_HEADERS)
                    await sink.write(build_chunk(
                        model,
                        extract_text(data),
                        True,
                        extract_finish_reason(data) or "stop",
                        total_duration=time.perf_counter_ns() - started,
                        **usage_stats(data),
                    ))
                    await sink.close()
                    return

                url = f"/v1beta/models/{model}:streamGenerateContent"
                async with client.stream("POST", url, params={"alt": "sse"}, json=payload) as resp:
                    if resp.status_code != 200:
                        raise self._api_error(resp.status_code, await resp.aread())
                    await sink.start(200, NDJSON_HEADERS)

                    finish_reason = None
                    last_event = None
                    async for event in self._iter_events(resp):
                        last_event = event
                        finish_reason = extract_finish_reason(event) or finish_reason
                        text = extract_text(event)
                        if text:
                            await sink.write(build_chunk(model, text, False))

                    await sink.write(build_chunk(
                        model,
                        "",
                        True,
                        finish_reason or "stop",
                        total_duration=time.perf_counter_ns() - started,
                        **usage_stats(last_event),
                    ))
                    await sink.close()
        except httpx.TransportError as e:
            self._logger.error(f"Gemini unreachable: {e!r}")
            raise BackendUnreachable(f"Failed to connect to Gemini API: {e}") from e

    async def _iter_events(self, resp: httpx.Response) -> AsyncGenerator[Dict[str, Any], None]:
        """Yield the JSON payload of each SSE `data:` line."""
        async for raw_line in resp.aiter_lines():
            line = raw_line.strip()
            if not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if not data or data == "[DONE]":
                continue
            event = self._decode(data)
            if "error" in event:
                error = event["error"] or {}
                raise BackendRequestFailed(error.get("code", 500), error.get("message", "Gemini API request failed"))
            yield event

    @staticmethod
    def _decode(raw) -> Dict[str, Any]:
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise MalformedUpstreamResponse("Failed to parse Gemini response") from e
        if not isinstance(data, dict):
            raise MalformedUpstreamResponse("Unexpected Gemini response shape")
        return data

    def _api_error(self, status_code: int, raw: bytes) -> BackendRequestFailed:
        message = "Gemini API request failed"
        try:
            body = json.loads(raw)
            message = body.get("error", {}).get("message") or message
        except (ValueError, AttributeError):
            pass
        self._logger.error(f"Gemini API error: status={status_code} message={message}")
        return BackendRequestFailed(status_code, message)
