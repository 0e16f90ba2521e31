# app/llm/service/stream_sink.py
import json
from abc import ABC, abstractmethod
from typing import Any, Iterable, Mapping, Optional, Tuple, Union

HeaderItems = Union[Mapping[str, str], Iterable[Tuple[str, str]]]

NDJSON_HEADERS = {
    "Content-Type": "application/x-ndjson",
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",  # for Nginx
}

# Longest relayed line still inspected for a terminal chunk
MAX_TRACKED_LINE = 64 * 1024


def encode_ndjson(obj: Mapping[str, Any]) -> bytes:
    """Encode one object as a single NDJSON line."""
    return (json.dumps(obj, ensure_ascii=False) + "\n").encode("utf-8")


def _is_done_line(line: bytes) -> bool:
    try:
        obj = json.loads(line)
    except ValueError:
        return False
    return isinstance(obj, dict) and obj.get("done") is True


class StreamSink(ABC):
    """
    Output side of one streaming exchange.

    Providers push data here as soon as it is available. The sink tracks
    whether the response head was committed and whether a terminal
    (`done: true`) chunk went out, so callers can pick the right error path.
    """

    def __init__(self):
        self.headers_sent = False
        self.terminated = False
        self.closed = False
        # True while relayed bytes stopped in the middle of a line
        self.line_open = False
        self._partial_line: Optional[bytes] = b""

    async def start(self, status_code: int = 200, headers: Optional[HeaderItems] = None) -> None:
        if self.headers_sent:
            raise RuntimeError("response headers already sent")
        if headers is None:
            headers = NDJSON_HEADERS
        items = headers.items() if isinstance(headers, Mapping) else headers
        pairs = [(str(k), str(v)) for k, v in items]
        await self._emit_start(status_code, pairs)
        self.headers_sent = True

    async def write(self, data: Union[bytes, Mapping[str, Any]]) -> None:
        """Write raw bytes, or a mapping encoded as one NDJSON line."""
        if self.closed:
            raise RuntimeError("stream already closed")
        if not self.headers_sent:
            await self.start()
        if isinstance(data, Mapping):
            if self.terminated:
                raise RuntimeError("stream already terminated")
            payload = encode_ndjson(data)
            if data.get("done") is True:
                self.terminated = True
            self.line_open = False
            self._partial_line = b""
        else:
            payload = bytes(data)
            if payload:
                self._track_raw(payload)
        if payload:
            await self._emit_body(payload)

    def _track_raw(self, payload: bytes) -> None:
        """Follow line boundaries of relayed bytes so an upstream `done` line is noticed."""
        *complete, tail = payload.split(b"\n")
        for piece in complete:
            line = self._partial_line + piece if self._partial_line is not None else None
            self._partial_line = b""
            if line is not None and _is_done_line(line):
                self.terminated = True
        if self._partial_line is not None:
            self._partial_line += tail
            if len(self._partial_line) > MAX_TRACKED_LINE:
                self._partial_line = None
        self.line_open = not payload.endswith(b"\n")

    async def close(self) -> None:
        if self.closed:
            return
        if not self.headers_sent:
            await self.start()
        await self._emit_end()
        self.closed = True

    async def send_json(self, status_code: int, payload: Mapping[str, Any]) -> None:
        """Answer with a complete JSON document instead of a stream."""
        await self.start(status_code, {"Content-Type": "application/json"})
        await self._emit_body(json.dumps(payload, ensure_ascii=False).encode("utf-8"))
        await self.close()

    @abstractmethod
    async def _emit_start(self, status_code: int, headers: list[Tuple[str, str]]) -> None:
        pass

    @abstractmethod
    async def _emit_body(self, payload: bytes) -> None:
        pass

    @abstractmethod
    async def _emit_end(self) -> None:
        pass
