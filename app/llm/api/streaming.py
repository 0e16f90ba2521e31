# app/llm/api/streaming.py
from functools import partial
from typing import Awaitable, Callable

import anyio
from starlette.background import BackgroundTask
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from app.core.logger import get_logger
from app.llm.service.stream_sink import StreamSink

logger = get_logger("SinkResponse")

SinkOperation = Callable[[StreamSink], Awaitable[None]]


class ASGIStreamSink(StreamSink):
    """StreamSink that writes straight to the ASGI `send` channel."""

    def __init__(self, send: Send):
        super().__init__()
        self._send = send

    async def _emit_start(self, status_code, headers):
        await self._send({
            "type": "http.response.start",
            "status": status_code,
            "headers": [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in headers],
        })

    async def _emit_body(self, payload):
        await self._send({"type": "http.response.body", "body": payload, "more_body": True})

    async def _emit_end(self):
        await self._send({"type": "http.response.body", "body": b"", "more_body": False})


class SinkResponse(Response):
    """
    Response whose status, headers and body are produced by an operation
    writing to a StreamSink.

    The status is not known up front (a proxied backend decides it), so the
    head is only sent once the operation calls `start` or `write`. A client
    disconnect cancels the operation.
    """

    def __init__(self, operation: SinkOperation, background: BackgroundTask | None = None):
        self.operation = operation
        self.status_code = 200
        self.raw_headers = []
        self.background = background

    async def listen_for_disconnect(self, receive: Receive) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                logger.debug("Client disconnected, cancelling upstream call")
                break

    async def run_operation(self, sink: ASGIStreamSink) -> None:
        await self.operation(sink)
        if not sink.closed:
            await sink.close()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        sink = ASGIStreamSink(send)

        async with anyio.create_task_group() as task_group:

            async def wrap(func: Callable[[], Awaitable[None]]) -> None:
                await func()
                task_group.cancel_scope.cancel()

            task_group.start_soon(wrap, partial(self.run_operation, sink))
            await wrap(partial(self.listen_for_disconnect, receive))

        if self.background is not None:
            await self.background()
