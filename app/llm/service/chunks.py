# app/llm/service/chunks.py
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from app.llm.api.dto import ChatMessage, ChatStreamChunk, GenerateStreamChunk


def timestamp() -> str:
    """RFC 3339 UTC timestamp in the form Ollama writes it."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def chat_chunk(model: str, content: str, done: bool, done_reason: Optional[str] = None, **stats) -> Dict[str, Any]:
    """Chat-shaped chunk: the delta lives in message.content."""
    chunk = ChatStreamChunk(
        model=model,
        created_at=timestamp(),
        message=ChatMessage(role="assistant", content=content),
        done=done,
        done_reason=done_reason,
        **stats,
    )
    return chunk.model_dump(exclude_none=True)


def generate_chunk(model: str, content: str, done: bool, done_reason: Optional[str] = None, **stats) -> Dict[str, Any]:
    """Generate-shaped chunk: the delta lives in response."""
    chunk = GenerateStreamChunk(
        model=model,
        created_at=timestamp(),
        response=content,
        done=done,
        done_reason=done_reason,
        **stats,
    )
    return chunk.model_dump(exclude_none=True)


CHUNK_BUILDERS = {
    "chat": chat_chunk,
    "generate": generate_chunk,
}
