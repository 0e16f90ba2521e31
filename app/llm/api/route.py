# app/llm/api/route.py

from fastapi import APIRouter, Depends, HTTPException, Request
from ..api.handler import LLMHandler

API_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def get_llm_handler(request: Request) -> LLMHandler:
    """Dependency to get the LLM handler from app.state."""
    handler = getattr(request.app.state, "llm_handler", None)
    if handler is None:
        raise HTTPException(status_code=503, detail="LLM handler not initialized")
    return handler


# Ollama-compatible API surface
llm_router = APIRouter(prefix="/api", tags=["LLM"])


@llm_router.get("/tags")
async def list_models(handler: LLMHandler = Depends(get_llm_handler)):
    """List models served by the active provider."""
    return await handler.list_models()


@llm_router.post("/chat")
async def chat(request: Request, handler: LLMHandler = Depends(get_llm_handler)):
    """Chat completion, streamed as NDJSON."""
    return await handler.chat(request)


@llm_router.post("/generate")
async def generate(request: Request, handler: LLMHandler = Depends(get_llm_handler)):
    """Single-turn generation, streamed as NDJSON."""
    return await handler.generate(request)


@llm_router.api_route("/{path:path}", methods=API_METHODS, include_in_schema=False)
async def fallback(request: Request, handler: LLMHandler = Depends(get_llm_handler)):
    """Any other /api/* call."""
    return await handler.fallback(request)
