# app/llm/service/provider/base_provider.py
from abc import ABC, abstractmethod
from typing import Mapping

from app.core.exceptions import UnsupportedEndpoint
from app.llm.api.dto import ChatRequest, GenerateRequest, ModelListResponse
from app.llm.service.stream_sink import StreamSink


class BaseProvider(ABC):
    """Abstract base provider for all LLM backends."""

    name: str = "base"
    display_name: str = "Base"
    # Whether arbitrary /api/* calls can be relayed to this backend as-is
    supports_passthrough: bool = False

    @abstractmethod
    async def list_models(self) -> ModelListResponse:
        """Return the models the backend can serve."""
        pass

    @abstractmethod
    async def chat(self, request: ChatRequest, sink: StreamSink) -> None:
        """Run one chat turn, writing stream chunks to the sink."""
        pass

    @abstractmethod
    async def generate(self, request: GenerateRequest, sink: StreamSink) -> None:
        """Run one single-turn completion, writing stream chunks to the sink."""
        pass

    async def proxy(
        self,
        method: str,
        path: str,
        query: str,
        headers: Mapping[str, str],
        body: bytes,
        sink: StreamSink,
    ) -> None:
        """Relay an arbitrary API call verbatim."""
        raise UnsupportedEndpoint(self.display_name)

    def __repr__(self):
        return f"<{self.__class__.__name__} name={self.name}>"
