# app/llm/api/dto.py
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, List, Literal, Optional, Union


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Literal["system", "user", "assistant"]
    content: str


class GenerationOptions(BaseModel):
    """Ollama `options` object; unknown keys are kept for the direct proxy."""
    model_config = ConfigDict(extra="allow")

    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    num_predict: Optional[int] = None
    stop: Optional[Union[str, List[str]]] = None
    seed: Optional[int] = None


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str = Field(default="", description="model id")
    messages: List[ChatMessage] = Field(default_factory=list)
    stream: bool = True
    options: Optional[GenerationOptions] = None


class GenerateRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str = Field(default="", description="model id")
    prompt: str = ""
    system: Optional[str] = None
    stream: bool = True
    options: Optional[GenerationOptions] = None


class ModelDetails(BaseModel):
    model_config = ConfigDict(extra="allow")

    parent_model: str = ""
    format: str = ""
    family: str = ""
    parameter_size: str = ""
    quantization_level: str = ""


class ModelDescriptor(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    model: str = ""
    modified_at: str = ""
    size: int = 0
    digest: str = ""
    details: ModelDetails = Field(default_factory=ModelDetails)


class ModelListResponse(BaseModel):
    models: List[ModelDescriptor] = Field(default_factory=list)

    @field_validator("models")
    @classmethod
    def names_unique(cls, models: List[ModelDescriptor]) -> List[ModelDescriptor]:
        seen = set()
        for m in models:
            if m.name in seen:
                raise ValueError(f"duplicate model name: {m.name}")
            seen.add(m.name)
        return models


class ChatStreamChunk(BaseModel):
    model: str
    created_at: str
    message: ChatMessage
    done: bool
    done_reason: Optional[str] = None
    total_duration: Optional[int] = None
    prompt_eval_count: Optional[int] = None
    eval_count: Optional[int] = None


class GenerateStreamChunk(BaseModel):
    model: str
    created_at: str
    response: str
    done: bool
    done_reason: Optional[str] = None
    total_duration: Optional[int] = None
    prompt_eval_count: Optional[int] = None
    eval_count: Optional[int] = None


class ErrorResponse(BaseModel):
    error: str
    message: Optional[str] = None
    details: Optional[Any] = None

    def to_content(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)
