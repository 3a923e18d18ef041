"""Pydantic models for OpenAI-compatible API requests and responses"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict


class Message(BaseModel):
    """Chat message - permissive to support various OpenAI-compatible clients"""

    model_config = ConfigDict(extra="allow")

    role: str
    content: Union[str, List[Any], None] = None
    reasoning_content: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None


class ChatCompletionRequest(BaseModel):
    """OpenAI-compatible chat completion request"""

    model_config = ConfigDict(extra="allow")

    model: str
    messages: List[Message]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stream: Optional[bool] = None
    top_p: Optional[float] = None
    tools: Optional[List[Any]] = None
    tool_choice: Optional[Any] = None
    stream_options: Optional[dict] = None
    chat_id: Optional[str] = None


class ChatCompletionChoice(BaseModel):
    """Single completion choice"""

    index: int
    message: Message
    finish_reason: Optional[str] = None


class ChatCompletionResponse(BaseModel):
    """OpenAI-compatible chat completion response"""

    id: str
    object: str = "chat.completion"
    created: int
    model: str
    choices: List[ChatCompletionChoice]
    usage: Optional[Dict[str, Any]] = None


class ChatCompletionStreamChoice(BaseModel):
    """Single streaming choice"""

    index: int = 0
    delta: dict
    finish_reason: Optional[str] = None


class ChatCompletionStreamResponse(BaseModel):
    """OpenAI-compatible streaming response chunk"""

    id: str
    object: str = "chat.completion.chunk"
    created: int
    model: str
    choices: List[ChatCompletionStreamChoice]
    usage: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None


class ModelInfo(BaseModel):
    """Model information"""

    id: str
    object: str = "model"
    created: int = 0
    owned_by: str = "glmgate"
    name: Optional[str] = None


class ModelListResponse(BaseModel):
    """List of available models"""

    object: str = "list"
    data: List[ModelInfo]


class HealthResponse(BaseModel):
    """Health check response"""

    status: str
    default_model: str
    think_mode: str
    credentials: Dict[str, int]


class PoolStatusResponse(BaseModel):
    """Masked credential pool state"""

    failure_threshold: int
    guest_enabled: bool
    credentials: List[Dict[str, Any]]
