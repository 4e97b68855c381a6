from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Literal["system", "user", "assistant", "tool"]
    content: Union[str, List[Any], None] = None


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    messages: List[ChatMessage] = Field(..., min_length=1)
    model: Optional[str] = Field(default=None, description="Alias or fully-qualified model id")
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, ge=1)
    top_p: Optional[float] = Field(default=None, ge=0, le=1)
    frequency_penalty: Optional[float] = Field(default=None, ge=-2, le=2)
    presence_penalty: Optional[float] = Field(default=None, ge=-2, le=2)
    stream: Optional[bool] = False


class ChunkChoice(BaseModel):
    index: int = 0
    delta: Dict[str, str] = Field(default_factory=dict)
    finish_reason: Optional[Literal["stop", "error"]] = None


class ChatCompletionChunk(BaseModel):
    id: str
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    created: int
    model: str
    choices: List[ChunkChoice]

    @property
    def content(self) -> Optional[str]:
        return self.choices[0].delta.get("content")

    @property
    def finish_reason(self) -> Optional[str]:
        return self.choices[0].finish_reason
