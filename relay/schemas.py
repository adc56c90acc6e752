from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant"]


class Turn(BaseModel):
    """One role-tagged message in a conversation transcript."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class CompletionOptions(BaseModel):
    """Sampling parameters sent with every completion request."""

    model: str
    temperature: float = Field(default=0.8, ge=0.0, le=1.0)
    max_output_tokens: int = Field(default=500, gt=0)


class Envelope(BaseModel):
    """A single frame on the socket: ``{"event": ..., "data": ...}``."""

    event: str
    data: Any = None


class UserMessage(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    message: str = Field(min_length=1)
    username: str | None = None


class TypingHint(BaseModel):
    username: str | None = None
    typing: bool


class UserJoined(BaseModel):
    username: str | None = None
