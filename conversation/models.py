"""Conversation data model: messages, threads, sessions and chat settings.

All records are frozen pydantic models. State transitions never mutate a
record in place; they build a new one with ``model_copy(update=...)`` so a
snapshot handed to a caller stays consistent while the store moves on.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Literal, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from chatwrap_constants import DEFAULT_MODEL

DEFAULT_SYSTEM_PROMPT = "You are Claude, a helpful AI assistant created by Anthropic."
DEFAULT_THREAD_TITLE = "New Chat"

Role = Literal["user", "assistant", "system"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class Settings(BaseModel):
    """Per-session chat settings."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model: str = DEFAULT_MODEL
    temperature: float = Field(default=0.7, ge=0.0, le=1.0)
    max_tokens: int = Field(default=4000, gt=0)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    language: Literal["ko", "en", "ja", "zh"] = "ko"
    theme: Literal["light", "dark", "auto"] = "auto"
    typing_speed: int = Field(default=50, ge=0)
    auto_save: bool = True
    context_window: int = Field(default=20, ge=1)

    def merged(self, patch: Mapping[str, Any]) -> "Settings":
        """Return a validated copy with ``patch`` applied."""
        return Settings.model_validate({**self.model_dump(), **dict(patch)})


class MessageMetadata(BaseModel):
    # Plugins may attach their own keys (e.g. translation provenance)
    model_config = ConfigDict(frozen=True, extra="allow", protected_namespaces=())

    model: Optional[str] = None
    tokens: Optional[int] = None
    duration_ms: Optional[int] = None
    temperature: Optional[float] = None


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("msg"))
    role: Role
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    thread_id: str
    parent_id: Optional[str] = None
    metadata: Optional[MessageMetadata] = None


class Thread(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("thread"))
    title: str = DEFAULT_THREAD_TITLE
    messages: Tuple[Message, ...] = ()
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    is_archived: bool = False
    tags: FrozenSet[str] = frozenset()
    summary: Optional[str] = None

    @model_validator(mode="after")
    def _check_ownership(self) -> "Thread":
        for message in self.messages:
            if message.thread_id != self.id:
                raise ValueError(
                    f"message {message.id} belongs to thread {message.thread_id}, not {self.id}"
                )
        if self.updated_at < self.created_at:
            raise ValueError("updated_at precedes created_at")
        return self

    def index_of(self, message_id: str) -> int:
        for i, message in enumerate(self.messages):
            if message.id == message_id:
                return i
        return -1

    def find_message(self, message_id: str) -> Optional[Message]:
        index = self.index_of(message_id)
        return self.messages[index] if index >= 0 else None

    def with_messages(self, messages: Tuple[Message, ...], at: Optional[datetime] = None) -> "Thread":
        return self.model_copy(update={"messages": tuple(messages), "updated_at": at or utcnow()})


class Session(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("session"))
    threads: Dict[str, Thread] = Field(default_factory=dict)
    active_thread_id: Optional[str] = None
    settings: Settings = Field(default_factory=Settings)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_active_thread(self) -> "Session":
        if self.active_thread_id is not None and self.active_thread_id not in self.threads:
            raise ValueError(f"active thread {self.active_thread_id} is not in the session")
        return self

    @property
    def active_thread(self) -> Optional[Thread]:
        if self.active_thread_id is None:
            return None
        return self.threads.get(self.active_thread_id)

    def with_thread(self, thread: Thread, **updates: Any) -> "Session":
        """Return a copy with ``thread`` inserted or replaced in place."""
        threads = dict(self.threads)
        threads[thread.id] = thread
        return self.model_copy(update={"threads": threads, "updated_at": utcnow(), **updates})


class SendMessageOptions(BaseModel):
    """Per-call overrides for ``ConversationStore.send_message``."""

    parent_id: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    system_prompt: Optional[str] = None
