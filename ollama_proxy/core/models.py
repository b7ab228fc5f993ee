# ollama_proxy/core/models.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple


Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: str
    images: Tuple[str, ...] = ()

    def to_upstream(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.images:
            payload["images"] = list(self.images)
        return payload

    def to_client(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content, "images": list(self.images) or None}


@dataclass(frozen=True)
class UpstreamChunk:
    """One parsed unit of upstream output.

    Incremental chunks carry the new text; the terminal chunk carries the full
    accumulated response.
    """

    text: str
    terminal: bool = False

    def to_client_event(self) -> Dict[str, Any]:
        if self.terminal:
            return {"done": True, "completeResponse": self.text}
        return {"word": self.text}


class CancellationToken:
    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class GenerationState(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class GenerationHandle:
    model_id: str
    token: CancellationToken = field(default_factory=CancellationToken)
    state: GenerationState = GenerationState.RUNNING
    parts: List[str] = field(default_factory=list)

    @property
    def accumulated_text(self) -> str:
        return "".join(self.parts)

    @property
    def running(self) -> bool:
        return self.state is GenerationState.RUNNING


@dataclass
class ChatSession:
    selected_model: str
    message_log: List[ChatMessage] = field(default_factory=list)
    active_generation: Optional[GenerationHandle] = None
    last_generation: Optional[GenerationHandle] = None

    @property
    def running(self) -> bool:
        return self.active_generation is not None and self.active_generation.running

    @property
    def state(self) -> str:
        return "running" if self.running else "idle"
