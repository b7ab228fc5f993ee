# ollama_proxy/providers/base.py
from __future__ import annotations

from typing import AsyncIterator, List, Protocol, Sequence

from ollama_proxy.core.models import CancellationToken, ChatMessage


class UpstreamStream(Protocol):
    def iter_bytes(self, token: CancellationToken) -> AsyncIterator[bytes]:
        """Yield raw upstream fragments until the stream ends or ``token`` is cancelled."""
        ...

    async def aclose(self) -> None:
        ...


class Provider(Protocol):
    async def list_models(self) -> List[str]:
        ...

    async def open_chat(self, model: str, messages: Sequence[ChatMessage]) -> UpstreamStream:
        """Open a streaming generation; raises before returning if the call cannot start."""
        ...
