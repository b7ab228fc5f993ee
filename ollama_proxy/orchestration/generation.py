# ollama_proxy/orchestration/generation.py
from __future__ import annotations

import asyncio
import logging
from typing import AsyncGenerator, Iterable, Iterator, Optional, Sequence

from ollama_proxy.core.errors import AlreadyRunning, MissingField, NoActiveGeneration
from ollama_proxy.core.models import (
    ChatMessage,
    ChatSession,
    GenerationHandle,
    GenerationState,
    UpstreamChunk,
)
from ollama_proxy.orchestration.stream_handlers import ChunkReframer
from ollama_proxy.providers.base import Provider, UpstreamStream

log = logging.getLogger("app.generation")


class Generation:
    """An in-flight generation, iterated as ``UpstreamChunk`` values.

    Iterate it once. The last chunk is always terminal unless the upstream
    fails, in which case the error propagates out of the iteration.
    """

    def __init__(self, manager: "GenerationSessionManager", handle: GenerationHandle, stream: UpstreamStream) -> None:
        self._manager = manager
        self.handle = handle
        self._stream = stream
        self.reframer = ChunkReframer(parts=handle.parts)

    def __aiter__(self) -> AsyncGenerator[UpstreamChunk, None]:
        return self._chunks()

    def cancel(self) -> None:
        self.handle.token.cancel()

    async def _chunks(self) -> AsyncGenerator[UpstreamChunk, None]:
        handle = self.handle
        reframer = self.reframer
        try:
            async for data in self._stream.iter_bytes(handle.token):
                for chunk in self._track(reframer.feed(data)):
                    yield chunk
                if reframer.finished:
                    break
            for chunk in self._track(reframer.finalize()):
                yield chunk
        except (asyncio.CancelledError, GeneratorExit):
            # Consumer went away (client disconnect); same as an explicit stop
            self._manager._abandon(handle)
            raise
        except Exception as exc:
            self._manager._fail(handle, exc)
            raise
        finally:
            await self._stream.aclose()

    def _track(self, chunks: Iterable[UpstreamChunk]) -> Iterator[UpstreamChunk]:
        for chunk in chunks:
            if chunk.terminal:
                self._manager._finish(self.handle, chunk.text)
            yield chunk


class GenerationSessionManager:
    """Owns the chat session and its single in-flight generation.

    State per session: idle -> running -> {completed, cancelled, failed} -> idle.
    """

    def __init__(self, provider: Provider, session: ChatSession, *, keep_partial_on_cancel: bool = True) -> None:
        self.provider = provider
        self.session = session
        self.keep_partial_on_cancel = keep_partial_on_cancel

    @property
    def running(self) -> bool:
        return self.session.running

    def set_model(self, model_id: str) -> str:
        if self.running:
            raise AlreadyRunning("Cannot change model while a generation is running")
        self.session.selected_model = model_id
        log.info({"event": "generation.set_model", "model": model_id})
        return model_id

    def reset(self) -> None:
        if self.running:
            raise AlreadyRunning("Cannot clear history while a generation is running")
        self.session.message_log.clear()

    async def start(self, history: Sequence[ChatMessage], model_id: Optional[str] = None) -> Generation:
        if self.running:
            raise AlreadyRunning()
        if not history:
            raise MissingField("No chat history provided")
        if history[-1].role != "user":
            raise MissingField("Chat history must end with a user message")
        self._sync_log(history)
        return await self._open(model_id or self.session.selected_model)

    async def start_message(self, text: str, model_id: Optional[str] = None) -> Generation:
        if self.running:
            raise AlreadyRunning()
        if not text:
            raise MissingField("No message provided")
        return await self.start([*self.session.message_log, ChatMessage(role="user", content=text)], model_id)

    def cancel(self) -> GenerationHandle:
        handle = self.session.active_generation
        if handle is None or not handle.running:
            raise NoActiveGeneration()
        handle.token.cancel()
        log.info({"event": "generation.cancel_requested", "model": handle.model_id})
        return handle

    async def _open(self, model_id: str) -> Generation:
        # Installed before the first await so a concurrent start sees it
        handle = GenerationHandle(model_id=model_id)
        self.session.active_generation = handle
        messages = list(self.session.message_log)
        try:
            stream = await self.provider.open_chat(model_id, messages)
        except BaseException as exc:
            self._fail(handle, exc)
            raise
        log.info({"event": "generation.start", "model": model_id, "messages": len(messages)})
        return Generation(self, handle, stream)

    def _sync_log(self, history: Sequence[ChatMessage]) -> None:
        log_ = self.session.message_log
        if list(history[: len(log_)]) == log_:
            log_.extend(history[len(log_):])
            return
        log.warning(
            {"event": "generation.history_resync", "server_messages": len(log_), "client_messages": len(history)}
        )
        log_[:] = list(history)

    def _finish(self, handle: GenerationHandle, text: str) -> None:
        if not handle.running:
            return
        if handle.token.cancelled:
            handle.state = GenerationState.CANCELLED
            if self.keep_partial_on_cancel and text:
                self.session.message_log.append(ChatMessage(role="assistant", content=text))
        else:
            handle.state = GenerationState.COMPLETED
            self.session.message_log.append(ChatMessage(role="assistant", content=text))
        self._release(handle)
        log.info({"event": "generation.end", "state": handle.state.value, "chars": len(text)})

    def _abandon(self, handle: GenerationHandle) -> None:
        if handle.running:
            handle.token.cancel()
            self._finish(handle, handle.accumulated_text)

    def _fail(self, handle: GenerationHandle, exc: BaseException) -> None:
        if not handle.running:
            return
        handle.state = GenerationState.FAILED
        self._release(handle)
        log.warning({"event": "generation.failed", "error": str(exc) or type(exc).__name__, "discarded_chars": len(handle.accumulated_text)})

    def _release(self, handle: GenerationHandle) -> None:
        if self.session.active_generation is handle:
            self.session.active_generation = None
        self.session.last_generation = handle

