# apps/api/main.py

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from ollama_proxy.core.errors import (
    MalformedUpstreamResponse,
    MissingField,
    NoActiveGeneration,
    ProxyError,
    UpstreamUnavailable,
)
from ollama_proxy.core.logging import configure_logging, request_logging_middleware
from ollama_proxy.core.models import ChatMessage, ChatSession
from ollama_proxy.core.settings import AppSettings, get_settings
from ollama_proxy.orchestration.generation import Generation, GenerationSessionManager
from ollama_proxy.providers.base import Provider
from ollama_proxy.providers.ollama import get_ollama_provider

log_stream = logging.getLogger("app.stream")
log_ollama = logging.getLogger("app.ollama")

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class ChatMessageIn(BaseModel):
    role: Literal["user", "assistant"]
    content: str = ""
    images: Optional[Union[str, List[str]]] = None

    def to_message(self) -> ChatMessage:
        images = self.images or ()
        if isinstance(images, str):
            images = (images,)
        return ChatMessage(role=self.role, content=self.content, images=tuple(images))


class ChatRequest(BaseModel):
    chatHistory: Optional[List[ChatMessageIn]] = None
    # Older renderer builds sent a single prompt instead of the history
    message: Optional[str] = None


class SetModelRequest(BaseModel):
    model: Optional[str] = None


def get_generations(request: Request) -> GenerationSessionManager:
    return request.app.state.generations


def get_provider(request: Request) -> Provider:
    return request.app.state.provider


def _sse_format(data: Dict[str, Any]) -> bytes:
    return f"data: {json.dumps(data, ensure_ascii=False, separators=(',', ':'))}\n\n".encode("utf-8")


async def event_stream(generation: Generation, queue_size: int) -> AsyncIterator[bytes]:
    """Relay a generation to the client as ``data:`` frames.

    A producer task reads upstream into a bounded queue, so a slow client
    pauses upstream reads. If the client goes away, the generation is
    cancelled and the producer stopped.
    """
    queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue(maxsize=queue_size)

    async def produce_loop() -> None:
        done_sent = False
        chunks = generation.__aiter__()
        try:
            async for chunk in chunks:
                done_sent = done_sent or chunk.terminal
                await queue.put(_sse_format(chunk.to_client_event()))
        except Exception as exc:  # noqa: BLE001
            msg = exc.message if isinstance(exc, ProxyError) else str(exc)
            log_stream.warning({"event": "stream.error", "error": msg})
            await queue.put(_sse_format({"error": msg}))
            if not done_sent:
                await queue.put(_sse_format({"done": True, "completeResponse": ""}))
        finally:
            await chunks.aclose()
        await queue.put(None)

    prod_task = asyncio.create_task(produce_loop())
    try:
        while True:
            item = await queue.get()
            if item is None:
                break
            yield item
    finally:
        if not prod_task.done():
            log_stream.info({"event": "stream.client_gone"})
            generation.cancel()
            prod_task.cancel()


@router.get("/health")
async def health() -> Dict[str, Any]:
    return {"status": "ok", "time": datetime.now(timezone.utc).isoformat()}


@router.get("/config")
async def config(request: Request, generations: GenerationSessionManager = Depends(get_generations)) -> JSONResponse:
    settings: AppSettings = request.app.state.settings
    return JSONResponse(content={
        "app_name": settings.app_name,
        "env": settings.app_env,
        "log_level": settings.log_level,
        "providers": {
            "ollama": {
                "base_url": settings.upstream_url,
                "api": settings.ollama_api,
                "generate_fallback": settings.generate_fallback,
            }
        },
        "model": generations.session.selected_model,
        "keep_partial_on_cancel": settings.keep_partial_on_cancel,
    })


@router.get("/models")
async def list_models(provider: Provider = Depends(get_provider)) -> JSONResponse:
    try:
        models = await provider.list_models()
    except (UpstreamUnavailable, MalformedUpstreamResponse) as e:
        log_ollama.error({"event": "ollama.models_failed", "error": e.message})
        return JSONResponse(status_code=500, content={"error": f"Failed to get models: {e.message}"})
    return JSONResponse(content={"models": models})


@router.get("/model")
async def current_model(generations: GenerationSessionManager = Depends(get_generations)) -> Dict[str, Any]:
    return {"model": generations.session.selected_model}


@router.post("/set-model")
async def set_model(
    req: Optional[SetModelRequest] = None,
    generations: GenerationSessionManager = Depends(get_generations),
) -> Dict[str, Any]:
    if req is None or not req.model:
        raise MissingField("No model provided")
    model = generations.set_model(req.model)
    return {"success": True, "model": model}


@router.get("/history")
async def get_history(generations: GenerationSessionManager = Depends(get_generations)) -> Dict[str, Any]:
    session = generations.session
    return {
        "model": session.selected_model,
        "state": session.state,
        "last_generation": session.last_generation.state.value if session.last_generation else None,
        "messages": [m.to_client() for m in session.message_log],
    }


@router.delete("/history")
async def clear_history(generations: GenerationSessionManager = Depends(get_generations)) -> Dict[str, Any]:
    generations.reset()
    return {"success": True}


@router.post("/chat")
async def chat(
    request: Request,
    req: ChatRequest,
    generations: GenerationSessionManager = Depends(get_generations),
):
    """Stream a reply as `data:` frames ending with one `{"done": true, ...}` frame.

    Errors before streaming starts are plain JSON `{"error": ...}`: 400 for a
    missing or invalid history, 409 while another generation is running (the
    UI should `/stop` or wait), 500 when Ollama cannot be reached.
    """
    settings: AppSettings = request.app.state.settings
    if req.chatHistory is not None:
        generation = await generations.start([m.to_message() for m in req.chatHistory])
    elif req.message:
        generation = await generations.start_message(req.message)
    else:
        raise MissingField("No chat history provided")
    return StreamingResponse(
        event_stream(generation, settings.stream_queue_size),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post("/stop")
async def stop(generations: GenerationSessionManager = Depends(get_generations)) -> Dict[str, Any]:
    try:
        generations.cancel()
    except NoActiveGeneration as e:
        return {"success": False, "message": e.message}
    return {"success": True, "message": "Generation stopped"}


async def _proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    where = ".".join(str(p) for p in errors[0].get("loc", ())) if errors else "body"
    return JSONResponse(status_code=400, content={"error": f"Invalid request: {where}"})


def create_app(settings: Optional[AppSettings] = None, provider: Optional[Provider] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.state.settings = settings
    app.state.provider = provider or get_ollama_provider(settings)
    app.state.generations = GenerationSessionManager(
        app.state.provider,
        ChatSession(selected_model=settings.default_model),
        keep_partial_on_cancel=settings.keep_partial_on_cancel,
    )

    origins = settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(request_logging_middleware)
    app.add_exception_handler(ProxyError, _proxy_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.include_router(router)
    return app


app = create_app()
