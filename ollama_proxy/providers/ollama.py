# ollama_proxy/providers/ollama.py
from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from ollama_proxy.core.errors import MalformedUpstreamResponse, UpstreamUnavailable
from ollama_proxy.core.models import CancellationToken, ChatMessage
from ollama_proxy.core.settings import AppSettings, get_settings

log = logging.getLogger("app.ollama")


def build_prompt(messages: Sequence[ChatMessage]) -> str:
    return "\n".join(m.content for m in messages)


class _NotFound(Exception):
    pass


class OllamaStream:
    """An open streaming response from Ollama; owns its client until closed."""

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response, endpoint: str) -> None:
        self._client = client
        self._response = response
        self.endpoint = endpoint
        self.closed = False

    async def iter_bytes(self, token: CancellationToken) -> AsyncIterator[bytes]:
        if token.cancelled:
            return
        try:
            async for data in self._response.aiter_bytes():
                if token.cancelled:
                    log.info({"event": "ollama.stream_cancelled", "endpoint": self.endpoint})
                    break
                if data:
                    yield data
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(f"Lost connection to Ollama: {exc}") from exc
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()


class OllamaProvider:
    def __init__(
        self,
        base_url: str,
        *,
        api: str = "chat",
        generate_fallback: bool = True,
        connect_timeout: float = 10.0,
        models_timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api = api
        self.generate_fallback = generate_fallback
        self.connect_timeout = connect_timeout
        self.models_timeout = models_timeout

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "OllamaProvider":
        return cls(
            settings.upstream_url,
            api=settings.ollama_api,
            generate_fallback=settings.generate_fallback,
            connect_timeout=settings.upstream_connect_timeout_sec,
            models_timeout=settings.models_timeout_sec,
        )

    async def list_models(self) -> List[str]:
        url = f"{self.base_url}/api/tags"
        try:
            async with httpx.AsyncClient(timeout=self.models_timeout) as client:
                r = await client.get(url)
                r.raise_for_status()
                data = r.json()
        except httpx.HTTPStatusError as e:
            raise UpstreamUnavailable(f"Ollama API failed with status {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Failed to reach Ollama: {e}") from e
        except ValueError as e:
            raise MalformedUpstreamResponse("Invalid response format from Ollama") from e

        models = data.get("models") if isinstance(data, dict) else None
        if not isinstance(models, list):
            raise MalformedUpstreamResponse("Invalid response format from Ollama")
        names: List[str] = []
        for m in models:
            name = m.get("name") if isinstance(m, dict) else None
            if not isinstance(name, str):
                raise MalformedUpstreamResponse("Invalid response format from Ollama")
            names.append(name)
        log.info({"event": "ollama.models", "count": len(names)})
        return names

    async def open_chat(self, model: str, messages: Sequence[ChatMessage]) -> OllamaStream:
        """Open a streaming generation, preferring /api/chat.

        Falls back to the legacy /api/generate endpoint when /api/chat is not
        available (404) on older servers.
        """
        if self.api == "generate":
            return await self._open("/api/generate", self._generate_payload(model, messages))
        try:
            return await self._open("/api/chat", self._chat_payload(model, messages))
        except _NotFound:
            if not self.generate_fallback:
                raise UpstreamUnavailable("Ollama responded with status 404 for /api/chat")
            log.info({"event": "ollama.generate_fallback", "model": model})
            return await self._open("/api/generate", self._generate_payload(model, messages))

    def _chat_payload(self, model: str, messages: Sequence[ChatMessage]) -> Dict[str, Any]:
        return {"model": model, "messages": [m.to_upstream() for m in messages], "stream": True}

    def _generate_payload(self, model: str, messages: Sequence[ChatMessage]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": model, "prompt": build_prompt(messages), "stream": True}
        images = [img for m in messages if m.role == "user" for img in m.images]
        if images:
            payload["images"] = images
        return payload

    async def _open(self, path: str, payload: Dict[str, Any]) -> OllamaStream:
        # No read timeout: generations may pause for a long time between tokens
        timeout = httpx.Timeout(None, connect=self.connect_timeout)
        client = httpx.AsyncClient(timeout=timeout)
        request = client.build_request("POST", f"{self.base_url}{path}", json=payload)
        response: Optional[httpx.Response] = None
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            await client.aclose()
            raise UpstreamUnavailable(f"Failed to reach Ollama: {exc}") from exc

        if response.is_error:
            status = response.status_code
            await response.aread()
            detail = response.text
            await response.aclose()
            await client.aclose()
            if status == 404 and path == "/api/chat":
                raise _NotFound(detail)
            raise UpstreamUnavailable(f"Ollama responded with status {status}: {detail}")
        log.info({"event": "ollama.stream_open", "endpoint": path, "model": payload.get("model")})
        return OllamaStream(client, response, path)


def get_ollama_provider(settings: Optional[AppSettings] = None) -> OllamaProvider:
    return OllamaProvider.from_settings(settings or get_settings())
