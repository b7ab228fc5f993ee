# tests/test_api.py
from __future__ import annotations

import json

import httpx
import pytest
import respx
from httpx import Response, AsyncClient, ASGITransport

from conftest import OLLAMA_URL, chat_line


@pytest.mark.asyncio
@respx.mock
async def test_models_lists_upstream_names(app) -> None:
    respx.get(f"{OLLAMA_URL}/api/tags").mock(
        return_value=Response(200, json={"models": [{"name": "llama3:8b"}, {"name": "deepseek-r1:32b"}]})
    )
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        resp = await ac.get("/models")
    assert resp.status_code == 200
    assert resp.json() == {"models": ["llama3:8b", "deepseek-r1:32b"]}


@pytest.mark.asyncio
@respx.mock
async def test_models_upstream_down(app) -> None:
    respx.get(f"{OLLAMA_URL}/api/tags").mock(side_effect=httpx.ConnectError("connection refused"))
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        resp = await ac.get("/models")
    assert resp.status_code == 500
    assert resp.json()["error"].startswith("Failed to get models:")


@pytest.mark.asyncio
@respx.mock
async def test_models_malformed_payload(app) -> None:
    respx.get(f"{OLLAMA_URL}/api/tags").mock(return_value=Response(200, json={"unexpected": True}))
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        resp = await ac.get("/models")
    assert resp.status_code == 500
    assert "Invalid response format" in resp.json()["error"]


async def test_set_model_requires_model(app) -> None:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        resp = await ac.post("/set-model", json={})
        empty = await ac.post("/set-model", json={"model": ""})
    assert resp.status_code == 400
    assert resp.json() == {"error": "No model provided"}
    assert empty.status_code == 400


@pytest.mark.asyncio
@respx.mock
async def test_set_model_used_for_next_chat(app) -> None:
    route = respx.post(f"{OLLAMA_URL}/api/chat").mock(return_value=Response(200, content=chat_line("ok")))
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        resp = await ac.post("/set-model", json={"model": "qwen2.5:7b"})
        current = await ac.get("/model")
        chat = await ac.post("/chat", json={"chatHistory": [{"role": "user", "content": "hi"}]})

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "model": "qwen2.5:7b"}
    assert current.json() == {"model": "qwen2.5:7b"}
    assert chat.status_code == 200
    assert json.loads(route.calls.last.request.content)["model"] == "qwen2.5:7b"


async def test_stop_when_idle(app) -> None:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        resp = await ac.post("/stop")
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is False
    assert data["message"]


@pytest.mark.asyncio
@respx.mock
async def test_chat_upstream_unreachable_is_500(app) -> None:
    respx.post(f"{OLLAMA_URL}/api/chat").mock(side_effect=httpx.ConnectError("connection refused"))
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        resp = await ac.post("/chat", json={"chatHistory": [{"role": "user", "content": "hi"}]})
        hist = (await ac.get("/history")).json()
    assert resp.status_code == 500
    assert "Failed to reach Ollama" in resp.json()["error"]
    assert hist["state"] == "idle"
    assert hist["last_generation"] == "failed"


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"chatHistory": []},
        {"chatHistory": [{"role": "assistant", "content": "hello"}]},
        {"chatHistory": [{"role": "robot", "content": "beep"}]},
    ],
)
async def test_chat_rejects_bad_requests(app, body) -> None:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        resp = await ac.post("/chat", json=body)
    assert resp.status_code == 400
    assert "error" in resp.json()


@pytest.mark.asyncio
@respx.mock
async def test_legacy_message_body(app) -> None:
    route = respx.post(f"{OLLAMA_URL}/api/chat").mock(
        return_value=Response(200, content=chat_line("pong") + chat_line("", done=True))
    )
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        resp = await ac.post("/chat", json={"message": "ping"})
    assert resp.status_code == 200
    assert resp.text.endswith('data: {"done":true,"completeResponse":"pong"}\n\n')
    assert json.loads(route.calls.last.request.content)["messages"] == [{"role": "user", "content": "ping"}]


@pytest.mark.asyncio
@respx.mock
async def test_attachments_forwarded_as_images(app) -> None:
    route = respx.post(f"{OLLAMA_URL}/api/chat").mock(return_value=Response(200, content=chat_line("a cat")))
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        await ac.post("/chat", json={"chatHistory": [{"role": "user", "content": "what is this", "images": "aGk="}]})
    sent = json.loads(route.calls.last.request.content)
    assert sent["messages"] == [{"role": "user", "content": "what is this", "images": ["aGk="]}]


@pytest.mark.asyncio
@respx.mock
async def test_clear_history(app) -> None:
    respx.post(f"{OLLAMA_URL}/api/chat").mock(return_value=Response(200, content=chat_line("x")))
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        await ac.post("/chat", json={"chatHistory": [{"role": "user", "content": "hi"}]})
        before = (await ac.get("/history")).json()
        resp = await ac.delete("/history")
        after = (await ac.get("/history")).json()
    assert len(before["messages"]) == 2
    assert resp.json() == {"success": True}
    assert after["messages"] == []
