# tests/conftest.py
from __future__ import annotations

import json

import pytest

from apps.api.main import create_app
from ollama_proxy.core.settings import AppSettings

OLLAMA_URL = "http://ollama.test:11434"


def make_settings(**overrides) -> AppSettings:
    values = {"ollama_base_url": OLLAMA_URL, "default_model": "llama3:8b", "log_format": "plain"}
    values.update(overrides)
    return AppSettings(**values)


def chat_line(text: str, done: bool = False) -> bytes:
    record = {"model": "llama3:8b", "message": {"role": "assistant", "content": text}, "done": done}
    return (json.dumps(record, ensure_ascii=False) + "\n").encode("utf-8")


def parse_events(raw: bytes) -> list[dict]:
    events: list[dict] = []
    for block in raw.decode("utf-8").split("\n\n"):
        if block.startswith("data: "):
            events.append(json.loads(block[len("data: "):]))
    return events


@pytest.fixture
def app():
    return create_app(make_settings())
