# ollama_proxy/orchestration/stream_handlers.py
from __future__ import annotations

import codecs
import json
import logging
from typing import Any, List, Optional

from ollama_proxy.core.errors import DecodeWarning, UpstreamUnavailable
from ollama_proxy.core.models import UpstreamChunk

log = logging.getLogger("app.stream")


def extract_text(record: dict) -> Optional[str]:
    """Return the incremental text of one Ollama record.

    ``/api/chat`` records look like ``{"message": {"content": "..."}}``,
    legacy ``/api/generate`` records like ``{"response": "..."}``.
    """
    message = record.get("message")
    if isinstance(message, dict):
        content = message.get("content")
        if isinstance(content, str):
            return content
    response = record.get("response")
    if isinstance(response, str):
        return response
    return None


class ChunkReframer:
    """Newline-delimited JSON framing for one upstream generation.

    Bytes may be split or coalesced arbitrarily by the transport; ``feed``
    keeps only the unterminated last line between calls. Exactly one terminal
    chunk is produced, either on the upstream ``done`` marker or by
    ``finalize`` when the stream ends without one.
    """

    def __init__(self, parts: Optional[List[str]] = None) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.buf = ""
        # Accumulated text; callers may pass their own list to observe it
        self.parts: List[str] = parts if parts is not None else []
        self.warnings: List[DecodeWarning] = []
        self.finished = False

    @property
    def text(self) -> str:
        return "".join(self.parts)

    def feed(self, data: bytes) -> list[UpstreamChunk]:
        if self.finished:
            return []
        self.buf += self._decoder.decode(data)
        if "\n" not in self.buf:
            return []
        *lines, self.buf = self.buf.split("\n")
        results: list[UpstreamChunk] = []
        for line in lines:
            results.extend(self._record(line))
            if self.finished:
                self.buf = ""
                break
        return results

    def finalize(self) -> list[UpstreamChunk]:
        if self.finished:
            return []
        tail = self.buf + self._decoder.decode(b"", final=True)
        self.buf = ""
        results: list[UpstreamChunk] = []
        for line in tail.split("\n"):
            results.extend(self._record(line))
            if self.finished:
                return results
        self.finished = True
        results.append(UpstreamChunk(text=self.text, terminal=True))
        return results

    def _record(self, line: str) -> list[UpstreamChunk]:
        if self.finished:
            return []
        raw = line.strip()
        if not raw:
            return []
        try:
            obj: Any = json.loads(raw)
        except json.JSONDecodeError as exc:
            self._warn(raw, f"invalid JSON ({exc.msg})")
            return []
        if not isinstance(obj, dict):
            self._warn(raw, "record is not an object")
            return []
        if obj.get("error"):
            raise UpstreamUnavailable(f"Ollama error: {obj['error']}")

        out: list[UpstreamChunk] = []
        text = extract_text(obj)
        if text:
            self.parts.append(text)
            out.append(UpstreamChunk(text=text))
        if obj.get("done") is True:
            self.finished = True
            out.append(UpstreamChunk(text=self.text, terminal=True))
        return out

    def _warn(self, raw: str, reason: str) -> None:
        warning = DecodeWarning(raw, reason)
        self.warnings.append(warning)
        log.warning({"event": "stream.decode_warning", "reason": reason, "record": raw[:200]})
