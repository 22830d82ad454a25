from __future__ import annotations

import codecs
import json

from loguru import logger

DONE_SENTINEL = "[DONE]"


class SSEDecoder:
    """Incremental decoder for OpenAI-style ``text/event-stream`` bodies.

    Bytes may arrive split anywhere, including inside a multi-byte UTF-8
    sequence or between ``\\r`` and ``\\n``; ``feed`` only emits text for lines
    that are complete.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, chunk: bytes) -> list[str]:
        if self.done:
            return []
        self._buffer += self._decoder.decode(chunk)
        return self._drain(final=False)

    def finish(self) -> list[str]:
        """Flush whatever is left once the body has ended."""
        if self.done:
            return []
        self._buffer += self._decoder.decode(b"", final=True)
        return self._drain(final=True)

    def _drain(self, *, final: bool) -> list[str]:
        out: list[str] = []
        *lines, rest = self._buffer.split("\n")
        if final and rest:
            lines.append(rest)
            rest = ""
        self._buffer = rest

        for line in lines:
            text = self._parse_line(line.rstrip("\r"))
            if self.done:
                self._buffer = ""
                break
            if text:
                out.append(text)
        return out

    def _parse_line(self, line: str) -> str | None:
        if not line.startswith("data:"):
            return None
        payload = line[5:]
        if payload.startswith(" "):
            payload = payload[1:]
        if payload.strip() == DONE_SENTINEL:
            self.done = True
            return None

        try:
            event = json.loads(payload)
        except ValueError:
            logger.debug(f"Skipping malformed SSE line: {payload[:80]!r}")
            return None
        return extract_delta_text(event)


def extract_delta_text(event: object) -> str | None:
    if not isinstance(event, dict):
        return None
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    choice = choices[0]
    delta = choice.get("delta") or {}
    text = delta.get("content") if isinstance(delta, dict) else None
    if text is None:
        text = choice.get("text")
    return text if isinstance(text, str) and text else None
