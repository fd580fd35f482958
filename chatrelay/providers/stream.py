"""
Incremental decoders for upstream streaming formats.

Upstreams deliver bytes in arbitrary slices: a JSON object can be cut in
half, and so can a multi-byte UTF-8 character. The decoders here keep a
carry-over buffer so a partial line is held until its newline arrives.
"""

from __future__ import annotations

import codecs
import json


def parse_sse_data(line: str) -> str | None:
    """
    Return the payload of an SSE `data:` line, or None for anything else
    (blank lines, `event:` lines, `: comment` keepalives).
    """
    if not line.startswith("data:"):
        return None
    return line[5:].strip()


def parse_sse_event(line: str) -> str | None:
    """Return the event name of an SSE `event:` line, or None."""
    if not line.startswith("event:"):
        return None
    return line[6:].strip()


class NDJSONDecoder:
    """
    Newline-delimited JSON decoder with a carry-over buffer.

    feed() takes raw bytes and returns every object completed by them;
    the incomplete trailing fragment stays buffered for the next call.
    Lines may carry an SSE-style `data:` prefix; `[DONE]` is skipped.
    Malformed lines raise ValueError.
    """

    DONE = "[DONE]"

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""

    @property
    def pending(self) -> str:
        """Text held back waiting for its newline."""
        return self._buffer

    def feed(self, chunk: bytes) -> list[dict]:
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def flush(self) -> list[dict]:
        """End of stream: whatever is buffered is a complete last line."""
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        return self._parse_lines([rest])

    def _parse_lines(self, lines: list[str]) -> list[dict]:
        objects = []
        for line in lines:
            obj = self._parse_line(line)
            if obj is not None:
                objects.append(obj)
        return objects

    def _parse_line(self, line: str) -> dict | None:
        line = line.strip()
        if not line or line.startswith(":"):
            return None
        if line.startswith("data:"):
            line = line[5:].strip()
        if line == self.DONE:
            return None
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as e:
            raise ValueError(f"Malformed stream line: {line[:200]!r}") from e
        if not isinstance(obj, dict):
            raise ValueError(f"Expected a JSON object, got: {line[:200]!r}")
        return obj


def delta_content(chunk: dict) -> str:
    """
    Pull `choices[0].delta.content` out of an OpenAI-style chunk.

    Absent or null fields mean no text. A field of the wrong type raises
    ValueError.
    """
    if not isinstance(chunk, dict):
        raise ValueError(f"Expected a JSON object, got {type(chunk).__name__}")
    choices = chunk.get("choices")
    if not choices:
        return ""
    if not isinstance(choices, list) or not isinstance(choices[0], dict):
        raise ValueError(f"Malformed choices: {str(choices)[:200]}")
    delta = choices[0].get("delta")
    if delta is None:
        return ""
    if not isinstance(delta, dict):
        raise ValueError(f"Malformed delta: {str(delta)[:200]}")
    content = delta.get("content")
    if content is None:
        return ""
    if not isinstance(content, str):
        raise ValueError(f"Malformed delta content: {str(content)[:200]}")
    return content
