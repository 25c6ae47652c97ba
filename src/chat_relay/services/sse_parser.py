"""
Incremental parser for upstream chat-completion SSE streams.

The upstream sends frames such as:

    data: {"choices":[{"delta":{"content":"Hel"}}]}
    data: {"choices":[{"delta":{"content":"lo"}}]}
    data: [DONE]

but network reads split them at arbitrary byte offsets, sometimes in the
middle of a multi-byte character or a JSON object, and some providers emit
truncated or otherwise malformed JSON. ``SSEChunkParser`` keeps the trailing
partial line between reads, extracts ``choices[0].delta.content`` from every
complete ``data:`` line and accumulates the full response text.

Guarantees:
    - Fragments are returned in upstream order; joined, they always equal
      ``accumulated``.
    - Output does not depend on how the byte stream was split.
    - A bad line is recovered best-effort or skipped, never raised.
    - Nothing after ``[DONE]`` is emitted.

Last Grunted: 10/17/2026 09:00:00 AM UTC
"""
import codecs
import json
import re
from typing import Any, Optional

import structlog

logger = structlog.get_logger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

# "content": "<run of non-quote or escaped chars>" -- closing quote optional
_CONTENT_PATTERN = re.compile(r'"content"\s*:\s*"((?:[^"\\]|\\.)*)')
# C0 controls, DEL and lone surrogates; \t and \n are kept
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f\ud800-\udfff]")
_SIMPLE_ESCAPES = {
    '"': '"', "\\": "\\", "/": "/", "b": "\b",
    "f": "\f", "n": "\n", "r": "\r", "t": "\t",
}


class SSEChunkParser:
    """
    Stateful chunk parser owned by exactly one relay invocation.

    Attributes:
        done: True once the ``[DONE]`` sentinel has been seen
        fragments: Number of content fragments emitted
        recovered: Number of fragments salvaged from malformed JSON
        skipped: Number of data lines that produced nothing
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending: str = ""
        self._parts: list[str] = []
        self.done: bool = False
        self.fragments: int = 0
        self.recovered: int = 0
        self.skipped: int = 0
        self.ignored_after_done: int = 0

    @property
    def accumulated(self) -> str:
        """The full response text so far."""
        return "".join(self._parts)

    def feed(self, chunk: bytes) -> list[str]:
        """
        Consume one upstream read.

        Args:
            chunk: Raw bytes exactly as read from the transport

        Returns:
            Content fragments completed by this chunk, in order
        """
        self._pending += self._decoder.decode(chunk)
        lines = self._pending.split("\n")
        self._pending = lines.pop()
        return self._process_lines(lines)

    def flush(self) -> list[str]:
        """
        Drain the held-back partial line at end of stream.

        Returns:
            Content fragments from the final unterminated line, if any
        """
        self._pending += self._decoder.decode(b"", final=True)
        remainder, self._pending = self._pending, ""
        if not remainder:
            return []
        return self._process_lines(remainder.split("\n"))

    # ------------------------------------------------------------------------
    # Line handling
    # ------------------------------------------------------------------------

    def _process_lines(self, lines: list[str]) -> list[str]:
        emitted: list[str] = []
        for raw_line in lines:
            fragment = self._process_line(raw_line.rstrip("\r"))
            if fragment:
                self._parts.append(fragment)
                self.fragments += 1
                emitted.append(fragment)
        return emitted

    def _process_line(self, line: str) -> Optional[str]:
        if not line.startswith(DATA_PREFIX):
            # blank separators, comments, event:/id:/retry: fields
            return None

        if self.done:
            self.ignored_after_done += 1
            return None

        payload = line[len(DATA_PREFIX):]
        if payload.startswith(" "):
            payload = payload[1:]

        if payload.strip() == DONE_SENTINEL:
            self.done = True
            return None

        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            return self._recover(payload, exc)

        content = _extract_delta_content(data)
        if not content:
            self.skipped += 1
        return content

    def _recover(self, payload: str, exc: json.JSONDecodeError) -> Optional[str]:
        match = _CONTENT_PATTERN.search(payload)
        if match is None:
            self.skipped += 1
            logger.warning(
                "sse_parser.unparseable_line",
                error=str(exc),
                payload_length=len(payload),
            )
            return None

        content = _CONTROL_CHARS.sub("", _unescape(match.group(1)))
        if not content:
            self.skipped += 1
            return None

        self.recovered += 1
        logger.info(
            "sse_parser.recovered_fragment",
            error=str(exc),
            recovered_length=len(content),
        )
        return content


# ============================================================================
# Helpers
# ============================================================================

def _extract_delta_content(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None

    if "error" in data and not data.get("choices"):
        logger.warning("sse_parser.upstream_error_event", error=str(data.get("error"))[:200])
        return None

    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return None

    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return None

    content = delta.get("content")
    return content if isinstance(content, str) and content else None


def _unescape(raw: str) -> str:
    """Decode JSON string escapes, tolerating a cut-off trailing escape."""
    try:
        return json.loads(f'"{raw}"')
    except json.JSONDecodeError:
        pass

    out: list[str] = []
    i = 0
    while i < len(raw):
        char = raw[i]
        if char != "\\":
            out.append(char)
            i += 1
            continue
        if i + 1 >= len(raw):
            break
        escape = raw[i + 1]
        if escape == "u":
            digits = raw[i + 2:i + 6]
            if len(digits) == 4 and all(c in "0123456789abcdefABCDEF" for c in digits):
                out.append(chr(int(digits, 16)))
                i += 6
                continue
            break
        out.append(_SIMPLE_ESCAPES.get(escape, escape))
        i += 2
    return "".join(out)
