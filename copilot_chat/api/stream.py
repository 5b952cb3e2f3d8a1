"""Decoder for the OpenAI-compatible streaming protocol.

The upstream sends one event per line:

    data: {"choices": [{"delta": {"content": "Hel"}}]}
    data: {"choices": [{"delta": {"content": "lo"}}]}
    data: {"choices": [], "usage": {...}}
    data: [DONE]

Lines may be split across network chunks (and so may multi-byte UTF-8
characters), so the decoder keeps a partial-line buffer. Malformed frames
are skipped; only transport errors or cancellation abort a stream.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

from copilot_chat.cancellation import CancellationToken
from copilot_chat.errors import ProtocolError, UpstreamError

logger = logging.getLogger(__name__)

DONE = "[DONE]"

DeltaSink = Callable[[str], None]


@dataclass(frozen=True)
class ToolCallRequest:
    """A fully reassembled tool call requested by the model."""

    id: str
    name: str
    arguments: str  # raw JSON text, parsed by the tool invoker
    index: int = 0

    def to_message(self) -> dict[str, Any]:
        """Render in the shape the API expects inside an assistant message."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class StreamResult:
    """Everything one streaming response produced."""

    text: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    usage: dict[str, Any] | None = None
    finish_reason: str = ""


def parse_frame(line: str) -> dict[str, Any] | str | None:
    """Parse one protocol line.

    Returns the decoded JSON frame, DONE for the terminator, or None for
    lines that carry no frame (blank lines, comments, `event:` lines).
    Raises ProtocolError when the payload is not a JSON object.
    """
    line = line.rstrip("\r")
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if not payload:
        return None
    if payload == DONE:
        return DONE
    try:
        frame = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON frame: {payload[:80]!r}") from e
    if not isinstance(frame, dict):
        raise ProtocolError(f"Frame is not an object: {payload[:80]!r}")
    return frame


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error.get("type") or "unknown error")
    return str(error)


class StreamDecoder:
    """Line-buffered decoder that accumulates text, tool calls and usage.

    Text deltas are pushed to the sink as soon as their frame is complete.
    Tool-call fragments are merged by index and only surfaced by result().
    """

    def __init__(self, on_delta: DeltaSink | None = None) -> None:
        self._on_delta = on_delta
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._text_parts: list[str] = []
        self._fragments: dict[int, dict[str, Any]] = {}
        self._usage: dict[str, Any] | None = None
        self._finish_reason = ""
        self.done = False

    def feed(self, chunk: bytes) -> None:
        """Consume one network chunk. Frames after [DONE] are ignored."""
        if self.done:
            return
        self._buffer += self._utf8.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self._process_line(line)
            if self.done:
                self._buffer = ""
                return

    def finish(self) -> StreamResult:
        """Flush the trailing partial line and return the accumulated result."""
        if not self.done:
            self._buffer += self._utf8.decode(b"", final=True)
            if self._buffer:
                tail, self._buffer = self._buffer, ""
                self._process_line(tail)
        return self.result()

    def result(self) -> StreamResult:
        return StreamResult(
            text="".join(self._text_parts),
            tool_calls=self._completed_tool_calls(),
            usage=self._usage,
            finish_reason=self._finish_reason,
        )

    # ------------------------------------------------------------------
    # Frame handling
    # ------------------------------------------------------------------

    def _process_line(self, line: str) -> None:
        try:
            frame = parse_frame(line)
        except ProtocolError as e:
            logger.debug("Skipping malformed frame: %s", e)
            return
        if frame is None:
            return
        if frame == DONE:
            self.done = True
            return
        self._apply(frame)

    def _apply(self, frame: dict[str, Any]) -> None:
        # HTTP 200 with an error body mid-stream
        if frame.get("error"):
            raise UpstreamError(_error_message(frame["error"]))

        usage = frame.get("usage")
        if isinstance(usage, dict):
            self._usage = usage

        choices = frame.get("choices")
        if not isinstance(choices, list) or not choices:
            return
        choice = choices[0]
        if not isinstance(choice, dict):
            return

        delta = choice.get("delta")
        if isinstance(delta, dict):
            content = delta.get("content")
            if isinstance(content, str) and content:
                self._text_parts.append(content)
                if self._on_delta is not None:
                    self._on_delta(content)
            tool_calls = delta.get("tool_calls")
            if isinstance(tool_calls, list):
                for fragment in tool_calls:
                    if isinstance(fragment, dict):
                        self._merge_fragment(fragment)

        if choice.get("finish_reason"):
            self._finish_reason = str(choice["finish_reason"])

    def _merge_fragment(self, fragment: dict[str, Any]) -> None:
        index = fragment.get("index", 0)
        if not isinstance(index, int):
            index = 0
        acc = self._fragments.setdefault(index, {"id": "", "name": "", "arguments": []})
        if fragment.get("id"):
            acc["id"] = str(fragment["id"])
        function = fragment.get("function")
        if isinstance(function, dict):
            if function.get("name") and not acc["name"]:
                acc["name"] = str(function["name"])
            arguments = function.get("arguments")
            if isinstance(arguments, str):
                acc["arguments"].append(arguments)

    def _completed_tool_calls(self) -> list[ToolCallRequest]:
        calls = []
        for index in sorted(self._fragments):
            acc = self._fragments[index]
            if not acc["name"]:
                logger.debug("Dropping tool call fragment %d without a name", index)
                continue
            calls.append(ToolCallRequest(
                id=acc["id"] or f"call_{index}",
                name=acc["name"],
                arguments="".join(acc["arguments"]),
                index=index,
            ))
        return calls


async def decode_stream(
    chunks: AsyncIterator[bytes],
    on_delta: DeltaSink | None = None,
    token: CancellationToken | None = None,
) -> StreamResult:
    """Drive a StreamDecoder over an async byte stream until [DONE] or EOF."""
    decoder = StreamDecoder(on_delta)
    async for chunk in chunks:
        if token is not None:
            token.raise_if_cancelled()
        decoder.feed(chunk)
        if decoder.done:
            break
    if token is not None:
        token.raise_if_cancelled()
    return decoder.finish()
