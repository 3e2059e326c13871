"""Server-Sent Events decoding for streamed chat completions."""

import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterable, AsyncIterator, Callable

from .errors import StreamDecodeError
from .messages import FunctionCall, Message, StreamChunk, ToolCall

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


def _parse_chunk(data: str) -> StreamChunk:
    try:
        return StreamChunk.from_dict(json.loads(data))
    except (json.JSONDecodeError, ValueError, TypeError, AttributeError) as e:
        raise StreamDecodeError(
            f"Failed to parse SSE data line: {e}. Data: '{data}'"
        ) from e


async def decode_sse_stream(source: AsyncIterable[bytes]) -> AsyncIterator[StreamChunk]:
    """Turn raw SSE bytes into StreamChunks.

    Fragments may split lines anywhere; the buffer is only drained one full
    line at a time. ``data: [DONE]`` ends the sequence. A partial line left
    when the source is exhausted is an error, not a silent truncation.
    """
    buffer = bytearray()
    fragments = aiter(source)

    while True:
        newline = buffer.find(b"\n")
        if newline != -1:
            raw = bytes(buffer[: newline + 1])
            del buffer[: newline + 1]
            line = raw.decode("utf-8", errors="replace").strip()

            if line.startswith(DATA_PREFIX):
                data = line[len(DATA_PREFIX) :].strip()
                if data == DONE_SENTINEL:
                    logger.debug("received SSE [DONE] sentinel")
                    return
                if data:
                    yield _parse_chunk(data)
            elif line:
                # Comments (": keep-alive"), event:, id:, retry: lines.
                logger.debug("ignoring SSE line: %s", line)
            continue

        try:
            fragment = await anext(fragments)
        except StopAsyncIteration:
            if buffer:
                tail = buffer.decode("utf-8", errors="replace")
                raise StreamDecodeError(
                    f"SSE stream ended unexpectedly with incomplete data: '{tail}'"
                ) from None
            return
        except StreamDecodeError:
            raise
        except Exception as e:
            raise StreamDecodeError(f"Error reading SSE stream: {e}") from e
        buffer.extend(fragment)


# --- Accumulation ---


@dataclass
class _PartialToolCall:
    id: str = ""
    name: str = ""
    arguments: list[str] = field(default_factory=list)


@dataclass
class StreamResult:
    message: Message
    finish_reason: str | None
    chunks: int


async def accumulate_stream(
    chunks: AsyncIterable[StreamChunk],
    on_content: Callable[[str], None] | None = None,
) -> StreamResult:
    """Assemble a complete assistant message from streamed deltas.

    Content fragments are concatenated (and handed to ``on_content`` as they
    arrive). Tool-call fragments are merged by their ``index``.
    """
    content_parts: list[str] = []
    partial: dict[int, _PartialToolCall] = {}
    finish_reason = None
    count = 0

    async for chunk in chunks:
        count += 1
        if not chunk.choices:
            continue
        choice = chunk.choices[0]
        delta = choice.delta
        if delta.content:
            content_parts.append(delta.content)
            if on_content is not None:
                on_content(delta.content)
        for frag in delta.tool_calls or []:
            slot = partial.setdefault(frag.index, _PartialToolCall())
            if frag.id:
                slot.id = frag.id
            if frag.name:
                slot.name += frag.name
            if frag.arguments:
                slot.arguments.append(frag.arguments)
        if choice.finish_reason:
            finish_reason = choice.finish_reason

    tool_calls = [
        ToolCall(
            id=p.id or f"call_{index}",
            function=FunctionCall(name=p.name, arguments="".join(p.arguments)),
        )
        for index, p in sorted(partial.items())
    ]
    content = "".join(content_parts) or None
    logger.debug(
        "stream finished: %d chunks, %d tool calls, finish_reason=%s",
        count,
        len(tool_calls),
        finish_reason,
    )
    return StreamResult(
        message=Message.assistant(content, tool_calls or None),
        finish_reason=finish_reason,
        chunks=count,
    )
