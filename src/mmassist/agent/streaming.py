import asyncio
import codecs
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"
STREAM_EVENT = "universal.stream"
USAGE_COUNTERS = ("prompt_tokens", "completion_tokens", "total_tokens")


@dataclass
class StreamResult:
    text: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    usage: Optional[Dict[str, Any]] = None
    correlation_id: str = ""
    chunk_count: int = 0


def _merge_usage(current: Optional[Dict[str, Any]], frame: Dict[str, Any]) -> Dict[str, Any]:
    """Add a frame's token counters to the running totals."""
    merged = dict(current or {})
    for key in USAGE_COUNTERS:
        merged[key] = int(merged.get(key) or 0) + int(frame.get(key) or 0)
    return merged


class StreamRelay:
    """Reassembles a chat-completions SSE body and forwards text increments.

    Text deltas are batched into ``universal.stream`` events and published
    on ``channel_key`` without blocking the read loop; ``wait_pending`` lets
    callers drain outstanding publishes before shutdown.
    """

    def __init__(self, notifier: Any, channel_key: str, model: str, batch_size: int = 5) -> None:
        self._notifier = notifier
        self._channel_key = channel_key
        self._model = model
        self._batch_size = max(1, batch_size)
        self._pending: Set[asyncio.Task] = set()

    async def consume(self, chunks: AsyncIterator[bytes], correlation_id: str = "") -> StreamResult:
        result = StreamResult(correlation_id=correlation_id)
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        tool_calls: Dict[int, Dict[str, Any]] = {}
        batch: List[Dict[str, Any]] = []
        buffer = ""

        try:
            async for chunk in chunks:
                buffer += decoder.decode(chunk)
                *lines, buffer = buffer.split("\n")
                for line in lines:
                    self._handle_line(line, result, tool_calls, batch)
                    if len(batch) >= self._batch_size:
                        self._publish(batch[: self._batch_size])
                        del batch[: self._batch_size]
            buffer += decoder.decode(b"", final=True)
            if buffer:
                self._handle_line(buffer, result, tool_calls, batch)
        except (OSError, ConnectionError, asyncio.TimeoutError) as e:
            # Keep what arrived before the connection dropped.
            logger.error("Streaming error: %s", e)

        if batch:
            self._publish(batch)
        result.tool_calls = [tool_calls[i] for i in sorted(tool_calls)]
        logger.debug(
            "Stream finished: %d text chunks, %d tool calls",
            result.chunk_count,
            len(result.tool_calls),
        )
        return result

    def _handle_line(
        self,
        line: str,
        result: StreamResult,
        tool_calls: Dict[int, Dict[str, Any]],
        batch: List[Dict[str, Any]],
    ) -> None:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return
        payload = line[len(DATA_PREFIX):].strip()
        if payload == DONE_SENTINEL:
            return
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug("Skipping unparseable stream frame: %s", payload[:100])
            return
        if not isinstance(data, dict):
            return

        if data.get("usage"):
            result.usage = _merge_usage(result.usage, data["usage"])
        if not result.correlation_id and data.get("id"):
            result.correlation_id = str(data["id"])

        choices = data.get("choices") or []
        delta = choices[0].get("delta") if choices and isinstance(choices[0], dict) else None
        if not delta:
            return

        text = delta.get("content")
        if text:
            result.text += text
            result.chunk_count += 1
            batch.append(
                {
                    "type": STREAM_EVENT,
                    "chunk_count": result.chunk_count,
                    "timestamp": time.time(),
                    "message": {"response": text, "model": self._model},
                }
            )

        for fragment in delta.get("tool_calls") or []:
            index = fragment.get("index", 0)
            function = fragment.get("function") or {}
            call = tool_calls.get(index)
            if call is None:
                call = {
                    "id": fragment.get("id") or f"call_{index}_{int(time.time() * 1000)}",
                    "type": "function",
                    "function": {"name": "", "arguments": ""},
                }
                tool_calls[index] = call
            if function.get("name"):
                call["function"]["name"] = function["name"]
            if function.get("arguments"):
                call["function"]["arguments"] += function["arguments"]

    def _publish(self, events: List[Dict[str, Any]]) -> None:
        task = asyncio.create_task(self._notifier.publish_batch(list(events), self._channel_key))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def wait_pending(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
