"""Incremental decoder for the Messages API server-sent-events stream.

The streaming endpoint answers with ``text/event-stream`` frames such as::

    event: content_block_delta
    data: {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}}

    data: [DONE]

Network reads do not respect frame boundaries, so text is buffered until a
full line is available. Only ``data:`` lines carry payloads; ``event:``,
``id:`` and comment lines are ignored. Frames whose payload is not valid JSON
are skipped and counted in ``skipped_frames`` so a misbehaving upstream shows
up in the logs instead of silently truncating replies.
"""

import json
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
CONTENT_DELTA_EVENT = "content_block_delta"


class SSEDecoder:
    """Turns arbitrary text chunks into parsed JSON events, in order."""

    def __init__(self):
        self._buffer = ""
        self.done = False
        self.skipped_frames = 0

    def feed(self, chunk: str) -> List[Dict[str, Any]]:
        """Consume a chunk of decoded text and return every complete event."""
        if self.done:
            return []
        self._buffer += chunk
        events: List[Dict[str, Any]] = []
        while "\n" in self._buffer and not self.done:
            line, self._buffer = self._buffer.split("\n", 1)
            event = self._decode_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> List[Dict[str, Any]]:
        """Decode whatever is left once the stream has ended."""
        if self.done or not self._buffer:
            return []
        line, self._buffer = self._buffer, ""
        event = self._decode_line(line)
        return [event] if event is not None else []

    def _decode_line(self, line: str) -> Optional[Dict[str, Any]]:
        line = line.strip()
        if not line.startswith("data:"):
            return None

        # Accept both "data:" and "data: "
        payload = line[5:].strip()
        if payload == DONE_SENTINEL:
            self.done = True
            return None

        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            self.skipped_frames += 1
            logger.debug("Skipping malformed SSE frame (%d so far): %s", self.skipped_frames, payload[:100])
            return None

        if not isinstance(event, dict):
            self.skipped_frames += 1
            logger.debug("Skipping non-object SSE frame: %s", payload[:100])
            return None
        return event


def extract_text_delta(event: Dict[str, Any]) -> Optional[str]:
    """Return the text carried by a content-delta event, else None."""
    if event.get("type") != CONTENT_DELTA_EVENT:
        return None
    delta = event.get("delta") or {}
    if not isinstance(delta, dict):
        return None
    text = delta.get("text")
    return text if isinstance(text, str) and text else None
