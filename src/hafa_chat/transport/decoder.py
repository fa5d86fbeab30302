"""Incremental decoder for the server-sent event stream of a chat turn.

The body is a sequence of records separated by blank lines. Each record
carries a ``data:`` payload holding one JSON event, and the stream ends with
a ``data: [DONE]`` record that carries no event. Network reads do not respect
record or UTF-8 character boundaries, so bytes are buffered until a record
is complete.
"""

import codecs
import json
from typing import AsyncIterable, AsyncIterator, List, Optional

import structlog
from pydantic import ValidationError

from ..domain.errors import DecodeError
from ..domain.models import STREAM_EVENT_ADAPTER, TERMINAL_EVENTS, ChunkEvent, StreamEvent

logger = structlog.get_logger()

RECORD_SEPARATOR = "\n\n"
DATA_PREFIX = "data:"
TERMINATOR = "[DONE]"


class StreamEventDecoder:
    """Turns raw body bytes into stream events, in arrival order.

    One instance per response. After a terminal event (done, cancelled or
    error) the decoder accepts no further input.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="strict")
        self._buffer = ""
        self._content: List[str] = []
        self.terminal: Optional[StreamEvent] = None
        self.saw_terminator = False

    @property
    def content(self) -> str:
        """Concatenation of all chunk deltas decoded so far."""
        return "".join(self._content)

    @property
    def finished(self) -> bool:
        return self.terminal is not None

    def feed(self, data: bytes) -> List[StreamEvent]:
        """Consume one network read and return the events it completed."""
        if self.finished:
            return []
        self._append(self._decode(data, final=False))

        records = self._buffer.split(RECORD_SEPARATOR)
        self._buffer = records.pop()
        return self._parse_records(records)

    def finish(self) -> List[StreamEvent]:
        """Flush at end of stream.

        An incomplete trailing record is dropped without error, including one
        cut off inside a multibyte character.
        """
        if self.finished:
            return []
        try:
            self._append(self._utf8.decode(b"", True))
        except UnicodeDecodeError:
            # Invalid bytes already raised in feed(); only a truncated tail is left.
            self._utf8.reset()
            logger.debug("stream_trailing_record_dropped", size=len(self._buffer), reason="truncated_character")
            self._buffer = ""
            return []
        records = self._buffer.split(RECORD_SEPARATOR)
        self._buffer = records.pop()
        events = self._parse_records(records)
        if self._buffer.strip():
            logger.debug("stream_trailing_record_dropped", size=len(self._buffer))
        self._buffer = ""
        return events

    async def events(self, stream: AsyncIterable[bytes]) -> AsyncIterator[StreamEvent]:
        """Yield events from a byte stream, stopping at the first terminal event."""
        async for data in stream:
            for event in self.feed(data):
                yield event
            if self.finished:
                return
        for event in self.finish():
            yield event

    def _decode(self, data: bytes, final: bool) -> str:
        try:
            return self._utf8.decode(data, final)
        except UnicodeDecodeError as e:
            raise DecodeError(f"Response body is not valid UTF-8: {e}") from e

    def _append(self, text: str) -> None:
        # A CR may be the last character of a read with its LF in the next one.
        self._buffer = (self._buffer + text).replace("\r\n", "\n")

    def _parse_records(self, records: List[str]) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        for record in records:
            event = self._parse_record(record)
            if event is None:
                continue
            events.append(event)
            if isinstance(event, ChunkEvent):
                self._content.append(event.content)
            elif isinstance(event, TERMINAL_EVENTS):
                self.terminal = event
                break
        return events

    def _parse_record(self, record: str) -> Optional[StreamEvent]:
        lines = [line[len(DATA_PREFIX):] for line in record.split("\n") if line.startswith(DATA_PREFIX)]
        if not lines:
            return None
        payload = "\n".join(line[1:] if line.startswith(" ") else line for line in lines).strip()

        if payload == TERMINATOR:
            self.saw_terminator = True
            return None

        try:
            return STREAM_EVENT_ADAPTER.validate_python(json.loads(payload))
        except (ValueError, ValidationError) as e:
            logger.debug("stream_record_skipped", payload=payload[:200], error=str(e))
            return None
