"""Progress channels between an extraction worker and the supervisor.

Two sinks implement the same interface:

- :class:`QueueProgressSink` puts typed events on an ``asyncio.Queue``; used
  when the worker runs as a task inside the supervisor's event loop.
- :class:`LineProgressSink` writes tagged lines to a text stream (stdout of a
  subprocess worker)::

      [NEW_RECORD] 12/500 Acme Shoes
      [DUPLICATE] Acme Shoes
      [MISSION_RESULT_JSON] {"found": 14, "saved": 12, ...}

:class:`LineProtocolDecoder` turns arbitrarily chunked stream output back into
typed events.  Only complete lines are interpreted; a trailing partial line is
buffered until the next chunk or :meth:`~LineProtocolDecoder.close`.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import re
import sys
from typing import Optional, Protocol, TextIO, Union

from pydantic import ValidationError

from ad_observatory.core.schemas import ExtractionSummary, ProgressEvent, ProgressKind

logger = logging.getLogger(__name__)

NEW_RECORD_TAG: str = "[NEW_RECORD]"
DUPLICATE_TAG: str = "[DUPLICATE]"
SUMMARY_TAG: str = "[MISSION_RESULT_JSON]"

_NEW_RECORD_RE = re.compile(r"\[NEW_RECORD\]\s+(\d+)/(\d+)\s?(.*)$")
_DUPLICATE_RE = re.compile(r"\[DUPLICATE\]\s?(.*)$")
_SUMMARY_RE = re.compile(r"\[MISSION_RESULT_JSON\]\s+(.+)$")

Decoded = Union[ProgressEvent, ExtractionSummary]

#: Queue item marking the end of an in-process worker's stream.
END_OF_STREAM = None


class ProgressSink(Protocol):
    """Where the engine reports per-record progress and its final summary."""

    def emit(self, event: ProgressEvent) -> None: ...
    def finish(self, summary: ExtractionSummary) -> None: ...


def _single_line(text: str) -> str:
    return " ".join(text.split())


def encode_event(event: ProgressEvent) -> str:
    if event.kind is ProgressKind.RECORD_SAVED:
        return f"{NEW_RECORD_TAG} {event.saved}/{event.max_records} {_single_line(event.advertiser)}"
    return f"{DUPLICATE_TAG} {_single_line(event.advertiser)}"


def encode_summary(summary: ExtractionSummary) -> str:
    return f"{SUMMARY_TAG} {summary.model_dump_json()}"


class LineProgressSink:
    """Writes tagged progress lines to *stream* (``sys.stdout`` by default)."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self._stream = stream if stream is not None else sys.stdout

    def _write(self, line: str) -> None:
        self._stream.write(line + "\n")
        self._stream.flush()

    def emit(self, event: ProgressEvent) -> None:
        self._write(encode_event(event))

    def finish(self, summary: ExtractionSummary) -> None:
        self._write(encode_summary(summary))


class QueueProgressSink:
    """Puts typed events on an unbounded asyncio queue."""

    def __init__(self, queue: "asyncio.Queue[Optional[Decoded]]") -> None:
        self._queue = queue

    def emit(self, event: ProgressEvent) -> None:
        self._queue.put_nowait(event)

    def finish(self, summary: ExtractionSummary) -> None:
        self._queue.put_nowait(summary)


def decode_line(line: str) -> Optional[Decoded]:
    """Interpret one complete line; return ``None`` for untagged or malformed lines."""
    match = _NEW_RECORD_RE.search(line)
    if match:
        return ProgressEvent(
            kind=ProgressKind.RECORD_SAVED,
            saved=int(match.group(1)),
            max_records=int(match.group(2)),
            advertiser=match.group(3).strip(),
        )
    match = _DUPLICATE_RE.search(line)
    if match:
        return ProgressEvent(kind=ProgressKind.DUPLICATE_SKIPPED, advertiser=match.group(1).strip())
    match = _SUMMARY_RE.search(line)
    if match:
        try:
            return ExtractionSummary.model_validate(json.loads(match.group(1)))
        except (ValueError, ValidationError) as exc:
            logger.debug("progress: ignoring malformed summary: %s", exc)
    return None


class LineProtocolDecoder:
    """Incremental decoder for the tagged line protocol.

    Accepts ``bytes`` (decoded as UTF-8, multi-byte sequences may straddle
    chunks) or ``str`` chunks.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: Union[bytes, str]) -> list[Decoded]:
        text = self._utf8.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        return self._decode_all(lines)

    def close(self) -> list[Decoded]:
        """Flush the decoder at end of stream; the trailing partial line counts as complete."""
        self._buffer += self._utf8.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        return self._decode_all([rest]) if rest.strip() else []

    @staticmethod
    def _decode_all(lines: list[str]) -> list[Decoded]:
        out: list[Decoded] = []
        for line in lines:
            item = decode_line(line.rstrip("\r"))
            if item is not None:
                out.append(item)
        return out
