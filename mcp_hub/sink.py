"""
Streaming output.

A Sink is the only surface through which a plan's output leaves the
engine. The engine never talks to a Sink directly: it writes through a
ResponseStream, which keeps the ordering contract for one request.
"""

from __future__ import annotations

import logging
import sys
import threading
from abc import ABC, abstractmethod
from typing import Iterable, TextIO

logger = logging.getLogger(__name__)


class Sink(ABC):
    """Where one request's output goes."""

    @abstractmethod
    def write_header(self, text: str) -> None:
        ...

    @abstractmethod
    def write_chunk(self, text: str) -> None:
        ...

    @abstractmethod
    def end(self, total_length: int) -> None:
        ...


class BufferedSink(Sink):
    """Records every event in order."""

    def __init__(self):
        self.events: list[tuple[str, str | int]] = []

    def write_header(self, text: str) -> None:
        self.events.append(("header", text))

    def write_chunk(self, text: str) -> None:
        self.events.append(("chunk", text))

    def end(self, total_length: int) -> None:
        self.events.append(("end", total_length))

    @property
    def headers(self) -> list[str]:
        return [text for kind, text in self.events if kind == "header"]

    @property
    def chunks(self) -> list[str]:
        return [text for kind, text in self.events if kind == "chunk"]

    @property
    def text(self) -> str:
        return "".join(self.chunks)

    @property
    def end_calls(self) -> int:
        return sum(1 for kind, _ in self.events if kind == "end")

    @property
    def total_length(self) -> int | None:
        ends = [value for kind, value in self.events if kind == "end"]
        return ends[-1] if ends else None


class ConsoleSink(Sink):
    """Prints headers and chunks to a text stream as they arrive."""

    def __init__(self, stream: TextIO | None = None):
        self.stream = stream or sys.stdout

    def write_header(self, text: str) -> None:
        self.stream.write(f"\n## {text}\n\n")
        self.stream.flush()

    def write_chunk(self, text: str) -> None:
        self.stream.write(text)
        self.stream.flush()

    def end(self, total_length: int) -> None:
        self.stream.write("\n")
        self.stream.flush()


class ResponseStream:
    """
    Ordered, cancellable, end-once writer over a Sink.

    Once the cancel event is set nothing more reaches the sink, end()
    included. After end() further writes are dropped.
    """

    def __init__(self, sink: Sink, cancel_event: threading.Event | None = None):
        self.sink = sink
        self.cancel_event = cancel_event or threading.Event()
        self.total_length = 0
        self.last_header: str | None = None
        self._ended = False

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def ended(self) -> bool:
        return self._ended

    def _open(self) -> bool:
        if self._ended:
            logger.debug("Write after end dropped")
            return False
        return not self.cancelled

    def header(self, text: str) -> None:
        if self._open():
            self.total_length += len(text)
            self.last_header = text
            self.sink.write_header(text)

    def chunk(self, text: str) -> None:
        if text and self._open():
            self.total_length += len(text)
            self.sink.write_chunk(text)

    def relay(self, chunks: Iterable[str]) -> str:
        """Write chunks as they arrive; returns the joined text."""
        parts = []
        for text in chunks:
            if self.cancelled:
                break
            parts.append(text)
            self.chunk(text)
        return "".join(parts)

    def end(self) -> None:
        if self._ended or self.cancelled:
            return
        self._ended = True
        self.sink.end(self.total_length)
