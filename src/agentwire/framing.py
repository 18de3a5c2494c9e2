"""
Newline-delimited JSON framing for agent output.

The agent writes one compact JSON object per line, but reads from a pipe
return arbitrary byte slices, so a frame may arrive in several pieces (or
several frames in one piece). ``FrameDecoder`` reassembles them:

- bytes are held until a newline completes a physical line
- complete lines accumulate in a pending buffer that is decoded with
  ``raw_decode``; every value found is emitted
- a decode error at the very end of the pending text means "not finished
  yet" (a frame pretty-printed across lines); an error anywhere earlier can
  never be repaired by more input and is reported as ``MalformedFrameError``

``FrameReader`` drives a decoder from an ``asyncio.StreamReader`` and yields
typed frames.
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import ValidationError

from .errors import FrameError, FrameTooLargeError, MalformedFrameError
from .meta import DEFAULT_MAX_FRAME_SIZE
from .schema import FRAME_MODELS, Frame, UnknownFrame

_WHITESPACE = re.compile(r"[ \t\n\r]*")
_SNIPPET = 200


def _snippet(text: str) -> str:
    return text if len(text) <= _SNIPPET else text[:_SNIPPET] + "..."


def _is_incomplete(err: json.JSONDecodeError, text: str) -> bool:
    if err.msg.startswith("Unterminated string"):
        return True
    return err.pos >= len(text.rstrip())


class FrameDecoder:
    def __init__(self, max_frame_size: int = DEFAULT_MAX_FRAME_SIZE) -> None:
        self._max_frame_size = max_frame_size
        self._decoder = json.JSONDecoder()
        self._buffer = bytearray()
        self._pending = b""

    @property
    def buffered(self) -> int:
        return len(self._buffer) + len(self._pending)

    def feed(self, data: bytes) -> List[Dict[str, Any]]:
        """
        Add ``data`` and return every frame it completes.

        On a framing error, the frames decoded before it are attached to the
        exception as ``frames`` so the caller can still deliver them.
        """
        self._buffer.extend(data)
        objects: List[Dict[str, Any]] = []
        try:
            while True:
                newline = self._buffer.find(b"\n")
                if newline < 0:
                    break
                line = bytes(self._buffer[: newline + 1])
                del self._buffer[: newline + 1]
                # the newline delimiter is not part of the frame
                self._check_size(len(self._pending) + len(line) - 1)
                self._pending += line
                self._drain(objects)
            self._check_size(self.buffered)
        except FrameError as err:
            err.frames = objects
            raise
        return objects

    def finish(self) -> List[Dict[str, Any]]:
        """Flush at end of stream; anything left unparsed is a truncated frame."""
        if self._buffer:
            self._pending += bytes(self._buffer)
            self._buffer.clear()
        objects: List[Dict[str, Any]] = []
        try:
            self._drain(objects)
            if self._pending.strip():
                leftover = self._pending.decode("utf-8", errors="replace")
                self._pending = b""
                raise MalformedFrameError("Truncated frame at end of stream", _snippet(leftover))
        except FrameError as err:
            err.frames = objects
            raise
        return objects

    def _check_size(self, size: int) -> None:
        if size > self._max_frame_size:
            self._buffer.clear()
            self._pending = b""
            raise FrameTooLargeError(f"Frame exceeds maximum size of {self._max_frame_size} bytes")

    def _drain(self, objects: List[Dict[str, Any]]) -> None:
        try:
            text = self._pending.decode("utf-8")
        except UnicodeDecodeError as err:
            raise MalformedFrameError(f"Frame is not valid UTF-8: {err}") from err

        index = 0
        while True:
            index = _WHITESPACE.match(text, index).end()
            if index >= len(text):
                self._pending = b""
                return
            try:
                value, index = self._decoder.raw_decode(text, index)
            except json.JSONDecodeError as err:
                remainder = text[index:]
                if _is_incomplete(err, text):
                    self._pending = remainder.encode("utf-8")
                    return
                self._pending = b""
                raise MalformedFrameError(f"Invalid JSON frame: {err.msg}", _snippet(remainder)) from err
            if not isinstance(value, dict):
                self._pending = b""
                raise MalformedFrameError("Frame is not a JSON object", _snippet(repr(value)))
            objects.append(value)


def parse_frame(obj: Dict[str, Any]) -> Frame:
    frame_type = obj.get("type")
    model = FRAME_MODELS.get(frame_type) if isinstance(frame_type, str) else None
    if model is None:
        return UnknownFrame(type=str(frame_type or ""), payload=obj)
    try:
        return model.model_validate(obj)
    except ValidationError as err:
        raise MalformedFrameError(f"Invalid {frame_type!r} frame: {err}", _snippet(json.dumps(obj))) from err


class FrameReader:
    """Single-pass async iterator of frames read from ``stream``."""

    def __init__(
        self,
        stream: asyncio.StreamReader,
        max_frame_size: int = DEFAULT_MAX_FRAME_SIZE,
        chunk_size: int = 64 * 1024,
    ) -> None:
        self._stream = stream
        self._decoder = FrameDecoder(max_frame_size)
        self._chunk_size = chunk_size
        self._iterator: Optional[AsyncIterator[Frame]] = None

    def __aiter__(self) -> AsyncIterator[Frame]:
        if self._iterator is not None:
            raise RuntimeError("FrameReader can only be iterated once")
        self._iterator = self._frames()
        return self._iterator

    async def _frames(self) -> AsyncIterator[Frame]:
        while True:
            chunk = await self._stream.read(self._chunk_size)
            try:
                objects = self._decoder.finish() if not chunk else self._decoder.feed(chunk)
            except FrameError as err:
                for obj in err.frames:
                    yield parse_frame(obj)
                raise
            for obj in objects:
                yield parse_frame(obj)
            if not chunk:
                return
