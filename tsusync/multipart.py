"""Incremental multipart/form-data reading for upload requests.

The upload endpoint has to look at one form part at a time: small control
fields are read into memory under a hard cap while the ``data`` part is
streamed straight to disk.  ``werkzeug.formparser`` buffers whole forms, so
this module drives Werkzeug's sans-IO ``MultipartDecoder`` directly and hands
out parts as file-like objects.
"""

from __future__ import annotations

from typing import BinaryIO, Optional, Tuple

from werkzeug.exceptions import ClientDisconnected
from werkzeug.sansio.multipart import (
    Data,
    Epilogue,
    Field,
    File,
    MultipartDecoder,
    NeedData,
    Preamble,
)

FORM_FIELD_MAX_LENGTH = 512
STREAM_CHUNK_SIZE = 64 * 1024


class MultipartError(ValueError):
    """Raised when the body cannot be split into form parts."""


class PartReadError(IOError):
    """Raised when a part fails before its closing boundary was seen."""


class FormPart:
    """A single form part, readable until its closing boundary."""

    def __init__(self, stream: "MultipartStream", name: str, filename: Optional[str] = None) -> None:
        self._stream = stream
        self.name = name
        self.filename = filename

    def read(self, size: int = -1) -> bytes:
        return self._stream._read_part(self, size)

    def __repr__(self) -> str:
        return f"<FormPart name={self.name!r}>"


class MultipartStream:
    """Pull form parts one by one out of a request body stream."""

    def __init__(self, stream: BinaryIO, boundary: str, chunk_size: int = STREAM_CHUNK_SIZE) -> None:
        if not boundary:
            raise MultipartError("missing multipart boundary")
        self._stream = stream
        self._chunk_size = chunk_size
        self._decoder = MultipartDecoder(boundary.encode("latin-1"))
        self._current: Optional[FormPart] = None
        self._buffer = bytearray()
        self._part_done = True
        self._finished = False

    def _receive(self) -> None:
        try:
            chunk = self._stream.read(self._chunk_size)
        except (OSError, ClientDisconnected) as error:
            raise PartReadError(f"request body read failed: {error}") from error
        self._decoder.receive_data(chunk or None)

    def _next_event(self):
        while True:
            event = self._decoder.next_event()
            if isinstance(event, NeedData):
                self._receive()
                continue
            return event

    def next_part(self) -> Optional[FormPart]:
        """Return the next part, or ``None`` once the closing boundary is consumed."""

        if self._finished:
            return None

        # Skip whatever the caller left unread in the previous part.
        try:
            while not self._part_done:
                self._fill()
        except PartReadError as error:
            raise MultipartError(str(error)) from error
        self._buffer.clear()
        self._current = None

        while True:
            try:
                event = self._next_event()
            except ValueError as error:
                raise MultipartError(str(error)) from error
            except PartReadError as error:
                raise MultipartError(str(error)) from error

            if isinstance(event, Preamble):
                continue
            if isinstance(event, Epilogue):
                self._finished = True
                return None
            if isinstance(event, (Field, File)):
                filename = event.filename if isinstance(event, File) else None
                self._current = FormPart(self, event.name or "", filename)
                self._part_done = False
                return self._current
            raise MultipartError(f"unexpected multipart event {type(event).__name__}")

    def _fill(self) -> None:
        try:
            event = self._next_event()
        except ValueError as error:
            raise PartReadError(str(error)) from error

        if not isinstance(event, Data):
            raise PartReadError(f"unexpected multipart event {type(event).__name__}")
        self._buffer.extend(event.data)
        if not event.more_data:
            self._part_done = True

    def _read_part(self, part: FormPart, size: int) -> bytes:
        if part is not self._current:
            return b""

        if size < 0:
            while not self._part_done:
                self._fill()
        else:
            while not self._buffer and not self._part_done:
                self._fill()

        if size < 0 or size > len(self._buffer):
            size = len(self._buffer)
        chunk = bytes(self._buffer[:size])
        del self._buffer[:size]
        return chunk


def read_form_string(length: int, part: FormPart) -> Tuple[str, bool]:
    """Read a string of at most ``length`` bytes from ``part``.

    Returns ``("", False)`` when the part is longer than ``length``, fails
    mid-read or is not valid UTF-8.  An empty part is a valid empty string.
    """

    # +1 tells an exact fit apart from an oversized value
    limit = length + 1
    buffer = bytearray()
    try:
        while len(buffer) < limit:
            chunk = part.read(limit - len(buffer))
            if not chunk:
                break
            buffer.extend(chunk)
    except PartReadError:
        return "", False

    if len(buffer) > length:
        return "", False

    try:
        return buffer.decode("utf-8"), True
    except UnicodeDecodeError:
        return "", False
