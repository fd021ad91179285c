from __future__ import annotations

import enum
import socket
import time
from typing import Any, Callable, Dict, Optional

from .index import Entry, EntryNotFoundError, FileIndex, NameConflictError
from .logs import get_logger, sanitize_log_value
from .multipart import (
    FORM_FIELD_MAX_LENGTH,
    MultipartError,
    MultipartStream,
    PartReadError,
    read_form_string,
)
from .storage import ContentStore, StorageError, StoredContent

UPLOAD_IDLE_TIMEOUT_SECONDS = 60

lifecycle_logger = get_logger("tsusync.lifecycle")


class UploadError(Exception):
    """A rejected upload with the status code the client should see."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message}


class UploadAborted(Exception):
    """The request body broke mid-part; the connection is dropped unanswered."""


class UploadState(enum.Enum):
    AWAITING_PART = "awaiting_part"
    PARSING_ID = "parsing_id"
    PARSING_PARENT = "parsing_parent"
    PARSING_NAME = "parsing_name"
    INGESTING_DATA = "ingesting_data"
    RECONCILING = "reconciling"
    DONE = "done"
    FAILED = "failed"


_SCALAR_FIELDS = {
    "id": (UploadState.PARSING_ID, "invalid file ID"),
    "parent": (UploadState.PARSING_PARENT, "invalid parent ID"),
    "name": (UploadState.PARSING_NAME, "invalid filename"),
}


class ConnectionControl:
    """Idle timeout and hard abort for the socket behind a WSGI request."""

    SOCKET_KEYS = ("werkzeug.socket", "gunicorn.socket")

    def __init__(self, environ: Dict[str, Any], idle_timeout: float = UPLOAD_IDLE_TIMEOUT_SECONDS) -> None:
        self.idle_timeout = idle_timeout
        self.deadline: Optional[float] = None
        self._socket = None
        for key in self.SOCKET_KEYS:
            candidate = environ.get(key)
            if candidate is not None:
                self._socket = candidate
                break

    def keepalive(self) -> None:
        """Push the idle deadline forward after progress on the transfer."""

        self.deadline = time.monotonic() + self.idle_timeout
        if self._socket is None:
            return
        try:
            # Socket timeouts apply per send/recv, i.e. to both directions.
            self._socket.settimeout(self.idle_timeout)
        except OSError:
            self._socket = None

    def abort(self) -> bool:
        if self._socket is None:
            return False
        try:
            self._socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            return False
        return True


class UploadSession:
    """Drive one multipart upload from the first part to the index update."""

    def __init__(
        self,
        index: FileIndex,
        store: ContentStore,
        method: str,
        keepalive: Optional[Callable[[], None]] = None,
    ) -> None:
        self.index = index
        self.store = store
        self.is_patch = method.upper() == "PATCH"
        self.keepalive = keepalive
        self.state = UploadState.AWAITING_PART
        self.fields: Dict[str, str] = {}
        self.content: Optional[StoredContent] = None

    def _fail(self, status_code: int, message: str) -> UploadError:
        lifecycle_logger.warning(
            "upload_failed state=%s status=%d reason=%s",
            self.state.value,
            status_code,
            message,
        )
        self.state = UploadState.FAILED
        return UploadError(status_code, message)

    def run(self, parts: MultipartStream) -> Entry:
        reconciled = False
        try:
            entry = self._run(parts)
            reconciled = True
            return entry
        finally:
            self._settle_content(reconciled)

    def _settle_content(self, reconciled: bool) -> None:
        """Unpin committed content; drop it when the upload did not reconcile."""

        if self.content is None:
            return
        self.store.unpin(self.content.path)
        if not reconciled:
            lifecycle_logger.info(
                "upload_content_released digest=%s", self.content.digest
            )
            self.index.release_content(self.content.path)

    def _run(self, parts: MultipartStream) -> Entry:
        started = time.monotonic()
        while True:
            self.state = UploadState.AWAITING_PART
            try:
                part = parts.next_part()
            except MultipartError as error:
                lifecycle_logger.info("upload_part_error error=%s", sanitize_log_value(str(error)))
                raise self._fail(400, "error getting a part") from error
            if part is None:
                break

            if part.name in _SCALAR_FIELDS:
                self.state, message = _SCALAR_FIELDS[part.name]
                value, ok = read_form_string(FORM_FIELD_MAX_LENGTH, part)
                if not ok or value == "":
                    raise self._fail(403, message)
                self.fields[part.name] = value
            elif part.name == "data" and self.content is None:
                self.state = UploadState.INGESTING_DATA
                try:
                    self.content = self.store.ingest(part, keepalive=self.keepalive)
                except PartReadError as error:
                    self.state = UploadState.FAILED
                    lifecycle_logger.info(
                        "upload_aborted error=%s", sanitize_log_value(str(error))
                    )
                    raise UploadAborted(str(error)) from error
                except StorageError as error:
                    raise self._fail(500, str(error)) from error
            else:
                raise self._fail(400, "got unexpected form part")

        if self.content is None and not self.is_patch:
            raise self._fail(400, "unexpected EOF")

        if self.content is not None:
            lifecycle_logger.info(
                "upload_success size=%d took=%.3fs",
                self.content.size,
                time.monotonic() - started,
            )

        self.state = UploadState.RECONCILING
        entry = self._reconcile()
        self.state = UploadState.DONE
        return entry

    def _reconcile(self) -> Entry:
        path = self.content.path if self.content is not None else None

        if self.is_patch:
            try:
                return self.index.rename(
                    self.fields.get("id", ""),
                    name=self.fields.get("name"),
                    path=path,
                )
            except EntryNotFoundError as error:
                raise self._fail(400, "cannot patch a file that does not exist") from error
            except NameConflictError as error:
                raise self._fail(409, "a file with that name already exists") from error

        name = self.fields.get("name")
        if name is None:
            raise self._fail(400, "missing filename")
        return self.index.commit_file(self.fields.get("parent", ""), name, path)
