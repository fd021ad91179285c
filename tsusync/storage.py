import hashlib
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .multipart import FormPart, PartReadError


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


STORAGE_ROOT = _resolve_env_path("TSUSYNC_STORAGE_ROOT", Path.cwd())
DATA_DIR = _resolve_env_path("TSUSYNC_DATA_DIR", STORAGE_ROOT / "data")
TMP_DIR = _resolve_env_path("TSUSYNC_TMP_DIR", STORAGE_ROOT / "tmp")
LOGS_DIR = _resolve_env_path("TSUSYNC_LOGS_DIR", STORAGE_ROOT / "logs")
SNAPSHOT_PATH = _resolve_env_path("TSUSYNC_SNAPSHOT_PATH", STORAGE_ROOT / "db.json")

INGEST_CHUNK_SIZE = 4 * 1024
TEMP_FILE_PREFIX = "tsusync_tmp"
STALE_TEMP_FILE_SECONDS = 3600

logger = logging.getLogger("tsusync.storage")


class StorageError(RuntimeError):
    """Raised when staging or committing uploaded content fails."""


@dataclass(frozen=True)
class StoredContent:
    path: str
    size: int
    digest: str


def ensure_directories() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    TMP_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


def check_same_volume(storage_dir: Path = DATA_DIR, temp_dir: Path = TMP_DIR) -> bool:
    """Warn when staging files cannot be committed with a plain rename."""

    try:
        same = storage_dir.stat().st_dev == temp_dir.stat().st_dev
    except OSError as error:
        logger.warning("volume_check_failed error=%s", error)
        return False
    if not same:
        logger.warning(
            "volume_mismatch data_dir=%s tmp_dir=%s - uploads will fail to commit",
            storage_dir,
            temp_dir,
        )
    return same


class ContentStore:
    """Stage uploads in a temp file and commit them under their SHA-1 digest.

    A committed file stays *pinned* until the upload that produced it has
    reconciled with the index (``unpin``).  ``remove`` refuses pinned paths,
    and the commit rename and the removal share one lock, so an upload that
    lands on an existing digest can never lose its bytes to a concurrent
    replace of another entry.
    """

    def __init__(
        self,
        storage_dir: Path,
        temp_dir: Path,
        chunk_size: int = INGEST_CHUNK_SIZE,
    ) -> None:
        self.storage_dir = Path(storage_dir)
        self.temp_dir = Path(temp_dir)
        self.chunk_size = chunk_size
        self._commit_lock = threading.Lock()
        self._pins: Dict[str, int] = {}

    def path_for(self, digest: str) -> Path:
        return self.storage_dir / digest

    def is_pinned(self, path: str) -> bool:
        with self._commit_lock:
            return path in self._pins

    def unpin(self, path: str) -> None:
        with self._commit_lock:
            remaining = self._pins.get(path, 0) - 1
            if remaining > 0:
                self._pins[path] = remaining
            else:
                self._pins.pop(path, None)

    def remove(self, path: str) -> bool:
        """Delete a content file unless an in-flight upload still holds it."""

        with self._commit_lock:
            if path in self._pins:
                logger.info("content_remove_skipped path=%s reason=pinned", path)
                return False
            try:
                Path(path).unlink()
            except OSError as error:
                logger.error("content_remove_failed path=%s error=%s", path, error)
                return False
        logger.info("content_removed path=%s", path)
        return True

    def ingest(self, part: FormPart, keepalive: Optional[Callable[[], None]] = None) -> StoredContent:
        """Stream *part* to disk and commit it under its content address.

        The returned path is pinned; the caller must ``unpin`` it once the
        upload has finished, successfully or not.  ``PartReadError`` from the
        part propagates after the temp file is removed; no further parts
        should be read from the request.
        """

        try:
            fd, temp_name = tempfile.mkstemp(prefix=TEMP_FILE_PREFIX, dir=self.temp_dir)
        except OSError as error:
            logger.error("temp_file_create_failed dir=%s error=%s", self.temp_dir, error)
            raise StorageError("temp file create failed") from error

        temp_path = Path(temp_name)
        sha1 = hashlib.sha1()
        size = 0
        try:
            with os.fdopen(fd, "wb") as destination:
                while True:
                    chunk = part.read(self.chunk_size)
                    if not chunk:
                        break
                    try:
                        destination.write(chunk)
                    except OSError as error:
                        logger.error("temp_file_write_failed path=%s error=%s", temp_path, error)
                        raise StorageError("temp file write failed") from error
                    sha1.update(chunk)
                    size += len(chunk)
                    if keepalive is not None:
                        keepalive()
        except (PartReadError, StorageError):
            temp_path.unlink(missing_ok=True)
            raise

        digest = sha1.hexdigest()
        final_path = self.path_for(digest)
        with self._commit_lock:
            try:
                # Identical content may already sit at final_path; replacing it is harmless.
                temp_path.replace(final_path)
            except OSError as error:
                temp_path.unlink(missing_ok=True)
                logger.error(
                    "commit_rename_failed temp=%s target=%s error=%s",
                    temp_path,
                    final_path,
                    error,
                )
                raise StorageError("commit rename failed") from error
            self._pins[str(final_path)] = self._pins.get(str(final_path), 0) + 1

        logger.info("content_committed digest=%s size=%d", digest, size)
        return StoredContent(path=str(final_path), size=size, digest=digest)


def cleanup_temp_files(temp_dir: Path = TMP_DIR, max_age_seconds: float = STALE_TEMP_FILE_SECONDS) -> int:
    """Remove staging files left behind by interrupted processes."""

    if not temp_dir.is_dir():
        return 0

    removed = 0
    cutoff = time.time() - max_age_seconds
    for temp_file in temp_dir.glob(f"{TEMP_FILE_PREFIX}*"):
        try:
            if temp_file.is_file() and temp_file.stat().st_mtime < cutoff:
                temp_file.unlink()
                removed += 1
                logger.info("temp_file_removed path=%s", temp_file)
        except OSError as error:
            logger.warning(
                "temp_cleanup_failed path=%s error=%s",
                temp_file,
                error,
            )

    return removed


def save_snapshot(records: List[Dict[str, str]], path: Path = SNAPSHOT_PATH) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)

    # Write to temporary file first for atomic update
    temp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        with temp_path.open("w", encoding="utf-8") as snapshot_file:
            json.dump(records, snapshot_file, indent=2)
            snapshot_file.flush()
            os.fsync(snapshot_file.fileno())
        temp_path.replace(path)
    except Exception:
        # Clean up temp file if write failed
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                pass
        raise


def load_snapshot(path: Path = SNAPSHOT_PATH) -> List[Dict[str, str]]:
    if not path.exists():
        return []
    try:
        with path.open("r", encoding="utf-8") as snapshot_file:
            data = json.load(snapshot_file)
    except (OSError, json.JSONDecodeError) as error:
        logger.warning("snapshot_load_failed path=%s error=%s", path, error)
        return []
    if not isinstance(data, list):
        logger.warning("snapshot_load_failed path=%s error=not a list", path)
        return []
    return [record for record in data if isinstance(record, dict)]
