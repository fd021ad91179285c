"""In-memory index of the logical files and folders a client has synced.

Every public method takes the index lock for its whole duration, so callers
never observe a half-applied change.  Lookups are plain linear scans in
insertion order; the first live match wins.
"""

from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .storage import ContentStore

logger = logging.getLogger("tsusync.index")


class EntryNotFoundError(LookupError):
    """Raised when no live entry has the requested id."""


class NameConflictError(ValueError):
    """Raised when a rename would duplicate a live (parent, name) pair."""


class ContentReadError(OSError):
    """Raised when an entry's content file cannot be read back."""


def new_entry_id() -> str:
    return secrets.token_hex(16)


@dataclass
class Entry:
    id: str
    parent_id: str
    name: str
    path: str = ""
    live: bool = True

    @property
    def is_folder(self) -> bool:
        return not self.path

    def tombstone(self) -> None:
        self.id = ""
        self.parent_id = ""
        self.name = ""
        self.path = ""
        self.live = False

    def to_dict(self) -> Dict[str, str]:
        return {
            "id": self.id,
            "parentId": self.parent_id,
            "name": self.name,
            "path": self.path,
        }

    @classmethod
    def from_dict(cls, record: Dict[str, object]) -> Optional["Entry"]:
        entry_id = record.get("id")
        if not isinstance(entry_id, str) or not entry_id:
            return None
        return cls(
            id=entry_id,
            parent_id=str(record.get("parentId") or ""),
            name=str(record.get("name") or ""),
            path=str(record.get("path") or ""),
        )


class FileIndex:
    def __init__(
        self,
        entries: Optional[Iterable[Entry]] = None,
        store: Optional[ContentStore] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._entries: List[Entry] = list(entries or [])
        self._store = store

    @classmethod
    def from_snapshot(
        cls,
        records: Iterable[Dict[str, object]],
        store: Optional[ContentStore] = None,
    ) -> "FileIndex":
        entries = []
        seen = set()
        for record in records:
            entry = Entry.from_dict(record)
            if entry is None or entry.id in seen:
                continue
            seen.add(entry.id)
            entries.append(entry)
        return cls(entries, store=store)

    # Lookup helpers; callers must hold the lock.

    def _find_by_id(self, entry_id: str) -> Optional[Entry]:
        for entry in self._entries:
            if entry.live and entry.id == entry_id:
                return entry
        return None

    def _find_by_name(self, parent_id: str, name: str) -> Optional[Entry]:
        for entry in self._entries:
            if entry.live and entry.parent_id == parent_id and entry.name == name:
                return entry
        return None

    def _path_in_use(self, path: str) -> bool:
        return any(entry.live and entry.path == path for entry in self._entries)

    def _release_content(self, old_path: str) -> None:
        """Best-effort removal of a content file nothing points at anymore."""

        if not old_path or self._path_in_use(old_path):
            return
        if self._store is not None:
            # The store re-checks under its commit lock for uploads not yet indexed.
            self._store.remove(old_path)
            return
        try:
            Path(old_path).unlink()
        except OSError as error:
            logger.error("content_remove_failed path=%s error=%s", old_path, error)

    def release_content(self, path: str) -> None:
        """Drop a content file that no live entry ended up referencing."""

        with self._lock:
            self._release_content(path)

    def ensure_folder(self, parent_id: str, name: str) -> str:
        with self._lock:
            existing = self._find_by_name(parent_id, name)
            if existing is not None:
                return existing.id

            entry = Entry(id=new_entry_id(), parent_id=parent_id, name=name)
            self._entries.append(entry)
            logger.info("folder_created id=%s parent=%s", entry.id, parent_id)
            return entry.id

    def list_children(self, parent_id: str) -> List[Entry]:
        with self._lock:
            children = [
                Entry(entry.id, entry.parent_id, entry.name, entry.path)
                for entry in self._entries
                if entry.live and entry.parent_id == parent_id
            ]
        children.sort(key=lambda entry: entry.name, reverse=True)
        return children

    def get(self, entry_id: str) -> Optional[Entry]:
        with self._lock:
            entry = self._find_by_id(entry_id)
            if entry is None:
                return None
            return Entry(entry.id, entry.parent_id, entry.name, entry.path)

    def read(self, entry_id: str) -> bytes:
        """Return the full content of a file entry."""

        with self._lock:
            entry = self._find_by_id(entry_id)
            if entry is None or entry.is_folder:
                raise EntryNotFoundError(entry_id)
            try:
                return Path(entry.path).read_bytes()
            except OSError as error:
                raise ContentReadError(f"cannot read content of {entry_id}: {error}") from error

    def delete(self, entry_id: str) -> bool:
        with self._lock:
            entry = self._find_by_id(entry_id)
            if entry is None:
                return False
            entry.tombstone()
            logger.info("entry_deleted id=%s", entry_id)
            return True

    def commit_file(self, parent_id: str, name: str, path: str) -> Entry:
        """Point ``(parent_id, name)`` at freshly committed content."""

        with self._lock:
            entry = self._find_by_name(parent_id, name)
            if entry is None:
                entry = Entry(id=new_entry_id(), parent_id=parent_id, name=name, path=path)
                self._entries.append(entry)
                logger.info("file_created id=%s parent=%s", entry.id, parent_id)
            else:
                old_path, entry.path = entry.path, path
                if old_path != path:
                    self._release_content(old_path)
                logger.info("file_replaced id=%s parent=%s", entry.id, parent_id)
            return Entry(entry.id, entry.parent_id, entry.name, entry.path)

    def rename(self, entry_id: str, name: Optional[str] = None, path: Optional[str] = None) -> Entry:
        """Apply a metadata patch, optionally swapping the content as well."""

        with self._lock:
            entry = self._find_by_id(entry_id)
            if entry is None:
                raise EntryNotFoundError(entry_id)

            if name is not None and name != entry.name:
                clash = self._find_by_name(entry.parent_id, name)
                if clash is not None:
                    raise NameConflictError(name)
                entry.name = name

            if path is not None and path != entry.path:
                old_path, entry.path = entry.path, path
                self._release_content(old_path)

            logger.info("entry_patched id=%s", entry.id)
            return Entry(entry.id, entry.parent_id, entry.name, entry.path)

    def snapshot(self) -> List[Dict[str, str]]:
        with self._lock:
            return [entry.to_dict() for entry in self._entries if entry.live]

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for entry in self._entries if entry.live)
