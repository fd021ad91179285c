import re
import sys
import tempfile
import threading
import unittest
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from tsusync.index import (  # noqa: E402
    ContentReadError,
    Entry,
    EntryNotFoundError,
    FileIndex,
    NameConflictError,
)
from tsusync.storage import ContentStore  # noqa: E402

from test_multipart import FakePart  # noqa: E402


class FileIndexTests(unittest.TestCase):
    def setUp(self):
        self.content_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.content_dir.name)
        self.index = FileIndex()

    def tearDown(self):
        self.content_dir.cleanup()

    def _content(self, name, payload=b"payload"):
        path = self.root / name
        path.write_bytes(payload)
        return str(path)

    def test_ensure_folder_is_idempotent(self):
        first = self.index.ensure_folder("", "Books")
        second = self.index.ensure_folder("", "Books")

        self.assertEqual(first, second)
        self.assertEqual(len(self.index), 1)
        self.assertRegex(first, re.compile(r"^[0-9a-f]{32}$"))

    def test_same_name_under_different_parents_is_distinct(self):
        first = self.index.ensure_folder("p1", "stats")
        second = self.index.ensure_folder("p2", "stats")
        self.assertNotEqual(first, second)

    def test_concurrent_ensure_creates_one_entry(self):
        results = []

        def worker():
            results.append(self.index.ensure_folder("", "shared"))

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(set(results)), 1)
        self.assertEqual(len(self.index), 1)

    def test_children_are_listed_in_descending_name_order(self):
        parent = self.index.ensure_folder("", "Books")
        for name in ("b", "a", "c"):
            self.index.ensure_folder(parent, name)
        self.index.ensure_folder("", "elsewhere")

        names = [entry.name for entry in self.index.list_children(parent)]
        self.assertEqual(names, ["c", "b", "a"])

    def test_listing_unknown_parent_is_empty_list(self):
        self.assertEqual(self.index.list_children("nothing-here"), [])

    def test_read_returns_file_content(self):
        entry = self.index.commit_file("p", "book.epub", self._content("abc", b"epub bytes"))
        self.assertEqual(self.index.read(entry.id), b"epub bytes")

    def test_read_unknown_id_or_folder_is_not_found(self):
        folder_id = self.index.ensure_folder("", "Books")
        with self.assertRaises(EntryNotFoundError):
            self.index.read("missing")
        with self.assertRaises(EntryNotFoundError):
            self.index.read(folder_id)

    def test_read_failure_is_content_read_error(self):
        entry = self.index.commit_file("p", "gone.txt", str(self.root / "never-written"))
        with self.assertRaises(ContentReadError):
            self.index.read(entry.id)

    def test_commit_creates_then_replaces_in_place(self):
        old_path = self._content("old", b"v1")
        new_path = self._content("new", b"v2")

        created = self.index.commit_file("p", "notes.txt", old_path)
        replaced = self.index.commit_file("p", "notes.txt", new_path)

        self.assertEqual(created.id, replaced.id)
        self.assertEqual(replaced.path, new_path)
        self.assertEqual(len(self.index), 1)
        self.assertFalse(Path(old_path).exists())

    def test_replace_keeps_content_still_referenced_elsewhere(self):
        shared = self._content("shared", b"same")
        other = self._content("other", b"different")

        self.index.commit_file("p", "one.txt", shared)
        self.index.commit_file("p", "two.txt", shared)
        self.index.commit_file("p", "one.txt", other)

        self.assertTrue(Path(shared).exists())

    def test_reupload_of_identical_content_keeps_file(self):
        path = self._content("same", b"same")
        self.index.commit_file("p", "one.txt", path)
        self.index.commit_file("p", "one.txt", path)
        self.assertTrue(Path(path).exists())

    def test_replace_survives_failed_removal(self):
        entry = self.index.commit_file("p", "a.txt", str(self.root / "already-gone"))
        replaced = self.index.commit_file("p", "a.txt", self._content("fresh"))
        self.assertEqual(entry.id, replaced.id)

    def test_delete_is_soft_and_idempotent(self):
        entry = self.index.commit_file("p", "a.txt", self._content("a"))

        self.assertTrue(self.index.delete(entry.id))
        self.assertFalse(self.index.delete(entry.id))

        self.assertIsNone(self.index.get(entry.id))
        self.assertEqual(self.index.list_children("p"), [])
        with self.assertRaises(EntryNotFoundError):
            self.index.read(entry.id)
        with self.assertRaises(EntryNotFoundError):
            self.index.rename(entry.id, "b.txt")
        self.assertTrue(Path(entry.path).exists())

    def test_deleted_name_can_be_reused(self):
        first = self.index.ensure_folder("", "Books")
        self.index.delete(first)
        second = self.index.ensure_folder("", "Books")
        self.assertNotEqual(first, second)

    def test_empty_id_never_matches_tombstones(self):
        entry_id = self.index.ensure_folder("", "Books")
        self.index.delete(entry_id)
        self.assertFalse(self.index.delete(""))
        with self.assertRaises(EntryNotFoundError):
            self.index.rename("", "x")

    def test_rename_changes_only_the_name(self):
        path = self._content("a")
        entry = self.index.commit_file("p", "a.txt", path)

        renamed = self.index.rename(entry.id, "b.txt")

        self.assertEqual(renamed.id, entry.id)
        self.assertEqual(renamed.name, "b.txt")
        self.assertEqual(renamed.path, path)
        self.assertEqual(renamed.parent_id, "p")

    def test_rename_without_name_keeps_name(self):
        entry = self.index.commit_file("p", "a.txt", self._content("a"))
        self.assertEqual(self.index.rename(entry.id).name, "a.txt")

    def test_rename_with_content_swaps_path(self):
        old_path = self._content("old")
        new_path = self._content("new", b"v2")
        entry = self.index.commit_file("p", "a.txt", old_path)

        patched = self.index.rename(entry.id, "a.txt", path=new_path)

        self.assertEqual(patched.path, new_path)
        self.assertFalse(Path(old_path).exists())

    def test_rename_onto_taken_name_is_refused(self):
        self.index.commit_file("p", "a.txt", self._content("a"))
        other = self.index.commit_file("p", "b.txt", self._content("b"))

        with self.assertRaises(NameConflictError):
            self.index.rename(other.id, "a.txt")

    def test_returned_entries_are_copies(self):
        entry = self.index.commit_file("p", "a.txt", self._content("a"))
        entry.name = "mutated"
        self.assertEqual(self.index.get(entry.id).name, "a.txt")

    def test_snapshot_round_trip_skips_tombstones(self):
        keep = self.index.ensure_folder("", "keep")
        drop = self.index.ensure_folder("", "drop")
        self.index.delete(drop)

        records = self.index.snapshot()
        self.assertEqual(
            records,
            [{"id": keep, "parentId": "", "name": "keep", "path": ""}],
        )

        restored = FileIndex.from_snapshot(records + [{"id": ""}, {"name": "no id"}])
        self.assertEqual(len(restored), 1)
        self.assertEqual(restored.ensure_folder("", "keep"), keep)


class StoreBackedIndexTests(unittest.TestCase):
    def setUp(self):
        self.root_dir = tempfile.TemporaryDirectory()
        root = Path(self.root_dir.name)
        (root / "data").mkdir()
        (root / "tmp").mkdir()
        self.store = ContentStore(root / "data", root / "tmp")
        self.index = FileIndex(store=self.store)

    def tearDown(self):
        self.root_dir.cleanup()

    def _upload(self, parent, name, payload):
        stored = self.store.ingest(FakePart([payload]))
        try:
            return self.index.commit_file(parent, name, stored.path)
        finally:
            self.store.unpin(stored.path)

    def test_replace_keeps_content_of_unreconciled_upload(self):
        first = self._upload("", "x", b"c1")

        # A second upload of the same bytes has committed but not reconciled yet.
        pending = self.store.ingest(FakePart([b"c1"]))
        self.assertEqual(pending.path, first.path)

        self._upload("", "x", b"c2")
        self.assertTrue(Path(pending.path).exists())

        second = self.index.commit_file("", "y", pending.path)
        self.store.unpin(pending.path)
        self.assertEqual(self.index.read(second.id), b"c1")

    def test_replace_removes_content_once_unpinned(self):
        first = self._upload("", "x", b"c1")
        self.assertFalse(self.store.is_pinned(first.path))

        self._upload("", "x", b"c2")
        self.assertFalse(Path(first.path).exists())

    def test_release_content_skips_referenced_files(self):
        entry = self._upload("", "x", b"kept")
        self.index.release_content(entry.path)
        self.assertTrue(Path(entry.path).exists())

    def test_release_content_drops_orphans(self):
        orphan = self.store.ingest(FakePart([b"orphan"]))
        self.store.unpin(orphan.path)
        self.index.release_content(orphan.path)
        self.assertFalse(Path(orphan.path).exists())


class EntryTests(unittest.TestCase):
    def test_folder_has_no_path(self):
        self.assertTrue(Entry("a", "", "Books").is_folder)
        self.assertFalse(Entry("b", "a", "x.epub", "/data/abc").is_folder)

    def test_tombstone_clears_fields(self):
        entry = Entry("a", "p", "name", "/data/abc")
        entry.tombstone()
        self.assertFalse(entry.live)
        self.assertEqual(entry.to_dict(), {"id": "", "parentId": "", "name": "", "path": ""})


if __name__ == "__main__":
    unittest.main()
