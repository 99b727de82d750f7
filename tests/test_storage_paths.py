import os
import tempfile
import unittest
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest import mock

from filedrop import storage


class ContainmentTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(os.path.realpath(self.tmp.name)) / "up"
        self.root.mkdir()

    def tearDown(self):
        self.tmp.cleanup()

    def test_root_contains_itself(self):
        self.assertTrue(storage.is_contained(self.root, self.root))

    def test_child_is_contained(self):
        self.assertTrue(storage.is_contained(str(self.root) + "/x", self.root))
        self.assertTrue(storage.is_contained(self.root / "a" / "b" / "c.txt", self.root))

    def test_sibling_with_shared_prefix_is_rejected(self):
        self.assertFalse(storage.is_contained(str(self.root) + "2", self.root))
        self.assertFalse(storage.is_contained(str(self.root) + "load2/file", self.root))

    def test_dotdot_escape_is_rejected(self):
        self.assertFalse(storage.is_contained(self.root / ".." / "other", self.root))
        self.assertTrue(storage.is_contained(self.root / "a" / ".." / "b", self.root))

    def test_symlink_out_of_root_is_rejected(self):
        outside = self.root.parent / "outside"
        outside.mkdir()
        (self.root / "escape").symlink_to(outside, target_is_directory=True)
        self.assertFalse(storage.is_contained(self.root / "escape" / "secret.txt", self.root))

    def test_symlink_within_root_is_allowed(self):
        (self.root / "real").mkdir()
        (self.root / "alias").symlink_to(self.root / "real", target_is_directory=True)
        self.assertTrue(storage.is_contained(self.root / "alias" / "f.txt", self.root))

    def test_resolve_upload_path_joins_relative_input(self):
        resolved = storage.resolve_upload_path(self.root, "docs/readme.md")
        self.assertEqual(resolved, self.root / "docs" / "readme.md")
        self.assertEqual(storage.resolve_upload_path(self.root, ""), self.root)

    def test_resolve_upload_path_rejects_traversal(self):
        for raw in ["../../etc/passwd", "/etc/passwd", "a/../../b", "x\x00y"]:
            with self.subTest(raw=raw):
                with self.assertRaises(storage.PathTraversalError):
                    storage.resolve_upload_path(self.root, raw)

    def test_resolve_upload_path_rejects_metadata_directory(self):
        (self.root / storage.METADATA_DIR_NAME).mkdir()
        for raw in [".metadata", ".metadata/.secret_key", "a/../.metadata/logs"]:
            with self.subTest(raw=raw):
                with self.assertRaises(storage.PathTraversalError):
                    storage.resolve_upload_path(self.root, raw)

    def test_rejection_is_logged_with_raw_input(self):
        with self.assertLogs("filedrop.security", level="WARNING") as captured:
            with self.assertRaises(storage.PathTraversalError):
                storage.resolve_upload_path(self.root, "../secret\n.txt")
        self.assertIn("../secret\\n.txt", captured.output[0])

    def test_traversal_never_queries_the_outside_path(self):
        escaped = os.path.normpath(os.path.join(self.root, "../../etc/passwd"))
        with mock.patch("os.stat", wraps=os.stat) as stat_spy, mock.patch(
            "os.lstat", wraps=os.lstat
        ) as lstat_spy:
            with self.assertRaises(storage.PathTraversalError):
                storage.get_entry_info(self.root, "../../etc/passwd")
        queried = [
            os.fspath(call.args[0])
            for call in stat_spy.call_args_list + lstat_spy.call_args_list
            if call.args and not isinstance(call.args[0], int)
        ]
        self.assertNotIn(escaped, queried)


class AllocateFileTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_free_name_is_used_as_is(self):
        path, handle = storage.allocate_file(self.root / "report.pdf")
        with handle:
            handle.write(b"data")
        self.assertEqual(path, self.root / "report.pdf")
        self.assertEqual(path.read_bytes(), b"data")

    def test_counter_suffix_inserted_before_extension(self):
        (self.root / "report.pdf").write_bytes(b"first")
        (self.root / "report (1).pdf").write_bytes(b"second")
        path, handle = storage.allocate_file(self.root / "report.pdf")
        handle.close()
        self.assertEqual(path.name, "report (2).pdf")
        self.assertEqual((self.root / "report.pdf").read_bytes(), b"first")

    def test_name_without_extension(self):
        (self.root / "Makefile").write_bytes(b"")
        path, handle = storage.allocate_file(self.root / "Makefile")
        handle.close()
        self.assertEqual(path.name, "Makefile (1)")

    def test_existing_directory_counts_as_taken(self):
        (self.root / "notes.txt").mkdir()
        path, handle = storage.allocate_file(self.root / "notes.txt")
        handle.close()
        self.assertEqual(path.name, "notes (1).txt")

    def test_fatal_errors_are_propagated(self):
        with self.assertRaises(FileNotFoundError):
            storage.allocate_file(self.root / "missing" / "file.txt")

    def test_attempt_cap_raises(self):
        for name in ["a.txt", "a (1).txt", "a (2).txt"]:
            (self.root / name).write_bytes(b"")
        with self.assertRaises(storage.AllocationExhaustedError) as context:
            storage.allocate_file(self.root / "a.txt", max_attempts=3)
        self.assertEqual(context.exception.attempts, 3)

    def test_concurrent_allocations_are_distinct(self):
        workers = 32

        def upload(index):
            path, handle = storage.allocate_file(self.root / "photo.jpg")
            with handle:
                handle.write(f"payload-{index}".encode("ascii"))
            return index, path

        with ThreadPoolExecutor(max_workers=16) as executor:
            results = list(executor.map(upload, range(workers)))

        paths = [path for _, path in results]
        self.assertEqual(len(set(paths)), workers)
        for index, path in results:
            self.assertEqual(path.read_bytes(), f"payload-{index}".encode("ascii"))
        self.assertEqual(len(list(self.root.iterdir())), workers)


class AllocateDirectoryTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_suffix_appended_to_whole_name(self):
        (self.root / "photos.2024").mkdir()
        path = storage.allocate_directory(self.root / "photos.2024")
        self.assertEqual(path.name, "photos.2024 (1)")
        self.assertTrue(path.is_dir())

    def test_concurrent_directory_allocations_are_distinct(self):
        with ThreadPoolExecutor(max_workers=8) as executor:
            paths = list(
                executor.map(lambda _: storage.allocate_directory(self.root / "album"), range(20))
            )
        self.assertEqual(len(set(paths)), 20)
        self.assertTrue(all(path.is_dir() for path in paths))

    def test_missing_parent_is_fatal(self):
        with self.assertRaises(FileNotFoundError):
            storage.allocate_directory(self.root / "nope" / "album")


class FormatFileSizeTests(unittest.TestCase):
    def test_auto_units(self):
        self.assertEqual(storage.format_file_size(0), "0.00B")
        self.assertEqual(storage.format_file_size(1536), "1.50KB")
        self.assertEqual(storage.format_file_size(5 * 1024 ** 3), "5.00GB")

    def test_forced_unit(self):
        self.assertEqual(storage.format_file_size(1024 * 1024, "kb"), "1024.00KB")
        self.assertEqual(storage.format_file_size(10, "XB"), "10.00B")


if __name__ == "__main__":
    unittest.main()
