#!/usr/bin/env python3
"""
Tests for the file entry catalog and its creation below the mount point.
"""

import unittest
import tempfile
import os
import sys
import unicodedata
from pathlib import Path

# Add parent directory to path to import the module
sys.path.insert(0, str(Path(__file__).parent.parent))

from generate_specimens import (
    FILE_ENTRIES, FileEntry, MULTI_BLOCK_CONTENT, create_file_entry,
    ENTRY_FILE, ENTRY_DIRECTORY, ENTRY_HARDLINK, ENTRY_SYMLINK,
    ENTRY_INITIAL_SPARSE, ENTRY_TRAILING_SPARSE, ENTRY_UNINITIALIZED,
)
from recording_runner import RecordingRunner


class TestFileEntryCatalog(unittest.TestCase):
    """Tests for the fixed catalog itself."""

    def test_paths_are_unique(self):
        paths = [entry.path for entry in FILE_ENTRIES]
        self.assertEqual(len(paths), len(set(paths)))

    def test_catalog_counts(self):
        """The catalog holds one of each special entry the parser tests rely on."""
        kinds = [entry.kind for entry in FILE_ENTRIES]
        self.assertEqual(kinds.count(ENTRY_HARDLINK), 1)
        self.assertEqual(kinds.count(ENTRY_SYMLINK), 2)
        self.assertEqual(kinds.count(ENTRY_INITIAL_SPARSE) + kinds.count(ENTRY_TRAILING_SPARSE), 2)
        self.assertEqual(kinds.count(ENTRY_UNINITIALIZED), 1)
        self.assertEqual(len([e for e in FILE_ENTRIES if e.xattr is not None]), 2)

    def test_parents_precede_children(self):
        created = set()
        for entry in FILE_ENTRIES:
            parent = os.path.dirname(entry.path)
            if parent:
                self.assertIn(parent, created)
            if entry.target is not None:
                self.assertIn(entry.target, created)
            created.add(entry.path)

    def test_unicode_normalization_forms(self):
        names = {entry.path for entry in FILE_ENTRIES}

        nfc = 'nfc_t\u00e9stfil\u00e8'
        self.assertIn(nfc, names)
        self.assertTrue(unicodedata.is_normalized('NFC', nfc))
        self.assertFalse(unicodedata.is_normalized('NFD', nfc))

        nfd = 'nfd_te\u0301stfile\u0300'
        self.assertIn(nfd, names)
        self.assertTrue(unicodedata.is_normalized('NFD', nfd))
        self.assertFalse(unicodedata.is_normalized('NFC', nfd))

        self.assertIn('nfd_\u00be', names)
        self.assertFalse(unicodedata.is_normalized('NFKD', 'nfd_\u00be'))

        nfkd = 'nfkd_3\u20444'
        self.assertIn(nfkd, names)
        self.assertTrue(unicodedata.is_normalized('NFKD', nfkd))

    def test_large_content_spans_blocks(self):
        """The file spans more than one block, even with 4 KiB blocks."""
        self.assertGreater(len(MULTI_BLOCK_CONTENT), 4096)


class TestCreateFileEntry(unittest.TestCase):
    """Tests for create_file_entry() against a temporary directory."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.TemporaryDirectory()
        self.mount_point = Path(self.temp_dir.name)
        self.runner = RecordingRunner()

    def tearDown(self):
        """Clean up test fixtures."""
        self.temp_dir.cleanup()

    def populate(self):
        for entry in FILE_ENTRIES:
            create_file_entry(self.mount_point, entry, self.runner)

    def test_plain_files(self):
        self.populate()

        self.assertEqual((self.mount_point / 'emptyfile').read_bytes(), b"")
        self.assertEqual((self.mount_point / 'testdir1' / 'testfile1').read_bytes(), b"My file\n")
        self.assertEqual((self.mount_point / 'testdir1' / 'TestFile2').read_bytes(), MULTI_BLOCK_CONTENT)
        self.assertTrue((self.mount_point / 'testdir1' / 'xattr2').is_dir())

    def test_hard_link_shares_inode(self):
        self.populate()

        original = (self.mount_point / 'testdir1' / 'testfile1').stat()
        link = (self.mount_point / 'file_hardlink1').stat()
        self.assertEqual(original.st_ino, link.st_ino)
        self.assertEqual(link.st_nlink, 2)

    def test_symbolic_links_use_absolute_targets(self):
        self.populate()

        file_link = self.mount_point / 'file_symboliclink1'
        directory_link = self.mount_point / 'directory_symboliclink1'
        self.assertTrue(file_link.is_symlink())
        self.assertEqual(os.readlink(file_link), str(self.mount_point / 'testdir1' / 'testfile1'))
        self.assertEqual(os.readlink(directory_link), str(self.mount_point / 'testdir1'))
        self.assertTrue(directory_link.is_dir())

    def test_relative_mount_point_gets_absolute_targets(self):
        original_cwd = Path.cwd()
        os.chdir(self.temp_dir.name)
        try:
            Path('mnt').mkdir()
            for entry in FILE_ENTRIES:
                create_file_entry(Path('mnt'), entry, self.runner)

            for name in ('file_symboliclink1', 'directory_symboliclink1'):
                target = os.readlink(Path('mnt') / name)
                self.assertTrue(os.path.isabs(target), target)
            self.assertEqual(os.readlink(Path('mnt') / 'file_symboliclink1'),
                             str(Path.cwd() / 'mnt' / 'testdir1' / 'testfile1'))
            self.assertEqual((Path('mnt') / 'file_symboliclink1').read_bytes(), b"My file\n")
            self.assertTrue((Path('mnt') / 'directory_symboliclink1').is_dir())
        finally:
            os.chdir(original_cwd)

    def test_unicode_names_are_not_normalized(self):
        self.populate()

        names = os.listdir(os.fsencode(self.mount_point))
        self.assertIn(b'nfc_t\xc3\xa9stfil\xc3\xa8', names)
        self.assertIn(b'nfd_te\xcc\x81stfile\xcc\x80', names)
        self.assertIn(b'nfd_\xc2\xbe', names)
        self.assertIn(b'nfkd_3\xe2\x81\x844', names)

    def test_extended_attributes_use_setfattr(self):
        self.populate()

        commands = self.runner.find('setfattr')
        self.assertEqual(commands, [
            ['setfattr', '-n', 'user.myxattr1', '-v', 'My 1st extended attribute',
             str(self.mount_point / 'testdir1' / 'xattr1')],
            ['setfattr', '-n', 'user.myxattr2', '-v', 'My 2nd extended attribute',
             str(self.mount_point / 'testdir1' / 'xattr2')],
        ])

    def test_initial_sparse_extent(self):
        self.populate()

        path = self.mount_point / 'testdir1' / 'initial_sparse1'
        content = b"File with an initial sparse extent\n"
        self.assertEqual(path.stat().st_size, 1024 * 1024 + len(content))
        with open(path, 'rb') as f:
            f.seek(1024 * 1024)
            self.assertEqual(f.read(), content)
        self.assertIn(['truncate', '-s', '1048576', str(path)], self.runner.find('truncate'))

    def test_trailing_sparse_extent(self):
        self.populate()

        path = self.mount_point / 'testdir1' / 'trailing_sparse1'
        self.assertEqual(path.stat().st_size, 1024 * 1024)
        with open(path, 'rb') as f:
            self.assertEqual(f.read(35), b"File with a trailing sparse extent\n")

    def test_uninitialized_extent(self):
        self.populate()

        path = self.mount_point / 'testdir1' / 'uninitialized1'
        content = b"File with an uninitialized extent\n"
        self.assertEqual(self.runner.find('fallocate'), [['fallocate', '-x', '-l', '4096', str(path)]])
        self.assertEqual(path.stat().st_size, 4096 + len(content))

    def test_external_commands_are_not_privileged(self):
        self.populate()

        self.assertTrue(self.runner.commands)
        for _, privileged in self.runner.commands:
            self.assertFalse(privileged)

    def test_unknown_kind(self):
        entry = FileEntry('fifo', 'pipe1')

        with self.assertRaises(ValueError):
            create_file_entry(self.mount_point, entry, self.runner)

    def test_existing_entry_fails(self):
        entry = FileEntry(ENTRY_DIRECTORY, 'testdir1')
        create_file_entry(self.mount_point, entry, self.runner)

        with self.assertRaises(FileExistsError):
            create_file_entry(self.mount_point, entry, self.runner)

    def test_single_file_with_xattr(self):
        entry = FileEntry(ENTRY_FILE, 'tagged', content=b"x", xattr=('user.tag', 'value'))
        create_file_entry(self.mount_point, entry, self.runner)

        self.assertEqual((self.mount_point / 'tagged').read_bytes(), b"x")
        self.assertEqual(self.runner.names(), ['setfattr'])


if __name__ == '__main__':
    unittest.main()
