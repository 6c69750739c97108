#!/usr/bin/env python3
"""
Specimen Generator - Creates ISO 9660 test specimens with genisoimage

This tool builds a small ext2 image populated with a fixed catalog of file
entries (links, Unicode file names, extended attributes, sparse extents) and
feeds it to genisoimage once per option combination, producing one raw ISO
9660 specimen per combination. Requires Linux, genisoimage and sudo rights for
loop mounting.
"""

import argparse
import sys
import os
import pwd
import json
import shutil
import hashlib
import subprocess
from pathlib import Path
from typing import NamedTuple, Optional
from datetime import datetime
import mmh3


EXIT_SUCCESS = 0
EXIT_FAILURE = 1

REQUIRED_BINARIES = ('dd', 'fallocate', 'genisoimage', 'mke2fs', 'setfattr', 'truncate')
PRIVILEGED_BINARIES = ('mount', 'umount', 'chown')

IMAGE_SIZE = 4096 * 1024
SECTOR_SIZE = 512
MKE2FS_ARGUMENTS = ('-L', 'ext2_test', '-t', 'ext2')

DEFAULT_SPECIMENS_PATH = 'specimens'
DEFAULT_MOUNT_POINT = '/mnt/ext'
DEFAULT_BLOCK_SIZE = 2048
MANIFEST_NAME = 'manifest.json'

ENTRY_FILE = 'file'
ENTRY_DIRECTORY = 'directory'
ENTRY_HARDLINK = 'hardlink'
ENTRY_SYMLINK = 'symlink'
ENTRY_INITIAL_SPARSE = 'initial_sparse'
ENTRY_TRAILING_SPARSE = 'trailing_sparse'
ENTRY_UNINITIALIZED = 'uninitialized'


class SpecimenError(Exception):
    """Base class for unmet preconditions of a specimen run."""


class MissingBinaryError(SpecimenError):
    def __init__(self, binary: str):
        super().__init__(f"Missing binary: {binary}")
        self.binary = binary


class SpecimensDirectoryExistsError(SpecimenError):
    def __init__(self, path: Path):
        super().__init__(f"Specimens directory: {path} already exists.")
        self.path = path


class ManifestError(SpecimenError):
    pass


class FileEntry(NamedTuple):
    """A file system entry to create inside the mounted image."""
    kind: str
    path: str
    content: bytes = b""
    target: Optional[str] = None  # Relative to the mount point
    xattr: Optional[tuple[str, str]] = None
    size: int = 0


class IsoVariant(NamedTuple):
    """A genisoimage option combination and the specimen it produces."""
    name: str
    input_charset: str
    options: tuple[str, ...]

    @property
    def output_name(self) -> str:
        return f"iso9660-{self.name}.raw"


class SpecimenInfo(NamedTuple):
    """Checksums of a generated specimen file."""
    path: str
    size: int
    md5: str
    sha256: str
    block_size: int
    block_hashes: list[int]


MULTI_BLOCK_CONTENT = b"".join(
    b"%04d: This line belongs to a file that spans several file system blocks.\n" % i
    for i in range(128)
)

FILE_ENTRIES: tuple[FileEntry, ...] = (
    FileEntry(ENTRY_FILE, 'emptyfile'),
    FileEntry(ENTRY_DIRECTORY, 'testdir1'),
    # Smaller than a file system block
    FileEntry(ENTRY_FILE, 'testdir1/testfile1', content=b"My file\n"),
    FileEntry(ENTRY_FILE, 'testdir1/TestFile2', content=MULTI_BLOCK_CONTENT),
    # Hard links to directories are not allowed
    FileEntry(ENTRY_HARDLINK, 'file_hardlink1', target='testdir1/testfile1'),
    FileEntry(ENTRY_SYMLINK, 'file_symboliclink1', target='testdir1/testfile1'),
    FileEntry(ENTRY_SYMLINK, 'directory_symboliclink1', target='testdir1'),
    FileEntry(ENTRY_FILE, 'nfc_t\u00e9stfil\u00e8'),
    FileEntry(ENTRY_FILE, 'nfd_te\u0301stfile\u0300'),
    FileEntry(ENTRY_FILE, 'nfd_\u00be'),
    FileEntry(ENTRY_FILE, 'nfkd_3\u20444'),
    FileEntry(ENTRY_FILE, 'testdir1/xattr1',
              xattr=('user.myxattr1', 'My 1st extended attribute')),
    FileEntry(ENTRY_DIRECTORY, 'testdir1/xattr2',
              xattr=('user.myxattr2', 'My 2nd extended attribute')),
    FileEntry(ENTRY_INITIAL_SPARSE, 'testdir1/initial_sparse1',
              content=b"File with an initial sparse extent\n", size=1 * 1024 * 1024),
    FileEntry(ENTRY_TRAILING_SPARSE, 'testdir1/trailing_sparse1',
              content=b"File with a trailing sparse extent\n", size=1 * 1024 * 1024),
    FileEntry(ENTRY_UNINITIALIZED, 'testdir1/uninitialized1',
              content=b"File with an uninitialized extent\n", size=4096),
)

ISO_VARIANTS: tuple[IsoVariant, ...] = (
    # Level 1: files may only consist of one section and filenames are restricted to 8.3 characters.
    IsoVariant('level1', 'utf8', ('-iso-level', '1')),
    # Level 2: files may only consist of one section.
    IsoVariant('level2', 'utf8', ('-iso-level', '2')),
    # Level 3: no restrictions (other than ISO-9660:1988) do apply.
    IsoVariant('level3', 'utf8', ('-iso-level', '3')),
    # Level 4: ISO 9660 version 2 (ISO-9660:1999).
    IsoVariant('level4', 'iso8859-1', ('-iso-level', '4')),
    IsoVariant('joliet', 'utf8', ('-joliet',)),
    IsoVariant('joliet-long', 'utf8', ('-joliet', '-joliet-long')),
    IsoVariant('rock', 'utf8', ('-rock',)),
    IsoVariant('xa', 'utf8', ('-XA',)),
    IsoVariant('apple-rock', 'iso8859-1', ('-apple', '-rock')),
    IsoVariant('apple-xa', 'iso8859-1', ('-apple', '-XA')),
    IsoVariant('hfs-rock', 'iso8859-1', ('-hfs', '-rock')),
    IsoVariant('hfs-xa', 'iso8859-1', ('-hfs', '-XA')),
)


def _timestamp() -> str:
    return datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]


def needs_sudo() -> bool:
    """Return True if privileged commands must be run through sudo."""
    return os.geteuid() != 0


def required_binaries(use_sudo: bool) -> tuple[str, ...]:
    binaries = REQUIRED_BINARIES + PRIVILEGED_BINARIES
    if use_sudo:
        binaries += ('sudo',)
    return binaries


def check_required_binaries(binaries) -> None:
    """
    Check the availability of each binary on the search path.

    Args:
        binaries: Names of the binaries to look up

    Raises:
        MissingBinaryError: For the first binary that cannot be found
    """
    for binary in binaries:
        if shutil.which(binary) is None:
            raise MissingBinaryError(binary)


class CommandRunner:
    """Runs external commands one at a time, aborting on the first failure."""

    def __init__(self, use_sudo: bool = True, verbose: bool = False):
        self.use_sudo = use_sudo
        self.verbose = verbose

    def _log(self, message: str):
        if self.verbose:
            print(f"[{_timestamp()}] {message}", file=sys.stderr)

    def run(self, args, privileged: bool = False, discard_stderr: bool = False):
        """
        Run a command and wait for it to finish.

        Args:
            args: Command and its arguments
            privileged: Whether the command needs root privileges
            discard_stderr: Whether to send the command's stderr to /dev/null

        Raises:
            subprocess.CalledProcessError: If the command exits with a non-zero status
        """
        command = [str(arg) for arg in args]
        if privileged and self.use_sudo:
            command.insert(0, 'sudo')

        self._log(f"Running: {' '.join(command)}")
        subprocess.run(
            command,
            check=True,
            stderr=subprocess.DEVNULL if discard_stderr else None
        )


def create_file_entry(mount_point: Path, entry: FileEntry, runner: CommandRunner):
    """
    Create a single catalog entry below the mount point.

    Plain files, directories and links are created directly; extended
    attributes and extents are delegated to setfattr, truncate and fallocate.
    """
    path = mount_point / entry.path

    if entry.kind == ENTRY_FILE:
        path.write_bytes(entry.content)
    elif entry.kind == ENTRY_DIRECTORY:
        path.mkdir()
    elif entry.kind == ENTRY_HARDLINK:
        os.link(mount_point / entry.target, path)
    elif entry.kind == ENTRY_SYMLINK:
        # Absolute targets, so the links dangle outside the mounted image
        os.symlink((mount_point / entry.target).absolute(), path)
    elif entry.kind == ENTRY_INITIAL_SPARSE:
        runner.run(['truncate', '-s', entry.size, path])
        with open(path, 'ab') as f:
            f.write(entry.content)
    elif entry.kind == ENTRY_TRAILING_SPARSE:
        path.write_bytes(entry.content)
        runner.run(['truncate', '-s', entry.size, path])
    elif entry.kind == ENTRY_UNINITIALIZED:
        runner.run(['fallocate', '-x', '-l', entry.size, path])
        with open(path, 'ab') as f:
            f.write(entry.content)
    else:
        raise ValueError(f"Unknown file entry kind: {entry.kind}")

    if entry.xattr is not None:
        name, value = entry.xattr
        runner.run(['setfattr', '-n', name, '-v', value, path])


def iso_command(variant: IsoVariant, output_path: Path, source: Path) -> list[str]:
    """Build the genisoimage command line for a variant."""
    return [
        'genisoimage', '-input-charset', variant.input_charset,
        *variant.options,
        '-o', str(output_path), str(source)
    ]


def compute_specimen_info(file_path: Path, relative_path: str, block_size: int) -> SpecimenInfo:
    """
    Read a specimen once, hashing it as a whole and block by block.

    Args:
        file_path: Path to the specimen file
        relative_path: Path recorded in the manifest
        block_size: Size of blocks in bytes for MurmurHash3

    Returns:
        SpecimenInfo for the file
    """
    md5 = hashlib.md5()
    sha256 = hashlib.sha256()
    block_hashes = []
    size = 0

    with open(file_path, 'rb') as f:
        while True:
            block = f.read(block_size)
            if not block:
                break
            md5.update(block)
            sha256.update(block)
            block_hashes.append(mmh3.hash(block, signed=False))
            size += len(block)

    return SpecimenInfo(
        path=relative_path,
        size=size,
        md5=md5.hexdigest(),
        sha256=sha256.hexdigest(),
        block_size=block_size,
        block_hashes=block_hashes
    )


def differing_block_ranges(expected: list[int], actual: list[int]) -> list[tuple[int, int]]:
    """
    Compare two block hash lists.

    Returns:
        List of (start_block, end_block) tuples, end exclusive, covering every
        block that differs or exists in only one of the lists
    """
    ranges = []
    start = None
    length = max(len(expected), len(actual))

    for i in range(length):
        same = i < len(expected) and i < len(actual) and expected[i] == actual[i]
        if not same and start is None:
            start = i
        elif same and start is not None:
            ranges.append((start, i))
            start = None

    if start is not None:
        ranges.append((start, length))

    return ranges


def read_manifest(manifest_path: Path) -> list[SpecimenInfo]:
    try:
        with open(manifest_path, 'r') as f:
            data = json.load(f)
        return [SpecimenInfo(**item) for item in data['specimens']]
    except FileNotFoundError:
        raise ManifestError(f"Manifest not found: {manifest_path}")
    except (ValueError, KeyError, TypeError) as e:
        raise ManifestError(f"Cannot read manifest {manifest_path}: {e}")


def verify_manifest(specimens_path: Path) -> list[str]:
    """
    Compare the specimens on disk with the manifest written when they were built.

    Args:
        specimens_path: Root directory of the specimens

    Returns:
        List of human-readable problems; empty if everything matches
    """
    problems = []

    for expected in read_manifest(specimens_path / MANIFEST_NAME):
        file_path = specimens_path / expected.path
        if not file_path.is_file():
            problems.append(f"{expected.path}: missing")
            continue

        actual = compute_specimen_info(file_path, expected.path, expected.block_size)
        if actual.size != expected.size:
            problems.append(f"{expected.path}: size {actual.size} differs from {expected.size}")

        for start, end in differing_block_ranges(expected.block_hashes, actual.block_hashes):
            start_byte = start * expected.block_size
            end_byte = end * expected.block_size
            problems.append(f"{expected.path}: blocks {start}-{end} differ (bytes {start_byte}-{end_byte})")

    return problems


class SpecimenBuilder:
    """Builds the ext2 image and the genisoimage specimens derived from it."""

    def __init__(self, specimens_path: Path = Path(DEFAULT_SPECIMENS_PATH),
                 mount_point: Path = Path(DEFAULT_MOUNT_POINT), runner: Optional[CommandRunner] = None,
                 block_size: int = DEFAULT_BLOCK_SIZE, write_manifest: bool = True,
                 verbose: bool = False):
        """
        Initialize the specimen builder.

        Args:
            specimens_path: Root directory for generated specimens (default: specimens)
            mount_point: Directory the ext2 image is loop mounted on (default: /mnt/ext)
            runner: CommandRunner used for external commands (default: sudo unless root)
            block_size: Block size in bytes for manifest hashes (default: 2048)
            write_manifest: Whether to write manifest.json after building (default: True)
            verbose: Whether to print timestamped progress messages to stderr (default: False)
        """
        self.specimens_path = Path(specimens_path)
        self.mount_point = Path(mount_point)
        self.runner = runner if runner is not None else CommandRunner(needs_sudo(), verbose)
        self.block_size = block_size
        self.write_manifest_enabled = write_manifest
        self.verbose = verbose

        self.output_path = self.specimens_path / 'genisoimage'
        self.image_file = self.specimens_path / 'ext2.raw'
        self.manifest_file = self.specimens_path / MANIFEST_NAME

    def _log(self, message: str):
        """Print a timestamped message to stderr if verbose mode is enabled."""
        if self.verbose:
            print(f"[{_timestamp()}] {message}", file=sys.stderr)

    def check_prerequisites(self):
        check_required_binaries(required_binaries(self.runner.use_sudo))
        self._log("All required binaries are available")

    def prepare_specimens_directory(self):
        if self.output_path.exists():
            raise SpecimensDirectoryExistsError(self.output_path)
        self.output_path.mkdir(parents=True)
        self._log(f"Created specimens directory: {self.output_path}")

    def create_image_file(self, image_size: int = IMAGE_SIZE, sector_size: int = SECTOR_SIZE,
                          mke2fs_arguments=MKE2FS_ARGUMENTS):
        """Create a zero-filled image file and format it with mke2fs."""
        self.runner.run([
            'dd', 'if=/dev/zero', f'of={self.image_file}',
            f'bs={sector_size}', f'count={image_size // sector_size}'
        ], discard_stderr=True)
        self.runner.run(['mke2fs', '-q', *mke2fs_arguments, self.image_file])
        self._log(f"Created image file: {self.image_file} ({image_size} bytes)")

    def mount_image(self):
        self.runner.run(['mount', '-o', 'loop,rw', self.image_file, self.mount_point], privileged=True)

    def unmount_image(self):
        self.runner.run(['umount', self.mount_point], privileged=True)

    def take_ownership(self):
        uid = os.getuid()
        try:
            username = pwd.getpwuid(uid).pw_name
        except KeyError:
            username = str(uid)
        self.runner.run(['chown', username, self.mount_point], privileged=True)

    def populate(self, entries=FILE_ENTRIES):
        """Create the file entry catalog inside the mounted image."""
        for entry in entries:
            create_file_entry(self.mount_point, entry, self.runner)
        self._log(f"Created {len(entries)} file entries in {self.mount_point}")

    def create_image_with_file_entries(self):
        self.create_image_file()
        self.mount_image()
        self.take_ownership()
        self.populate()
        self.unmount_image()

    def build_iso_specimens(self, variants=ISO_VARIANTS):
        """Run genisoimage once per variant over the mounted image."""
        for variant in variants:
            output_file = self.output_path / variant.output_name
            self.runner.run(iso_command(variant, output_file, self.mount_point))
            self._log(f"Created specimen: {output_file}")

    def specimen_files(self) -> list[Path]:
        return [self.image_file] + [self.output_path / v.output_name for v in ISO_VARIANTS]

    def write_manifest(self):
        specimens = []
        for file_path in self.specimen_files():
            relative_path = file_path.relative_to(self.specimens_path).as_posix()
            specimens.append(compute_specimen_info(file_path, relative_path, self.block_size))

        with open(self.manifest_file, 'w') as f:
            json.dump({'specimens': [s._asdict() for s in specimens]}, f, indent=1)
            f.write('\n')
        self._log(f"Wrote manifest: {self.manifest_file}")

    def build(self):
        """
        Generate all specimens.

        It performs the following steps:
        1. Checks that every required binary is available
        2. Creates the specimens directory, refusing to reuse an existing one
        3. Creates, mounts and populates the ext2 image
        4. Remounts the image and runs genisoimage for every variant
        5. Writes the manifest

        The first failing step aborts the run; partial state is left behind.
        """
        self.check_prerequisites()
        self.prepare_specimens_directory()

        self.runner.run(['mkdir', '-p', self.mount_point], privileged=True)

        # Create an ext2 file system without a journal
        self.create_image_with_file_entries()

        self.mount_image()
        self.build_iso_specimens()
        self.unmount_image()

        if self.write_manifest_enabled:
            self.write_manifest()


def main():
    """Main entry point for the specimen generator."""
    parser = argparse.ArgumentParser(
        description='Generate ISO 9660 test specimens with genisoimage',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Generate specimens/ext2.raw and specimens/genisoimage/iso9660-*.raw
  %(prog)s

  # Check previously generated specimens against their manifest
  %(prog)s --verify
        """
    )

    parser.add_argument(
        '-s', '--specimens-path',
        type=Path,
        default=Path(DEFAULT_SPECIMENS_PATH),
        metavar='DIR',
        help='Root directory for generated specimens (default: specimens)'
    )

    parser.add_argument(
        '-m', '--mount-point',
        type=Path,
        default=Path(DEFAULT_MOUNT_POINT),
        metavar='DIR',
        help='Directory to loop mount the ext2 image on (default: /mnt/ext)'
    )

    parser.add_argument(
        '-b', '--block-size',
        type=int,
        default=None,
        metavar='BYTES',
        help='Block size in bytes for manifest hashes (default: 2048, one ISO 9660 sector); '
             'not allowed with --verify, which uses the block size recorded in the manifest'
    )

    parser.add_argument(
        '--no-manifest',
        action='store_true',
        help='Skip writing manifest.json after generating the specimens'
    )

    parser.add_argument(
        '--verify',
        action='store_true',
        help='Verify existing specimens against manifest.json instead of generating them'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose mode with timestamped progress messages to stderr'
    )

    args = parser.parse_args()

    if args.verify and args.block_size is not None:
        parser.error("--block-size cannot be combined with --verify")

    if args.block_size is None:
        args.block_size = DEFAULT_BLOCK_SIZE
    elif args.block_size <= 0:
        parser.error(f"Block size must be positive: {args.block_size}")

    try:
        if args.verify:
            problems = verify_manifest(args.specimens_path)
            for problem in problems:
                print(problem, file=sys.stderr)
            sys.exit(EXIT_FAILURE if problems else EXIT_SUCCESS)

        builder = SpecimenBuilder(
            args.specimens_path,
            args.mount_point,
            block_size=args.block_size,
            write_manifest=not args.no_manifest,
            verbose=args.verbose
        )
        builder.build()

    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        sys.exit(130)
    except SpecimenError as e:
        print(e, file=sys.stderr)
        sys.exit(EXIT_FAILURE)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_FAILURE)

    sys.exit(EXIT_SUCCESS)


if __name__ == '__main__':
    main()
