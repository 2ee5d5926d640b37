"""
Archive builder for backup runs.

Walks the configured source directories and writes every regular file into a
single gzip compressed tar archive, keeping each file's path relative to its
backup root:

    /data/notes/todo/today.txt  ->  notes/todo/today.txt
"""

import os
import tarfile
from datetime import date as date_type
from pathlib import Path
from typing import Iterable, Iterator, Optional, Set, Tuple

from cloudkeeper.config import Config


class ArchiveError(Exception):
    """Raised when archive creation fails."""
    pass


class ArchiveAlreadyExists(ArchiveError):
    """Raised when the target archive file is already present on disk."""

    def __init__(self, file_name: str):
        self.file_name = file_name
        super().__init__(
            f"Tried to create a file with filename `{file_name}`, which already exists. "
            f"Try to specify a different filename or consider using randomly generated "
            f"designations."
        )


def build_archive(
    sources: Iterable[str],
    archive_path: str,
    ignore: Optional[Iterable[str]] = None
) -> str:
    """
    Create a .tar.gz archive from source directories.

    Args:
        sources: Directory (or file) paths to include
        archive_path: Path of the archive to create, including extension
        ignore: Folder names to prune at every depth of the traversal

    Returns:
        Path to the created archive file

    Raises:
        ArchiveAlreadyExists: If archive_path already exists
        OSError: If a source cannot be read. The partially written archive
            is left on disk.
    """
    ignore = set(ignore or ())

    # Exclusive create, so an existing archive is never truncated
    try:
        archive_file = open(archive_path, 'xb')
    except FileExistsError:
        raise ArchiveAlreadyExists(os.path.basename(archive_path))

    with archive_file:
        # dereference: symlinked files are archived as the files they point to
        with tarfile.open(fileobj=archive_file, mode='w:gz', compresslevel=9, dereference=True) as tar:
            for arcname, path in iter_archive_entries(sources, ignore):
                tar.add(path, arcname=arcname, recursive=False)

    return archive_path


def iter_archive_entries(
    sources: Iterable[str],
    ignore: Optional[Set[str]] = None
) -> Iterator[Tuple[str, str]]:
    """
    Yield (arcname, path) for every regular file under the sources.

    Traversal is depth-first and pre-order, with directory entries visited in
    name order. Directories whose name is in ``ignore`` are never entered.

    Args:
        sources: Directory (or file) paths to walk
        ignore: Folder names to prune

    Raises:
        OSError: If a source or one of its subdirectories cannot be read
    """
    ignore = ignore or set()

    for source in sources:
        root = Path(source).expanduser()

        if root.is_file():
            yield root.name, str(root)
            continue

        if not root.is_dir():
            raise FileNotFoundError(f"Path does not exist: {source}")

        # '.' and '..' have no usable name until made absolute
        prefix = Path(os.path.abspath(root)).name
        yield from _walk(root, prefix, ignore)


def _walk(directory: Path, prefix: str, ignore: Set[str]) -> Iterator[Tuple[str, str]]:
    with os.scandir(directory) as it:
        entries = sorted(it, key=lambda entry: entry.name)

    for entry in entries:
        arcname = f"{prefix}/{entry.name}"

        if entry.is_dir():
            if entry.name in ignore:
                continue
            yield from _walk(Path(entry.path), arcname, ignore)
        elif entry.is_file():
            yield arcname, entry.path


def generate_archive_filename(day: Optional[date_type] = None) -> str:
    """
    Generate the archive filename for a backup run.

    Format: backup{YYYY-MM-DD}.tar.gz

    Args:
        day: Date to stamp into the name (default: today, local time)

    Returns:
        Filename (without path)
    """
    if day is None:
        day = date_type.today()

    return f"{Config.ARCHIVE_MARKER}{day.strftime('%Y-%m-%d')}{Config.ARCHIVE_EXTENSION}"


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        ArchiveError: If the file doesn't exist
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise ArchiveError(f"Archive not found: {archive_path}")
