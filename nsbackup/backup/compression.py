"""
Archive writers for backup runs.

Each collection becomes one member of the archive, serialized as JSON Lines
(MongoDB relaxed extended JSON, one document per line).

Supports multiple formats:
- zip: Standard zip compression
- tar.gz: Gzip compressed tar
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar
- none: No compression (tar only)
"""

import os
import tarfile
import tempfile
import threading
import zipfile
from datetime import datetime, timezone
from typing import List, Optional

from bson.json_util import dumps, RELAXED_JSON_OPTIONS

from .errors import ArchiveError


EXTENSIONS = {
    'zip': 'zip',
    'tar.gz': 'tar.gz',
    'tar.bz2': 'tar.bz2',
    'tar.xz': 'tar.xz',
    'none': 'tar'
}

TAR_MODES = {
    'tar.gz': 'w:gz',
    'tar.bz2': 'w:bz2',
    'tar.xz': 'w:xz',
    'none': 'w'
}


class MemberHandle:
    """Write handle for one archive member, backed by a spool file."""

    def __init__(self, name: str, spool_path: str):
        self.name = name
        self.arcname = f"{name}.jsonl"
        self.spool_path = spool_path
        self.document_count = 0
        self._file = open(spool_path, 'w', encoding='utf-8')

    @property
    def closed(self) -> bool:
        return self._file.closed

    def write(self, documents: List[dict]):
        for document in documents:
            self._file.write(dumps(document, json_options=RELAXED_JSON_OPTIONS))
            self._file.write('\n')
        self.document_count += len(documents)

    def close(self):
        if not self._file.closed:
            self._file.close()

    def remove(self):
        self.close()
        if os.path.exists(self.spool_path):
            os.remove(self.spool_path)


class ArchiveWriter:
    """
    Builds one archive from per-collection members.

    Members are spooled to their own file while documents are written, then
    appended to the archive whole under a lock so bytes from different members
    never interleave. A member that is discarded never reaches the archive.
    """

    def __init__(self, work_dir: str, archive_name: str, compression_format: str = 'tar.gz'):
        """
        Initialize archive writer.

        Args:
            work_dir: Directory for spool files and the archive (owned by the caller)
            archive_name: Archive filename without extension
            compression_format: Format to use ('zip', 'tar.gz', 'tar.bz2', 'tar.xz', 'none')

        Raises:
            ValueError: If compression_format is invalid
        """
        if compression_format not in EXTENSIONS:
            raise ValueError(
                f"Invalid compression format: {compression_format}. "
                f"Valid options: {list(EXTENSIONS.keys())}"
            )

        self.work_dir = work_dir
        self.compression_format = compression_format
        self.archive_path = os.path.join(work_dir, f"{archive_name}.{EXTENSIONS[compression_format]}")
        self.members: List[str] = []

        self._lock = threading.Lock()
        self._archive = None
        self._closed = False
        self._broken = None

    def begin_member(self, name: str) -> MemberHandle:
        """
        Start a new member.

        Args:
            name: Collection name (member is stored as {name}.jsonl)

        Returns:
            MemberHandle for write_batch/end_member/discard_member

        Raises:
            ArchiveError: If the spool file cannot be created
        """
        if self._closed:
            raise ArchiveError("Archive already closed")

        try:
            fd, spool_path = tempfile.mkstemp(prefix=f"{_safe_name(name)}_", suffix='.jsonl', dir=self.work_dir)
            os.close(fd)
            return MemberHandle(name, spool_path)
        except OSError as e:
            raise ArchiveError(f"Failed to open member {name}: {e}")

    def write_batch(self, handle: MemberHandle, batch: List[dict]):
        """
        Append a batch of documents to a member.

        Raises:
            ArchiveError: If the member is closed or serialization fails
        """
        if handle.closed:
            raise ArchiveError(f"Member {handle.name} is closed")
        try:
            handle.write(batch)
        except (OSError, TypeError, ValueError) as e:
            raise ArchiveError(f"Failed to write member {handle.name}: {e}")

    def end_member(self, handle: MemberHandle) -> int:
        """
        Finalize a member and append it to the archive.

        Returns:
            Number of documents in the member

        Raises:
            ArchiveError: If the member cannot be added
        """
        handle.close()

        try:
            with self._lock:
                if self._closed:
                    raise ArchiveError("Archive already closed")
                if self._broken:
                    raise ArchiveError(f"Archive unusable, not adding {handle.name}: {self._broken}")
                try:
                    self._add_member(handle)
                except (OSError, tarfile.TarError, zipfile.BadZipFile) as e:
                    # A partly appended member leaves the stream corrupt
                    self._broken = f"failed to add member {handle.name}: {e}"
                    raise ArchiveError(f"Failed to add member {handle.name}: {e}")
                self.members.append(handle.name)
        finally:
            handle.remove()

        return handle.document_count

    def discard_member(self, handle: MemberHandle):
        """Throw away a member's spooled data."""
        handle.remove()

    def _add_member(self, handle: MemberHandle):
        if self._archive is None:
            self._archive = self._open_archive()

        if self.compression_format == 'zip':
            self._archive.write(handle.spool_path, handle.arcname)
        else:
            self._archive.add(handle.spool_path, arcname=handle.arcname, recursive=False)

    def _open_archive(self):
        if self.compression_format == 'zip':
            return zipfile.ZipFile(self.archive_path, 'w', zipfile.ZIP_DEFLATED)
        return tarfile.open(self.archive_path, TAR_MODES[self.compression_format])

    @property
    def member_count(self) -> int:
        return len(self.members)

    def close(self, allow_empty: bool = False) -> Optional[str]:
        """
        Finish the archive.

        Args:
            allow_empty: Create the archive even if no member was written

        Returns:
            Path to the archive, or None if no member was written and
            allow_empty is False

        Raises:
            ArchiveError: If the archive cannot be finalized or an earlier
                member left it corrupt
        """
        with self._lock:
            if self._broken:
                raise ArchiveError(f"Archive unusable: {self._broken}")
            if self._closed:
                return self.archive_path if os.path.exists(self.archive_path) else None
            self._closed = True

            try:
                if self._archive is None:
                    if not allow_empty:
                        return None
                    self._archive = self._open_archive()
                self._archive.close()
            except (OSError, tarfile.TarError) as e:
                raise ArchiveError(f"Failed to finalize archive: {e}")
            finally:
                self._archive = None

        return self.archive_path

    def abort(self):
        """Close and delete a partially written archive."""
        with self._lock:
            self._closed = True
            if self._archive is not None:
                try:
                    self._archive.close()
                except (OSError, tarfile.TarError):
                    pass
                self._archive = None

        if os.path.exists(self.archive_path):
            os.remove(self.archive_path)


def _safe_name(name: str) -> str:
    return "".join(c if c.isalnum() or c in ('-', '_') else '_' for c in name)


def generate_archive_filename(database_name: str, is_manual: bool, timestamp: Optional[datetime] = None) -> str:
    """
    Generate a standardized archive filename (without extension).

    Format: {database}-{manual|scheduled}-{YYYYMMDD_HHMMSS}

    Args:
        database_name: Name of the backed up database
        is_manual: Whether a user triggered the run
        timestamp: Time to embed (default: now, UTC)

    Returns:
        Filename without extension
    """
    timestamp = timestamp or datetime.now(timezone.utc)
    kind = 'manual' if is_manual else 'scheduled'
    return f"{_safe_name(database_name)}-{kind}-{timestamp.strftime('%Y%m%d_%H%M%S')}"

