"""ArchiveExtractor — policy-checked ZIP and tar expansion into a workspace.

Headers are scanned and validated before anything is written, so a policy
violation anywhere in the archive leaves the workspace untouched.
"""

from __future__ import annotations

import asyncio
import io
import logging
import posixpath
import re
import stat
import tarfile
import zipfile
import zlib
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, TYPE_CHECKING

from ferry.config import ExtractorPolicy
from ferry.exceptions import ArchiveCorruptError, PolicyViolationError, StorageIOError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

logger = logging.getLogger(__name__)

_ZIP_MAGICS = (b"PK\x03\x04", b"PK\x05\x06", b"PK\x07\x08")
_ARCHIVE_SUFFIXES = (".zip", ".jar", ".war", ".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tbz2", ".tar.xz", ".txz")
_ARCHIVE_MIME_TYPES = frozenset(
    {
        "application/zip",
        "application/x-zip-compressed",
        "application/x-tar",
        "application/gzip",
        "application/x-gzip",
        "application/x-compressed-tar",
    }
)
_DRIVE_RE = re.compile(r"^[A-Za-z]:")
_COPY_BUFSIZE = 1024 * 1024

type ArchiveSource = bytes | str | Path | IO[bytes]


@dataclass(frozen=True, slots=True)
class ArchiveEntry:
    """An accepted archive member, as written into the workspace."""

    relative_path: str
    size: int
    extension: str


@dataclass
class ExtractionResult:
    """Outcome of a successful extraction."""

    root: Path
    entries: list[ArchiveEntry] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)

    @property
    def total_bytes(self) -> int:
        return sum(e.size for e in self.entries)


@dataclass(frozen=True, slots=True)
class _Member:
    name: str
    size: int
    is_dir: bool
    is_regular: bool
    handle: object


def is_archive(filename: str, mime_type: str | None = None) -> bool:
    """Return True if *filename* or *mime_type* names a supported archive."""
    lowered = filename.lower()
    if any(lowered.endswith(suffix) for suffix in _ARCHIVE_SUFFIXES):
        return True
    return mime_type is not None and mime_type.lower() in _ARCHIVE_MIME_TYPES


def normalize_member_path(name: str) -> str:
    """Normalize an archive member name to a workspace-relative POSIX path.

    Raises :class:`PolicyViolationError` for absolute paths, drive letters,
    and any path that escapes the root after ``..`` resolution.
    """
    cleaned = name.replace("\\", "/")
    if cleaned.startswith("/") or _DRIVE_RE.match(cleaned):
        msg = f"path traversal: absolute member path {name!r}"
        raise PolicyViolationError(msg)
    normalized = posixpath.normpath(cleaned)
    if normalized == ".." or normalized.startswith("../"):
        msg = f"path traversal: member {name!r} escapes the workspace"
        raise PolicyViolationError(msg)
    return "" if normalized == "." else normalized


class ArchiveExtractor:
    """Expands ZIP and tar archives under an :class:`ExtractorPolicy`.

    Members are checked in archive order:

    1. path traversal fails the whole extraction;
    2. excluded path segments, unlisted extensions, and oversized files
       are skipped;
    3. the running file count and byte total must stay within
       ``max_files`` and ``max_total_bytes``, otherwise the whole
       extraction fails.
    """

    def __init__(self, policy: ExtractorPolicy | None = None) -> None:
        self._policy = policy or ExtractorPolicy()

    @property
    def policy(self) -> ExtractorPolicy:
        return self._policy

    async def extract_async(self, source: ArchiveSource, dest: Path) -> ExtractionResult:
        """Run :meth:`extract` on a worker thread."""
        return await asyncio.to_thread(self.extract, source, dest)

    def extract(self, source: ArchiveSource, dest: Path) -> ExtractionResult:
        """Validate every member of *source*, then write accepted ones under *dest*."""
        dest = Path(dest)
        with _open_source(source) as stream:
            if _is_zip(stream):
                return self._extract_zip(stream, dest)
            return self._extract_tar(stream, dest)

    # ------------------------------------------------------------------
    # Format handlers
    # ------------------------------------------------------------------

    def _extract_zip(self, stream: IO[bytes], dest: Path) -> ExtractionResult:
        try:
            zf = zipfile.ZipFile(stream)
        except (zipfile.BadZipFile, zlib.error, EOFError, ValueError) as e:
            msg = f"Unreadable ZIP archive: {e}"
            raise ArchiveCorruptError(msg) from e

        with zf:
            members = [_zip_member(info) for info in zf.infolist()]
            result, accepted = self._plan(members, dest)

            def _open(member: _Member) -> IO[bytes]:
                return zf.open(member.handle)  # type: ignore[arg-type]

            self._write(accepted, dest, _open)
        return result

    def _extract_tar(self, stream: IO[bytes], dest: Path) -> ExtractionResult:
        try:
            tf = tarfile.open(fileobj=stream, mode="r:*")
        except (tarfile.TarError, zlib.error, EOFError, OSError) as e:
            msg = f"Unreadable archive: {e}"
            raise ArchiveCorruptError(msg) from e

        with tf:
            try:
                members = [_tar_member(info) for info in tf.getmembers()]
            except (tarfile.TarError, zlib.error, EOFError) as e:
                msg = f"Corrupt tar header: {e}"
                raise ArchiveCorruptError(msg) from e
            result, accepted = self._plan(members, dest)

            def _open(member: _Member) -> IO[bytes]:
                handle = tf.extractfile(member.handle)  # type: ignore[arg-type]
                if handle is None:
                    msg = f"Cannot read tar member {member.name!r}"
                    raise ArchiveCorruptError(msg)
                return handle

            self._write(accepted, dest, _open)
        return result

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def _plan(
        self, members: list[_Member], dest: Path
    ) -> tuple[ExtractionResult, list[tuple[_Member, ArchiveEntry]]]:
        """Apply the policy to *members* without touching the filesystem."""
        policy = self._policy
        result = ExtractionResult(root=dest)
        accepted: list[tuple[_Member, ArchiveEntry]] = []
        total = 0
        root = dest.resolve()

        for member in members:
            if member.is_dir:
                continue
            rel = normalize_member_path(member.name)
            if not rel:
                continue
            target = (root / rel).resolve()
            if not target.is_relative_to(root):
                msg = f"path traversal: member {member.name!r} resolves outside the workspace"
                raise PolicyViolationError(msg)

            if not member.is_regular:
                result.skipped.append((rel, "not a regular file"))
                continue
            segments = rel.split("/")
            if any(seg in policy.exclude_path_segments for seg in segments):
                result.skipped.append((rel, "excluded path"))
                continue
            extension = posixpath.splitext(segments[-1])[1].lower()
            if extension not in policy.include_extensions:
                result.skipped.append((rel, "extension not allowed"))
                continue
            if member.size > policy.max_file_bytes:
                result.skipped.append((rel, "file too large"))
                continue

            if len(accepted) + 1 > policy.max_files:
                msg = f"archive has more than {policy.max_files} accepted files"
                raise PolicyViolationError(msg)
            if total + member.size > policy.max_total_bytes:
                msg = (
                    f"archive exceeds {policy.max_total_bytes} bytes "
                    f"(at least {total + member.size} accepted)"
                )
                raise PolicyViolationError(msg)

            total += member.size
            entry = ArchiveEntry(relative_path=rel, size=member.size, extension=extension)
            accepted.append((member, entry))
            result.entries.append(entry)

        logger.info(
            "Archive accepted %d files (%d bytes), skipped %d",
            len(result.entries),
            total,
            len(result.skipped),
        )
        return result, accepted

    def _write(
        self,
        accepted: list[tuple[_Member, ArchiveEntry]],
        dest: Path,
        open_member: Callable[[_Member], IO[bytes]],
    ) -> None:
        written: list[Path] = []
        try:
            dest.mkdir(parents=True, exist_ok=True)
            for member, entry in accepted:
                target = dest / entry.relative_path
                target.parent.mkdir(parents=True, exist_ok=True)
                with open_member(member) as src, open(target, "wb") as out:
                    written.append(target)
                    _copy_bounded(src, out, member.size, entry.relative_path)
        except (zipfile.BadZipFile, tarfile.TarError, zlib.error, EOFError, RuntimeError) as e:
            _remove_all(written)
            msg = f"Corrupt archive member: {e}"
            raise ArchiveCorruptError(msg) from e
        except ArchiveCorruptError:
            _remove_all(written)
            raise
        except OSError as e:
            _remove_all(written)
            msg = f"Failed to write archive member: {e}"
            raise StorageIOError(msg) from e


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


@contextmanager
def _open_source(source: ArchiveSource) -> Iterator[IO[bytes]]:
    """Yield a seekable binary stream for any supported *source*."""
    if isinstance(source, bytes | bytearray):
        yield io.BytesIO(source)
        return
    if isinstance(source, str | Path):
        try:
            handle = open(source, "rb")  # noqa: SIM115
        except OSError as e:
            msg = f"Cannot open archive {source}: {e}"
            raise StorageIOError(msg) from e
        with handle:
            yield handle
        return
    if not source.seekable():
        yield io.BytesIO(source.read())
        return
    yield source


def _is_zip(stream: IO[bytes]) -> bool:
    pos = stream.tell()
    head = stream.read(4)
    stream.seek(pos)
    return head in _ZIP_MAGICS


def _zip_member(info: zipfile.ZipInfo) -> _Member:
    mode = info.external_attr >> 16
    is_link = stat.S_ISLNK(mode)
    return _Member(
        name=info.filename,
        size=info.file_size,
        is_dir=info.is_dir(),
        is_regular=not is_link,
        handle=info,
    )


def _tar_member(info: tarfile.TarInfo) -> _Member:
    return _Member(
        name=info.name,
        size=info.size,
        is_dir=info.isdir(),
        is_regular=info.isreg(),
        handle=info,
    )


def _copy_bounded(src: IO[bytes], out: IO[bytes], declared: int, name: str) -> None:
    """Copy *src* to *out*, failing if more than *declared* bytes arrive."""
    copied = 0
    while True:
        buf = src.read(_COPY_BUFSIZE)
        if not buf:
            break
        copied += len(buf)
        if copied > declared:
            msg = f"member {name!r} is larger than its header declares"
            raise ArchiveCorruptError(msg)
        out.write(buf)


def _remove_all(paths: list[Path]) -> None:
    for path in paths:
        path.unlink(missing_ok=True)


def iter_workspace_files(root: Path) -> Iterator[Path]:
    """Yield regular files under *root* in sorted, stable walk order."""
    for path in sorted(root.rglob("*"), key=lambda p: p.relative_to(root).as_posix()):
        if path.is_file() and not path.is_symlink():
            yield path

