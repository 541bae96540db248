"""ZIP archive extraction for legacy practice-management exports.

Exports routinely run to hundreds of megabytes, so each archive member is
streamed from the compressed stream straight to disk in fixed-size chunks.
Neither a whole member nor the whole archive is ever held in memory.
"""

from __future__ import annotations

import logging
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
IGNORED_PREFIXES: tuple[str, ...] = ("__MACOSX/",)
IGNORED_NAMES: tuple[str, ...] = (".DS_Store", "Thumbs.db")
EXTRACTION_MARKER = ".extraction-complete"


class ExtractionError(Exception):
    """Raised when an archive cannot be read or written out."""

    def __init__(self, archive_path: Path | str, message: str) -> None:
        super().__init__(f"Unable to extract {Path(archive_path).name}: {message}")
        self.archive_path = Path(archive_path)


@dataclass(frozen=True)
class ExtractedFile:
    """A file written to the working directory by the extractor."""

    relative_path: str
    absolute_path: Path
    size: int

    @property
    def name(self) -> str:
        return PurePosixPath(self.relative_path).name

    @property
    def parts(self) -> tuple[str, ...]:
        return PurePosixPath(self.relative_path).parts

    @property
    def suffix(self) -> str:
        return PurePosixPath(self.relative_path).suffix.lower()


def _safe_member_path(destination: Path, member_name: str) -> Path:
    """Resolve ``member_name`` under ``destination``, rejecting traversal."""

    normalized = PurePosixPath(member_name.replace("\\", "/"))
    if normalized.is_absolute() or ".." in normalized.parts:
        raise ValueError(f"unsafe member path '{member_name}'")
    return destination.joinpath(*normalized.parts)


def _is_ignored(member_name: str) -> bool:
    if member_name.startswith(IGNORED_PREFIXES):
        return True
    return PurePosixPath(member_name).name in IGNORED_NAMES


def _too_large_message(size: int, limit: int) -> str:
    return f"archive expands to {size} bytes, past the {limit} byte extraction limit"


def extract_archive(
    archive_path: Path | str,
    destination: Path | str,
    *,
    max_total_bytes: int | None = None,
) -> list[ExtractedFile]:
    """
    Stream every member of ``archive_path`` into ``destination``.

    Directory entries are created before the files that live in them, and
    parent directories are created on demand for archives that omit explicit
    directory entries. When ``max_total_bytes`` is set, both the sizes the
    archive declares and the bytes actually written are held to that total.

    Returns:
        list[ExtractedFile]: One entry per regular file, in archive order.

    Raises:
        ExtractionError: The archive is corrupt, uses an unsupported
            compression method, is encrypted, contains unsafe paths, expands
            past ``max_total_bytes``, or a file cannot be written.
    """

    archive_path = Path(archive_path)
    destination = Path(destination)
    extracted: list[ExtractedFile] = []

    try:
        destination.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(archive_path) as archive:
            members = archive.infolist()
            declared = sum(info.file_size for info in members if not info.is_dir())
            if max_total_bytes is not None and declared > max_total_bytes:
                raise ExtractionError(archive_path, _too_large_message(declared, max_total_bytes))
            written = 0
            for info in members:
                if info.is_dir() and not _is_ignored(info.filename):
                    _safe_member_path(destination, info.filename).mkdir(parents=True, exist_ok=True)

            for info in members:
                if info.is_dir() or _is_ignored(info.filename):
                    continue
                target = _safe_member_path(destination, info.filename)
                target.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(info) as source, target.open("wb") as sink:
                    while True:
                        chunk = source.read(CHUNK_SIZE)
                        if not chunk:
                            break
                        written += len(chunk)
                        if max_total_bytes is not None and written > max_total_bytes:
                            raise ExtractionError(archive_path, _too_large_message(written, max_total_bytes))
                        sink.write(chunk)
                relative = PurePosixPath(info.filename.replace("\\", "/")).as_posix()
                extracted.append(ExtractedFile(relative_path=relative, absolute_path=target, size=info.file_size))
    except (zipfile.BadZipFile, zlib.error, EOFError) as exc:
        raise ExtractionError(archive_path, f"corrupt archive ({exc})") from exc
    except NotImplementedError as exc:
        raise ExtractionError(archive_path, f"unsupported compression ({exc})") from exc
    except RuntimeError as exc:
        # zipfile raises RuntimeError for encrypted members without a password.
        raise ExtractionError(archive_path, str(exc)) from exc
    except ValueError as exc:
        raise ExtractionError(archive_path, str(exc)) from exc
    except OSError as exc:
        raise ExtractionError(archive_path, f"I/O failure ({exc})") from exc

    logger.info(
        "Extracted %s files from %s",
        len(extracted),
        archive_path.name,
        extra={"importer_archive": str(archive_path), "importer_files_extracted": len(extracted)},
    )
    return extracted


def scan_extracted(destination: Path | str) -> list[ExtractedFile]:
    """Rebuild the file list of an already-extracted working directory."""

    destination = Path(destination)
    extracted: list[ExtractedFile] = []
    for path in sorted(destination.rglob("*")):
        if not path.is_file():
            continue
        relative = path.relative_to(destination).as_posix()
        if _is_ignored(relative) or path.name == EXTRACTION_MARKER:
            continue
        extracted.append(ExtractedFile(relative_path=relative, absolute_path=path, size=path.stat().st_size))
    return extracted


def ensure_extracted(
    archive_path: Path | str,
    destination: Path | str,
    *,
    max_total_bytes: int | None = None,
) -> list[ExtractedFile]:
    """
    Extract ``archive_path`` unless ``destination`` already holds a complete extraction.

    Preview and commit share one working directory per upload; a marker file
    written after a successful extraction lets commit skip the second pass.
    """

    destination = Path(destination)
    marker = destination / EXTRACTION_MARKER
    if marker.exists():
        return scan_extracted(destination)
    extracted = extract_archive(archive_path, destination, max_total_bytes=max_total_bytes)
    try:
        marker.touch()
    except OSError as exc:
        raise ExtractionError(archive_path, f"I/O failure ({exc})") from exc
    return extracted
