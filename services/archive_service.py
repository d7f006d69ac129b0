"""
Image archive indexing.

Builds a fresh in-memory index of the images inside a zip archive. The index
is rebuilt on every call; nothing is cached between invocations.
"""

import io
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Optional
import structlog

from exceptions import ArchiveError
from services.fuzzy_matcher import MatchCandidate
from utils.text_utils import canonicalize_filename

logger = structlog.get_logger(__name__)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif"}

# Resource-fork entries added by macOS archivers
_IGNORED_PREFIXES = ("__MACOSX/",)


@dataclass(frozen=True)
class ZipIndexEntry:
    """One image found inside an archive."""
    filename: str
    canonical_key: str
    size: int

    def as_candidate(self) -> MatchCandidate:
        return MatchCandidate(id=self.filename, canonical_key=self.canonical_key)


def _open(archive_bytes: bytes) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(archive_bytes))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError) as e:
        raise ArchiveError(
            "File is not a readable zip archive",
            details={"error": str(e), "size": len(archive_bytes)}
        ) from e


def _is_image_entry(info: zipfile.ZipInfo) -> bool:
    if info.is_dir():
        return False
    if info.filename.startswith(_IGNORED_PREFIXES):
        return False
    return PurePosixPath(info.filename).suffix.lower() in IMAGE_EXTENSIONS


def index_archive(archive_bytes: bytes) -> list[ZipIndexEntry]:
    """
    Index every image inside a zip archive.

    Directories and non-image entries are skipped. Entries keep their
    archive order. An archive without images yields an empty list.

    Args:
        archive_bytes: Raw zip content

    Returns:
        Index entries (filename = basename inside the archive)

    Raises:
        ArchiveError: If the bytes are not a valid zip archive
    """
    with _open(archive_bytes) as archive:
        entries = [
            ZipIndexEntry(
                filename=PurePosixPath(info.filename).name,
                canonical_key=canonicalize_filename(info.filename),
                size=info.file_size,
            )
            for info in archive.infolist()
            if _is_image_entry(info)
        ]

    logger.info(
        "archive_indexed",
        images=len(entries),
        archive_size=len(archive_bytes)
    )
    return entries


class ImageArchive:
    """
    An archive opened once for reading many images.

    Entries are looked up by basename; when two folders hold the same
    basename, the first one in archive order wins.

    Usage:
        with ImageArchive(archive_bytes) as archive:
            image = archive.read("napa.png")
    """

    def __init__(self, archive_bytes: bytes):
        self._zip = _open(archive_bytes)
        self._entries: dict[str, zipfile.ZipInfo] = {}
        for info in self._zip.infolist():
            if _is_image_entry(info):
                self._entries.setdefault(PurePosixPath(info.filename).name, info)

    def __enter__(self) -> "ImageArchive":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self._zip.close()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, filename: str) -> bool:
        return filename in self._entries

    def read(self, filename: str) -> Optional[bytes]:
        """
        Read one image by the basename recorded in the index.

        Returns:
            Image bytes, or None if no entry has that basename

        Raises:
            ArchiveError: If the entry cannot be decompressed
        """
        info = self._entries.get(filename)
        if info is None:
            return None
        try:
            return self._zip.read(info)
        except (zipfile.BadZipFile, zlib.error, NotImplementedError) as e:
            raise ArchiveError(
                f"Archive entry {filename} is corrupt",
                details={"filename": filename, "error": str(e)}
            ) from e
