"""
Expert Evaluator - Project Archive Extraction
Turns an uploaded project ZIP into a list of text files.

  • only *.zip uploads are accepted; checked on the filename before the
    bytes are ever handed to zipfile
  • directory entries and anything under node_modules/ or .git/ are skipped
  • every file is decoded as UTF-8 (undecodable bytes replaced)
  • size / entry-count limits guard against zip bombs
"""

import io
import logging
import os
import zipfile
from dataclasses import dataclass
from typing import List

logger = logging.getLogger(__name__)

MAX_ARCHIVE_MB    = int(os.getenv("MAX_ARCHIVE_MB", "50"))
MAX_ARCHIVE_FILES = int(os.getenv("MAX_ARCHIVE_FILES", "2000"))
PREVIEW_CHARS     = 500
SKIPPED_SEGMENTS  = ("node_modules", ".git")


class ArchiveError(ValueError):
    """Raised for any archive the evaluator refuses to process."""


@dataclass
class ExtractedFile:
    name: str
    path: str
    size: int          # decoded character length
    content: str
    preview: str


def validate_archive_name(filename: str) -> None:
    if not filename or not filename.lower().endswith(".zip"):
        raise ArchiveError("Please upload a ZIP file")


def _is_skipped(path: str) -> bool:
    return any(segment in path for segment in SKIPPED_SEGMENTS)


def extract_project(data: bytes) -> List[ExtractedFile]:
    """Extract text files from ZIP bytes. Raises ArchiveError."""
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as e:
        raise ArchiveError("Failed to extract ZIP file") from e

    with archive:
        entries = [info for info in archive.infolist()
                   if not info.is_dir() and not _is_skipped(info.filename)]

        if len(entries) > MAX_ARCHIVE_FILES:
            raise ArchiveError(f"Archive has too many files (max {MAX_ARCHIVE_FILES}).")

        total = sum(info.file_size for info in entries)
        if total > MAX_ARCHIVE_MB * 1024 * 1024:
            raise ArchiveError(f"Archive too large when extracted (max {MAX_ARCHIVE_MB} MB).")

        files = []
        for info in entries:
            try:
                raw = archive.read(info)
            except (zipfile.BadZipFile, RuntimeError) as e:
                # encrypted or corrupt member
                raise ArchiveError(f"Could not read '{info.filename}' from archive") from e
            content = raw.decode("utf-8", errors="replace")
            files.append(ExtractedFile(
                name=info.filename,
                path=info.filename,
                size=len(content),
                content=content,
                preview=content[:PREVIEW_CHARS],
            ))

    if not files:
        raise ArchiveError("Archive contains no project files.")

    logger.info("Extracted %d files from archive (%d bytes uncompressed).", len(files), total)
    return files


def build_source_digest(files, limit: int = 5) -> str:
    """
    Concatenate the first `limit` files as "File: <name>\\n<preview>" blocks.
    Accepts ExtractedFile objects or dicts with name/content keys.
    """
    blocks = []
    for f in list(files)[:limit]:
        if isinstance(f, dict):
            name, text = f.get("name", ""), f.get("content", "")
        else:
            name, text = f.name, f.preview
        blocks.append(f"File: {name}\n{text}")
    return "\n\n".join(blocks)
