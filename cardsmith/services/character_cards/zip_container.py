"""
ZIP Container Utilities
======================

Shared ZIP reading/writing for CHARX and Voxta packages.

Archives may carry a self-extracting stub in front of the first local file
header; readers locate the ``PK\\x03\\x04`` signature and start there.
Written archives are deterministic: fixed timestamps, insertion order kept.
"""

import io
import logging
import re
import zipfile
import zlib
from enum import Enum
from typing import Dict, Iterable, List, Optional

from .errors import ContainerShapeUnknownError, CorruptZipError

logger = logging.getLogger(__name__)

ZIP_SIGNATURE = b"PK\x03\x04"

# Earliest timestamp ZIP can represent
FIXED_DATE_TIME = (1980, 1, 1, 0, 0, 0)

CHARX_CARD_ENTRY = "card.json"
VOXTA_CHARACTER_DIR = re.compile(r"^Characters/([^/]+)/")


class ContainerKind(str, Enum):
    """Recognized ZIP package layouts."""
    CHARX = "charx"
    VOXTA = "voxta"


def find_zip_offset(data: bytes) -> int:
    """Offset of the first local file header, or -1 when absent."""
    return data.find(ZIP_SIGNATURE)


def open_zip(data: bytes) -> zipfile.ZipFile:
    """
    Open an archive, skipping any SFX prefix.

    Raises:
        CorruptZipError: no signature or unreadable central directory
    """
    offset = find_zip_offset(data)
    if offset < 0:
        raise CorruptZipError("No ZIP local file header signature found")
    if offset > 0:
        logger.info(f"ZIP signature found at offset {offset} (SFX archive)")

    try:
        return zipfile.ZipFile(io.BytesIO(data[offset:]))
    except zipfile.BadZipFile as e:
        if offset == 0:
            raise CorruptZipError(f"Invalid ZIP archive: {e}") from e
        logger.debug(f"Sliced archive unreadable ({e}); retrying on the full buffer")

    # Stub-aware writers keep central directory offsets absolute
    try:
        return zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as e:
        raise CorruptZipError(f"Invalid ZIP archive: {e}") from e


def read_entries(data: bytes) -> Dict[str, bytes]:
    """Read every file entry into memory, in archive order."""
    with open_zip(data) as archive:
        entries = {}
        for info in archive.infolist():
            if info.is_dir():
                continue
            # Bad deflate data, unsupported methods and encryption all surface here
            try:
                entries[info.filename] = archive.read(info)
            except (zipfile.BadZipFile, zlib.error, NotImplementedError, RuntimeError, OSError, EOFError) as e:
                raise CorruptZipError(f"Failed to read '{info.filename}': {e}") from e
        return entries


def classify_container(names: Iterable[str]) -> ContainerKind:
    """
    Decide the package layout from entry names.

    Raises:
        ContainerShapeUnknownError: neither CHARX nor Voxta
    """
    names = list(names)
    if CHARX_CARD_ENTRY in names:
        return ContainerKind.CHARX
    if any(VOXTA_CHARACTER_DIR.match(name) for name in names):
        return ContainerKind.VOXTA
    raise ContainerShapeUnknownError(
        f"ZIP has neither a root {CHARX_CARD_ENTRY} nor a Characters/ directory "
        f"({len(names)} entries)"
    )


def voxta_character_ids(names: Iterable[str]) -> List[str]:
    """Character directory ids in first-seen order."""
    ids: List[str] = []
    for name in names:
        match = VOXTA_CHARACTER_DIR.match(name)
        if match and match.group(1) not in ids:
            ids.append(match.group(1))
    return ids


class ZipWriter:
    """Build an archive in memory with deterministic entry metadata."""

    def __init__(self, compression_level: Optional[int] = 6):
        self._buffer = io.BytesIO()
        self._level = compression_level
        self._archive = zipfile.ZipFile(
            self._buffer,
            mode="w",
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=compression_level,
        )
        self.paths: List[str] = []

    def __contains__(self, path: str) -> bool:
        return path in self.paths

    def add(self, path: str, data: bytes) -> None:
        if path in self.paths:
            raise ValueError(f"Duplicate archive entry: {path}")
        info = zipfile.ZipInfo(path, date_time=FIXED_DATE_TIME)
        info.compress_type = zipfile.ZIP_DEFLATED
        info.external_attr = 0o644 << 16
        self._archive.writestr(info, data, compresslevel=self._level)
        self.paths.append(path)

    def finish(self) -> bytes:
        self._archive.close()
        return self._buffer.getvalue()
