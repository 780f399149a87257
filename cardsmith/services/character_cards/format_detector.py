"""
Card Format Detector
===================

Detects character card format from raw bytes. Magic bytes are authoritative;
filename and MIME type are only hints and are logged when they disagree.
"""

import json
import logging
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

from .metadata_handler import PNG_SIGNATURE
from .models import CardSpec
from .normalizer import SPEC_TOKENS
from .zip_container import ContainerKind, classify_container, find_zip_offset, open_zip

logger = logging.getLogger(__name__)


class CardFormat(str, Enum):
    """Supported character card containers."""
    PNG = "png"
    CHARX = "charx"
    VOXTA = "voxta"
    JSON = "json"
    UNKNOWN = "unknown"


class JsonDialect(str, Enum):
    """Structural dialect of a parsed card payload."""
    V2_WRAPPED = "v2_wrapped"
    V3 = "v3"
    LEGACY_UNWRAPPED = "legacy_unwrapped"
    HYBRID_ROOT = "hybrid_root"
    UNKNOWN = "unknown"


class DetectionResult(BaseModel):
    format: CardFormat
    zip_offset: Optional[int] = None
    payload: Optional[Any] = None  # parsed JSON when format is JSON


# Hint -> format the hint suggests
EXTENSION_HINTS = {
    ".png": CardFormat.PNG,
    ".apng": CardFormat.PNG,
    ".charx": CardFormat.CHARX,
    ".voxpkg": CardFormat.VOXTA,
    ".json": CardFormat.JSON,
}

MIME_HINTS = {
    "image/png": CardFormat.PNG,
    "application/json": CardFormat.JSON,
    "application/zip": None,  # either container
}


class FormatDetector:
    """Detect character card format from file contents."""

    @classmethod
    def detect(
        cls,
        data: bytes,
        filename: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> DetectionResult:
        """
        Detect the container format of a card file.

        Args:
            data: Raw file bytes
            filename: Original filename (advisory)
            mime_type: Declared MIME type (advisory)

        Returns:
            DetectionResult; UNKNOWN when nothing matches

        Raises:
            ContainerShapeUnknownError: ZIP is neither CHARX nor Voxta
            CorruptZipError: ZIP signature present but archive unreadable
        """
        result = cls._sniff(data)
        cls._check_hints(result.format, filename, mime_type)
        logger.debug(f"Detected card format: {result.format.value}")
        return result

    @classmethod
    def _sniff(cls, data: bytes) -> DetectionResult:
        # PNG first: image data can contain the ZIP signature by chance
        if data.startswith(PNG_SIGNATURE):
            return DetectionResult(format=CardFormat.PNG)

        offset = find_zip_offset(data)
        if offset >= 0:
            with open_zip(data) as archive:
                names = archive.namelist()
            kind = classify_container(names)
            card_format = CardFormat.CHARX if kind == ContainerKind.CHARX else CardFormat.VOXTA
            return DetectionResult(format=card_format, zip_offset=offset)

        payload = cls._parse_json(data)
        if payload is not None:
            return DetectionResult(format=CardFormat.JSON, payload=payload)

        return DetectionResult(format=CardFormat.UNKNOWN)

    @staticmethod
    def _parse_json(data: bytes) -> Optional[Any]:
        try:
            return json.loads(data.decode("utf-8-sig"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None

    @staticmethod
    def _check_hints(detected: CardFormat, filename: Optional[str], mime_type: Optional[str]) -> None:
        if filename:
            lowered = filename.lower()
            for suffix, hinted in EXTENSION_HINTS.items():
                if lowered.endswith(suffix) and hinted != detected:
                    logger.warning(
                        f"Filename '{filename}' suggests {hinted.value} but content is {detected.value}"
                    )
                    break
        if mime_type:
            hinted = MIME_HINTS.get(mime_type.split(";")[0].strip().lower(), detected)
            zip_formats = (CardFormat.CHARX, CardFormat.VOXTA)
            if hinted is None and detected not in zip_formats:
                logger.warning(f"MIME type '{mime_type}' suggests a ZIP but content is {detected.value}")
            elif hinted is not None and hinted != detected:
                logger.warning(
                    f"MIME type '{mime_type}' suggests {hinted.value} but content is {detected.value}"
                )

    @staticmethod
    def classify_json(payload: Any) -> JsonDialect:
        """
        Classify a parsed payload's dialect without normalizing it.

        Wrapped payloads are V3 when their spec (or spec_version) says so,
        otherwise V2_WRAPPED.
        """
        if not isinstance(payload, dict):
            return JsonDialect.UNKNOWN

        if isinstance(payload.get("data"), dict):
            spec = str(payload.get("spec") or "").strip().lower()
            version = str(payload.get("spec_version") or "").strip()
            if SPEC_TOKENS.get(spec) == CardSpec.V3:
                return JsonDialect.V3
            if not spec and version.startswith("3"):
                return JsonDialect.V3
            return JsonDialect.V2_WRAPPED

        if "name" in payload:
            if "spec" in payload:
                return JsonDialect.HYBRID_ROOT
            return JsonDialect.LEGACY_UNWRAPPED

        return JsonDialect.UNKNOWN
