"""
Character Card Exporter
======================

Export canonical cards to JSON, PNG, CHARX or Voxta.
"""

import json
import logging
from enum import Enum
from io import BytesIO
from typing import List, Optional, Sequence

from PIL import Image, UnidentifiedImageError

from cardsmith.config.models import ConverterConfig

from .asset_fetcher import AssetFetcher
from .charx_codec import build_charx
from .errors import UnsupportedFormatError
from .metadata_handler import PNG_SIGNATURE, PNGMetadataHandler
from .models import AssetBlob, Card, CardExportResult, CardSpec, MAIN_ICON_NAME
from .serializers import serialize_card
from .voxta_codec import build_voxta

logger = logging.getLogger(__name__)


class ExportFormat(str, Enum):
    """Target formats for export."""
    JSON_V2 = "json_v2"
    JSON_V3 = "json_v3"
    PNG_V2 = "png_v2"
    PNG_V3 = "png_v3"
    CHARX = "charx"
    VOXTA = "voxta"


# format -> (media type, file extension)
EXPORT_MEDIA = {
    ExportFormat.JSON_V2: ("application/json", "json"),
    ExportFormat.JSON_V3: ("application/json", "json"),
    ExportFormat.PNG_V2: ("image/png", "png"),
    ExportFormat.PNG_V3: ("image/png", "png"),
    ExportFormat.CHARX: ("application/zip", "charx"),
    ExportFormat.VOXTA: ("application/zip", "voxpkg"),
}

FORMAT_SPECS = {
    ExportFormat.JSON_V2: CardSpec.V2,
    ExportFormat.JSON_V3: CardSpec.V3,
    ExportFormat.PNG_V2: CardSpec.V2,
    ExportFormat.PNG_V3: CardSpec.V3,
}


def image_extension(image: bytes) -> str:
    """File extension for image bytes, from their decoded format."""
    if image.startswith(PNG_SIGNATURE):
        return "png"
    try:
        detected = Image.open(BytesIO(image)).format or ""
    except (UnidentifiedImageError, OSError):
        return "bin"
    detected = detected.lower()
    return "jpg" if detected == "jpeg" else detected or "bin"


class CharacterCardExporter:
    """Export canonical cards to any supported format."""

    def __init__(self, config: Optional[ConverterConfig] = None, fetcher: Optional[AssetFetcher] = None):
        """
        Initialize exporter.

        Args:
            config: Converter configuration (defaults when omitted)
            fetcher: Remote asset fetcher for container exports; None keeps
                remote assets as references
        """
        self.config = config or ConverterConfig()
        self.fetcher = fetcher

    def export(
        self,
        card: Card,
        export_format: ExportFormat,
        image: Optional[bytes] = None,
        assets: Optional[Sequence[AssetBlob]] = None
    ) -> CardExportResult:
        """
        Export a card.

        Args:
            card: Canonical card
            export_format: Target format
            image: Carrier/avatar image (PNG, JPEG or WebP)
            assets: Binary asset payloads for container formats

        Returns:
            CardExportResult with the output bytes, media type, extension and warnings

        Raises:
            UnsupportedFormatError: unknown export format
            DanglingAssetReferenceError: CHARX card references missing payloads
            CorruptPNGError: carrier image cannot be decoded
        """
        try:
            export_format = ExportFormat(export_format)
        except ValueError as e:
            raise UnsupportedFormatError(f"Unsupported export format: {export_format}") from e

        logger.info(f"Exporting character card '{card.name}' as {export_format.value}")
        media_type, extension = EXPORT_MEDIA[export_format]
        warnings: List[str] = []
        blobs = list(assets or [])

        if export_format in (ExportFormat.JSON_V2, ExportFormat.JSON_V3):
            payload = serialize_card(card, FORMAT_SPECS[export_format])
            data = json.dumps(payload, ensure_ascii=False, indent=self.config.export.json_indent).encode("utf-8")

        elif export_format in (ExportFormat.PNG_V2, ExportFormat.PNG_V3):
            base_image = image
            if base_image is None:
                main = next((blob for blob in blobs if blob.is_main), None)
                base_image = main.data if main else None
            if base_image is None:
                warnings.append("No image supplied; embedded the card in a blank PNG")
            data = PNGMetadataHandler.write_card(base_image, card, FORMAT_SPECS[export_format])

        elif export_format == ExportFormat.CHARX:
            built = build_charx(
                card,
                self._with_image(blobs, image),
                fetcher=self.fetcher,
                compression_level=self.config.export.zip_compression_level,
                json_indent=self.config.export.json_indent,
            )
            data = built.data
            warnings.extend(built.warnings)

        else:
            built = build_voxta(
                card,
                self._with_image(blobs, image),
                fetcher=self.fetcher,
                config=self.config.voxta,
                compression_level=self.config.export.zip_compression_level,
                json_indent=self.config.export.json_indent,
            )
            data = built.data
            warnings.extend(built.warnings)

        logger.info(f"Successfully exported '{card.name}' ({len(data)} bytes)")
        return CardExportResult(
            data=data,
            format=export_format.value,
            media_type=media_type,
            extension=extension,
            warnings=warnings,
        )

    @staticmethod
    def _with_image(blobs: List[AssetBlob], image: Optional[bytes]) -> List[AssetBlob]:
        """An explicit image replaces any main-icon blob."""
        if image is None:
            return blobs
        kept = [blob for blob in blobs if not blob.is_main]
        kept.append(AssetBlob(
            type="icon",
            name=MAIN_ICON_NAME,
            ext=image_extension(image),
            data=image,
            is_main=True,
        ))
        return kept

    @staticmethod
    def suggested_filename(card: Card, result: CardExportResult) -> str:
        """Filesystem-safe output name such as ``Amanda.charx``."""
        safe = "".join(c for c in card.name if c not in '<>:"/\\|?*').strip() or "character"
        return f"{safe}.{result.extension}"
