"""
Character Card Importer
======================

Import character cards from any supported container: PNG, CHARX, Voxta
package or bare JSON.
"""

import logging
from pathlib import Path
from typing import Optional, Union

from .charx_codec import read_charx
from .errors import UnsupportedFormatError
from .format_detector import CardFormat, FormatDetector
from .metadata_handler import PNGMetadataHandler
from .models import AssetBlob, CardImportResult, MAIN_ICON_NAME
from .normalizer import normalize_card
from .validation import validate_card_payload
from .voxta_codec import read_voxta

logger = logging.getLogger(__name__)


class CharacterCardImporter:
    """Import character cards from raw bytes."""

    def import_bytes(
        self,
        data: bytes,
        filename: Optional[str] = None,
        mime_type: Optional[str] = None
    ) -> CardImportResult:
        """
        Import a character card.

        Args:
            data: File contents
            filename: Original filename (advisory)
            mime_type: Declared MIME type (advisory)

        Returns:
            CardImportResult with the canonical card, its binary assets, the
            carrier image (if any), the detected format, warnings and the
            schema check of the raw payload

        Raises:
            UnsupportedFormatError: bytes match no supported format
            NoEmbeddedCardDataError: PNG without card data
            CardError: any other fatal parse failure
        """
        detection = FormatDetector.detect(data, filename=filename, mime_type=mime_type)
        logger.info(f"Importing character card ({detection.format.value})")

        if detection.format == CardFormat.PNG:
            payload = PNGMetadataHandler.extract_payload(data)
            normalized = normalize_card(payload)
            carrier = AssetBlob(type="icon", name=MAIN_ICON_NAME, ext="png", data=data, is_main=True)
            result = CardImportResult(
                card=normalized.card,
                format=detection.format.value,
                assets=[carrier],
                image=data,
                warnings=normalized.warnings,
                validation=validate_card_payload(payload),
            )

        elif detection.format in (CardFormat.CHARX, CardFormat.VOXTA):
            if detection.format == CardFormat.CHARX:
                container = read_charx(data)
            else:
                container = read_voxta(data)
            main = next((blob for blob in container.assets if blob.is_main), None)
            result = CardImportResult(
                card=container.card,
                format=detection.format.value,
                assets=container.assets,
                image=main.data if main else None,
                warnings=container.warnings,
            )
            if container.payload is not None:
                result.validation = validate_card_payload(container.payload)

        elif detection.format == CardFormat.JSON:
            normalized = normalize_card(detection.payload)
            result = CardImportResult(
                card=normalized.card,
                format=detection.format.value,
                warnings=normalized.warnings,
                validation=validate_card_payload(detection.payload),
            )

        else:
            raise UnsupportedFormatError(
                f"Unrecognized card file{f' {filename!r}' if filename else ''}: "
                "expected PNG, CHARX, Voxta package or JSON"
            )

        if not result.card.name:
            result.warnings.append("Character card has no name")

        logger.info(
            f"Successfully imported character card: {result.card.name or '(unnamed)'} "
            f"({len(result.warnings)} warning(s))"
        )
        return result

    def import_file(self, path: Union[str, Path]) -> CardImportResult:
        """Read a file from disk and import it, using its name as a hint."""
        path = Path(path)
        return self.import_bytes(path.read_bytes(), filename=path.name)
