"""
Character Card System
====================

Detects, normalizes and converts character cards between dialects and containers.

Supports:
- CCv2 / CCv3 JSON (wrapped, legacy unwrapped and hybrid payloads)
- PNG images with embedded base64 card metadata
- CHARX packages
- Voxta packages
"""

from .card_exporter import CharacterCardExporter, ExportFormat
from .card_importer import CharacterCardImporter
from .charx_codec import build_charx, read_charx
from .errors import (
    AssetFetchError,
    CardError,
    ContainerShapeUnknownError,
    CorruptPNGError,
    CorruptZipError,
    DanglingAssetReferenceError,
    NoEmbeddedCardDataError,
    UnrecognizedCardShapeError,
    UnsupportedFormatError,
)
from .format_detector import CardFormat, FormatDetector, JsonDialect
from .metadata_handler import PNGMetadataHandler
from .macro_processor import MacroProcessor, process_card_macros
from .models import Card, CardSpec, CardValidationResult, NormalizedCard
from .normalizer import normalize_card
from .validation import validate_card_payload, validate_v2, validate_v3
from .serializers import convert_card, serialize_card
from .voxta_codec import build_voxta, read_voxta

__all__ = [
    'CharacterCardExporter',
    'CharacterCardImporter',
    'ExportFormat',
    'CardFormat',
    'FormatDetector',
    'JsonDialect',
    'PNGMetadataHandler',
    'MacroProcessor',
    'process_card_macros',
    'Card',
    'CardSpec',
    'NormalizedCard',
    'CardValidationResult',
    'normalize_card',
    'serialize_card',
    'convert_card',
    'validate_card_payload',
    'validate_v2',
    'validate_v3',
    'read_charx',
    'build_charx',
    'read_voxta',
    'build_voxta',
    'CardError',
    'UnrecognizedCardShapeError',
    'ContainerShapeUnknownError',
    'CorruptPNGError',
    'CorruptZipError',
    'NoEmbeddedCardDataError',
    'DanglingAssetReferenceError',
    'AssetFetchError',
    'UnsupportedFormatError',
]
