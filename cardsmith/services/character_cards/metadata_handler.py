"""
PNG Metadata Handler
===================

Handles reading and writing text chunks in PNG images for character card metadata.

The chunk stream is walked directly so that writing a card only touches the
card chunks: every other chunk is copied byte for byte. Pillow is used only
to rasterize non-PNG base images and to create a blank carrier image.
"""

import base64
import binascii
import json
import logging
import struct
import zlib
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple, Union

from PIL import Image, UnidentifiedImageError

from .errors import CorruptPNGError, NoEmbeddedCardDataError
from .models import Card, CardSpec, NormalizedCard
from .normalizer import normalize_card
from .serializers import serialize_card

logger = logging.getLogger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

TEXT_CHUNK_TYPES = (b"tEXt", b"zTXt", b"iTXt")


@dataclass
class PngChunk:
    """One chunk of the PNG stream; ``raw`` includes length, type and CRC."""
    type: bytes
    data: bytes
    raw: bytes


def parse_chunks(png_data: bytes) -> List[PngChunk]:
    """
    Split a PNG into its chunks, validating structure.

    CRCs are not verified; many card tools write them incorrectly.

    Raises:
        CorruptPNGError: bad signature, truncated chunk, IHDR not first or no IEND
    """
    if not png_data.startswith(PNG_SIGNATURE):
        raise CorruptPNGError("Missing PNG signature")

    chunks: List[PngChunk] = []
    offset = len(PNG_SIGNATURE)
    total = len(png_data)

    while offset < total:
        if offset + 8 > total:
            raise CorruptPNGError(f"Truncated chunk header at offset {offset}")
        length, chunk_type = struct.unpack(">I4s", png_data[offset:offset + 8])
        end = offset + 12 + length
        if end > total:
            raise CorruptPNGError(
                f"Chunk {chunk_type!r} at offset {offset} declares {length} bytes past end of file"
            )
        chunks.append(PngChunk(
            type=chunk_type,
            data=png_data[offset + 8:offset + 8 + length],
            raw=png_data[offset:end],
        ))
        offset = end
        if chunk_type == b"IEND":
            break

    if not chunks or chunks[0].type != b"IHDR":
        raise CorruptPNGError("First chunk is not IHDR")
    if chunks[-1].type != b"IEND":
        raise CorruptPNGError("Missing IEND chunk")
    return chunks


def build_chunk(chunk_type: bytes, data: bytes) -> bytes:
    crc = zlib.crc32(chunk_type + data) & 0xFFFFFFFF
    return struct.pack(">I", len(data)) + chunk_type + data + struct.pack(">I", crc)


def decode_text_chunk(chunk: PngChunk) -> Optional[Tuple[str, str]]:
    """
    Decode a tEXt/zTXt/iTXt chunk into (keyword, text).

    Returns None for malformed chunks.
    """
    keyword_raw, sep, rest = chunk.data.partition(b"\x00")
    if not sep:
        return None
    keyword = keyword_raw.decode("latin-1")

    try:
        if chunk.type == b"tEXt":
            return keyword, rest.decode("latin-1")

        if chunk.type == b"zTXt":
            # rest = compression method byte + zlib stream
            return keyword, zlib.decompress(rest[1:]).decode("latin-1")

        if chunk.type == b"iTXt":
            compressed, _method = rest[0], rest[1]
            _language, _, rest = rest[2:].partition(b"\x00")
            _translated, _, text = rest.partition(b"\x00")
            if compressed:
                text = zlib.decompress(text)
            return keyword, text.decode("utf-8")
    except (zlib.error, UnicodeDecodeError, IndexError) as e:
        logger.debug(f"Skipping malformed {chunk.type.decode('latin-1')} chunk '{keyword}': {e}")
    return None


class PNGMetadataHandler:
    """Handle PNG text chunk operations for character card metadata."""

    # Read priority; the first decodable match wins
    CARD_KEYWORDS = ("chara", "ccv3", "chara_card_v3")
    WRITE_KEYWORD = "chara"

    @staticmethod
    def read_text_chunks(png_data: bytes) -> Dict[str, str]:
        """
        All text chunks keyed by keyword (first occurrence wins).

        Raises:
            CorruptPNGError: malformed chunk stream
        """
        texts: Dict[str, str] = {}
        for chunk in parse_chunks(png_data):
            if chunk.type not in TEXT_CHUNK_TYPES:
                continue
            decoded = decode_text_chunk(chunk)
            if decoded and decoded[0] not in texts:
                texts[decoded[0]] = decoded[1]
        return texts

    @staticmethod
    def decode_card_text(text: str) -> Any:
        """
        Decode card chunk text: base64 of UTF-8 JSON, or bare JSON.

        Raises:
            ValueError: text is neither
        """
        stripped = text.strip()
        try:
            raw = base64.b64decode("".join(stripped.split()), validate=True)
            return json.loads(raw.decode("utf-8-sig"))
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError):
            pass
        # Some exporters skip the base64 step
        try:
            return json.loads(stripped)
        except json.JSONDecodeError as e:
            raise ValueError(f"not base64 or JSON: {e}") from e

    @classmethod
    def extract_payload(cls, png_data: bytes) -> Any:
        """
        Return the parsed card JSON embedded in the PNG.

        Raises:
            NoEmbeddedCardDataError: valid PNG without a decodable card chunk
            CorruptPNGError: malformed chunk stream
        """
        texts = cls.read_text_chunks(png_data)
        for keyword in cls.CARD_KEYWORDS:
            if keyword not in texts:
                continue
            try:
                payload = cls.decode_card_text(texts[keyword])
            except ValueError as e:
                logger.warning(f"Card chunk '{keyword}' could not be decoded: {e}")
                continue
            logger.debug(f"Found card data in '{keyword}' chunk")
            return payload

        raise NoEmbeddedCardDataError("PNG does not contain character card data")

    @classmethod
    def read_card(
        cls,
        png_data: bytes,
        target_spec: Optional[Union[CardSpec, str]] = None,
    ) -> Optional[NormalizedCard]:
        """
        Read and normalize the embedded card.

        Returns:
            NormalizedCard, or None when the PNG is a plain image

        Raises:
            CorruptPNGError: malformed chunk stream
            UnrecognizedCardShapeError: chunk JSON is not a card
        """
        try:
            payload = cls.extract_payload(png_data)
        except NoEmbeddedCardDataError:
            logger.info("No character card metadata found in PNG")
            return None
        return normalize_card(payload, target_spec=target_spec)

    @classmethod
    def write_text_chunk(cls, png_data: bytes, keyword: str, text: str, replace: Tuple[str, ...] = ()) -> bytes:
        """
        Embed a tEXt chunk, dropping existing text chunks with the same keyword.

        Args:
            png_data: Original PNG file data as bytes
            keyword: tEXt chunk keyword
            text: Latin-1 representable chunk text
            replace: Extra keywords whose chunks are removed too

        Returns:
            PNG data; all unrelated chunks are byte-identical to the input
        """
        removed = {keyword, *replace}
        chunks = parse_chunks(png_data)

        output = BytesIO()
        output.write(PNG_SIGNATURE)
        for chunk in chunks:
            if chunk.type == b"IEND":
                output.write(build_chunk(b"tEXt", keyword.encode("latin-1") + b"\x00" + text.encode("latin-1")))
            elif chunk.type in TEXT_CHUNK_TYPES:
                # The keyword is readable even when the body is not
                chunk_keyword = chunk.data.partition(b"\x00")[0].decode("latin-1")
                if chunk_keyword in removed:
                    logger.debug(f"Removing existing '{chunk_keyword}' {chunk.type.decode('latin-1')} chunk")
                    continue
            output.write(chunk.raw)
        return output.getvalue()

    @classmethod
    def write_card(
        cls,
        base_image: Optional[bytes],
        card: Card,
        target_spec: Optional[Union[CardSpec, str]] = None,
    ) -> bytes:
        """
        Embed a card into a PNG as a single ``chara`` tEXt chunk.

        Args:
            base_image: PNG/JPEG/WebP bytes, or None for a blank image
            card: Canonical card
            target_spec: Dialect to serialize; defaults to card.spec

        Returns:
            PNG file data with embedded metadata
        """
        png_data = cls.ensure_png(base_image)
        payload = serialize_card(card, target_spec)
        encoded = base64.b64encode(
            json.dumps(payload, ensure_ascii=False).encode("utf-8")
        ).decode("ascii")
        return cls.write_text_chunk(png_data, cls.WRITE_KEYWORD, encoded, replace=cls.CARD_KEYWORDS)

    @classmethod
    def ensure_png(cls, image_data: Optional[bytes]) -> bytes:
        """
        Return PNG bytes for any supported base image.

        Raises:
            CorruptPNGError: image data cannot be decoded
        """
        if image_data is None:
            return cls.create_blank_png()
        if image_data.startswith(PNG_SIGNATURE):
            return image_data

        try:
            image = Image.open(BytesIO(image_data))
            image.load()
        except (UnidentifiedImageError, OSError) as e:
            raise CorruptPNGError(f"Base image is not a readable image: {e}") from e

        logger.info(f"Converting {image.format or 'unknown'} base image to PNG")
        if image.mode not in ("RGB", "RGBA", "L", "LA", "P"):
            image = image.convert("RGBA")
        output = BytesIO()
        image.save(output, format="PNG")
        return output.getvalue()

    @staticmethod
    def create_blank_png(size: Tuple[int, int] = (512, 512)) -> bytes:
        """Create a simple blank PNG as fallback."""
        img = Image.new('RGB', size, color=(128, 128, 128))
        output = BytesIO()
        img.save(output, format='PNG')
        return output.getvalue()

    @staticmethod
    def image_size(png_data: bytes) -> Tuple[int, int]:
        """Width and height from the IHDR chunk."""
        ihdr = parse_chunks(png_data)[0]
        width, height = struct.unpack(">II", ihdr.data[:8])
        return width, height
