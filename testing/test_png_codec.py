"""
Tests for PNG card metadata.

Tests cover:
- Reading tEXt, zTXt and iTXt card chunks
- Keyword priority
- Writing a single chara chunk idempotently
- Preserving unrelated chunks
- Corrupt and card-less images
- Replacing undecodable card chunks
- Non-PNG base images
"""

import base64
import io
import json

import pytest
from PIL import Image

from cardsmith.services.character_cards.errors import CorruptPNGError, NoEmbeddedCardDataError
from cardsmith.services.character_cards.metadata_handler import (
    PNG_SIGNATURE,
    PNGMetadataHandler,
    TEXT_CHUNK_TYPES,
    build_chunk,
    decode_text_chunk,
    parse_chunks,
)
from cardsmith.services.character_cards.models import CardSpec


def encode(payload):
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def card_keywords(png_data):
    keywords = []
    for chunk in parse_chunks(png_data):
        if chunk.type in TEXT_CHUNK_TYPES:
            decoded = decode_text_chunk(chunk)
            if decoded and decoded[0] in PNGMetadataHandler.CARD_KEYWORDS:
                keywords.append(decoded[0])
    return keywords


class TestReadCard:
    """Extracting cards from PNG text chunks."""

    def test_read_chara_text_chunk(self, png_factory, wyvern_payload):
        """A base64 chara tEXt chunk is read and normalized."""
        png = png_factory(text={"chara": encode(wyvern_payload)})
        normalized = PNGMetadataHandler.read_card(png)
        assert normalized.card.name == "Amanda"

    def test_read_ccv3_only(self, png_factory, v3_payload):
        """A ccv3 chunk alone is enough."""
        png = png_factory(text={"ccv3": encode(v3_payload)})
        normalized = PNGMetadataHandler.read_card(png)
        assert normalized.card.name == "Beep Boop"
        assert normalized.card.spec == CardSpec.V3

    def test_chara_wins_over_ccv3(self, png_factory, wyvern_payload, v3_payload):
        """When both keywords exist, chara is preferred."""
        png = png_factory(text={"ccv3": encode(v3_payload), "chara": encode(wyvern_payload)})
        assert PNGMetadataHandler.read_card(png).card.name == "Amanda"

    def test_undecodable_chara_falls_through(self, png_factory, v3_payload):
        """A broken chara chunk does not hide a valid ccv3 chunk."""
        png = png_factory(text={"chara": "%%% not a card %%%", "ccv3": encode(v3_payload)})
        assert PNGMetadataHandler.read_card(png).card.name == "Beep Boop"

    def test_ztxt_chunk(self, png_factory, wyvern_payload):
        """Compressed zTXt chunks are decoded."""
        png = png_factory(ztxt={"chara": encode(wyvern_payload)})
        assert PNGMetadataHandler.read_card(png).card.name == "Amanda"

    def test_itxt_chunk(self, png_factory, v3_payload):
        """International iTXt chunks are decoded."""
        png = png_factory(itxt={"chara": encode(v3_payload)})
        assert PNGMetadataHandler.read_card(png).card.name == "Beep Boop"

    def test_bare_json_chunk(self, png_factory):
        """Chunks holding JSON without base64 are accepted."""
        png = png_factory(text={"chara": json.dumps({"name": "Plain", "description": "d"})})
        assert PNGMetadataHandler.read_card(png).card.name == "Plain"

    def test_target_spec(self, png_factory, wyvern_payload):
        """Cards can be read straight into a target dialect."""
        png = png_factory(text={"chara": encode(wyvern_payload)})
        card = PNGMetadataHandler.read_card(png, target_spec="v3").card
        assert card.spec == CardSpec.V3

    def test_plain_image_returns_none(self, png_factory):
        """An image without card chunks is not an error for read_card."""
        png = png_factory(text={"Comment": "just a picture"})
        assert PNGMetadataHandler.read_card(png) is None

    def test_plain_image_extract_raises(self, png_factory):
        """extract_payload reports the missing card explicitly."""
        with pytest.raises(NoEmbeddedCardDataError):
            PNGMetadataHandler.extract_payload(png_factory())


class TestCorruptPng:
    """Malformed chunk streams."""

    def test_bad_signature(self):
        """Non-PNG bytes are rejected."""
        with pytest.raises(CorruptPNGError):
            parse_chunks(b"GIF89a not a png")

    def test_truncated(self, png_factory):
        """A chunk running past the end of the file is rejected."""
        png = png_factory()
        with pytest.raises(CorruptPNGError):
            PNGMetadataHandler.read_card(png[:40])

    def test_missing_iend(self, png_factory):
        """A stream without IEND is rejected."""
        png = png_factory()
        with pytest.raises(CorruptPNGError):
            parse_chunks(png[:-12])


class TestWriteCard:
    """Embedding cards into PNGs."""

    def test_write_then_read(self, png_factory, v2_card):
        """A written card reads back equal."""
        png = PNGMetadataHandler.write_card(png_factory(), v2_card)
        assert PNGMetadataHandler.read_card(png).card == v2_card

    def test_write_v3(self, png_factory, v3_card):
        """v3 cards are embedded in the v3 dialect under chara."""
        png = PNGMetadataHandler.write_card(png_factory(), v3_card, CardSpec.V3)
        payload = PNGMetadataHandler.extract_payload(png)
        assert payload["spec"] == "chara_card_v3"
        assert card_keywords(png) == ["chara"]

    def test_single_card_chunk(self, png_factory, v2_card, v3_payload):
        """Existing card chunks of every keyword are replaced by one chara chunk."""
        base = png_factory(text={"chara": "old", "ccv3": encode(v3_payload)}, itxt={"chara_card_v3": "older"})
        png = PNGMetadataHandler.write_card(base, v2_card)
        assert card_keywords(png) == ["chara"]
        assert PNGMetadataHandler.read_card(png).card.name == "Amanda"

    def test_undecodable_card_chunk_removed(self, png_factory, v2_card):
        """A card chunk with a corrupt body is still replaced."""
        chunks = parse_chunks(png_factory())
        broken = build_chunk(b"zTXt", b"chara\x00\x00not-zlib-data")
        base = PNG_SIGNATURE + b"".join(c.raw for c in chunks[:-1]) + broken + chunks[-1].raw

        png = PNGMetadataHandler.write_card(base, v2_card)
        raw_keywords = [
            chunk.data.partition(b"\x00")[0]
            for chunk in parse_chunks(png)
            if chunk.type in TEXT_CHUNK_TYPES
        ]
        assert raw_keywords == [b"chara"]
        assert PNGMetadataHandler.read_card(png).card.name == "Amanda"

    def test_repeated_writes_keep_one_chunk(self, png_factory, v2_card, v3_card):
        """Any number of rewrites leaves exactly one card chunk."""
        png = png_factory(ztxt={"chara": "stale"})
        for card in (v2_card, v3_card, v2_card, v3_card):
            png = PNGMetadataHandler.write_card(png, card)
        assert card_keywords(png) == ["chara"]

    def test_idempotent(self, png_factory, v2_card):
        """Writing the same card twice gives identical bytes."""
        once = PNGMetadataHandler.write_card(png_factory(), v2_card)
        twice = PNGMetadataHandler.write_card(once, v2_card)
        assert once == twice

    def test_other_chunks_preserved(self, png_factory, v2_card):
        """Unrelated chunks are copied byte for byte and in order."""
        base = png_factory(text={"Comment": "keep me", "Author": "someone"})
        png = PNGMetadataHandler.write_card(base, v2_card)

        def unrelated(data):
            result = []
            for chunk in parse_chunks(data):
                decoded = decode_text_chunk(chunk) if chunk.type in TEXT_CHUNK_TYPES else None
                if decoded and decoded[0] in PNGMetadataHandler.CARD_KEYWORDS:
                    continue
                result.append(chunk.raw)
            return result

        assert unrelated(png) == unrelated(base)

    def test_card_chunk_before_iend(self, png_factory, v2_card):
        """The card chunk is the last chunk before IEND."""
        png = PNGMetadataHandler.write_card(png_factory(), v2_card)
        chunks = parse_chunks(png)
        assert chunks[-1].type == b"IEND"
        assert chunks[-2].type == b"tEXt"
        assert decode_text_chunk(chunks[-2])[0] == "chara"

    def test_jpeg_base_converted(self, jpeg_bytes, v2_card):
        """JPEG base images are converted to PNG."""
        png = PNGMetadataHandler.write_card(jpeg_bytes, v2_card)
        assert Image.open(io.BytesIO(png)).format == "PNG"
        assert PNGMetadataHandler.image_size(png) == (16, 16)
        assert PNGMetadataHandler.read_card(png).card.name == "Amanda"

    def test_blank_base(self, v2_card):
        """Without a base image a 512x512 carrier is created."""
        png = PNGMetadataHandler.write_card(None, v2_card)
        assert PNGMetadataHandler.image_size(png) == (512, 512)

    def test_unreadable_base(self, v2_card):
        """Undecodable base images raise CorruptPNGError."""
        with pytest.raises(CorruptPNGError):
            PNGMetadataHandler.write_card(b"definitely not an image", v2_card)

    def test_non_ascii_text(self, png_factory, v2_card):
        """Non-ASCII card text survives the base64 chunk."""
        card = v2_card.model_copy(update={"name": "Amélie ✿"})
        png = PNGMetadataHandler.write_card(png_factory(), card)
        assert PNGMetadataHandler.read_card(png).card.name == "Amélie ✿"
