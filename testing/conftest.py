"""Shared fixtures for the character card tests."""

import copy
import io
import zipfile

import pytest
from PIL import Image, PngImagePlugin

from cardsmith.services.character_cards.models import AssetBlob
from cardsmith.services.character_cards.normalizer import normalize_card


WYVERN_PAYLOAD = {
    # Root copies written by Wyvern/SillyTavern; data is authoritative
    "name": "Amanda (root copy)",
    "description": "stale root description",
    "personality": "stale",
    "first_mes": "stale greeting",
    "avatar": "none",
    "chat": "Amanda - 2024-01-01",
    "create_date": "2024-01-01",
    "talkativeness": "0.5",
    "fav": False,
    "spec": "chara_card_v2",
    "spec_version": "2.0",
    "data": {
        "name": "Amanda",
        "description": "{{char}} is a cheerful librarian who helps {{user}}.",
        "personality": "kind, curious",
        "scenario": "A quiet library at dusk.",
        "first_mes": "Welcome, {{user}}! Looking for anything in particular?",
        "mes_example": "<START>\n{{user}}: Hi\n{{char}}: Hello there!",
        "creator_notes": "Test card",
        "system_prompt": "You are {{char}}.",
        "post_history_instructions": "Stay in character.",
        "alternate_greetings": ["Oh! A visitor.", "Back again, {{user}}?"],
        "tags": ["librarian", "wholesome"],
        "creator": "tester",
        "character_version": "1.2",
        "extensions": {
            "talkativeness": "0.5",
            "fav": False,
            "world": "Library",
            "depth_prompt": {"prompt": "Amanda whispers.", "depth": 4, "role": "system"},
            "custom_vendor": {"nested": {"a": [1, 2, {"b": None}]}, "flag": True},
            "chub": {"id": 12345, "full_path": "tester/amanda"},
        },
        "character_book": {
            "name": "Library lore",
            "extensions": {},
            "entries": [
                {
                    "keys": ["archive"],
                    "content": "The archive is in the basement.",
                    "extensions": {"position": 0},
                    "enabled": True,
                    "insertion_order": 100,
                    "priority": 10,
                    "id": 0,
                    "position": "before_char",
                },
                {
                    "keys": ["curfew"],
                    "content": "The library closes at midnight.",
                    "extensions": {},
                    "enabled": True,
                    "insertion_order": 50,
                    "priority": 20,
                    "id": 1,
                    "selective": True,
                    "secondary_keys": ["night"],
                    "selective_logic": "AND",
                },
            ],
        },
    },
}

V3_PAYLOAD = {
    "spec": "chara_card_v3",
    "spec_version": "3.0",
    "data": {
        "name": "Beep Boop",
        "description": "A small robot who says {{user}}'s name a lot.",
        "personality": "Bubbly",
        "scenario": "A workshop.",
        "first_mes": "Beep! Hello {{user}}!",
        "mes_example": "",
        "creator": "maker",
        "character_version": "3",
        "tags": ["robot"],
        "alternate_greetings": [],
        "group_only_greetings": ["Beep to everyone!"],
        "nickname": "Beepy",
        "creation_date": 1700000000,
        "modification_date": 1700000500,
        "assets": [
            {"type": "icon", "uri": "ccdefault:", "name": "main", "ext": "png"},
        ],
        "character_book": {
            "entries": [
                {"keys": ["oil"], "content": "Beep Boop loves oil.", "priority": 5, "insertion_order": 1},
                {"keys": ["rust"], "content": "Beep Boop fears rust.", "priority": 50, "insertion_order": 2},
                {"keys": ["bolt"], "content": "Bolts are snacks.", "priority": 50, "insertion_order": 0},
            ],
        },
        "extensions": {"risuai": {"utilityBot": False}, "vendor_x": {"keep": ["me", 1]}},
    },
}


@pytest.fixture
def wyvern_payload():
    return copy.deepcopy(WYVERN_PAYLOAD)


@pytest.fixture
def v3_payload():
    return copy.deepcopy(V3_PAYLOAD)


@pytest.fixture
def v2_card():
    return normalize_card(copy.deepcopy(WYVERN_PAYLOAD)).card


@pytest.fixture
def v3_card():
    return normalize_card(copy.deepcopy(V3_PAYLOAD)).card


@pytest.fixture
def png_factory():
    """Build small PNGs, optionally with text/zTXt/iTXt chunks."""

    def make(color=(200, 40, 40), size=(8, 8), text=None, ztxt=None, itxt=None):
        image = Image.new("RGB", size, color)
        info = PngImagePlugin.PngInfo()
        for key, value in (text or {}).items():
            info.add_text(key, value)
        for key, value in (ztxt or {}).items():
            info.add_text(key, value, zip=True)
        for key, value in (itxt or {}).items():
            info.add_itxt(key, value)
        output = io.BytesIO()
        image.save(output, format="PNG", pnginfo=info)
        return output.getvalue()

    return make


@pytest.fixture
def jpeg_bytes():
    image = Image.new("RGB", (16, 16), (10, 120, 200))
    output = io.BytesIO()
    image.save(output, format="JPEG")
    return output.getvalue()


@pytest.fixture
def zip_factory():
    """Build ZIP archives from {path: bytes}, optionally behind an SFX stub."""

    def make(entries, prefix=b""):
        output = io.BytesIO()
        with zipfile.ZipFile(output, "w", zipfile.ZIP_DEFLATED) as archive:
            for path, data in entries.items():
                archive.writestr(path, data)
        return prefix + output.getvalue()

    return make


@pytest.fixture
def asset_blobs(png_factory, jpeg_bytes):
    """Main icon, one emotion and one background payload."""
    return [
        AssetBlob(type="icon", name="main", ext="png", data=png_factory(color=(1, 2, 3)), is_main=True),
        AssetBlob(type="emotion", name="happy", ext="png", data=png_factory(color=(250, 250, 0))),
        AssetBlob(type="background", name="room", ext="jpg", data=jpeg_bytes),
    ]
