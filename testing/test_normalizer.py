"""
Tests for card normalization.

Tests cover:
- Payload shape classification (wrapped, legacy, hybrid, double-wrapped)
- Root-level duplicate handling
- Spec token resolution
- Timestamp, position and null coercion
- v3 backfill and v3_fields recovery
- Lorebook aliases and ordering
- Extension preservation and typed accessors
- Non-finite numbers
"""

import copy
import json
import math

import pytest

from cardsmith.services.character_cards.errors import UnrecognizedCardShapeError
from cardsmith.services.character_cards.extensions import CardExtensions, DepthPrompt
from cardsmith.services.character_cards.models import CardSpec
from cardsmith.services.character_cards.normalizer import (
    HybridRootShape,
    UnwrappedLegacyShape,
    WrappedShape,
    classify_shape,
    coerce_position,
    coerce_timestamp,
    normalize_card,
)


def wrap_v3(**fields):
    data = {"name": "T"}
    data.update(fields)
    return {"spec": "chara_card_v3", "spec_version": "3.0", "data": data}


class TestShapeClassification:
    """Structural matching of raw payloads."""

    def test_wrapped_payload(self, wyvern_payload):
        """A payload with a data object is wrapped."""
        shape = classify_shape(wyvern_payload)
        assert isinstance(shape, WrappedShape)
        assert shape.data["name"] == "Amanda"

    def test_unwrapped_legacy_payload(self):
        """Fields at the root without a spec are legacy."""
        shape = classify_shape({"name": "Old", "description": "d"})
        assert isinstance(shape, UnwrappedLegacyShape)

    def test_hybrid_root_payload(self):
        """A spec next to root fields with no data object is hybrid."""
        shape = classify_shape({"spec": "chara_card_v3", "name": "H"})
        assert isinstance(shape, HybridRootShape)

    def test_double_wrapped_payload_unwrapped_once_more(self):
        """A stored record around a wrapped card yields the inner card."""
        warnings = []
        payload = {
            "meta": {"saved": True},
            "data": {"spec": "chara_card_v2", "spec_version": "2.0", "data": {"name": "Inner"}},
        }
        shape = classify_shape(payload, warnings)
        assert isinstance(shape, WrappedShape)
        assert shape.data == {"name": "Inner"}
        assert any("wrapped twice" in w for w in warnings)

    def test_no_data_and_no_name_raises(self):
        """Payloads that look like nothing are rejected."""
        with pytest.raises(UnrecognizedCardShapeError):
            classify_shape({"description": "orphan"})

    @pytest.mark.parametrize("payload", [[], "card", 42, None])
    def test_non_object_raises(self, payload):
        """Only JSON objects can be cards."""
        with pytest.raises(UnrecognizedCardShapeError):
            normalize_card(payload)


class TestRootDuplicates:
    """Wyvern/SillyTavern root copies next to data."""

    def test_data_is_authoritative(self, wyvern_payload):
        """Root copies never override data fields."""
        card = normalize_card(wyvern_payload).card
        assert card.name == "Amanda"
        assert card.description.startswith("{{char}} is a cheerful librarian")
        assert card.first_mes.startswith("Welcome")

    def test_root_duplicates_are_silent(self, wyvern_payload):
        """Discarding root copies raises no warnings."""
        normalized = normalize_card(wyvern_payload)
        assert normalized.warnings == []

    def test_identical_root_copies(self, wyvern_payload):
        """Root copies equal to data are not mistaken for conflicts."""
        payload = copy.deepcopy(wyvern_payload)
        for field in ("name", "description", "personality", "first_mes"):
            payload[field] = payload["data"][field]
        normalized = normalize_card(payload)
        assert normalized.card.name == "Amanda"
        assert normalized.card.personality == "kind, curious"
        assert normalized.warnings == []

    def test_input_not_mutated(self, wyvern_payload):
        """Normalization never touches its input."""
        before = copy.deepcopy(wyvern_payload)
        normalize_card(wyvern_payload)
        assert wyvern_payload == before


class TestSpecResolution:
    """Mapping spec strings to a dialect."""

    @pytest.mark.parametrize("token,expected", [
        ("chara_card_v2", CardSpec.V2),
        ("chara_card_v3", CardSpec.V3),
        ("V3", CardSpec.V3),
        ("3.0", CardSpec.V3),
        ("ccv2", CardSpec.V2),
        (" chara_card_v2 ", CardSpec.V2),
    ])
    def test_spec_tokens(self, token, expected):
        """Known spellings resolve case- and whitespace-insensitively."""
        card = normalize_card({"spec": token, "data": {"name": "T"}}).card
        assert card.spec == expected

    def test_unknown_spec_falls_back_to_v2(self):
        """An unrecognized spec is read as v2 with a warning."""
        normalized = normalize_card({"spec": "chara_card_v9", "data": {"name": "T"}})
        assert normalized.card.spec == CardSpec.V2
        assert any("chara_card_v9" in w for w in normalized.warnings)

    def test_missing_spec_uses_spec_version(self):
        """Without a spec, a 3.x spec_version means v3."""
        card = normalize_card({"spec_version": "3.0", "data": {"name": "T"}}).card
        assert card.spec == CardSpec.V3

    def test_legacy_is_v2(self):
        """Unwrapped legacy cards are v2."""
        card = normalize_card({"name": "Old"}).card
        assert card.spec == CardSpec.V2

    def test_target_spec_overrides(self, wyvern_payload):
        """A forced target dialect wins over the payload's spec."""
        card = normalize_card(wyvern_payload, target_spec=CardSpec.V3).card
        assert card.spec == CardSpec.V3


class TestTimestamps:
    """Second/millisecond coercion."""

    def test_threshold_is_seconds(self):
        """The threshold value itself stays in seconds."""
        card = normalize_card(wrap_v3(creation_date=10_000_000_000)).card
        assert card.creation_date == 10_000_000_000

    def test_above_threshold_is_milliseconds(self):
        """One past the threshold is divided by 1000."""
        card = normalize_card(wrap_v3(creation_date=10_000_000_001)).card
        assert card.creation_date == 10_000_000

    def test_millisecond_timestamp(self):
        """Typical JavaScript timestamps become seconds."""
        card = normalize_card(wrap_v3(modification_date=1700000000123)).card
        assert card.modification_date == 1700000000

    def test_numeric_string(self):
        """Numeric strings are accepted."""
        card = normalize_card(wrap_v3(creation_date="1700000000")).card
        assert card.creation_date == 1700000000

    def test_garbage_dropped_with_warning(self):
        """Non-numeric values are dropped, not fatal."""
        warnings = []
        assert coerce_timestamp("yesterday", "creation_date", warnings) is None
        assert len(warnings) == 1

    def test_boolean_dropped(self):
        """Booleans are not timestamps."""
        warnings = []
        assert coerce_timestamp(True, "creation_date", warnings) is None
        assert warnings

    @pytest.mark.parametrize("raw", [math.inf, -math.inf, math.nan, "inf", "1e400", "nan"])
    def test_non_finite_dropped(self, raw):
        """Infinite and NaN values are dropped with a warning."""
        warnings = []
        assert coerce_timestamp(raw, "creation_date", warnings) is None
        assert len(warnings) == 1

    def test_json_infinity(self):
        """JSON Infinity does not abort normalization."""
        payload = json.loads('{"spec": "chara_card_v3", "data": {"name": "T", "creation_date": Infinity}}')
        normalized = normalize_card(payload)
        assert normalized.card.creation_date is None
        assert any("creation_date" in w for w in normalized.warnings)


class TestPositions:
    """Lorebook entry position coercion."""

    @pytest.mark.parametrize("raw,expected", [
        (0, "before_char"),
        (1, "after_char"),
        (4, "after_char"),
        ("before_char", "before_char"),
        ("after_char", "after_char"),
        (None, "after_char"),
    ])
    def test_known_positions(self, raw, expected):
        """Numeric and string positions map without warnings."""
        warnings = []
        assert coerce_position(raw, "entry.position", warnings) == expected
        assert warnings == []

    @pytest.mark.parametrize("raw", ["top", -1, True, 1.5])
    def test_unknown_positions_warn(self, raw):
        """Anything else becomes after_char with a warning."""
        warnings = []
        assert coerce_position(raw, "entry.position", warnings) == "after_char"
        assert len(warnings) == 1

    def test_positions_in_card(self):
        """Entry positions are coerced while normalizing a card."""
        payload = wrap_v3(character_book={"entries": [
            {"keys": ["a"], "content": "A", "position": 0},
            {"keys": ["b"], "content": "B", "position": 1},
            {"keys": ["c"], "content": "C"},
        ]})
        entries = normalize_card(payload).card.character_book.entries
        assert [e.position for e in entries] == ["before_char", "after_char", "after_char"]


class TestNulls:
    """Null values are treated as absent."""

    def test_core_fields_default_to_empty(self):
        """Null narrative fields become empty strings."""
        card = normalize_card({"spec": "chara_card_v2", "data": {
            "name": "T", "description": None, "personality": None,
        }}).card
        assert card.description == ""
        assert card.personality == ""

    def test_null_book_and_extensions(self):
        """A null lorebook is no lorebook; null extensions are empty."""
        normalized = normalize_card({"spec": "chara_card_v2", "data": {
            "name": "T", "character_book": None, "extensions": None,
        }})
        assert normalized.card.character_book is None
        assert normalized.card.extensions == {}
        assert normalized.warnings == []

    def test_v2_optional_lists_stay_absent(self):
        """v2 keeps missing optional lists as None."""
        card = normalize_card({"spec": "chara_card_v2", "data": {"name": "T", "tags": None}}).card
        assert card.tags is None
        assert card.alternate_greetings is None

    def test_null_entry_extensions(self):
        """Null entry extensions become an empty object."""
        payload = wrap_v3(character_book={"entries": [{"keys": ["a"], "content": "A", "extensions": None}]})
        entry = normalize_card(payload).card.character_book.entries[0]
        assert entry.extensions == {}


class TestV3Backfill:
    """Required v3 fields are filled with empty values."""

    def test_backfill_defaults(self):
        """Missing required fields become empty, never inferred."""
        card = normalize_card({"spec": "chara_card_v3", "data": {"name": "T", "description": "by Bob"}}).card
        assert card.creator == ""
        assert card.character_version == ""
        assert card.tags == []
        assert card.alternate_greetings == []
        assert card.group_only_greetings == []

    def test_backfill_when_upgrading(self, wyvern_payload):
        """Existing values survive an upgrade to v3."""
        card = normalize_card(wyvern_payload, target_spec="v3").card
        assert card.creator == "tester"
        assert card.tags == ["librarian", "wholesome"]

    def test_hybrid_card_backfilled(self):
        """Hybrid payloads get a synthesized data object and v3 defaults."""
        normalized = normalize_card({"spec": "chara_card_v3", "spec_version": "3.0", "name": "H", "description": "d"})
        assert normalized.card.name == "H"
        assert normalized.card.description == "d"
        assert normalized.card.creator == ""
        assert normalized.warnings == []


class TestParkedV3Fields:
    """v3-only values parked in extensions by the v2 serializer."""

    def test_parked_fields_restored(self):
        """extensions.v3_fields is lifted back onto the card."""
        payload = {"spec": "chara_card_v2", "data": {
            "name": "T",
            "extensions": {"v3_fields": {"nickname": "N", "group_only_greetings": ["g"]}, "other": 1},
        }}
        card = normalize_card(payload, target_spec="v3").card
        assert card.nickname == "N"
        assert card.group_only_greetings == ["g"]
        assert "v3_fields" not in card.extensions
        assert card.extensions == {"other": 1}

    def test_explicit_fields_win(self):
        """A field present in data beats its parked copy."""
        payload = wrap_v3(nickname="Explicit", extensions={"v3_fields": {"nickname": "Parked"}})
        card = normalize_card(payload).card
        assert card.nickname == "Explicit"


class TestLorebook:
    """Lorebook normalization."""

    def test_aliases(self):
        """Legacy entry key spellings are accepted."""
        payload = wrap_v3(character_book={"entries": [
            {"key": ["a"], "keysecondary": ["b"], "content": "A", "order": 5, "disable": True},
        ]})
        entry = normalize_card(payload).card.character_book.entries[0]
        assert entry.keys == ["a"]
        assert entry.secondary_keys == ["b"]
        assert entry.insertion_order == 5
        assert entry.enabled is False

    def test_probability_clamped(self):
        """Probabilities outside 0-100 are clamped with a warning."""
        payload = wrap_v3(character_book={"entries": [{"keys": ["a"], "content": "A", "probability": 150}]})
        normalized = normalize_card(payload)
        assert normalized.card.character_book.entries[0].probability == 100
        assert any("clamped" in w for w in normalized.warnings)

    def test_nan_probability(self):
        """A NaN probability falls back to the default."""
        payload = json.loads(
            '{"spec": "chara_card_v3", "data": {"name": "T", "character_book": '
            '{"entries": [{"keys": ["a"], "content": "A", "probability": NaN, "priority": "1e400"}]}}}'
        )
        normalized = normalize_card(payload)
        entry = normalized.card.character_book.entries[0]
        assert entry.probability == 100
        assert entry.priority == 10
        assert any("probability" in w for w in normalized.warnings)
        assert any("priority" in w for w in normalized.warnings)

    def test_non_object_entry_keeps_position(self):
        """A non-object entry becomes a disabled blank so indexes do not shift."""
        payload = wrap_v3(character_book={"entries": [
            {"keys": ["first"], "content": "1"},
            "garbage",
            {"keys": ["third"], "content": "3"},
        ]})
        normalized = normalize_card(payload)
        entries = normalized.card.character_book.entries
        assert len(entries) == 3
        assert entries[1].enabled is False
        assert entries[1].content == ""
        assert entries[2].keys == ["third"]
        assert any("entries[1]" in w for w in normalized.warnings)

    def test_entries_object_converted(self):
        """World-info style entry objects become a list in key order."""
        payload = wrap_v3(character_book={"entries": {
            "0": {"keys": ["first"], "content": "1"},
            "1": {"keys": ["second"], "content": "2"},
        }})
        normalized = normalize_card(payload)
        assert [e.keys[0] for e in normalized.card.character_book.entries] == ["first", "second"]
        assert normalized.warnings

    def test_stored_order_kept(self, v3_payload):
        """Entries keep their stored order; activation order is derived."""
        book = normalize_card(v3_payload).card.character_book
        assert [e.keys[0] for e in book.entries] == ["oil", "rust", "bolt"]
        assert [e.keys[0] for e in book.activation_order()] == ["bolt", "rust", "oil"]

    def test_selective_logic_defaults_when_selective(self):
        """Selective entries without a logic value use AND."""
        payload = wrap_v3(character_book={"entries": [
            {"keys": ["a"], "content": "A", "selective": True, "secondary_keys": ["b"]},
        ]})
        entry = normalize_card(payload).card.character_book.entries[0]
        assert entry.selective_logic == "AND"


class TestExtensions:
    """Extensions are opaque and preserved."""

    def test_unknown_extensions_preserved(self, wyvern_payload):
        """Unknown keys keep their values and their order."""
        card = normalize_card(wyvern_payload).card
        original = wyvern_payload["data"]["extensions"]
        assert list(card.extensions) == list(original)
        assert card.extensions["custom_vendor"] == {"nested": {"a": [1, 2, {"b": None}]}, "flag": True}

    def test_depth_prompt_depth_coerced(self):
        """A string depth_prompt depth becomes an integer."""
        payload = wrap_v3(extensions={"depth_prompt": {"prompt": "p", "depth": "6"}})
        card = normalize_card(payload).card
        assert card.extensions["depth_prompt"]["depth"] == 6

    def test_depth_prompt_accessor(self, wyvern_payload):
        """The typed depth_prompt view reads and writes through."""
        card = normalize_card(wyvern_payload).card
        view = CardExtensions(card.extensions)
        assert view.depth_prompt == DepthPrompt(prompt="Amanda whispers.", depth=4, role="system")

        view.depth_prompt = DepthPrompt(prompt="Louder.", depth=2)
        assert card.extensions["depth_prompt"] == {"prompt": "Louder.", "depth": 2, "role": "system"}

        view.depth_prompt = None
        assert "depth_prompt" not in card.extensions
        assert view.depth_prompt is None

    def test_malformed_depth_prompt_ignored(self):
        """An unparseable depth_prompt reads as None and stays in place."""
        card = normalize_card(wrap_v3(extensions={"depth_prompt": {"depth": "deep"}})).card
        assert CardExtensions(card.extensions).depth_prompt is None
        assert card.extensions["depth_prompt"] == {"depth": "deep"}

    def test_non_object_extensions_replaced(self):
        """A non-object extensions value becomes {} with a warning."""
        normalized = normalize_card(wrap_v3(extensions=["bad"]))
        assert normalized.card.extensions == {}
        assert normalized.warnings

    def test_unknown_data_fields_reported(self):
        """Unrecognized data fields produce a warning."""
        normalized = normalize_card(wrap_v3(char_persona="x"))
        assert any("char_persona" in w for w in normalized.warnings)
