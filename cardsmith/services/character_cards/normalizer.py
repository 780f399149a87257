"""
Card Normalizer
==============

Turns a parsed JSON payload of any supported dialect into the canonical
``Card``. Normalization is a pure function: it never touches the input and
reports every recoverable problem as a warning string instead of raising.

Order of operations (later steps rely on earlier ones):

1. classify the payload shape (wrapped / unwrapped legacy / hybrid root)
2. discard root-level duplicates of a wrapped card
3. resolve the dialect from the spec string
4. coerce timestamp units
5. coerce lorebook entry positions
6. treat nulls as absent
7. backfill v3 required fields
8. synthesize a ``data`` object for hybrid payloads
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from .errors import UnrecognizedCardShapeError
from .extensions import V3_FIELDS_KEY, normalize_extensions
from .models import (
    Asset,
    Card,
    CardSpec,
    CharacterBook,
    KNOWN_ASSET_TYPES,
    LorebookEntry,
    NormalizedCard,
)

logger = logging.getLogger(__name__)

# Values above this are taken to be milliseconds. Ambiguous for dates past
# 2286 in seconds; kept as-is so existing fixtures round-trip unchanged.
TIMESTAMP_MS_THRESHOLD = 10_000_000_000

SPEC_TOKENS = {
    "chara_card_v2": CardSpec.V2,
    "chara_card_v3": CardSpec.V3,
    "v2": CardSpec.V2,
    "v3": CardSpec.V3,
    "2": CardSpec.V2,
    "3": CardSpec.V3,
    "2.0": CardSpec.V2,
    "3.0": CardSpec.V3,
    "ccv2": CardSpec.V2,
    "ccv3": CardSpec.V3,
}

WRAPPER_KEYS = ("spec", "spec_version", "data")

CORE_FIELDS = ("name", "description", "personality", "scenario", "first_mes", "mes_example")

KNOWN_DATA_FIELDS = set(CORE_FIELDS) | {
    "creator", "character_version", "tags", "alternate_greetings",
    "group_only_greetings", "character_book", "system_prompt",
    "post_history_instructions", "creator_notes", "assets", "nickname",
    "creator_notes_multilingual", "source", "creation_date",
    "modification_date", "extensions",
}

V3_ONLY_FIELDS = (
    "group_only_greetings", "assets", "nickname", "creator_notes_multilingual",
    "source", "creation_date", "modification_date",
)


# ===========================
# Payload shapes
# ===========================

@dataclass(frozen=True)
class WrappedShape:
    """``{spec, spec_version, data: {...}}``"""
    root: Dict[str, Any]
    data: Dict[str, Any]


@dataclass(frozen=True)
class UnwrappedLegacyShape:
    """Fields directly at the root, no spec (pre-V2 cards)."""
    root: Dict[str, Any]


@dataclass(frozen=True)
class HybridRootShape:
    """``spec`` at the root next to the fields, no ``data`` wrapper."""
    root: Dict[str, Any]


RawCardShape = Union[WrappedShape, UnwrappedLegacyShape, HybridRootShape]


def classify_shape(payload: Any, warnings: Optional[List[str]] = None) -> RawCardShape:
    """
    Structural match in fixed priority order: wrapped, then legacy/hybrid.

    Raises:
        UnrecognizedCardShapeError: payload has no ``data`` object and no ``name``
    """
    if warnings is None:
        warnings = []
    if not isinstance(payload, dict):
        raise UnrecognizedCardShapeError(
            f"Card payload must be a JSON object, got {type(payload).__name__}"
        )

    data = payload.get("data")
    if isinstance(data, dict):
        inner = data.get("data")
        # Stored-record shape: {meta, data: {spec, spec_version, data: {...}}}
        if isinstance(inner, dict) and "spec" in data and "name" not in data:
            warnings.append("Card payload was wrapped twice; using the inner card")
            return WrappedShape(root=data, data=inner)
        return WrappedShape(root=payload, data=data)

    if "name" in payload:
        if "spec" in payload:
            return HybridRootShape(root=payload)
        return UnwrappedLegacyShape(root=payload)

    raise UnrecognizedCardShapeError(
        'Card must have either a "data" object (wrapped) or a "name" field (unwrapped)'
    )


def _field_source(shape: RawCardShape, warnings: List[str]) -> Dict[str, Any]:
    """Pick the object card fields are read from."""
    if isinstance(shape, WrappedShape):
        if "name" in shape.root:
            # Root copies duplicate data (Wyvern/SillyTavern); data is authoritative.
            dropped = [k for k in shape.root if k not in WRAPPER_KEYS]
            logger.debug(f"Discarding {len(dropped)} root-level duplicate field(s)")
        return shape.data

    if isinstance(shape, HybridRootShape):
        synthesized = {k: v for k, v in shape.root.items() if k not in WRAPPER_KEYS}
        logger.debug("Hybrid card: collected root fields into a synthesized data object")
        return synthesized

    return shape.root


def resolve_spec(shape: RawCardShape, warnings: List[str]) -> CardSpec:
    """Map the payload's spec string onto a canonical dialect."""
    if isinstance(shape, UnwrappedLegacyShape):
        return CardSpec.V2

    raw_spec = shape.root.get("spec")
    if raw_spec is None:
        version = str(shape.root.get("spec_version") or "").strip()
        return CardSpec.V3 if version.startswith("3") else CardSpec.V2

    token = str(raw_spec).strip().lower()
    if token in SPEC_TOKENS:
        return SPEC_TOKENS[token]

    warnings.append(f"Unrecognized spec '{raw_spec}'; treating card as v2")
    return CardSpec.V2


# ===========================
# Scalar coercion helpers
# ===========================

def _string(source: Dict[str, Any], key: str, warnings: List[str], where: str = "") -> str:
    value = source.get(key)
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    warnings.append(f"Field '{where}{key}' is not a string; converted")
    return str(value)


def _optional_string(source: Dict[str, Any], key: str, warnings: List[str], where: str = "") -> Optional[str]:
    value = source.get(key)
    if value is None:
        return None
    if isinstance(value, str):
        return value
    warnings.append(f"Field '{where}{key}' is not a string; converted")
    return str(value)


def _string_list(source: Dict[str, Any], key: str, warnings: List[str], where: str = "") -> Optional[List[str]]:
    value = source.get(key)
    if value is None:
        return None
    if isinstance(value, str):
        warnings.append(f"Field '{where}{key}' is a string, expected an array; wrapped")
        return [value] if value else []
    if not isinstance(value, list):
        warnings.append(f"Field '{where}{key}' must be an array; ignored")
        return None

    result = []
    for item in value:
        if item is None:
            continue
        if not isinstance(item, str):
            warnings.append(f"Non-string item in '{where}{key}' converted to string")
            item = str(item)
        result.append(item)
    return result


def _int(value: Any, default: Optional[int], where: str, warnings: List[str]) -> Optional[int]:
    if value is None:
        return default
    if isinstance(value, bool):
        warnings.append(f"'{where}' is a boolean, expected an integer; using default")
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            pass
    if isinstance(value, float) and math.isfinite(value):
        if not value.is_integer():
            warnings.append(f"'{where}' value {value} truncated to an integer")
        return int(value)
    warnings.append(f"'{where}' value {value!r} is not an integer; using default")
    return default


def _bool(value: Any, default: Optional[bool], where: str, warnings: List[str]) -> Optional[bool]:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    warnings.append(f"'{where}' value {value!r} is not a boolean; using default")
    return default


def coerce_timestamp(value: Any, field: str, warnings: List[str]) -> Optional[int]:
    """
    Normalize a Unix timestamp to seconds.

    Values strictly above ``TIMESTAMP_MS_THRESHOLD`` are treated as
    milliseconds; anything at or below is already seconds.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        warnings.append(f"Timestamp '{field}' is a boolean; dropped")
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            warnings.append(f"Timestamp '{field}' value {value!r} is not numeric; dropped")
            return None
    if not isinstance(value, (int, float)):
        warnings.append(f"Timestamp '{field}' has unsupported type {type(value).__name__}; dropped")
        return None
    if isinstance(value, float) and not math.isfinite(value):
        warnings.append(f"Timestamp '{field}' value {value} is not finite; dropped")
        return None

    if value > TIMESTAMP_MS_THRESHOLD:
        logger.debug(f"Timestamp '{field}' looks like milliseconds: {value}")
        return int(value // 1000)
    return int(value)


def coerce_position(value: Any, where: str, warnings: List[str]) -> str:
    """Legacy numeric positions: 0 is before_char, 1 and up are after_char."""
    if value is None:
        return "after_char"
    if isinstance(value, str) and value in ("before_char", "after_char"):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        if value == 0:
            return "before_char"
        if value >= 1:
            return "after_char"
    warnings.append(f"'{where}' has unrecognized value {value!r}; using after_char")
    return "after_char"


def coerce_selective_logic(value: Any, selective: bool, where: str, warnings: List[str]) -> Optional[str]:
    if value is None:
        return "AND" if selective else None
    if isinstance(value, str) and value.strip().upper() in ("AND", "NOT"):
        return value.strip().upper()
    if isinstance(value, int) and not isinstance(value, bool):
        return "AND" if value == 0 else "NOT"
    warnings.append(f"'{where}' has unrecognized value {value!r}; using AND")
    return "AND"


# ===========================
# Lorebook
# ===========================

def normalize_entry(raw: Any, index: int, warnings: List[str]) -> LorebookEntry:
    """Normalize a single lorebook entry; non-objects become disabled blanks."""
    where = f"character_book.entries[{index}]"
    if not isinstance(raw, dict):
        # Keeps later entries at their original index
        warnings.append(f"{where} is not an object; replaced with a disabled empty entry")
        return LorebookEntry(enabled=False)

    keys = _string_list(raw, "keys", warnings, f"{where}.")
    if keys is None:
        keys = _string_list(raw, "key", warnings, f"{where}.") or []
    secondary = _string_list(raw, "secondary_keys", warnings, f"{where}.")
    if secondary is None:
        secondary = _string_list(raw, "keysecondary", warnings, f"{where}.") or []

    enabled = _bool(raw.get("enabled"), None, f"{where}.enabled", warnings)
    if enabled is None:
        disabled = _bool(raw.get("disable"), False, f"{where}.disable", warnings)
        enabled = not disabled

    insertion_order = raw.get("insertion_order")
    if insertion_order is None:
        insertion_order = raw.get("order")

    probability = _int(raw.get("probability"), 100, f"{where}.probability", warnings)
    if probability < 0 or probability > 100:
        warnings.append(f"{where}.probability {probability} clamped to 0-100")
        probability = max(0, min(100, probability))

    selective = _bool(raw.get("selective"), False, f"{where}.selective", warnings)

    return LorebookEntry(
        keys=keys,
        secondary_keys=secondary,
        content=_string(raw, "content", warnings, f"{where}."),
        priority=_int(raw.get("priority"), 10, f"{where}.priority", warnings),
        insertion_order=_int(insertion_order, 100, f"{where}.insertion_order", warnings),
        position=coerce_position(raw.get("position"), f"{where}.position", warnings),
        probability=probability,
        selective=selective,
        selective_logic=coerce_selective_logic(
            raw.get("selective_logic"), selective, f"{where}.selective_logic", warnings
        ),
        constant=_bool(raw.get("constant"), False, f"{where}.constant", warnings),
        case_sensitive=_bool(raw.get("case_sensitive"), None, f"{where}.case_sensitive", warnings),
        depth=_int(raw.get("depth"), None, f"{where}.depth", warnings),
        enabled=enabled,
        extensions=normalize_extensions(raw.get("extensions"), warnings, f"{where}.extensions"),
        id=raw.get("id"),
        name=_optional_string(raw, "name", warnings, f"{where}."),
        comment=_optional_string(raw, "comment", warnings, f"{where}."),
        use_regex=_bool(raw.get("use_regex"), None, f"{where}.use_regex", warnings),
    )


def normalize_book(raw: Any, warnings: List[str]) -> Optional[CharacterBook]:
    """``None`` means no lorebook; it is not an error."""
    if raw is None:
        return None
    if not isinstance(raw, dict):
        warnings.append("character_book is not an object; ignored")
        return None

    raw_entries = raw.get("entries")
    if raw_entries is None:
        raw_entries = []
    elif isinstance(raw_entries, dict):
        # World-info exports key entries by uid
        warnings.append("character_book.entries is an object; converted to an array in key order")
        raw_entries = list(raw_entries.values())
    elif not isinstance(raw_entries, list):
        warnings.append("character_book.entries must be an array; ignored")
        raw_entries = []

    entries = [normalize_entry(raw_entry, index, warnings) for index, raw_entry in enumerate(raw_entries)]

    return CharacterBook(
        name=_optional_string(raw, "name", warnings, "character_book."),
        description=_optional_string(raw, "description", warnings, "character_book."),
        scan_depth=_int(raw.get("scan_depth"), None, "character_book.scan_depth", warnings),
        token_budget=_int(raw.get("token_budget"), None, "character_book.token_budget", warnings),
        recursive_scanning=_bool(
            raw.get("recursive_scanning"), None, "character_book.recursive_scanning", warnings
        ),
        extensions=normalize_extensions(raw.get("extensions"), warnings, "character_book.extensions"),
        entries=entries,
    )


# ===========================
# Assets
# ===========================

def normalize_assets(raw: Any, warnings: List[str]) -> List[Asset]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        warnings.append("assets must be an array; ignored")
        return []

    assets = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            warnings.append(f"assets[{index}] is not an object; skipped")
            continue
        asset_type = item.get("type")
        if not isinstance(asset_type, str) or not asset_type:
            warnings.append(f"assets[{index}] has no type; using 'custom'")
            asset_type = "custom"
        elif asset_type not in KNOWN_ASSET_TYPES:
            warnings.append(f"assets[{index}] has non-standard type '{asset_type}'; kept as-is")
        assets.append(Asset(
            type=asset_type,
            name=_string(item, "name", warnings, f"assets[{index}]."),
            uri=_string(item, "uri", warnings, f"assets[{index}]."),
            ext=_string(item, "ext", warnings, f"assets[{index}]."),
        ))
    return assets


def _multilingual(value: Any, warnings: List[str]) -> Optional[Dict[str, str]]:
    if value is None:
        return None
    if not isinstance(value, dict):
        warnings.append("creator_notes_multilingual must be an object; ignored")
        return None
    return {str(k): v if isinstance(v, str) else str(v) for k, v in value.items()}


# ===========================
# Entry point
# ===========================

def normalize_card(payload: Any, target_spec: Optional[Union[CardSpec, str]] = None) -> NormalizedCard:
    """
    Convert a parsed card payload into a canonical Card.

    Args:
        payload: Parsed JSON of unknown dialect
        target_spec: Force the resulting dialect (e.g. v3 for CHARX contents)

    Returns:
        NormalizedCard with the card and non-fatal warnings

    Raises:
        UnrecognizedCardShapeError: payload is not a recognizable card
    """
    warnings: List[str] = []

    shape = classify_shape(payload, warnings)
    source = _field_source(shape, warnings)
    spec = resolve_spec(shape, warnings)

    if target_spec is not None:
        target = CardSpec(target_spec)
        if target != spec:
            logger.info(f"Normalizing {spec.value} card as {target.value}")
        spec = target

    unknown = sorted(k for k in source if k not in KNOWN_DATA_FIELDS and k not in WRAPPER_KEYS)
    if unknown:
        warnings.append(f"Ignoring unrecognized card fields: {', '.join(unknown)}")

    extensions = normalize_extensions(source.get("extensions"), warnings)

    # Fields parked by the v2 serializer come back; explicit data fields win.
    fields = dict(source)
    parked = extensions.pop(V3_FIELDS_KEY, None)
    if isinstance(parked, dict):
        for key in V3_ONLY_FIELDS:
            if key in parked and fields.get(key) is None:
                fields[key] = parked[key]
    elif parked is not None:
        warnings.append(f"extensions.{V3_FIELDS_KEY} is not an object; dropped")

    card = Card(
        spec=spec,
        name=_string(fields, "name", warnings),
        description=_string(fields, "description", warnings),
        personality=_string(fields, "personality", warnings),
        scenario=_string(fields, "scenario", warnings),
        first_mes=_string(fields, "first_mes", warnings),
        mes_example=_string(fields, "mes_example", warnings),
        creator=_optional_string(fields, "creator", warnings),
        character_version=_optional_string(fields, "character_version", warnings),
        tags=_string_list(fields, "tags", warnings),
        alternate_greetings=_string_list(fields, "alternate_greetings", warnings),
        group_only_greetings=_string_list(fields, "group_only_greetings", warnings) or [],
        character_book=normalize_book(fields.get("character_book"), warnings),
        system_prompt=_optional_string(fields, "system_prompt", warnings),
        post_history_instructions=_optional_string(fields, "post_history_instructions", warnings),
        creator_notes=_optional_string(fields, "creator_notes", warnings),
        assets=normalize_assets(fields.get("assets"), warnings),
        nickname=_optional_string(fields, "nickname", warnings),
        creator_notes_multilingual=_multilingual(fields.get("creator_notes_multilingual"), warnings),
        source=_string_list(fields, "source", warnings),
        creation_date=coerce_timestamp(fields.get("creation_date"), "creation_date", warnings),
        modification_date=coerce_timestamp(fields.get("modification_date"), "modification_date", warnings),
        extensions=extensions,
    )

    if spec == CardSpec.V3:
        _backfill_v3(card)

    for warning in warnings:
        logger.debug(f"Normalize warning: {warning}")
    return NormalizedCard(card=card, warnings=warnings)


def _backfill_v3(card: Card) -> None:
    """Fill v3 required fields with empty defaults; never inferred from content."""
    if card.creator is None:
        card.creator = ""
    if card.character_version is None:
        card.character_version = ""
    if card.tags is None:
        card.tags = []
    if card.alternate_greetings is None:
        card.alternate_greetings = []
