"""
Card Serializers
===============

Canonical Card -> CCv2 / CCv3 JSON dicts. Serializers never read unknown
fields; whatever the normalizer kept in ``extensions`` goes out verbatim.
"""

import copy
import logging
from typing import Any, Dict, List, Optional, Union

from .extensions import V3_FIELDS_KEY
from .models import (
    Card,
    CardSpec,
    CharacterBook,
    LorebookEntry,
    SPEC_IDENTIFIERS,
    SPEC_VERSIONS,
)
from .normalizer import normalize_card

logger = logging.getLogger(__name__)

V2_OPTIONAL_STRINGS = ("creator", "character_version", "system_prompt", "post_history_instructions", "creator_notes")


def _entry_to_dict(entry: LorebookEntry) -> Dict[str, Any]:
    result: Dict[str, Any] = {
        "keys": list(entry.keys),
        "content": entry.content,
        "extensions": copy.deepcopy(entry.extensions),
        "enabled": entry.enabled,
        "insertion_order": entry.insertion_order,
    }
    if entry.case_sensitive is not None:
        result["case_sensitive"] = entry.case_sensitive
    if entry.name is not None:
        result["name"] = entry.name
    result["priority"] = entry.priority
    if entry.id is not None:
        result["id"] = entry.id
    if entry.comment is not None:
        result["comment"] = entry.comment
    result["selective"] = entry.selective
    result["secondary_keys"] = list(entry.secondary_keys)
    result["constant"] = entry.constant
    result["position"] = entry.position
    result["probability"] = entry.probability
    if entry.selective_logic is not None:
        result["selective_logic"] = entry.selective_logic
    if entry.depth is not None:
        result["depth"] = entry.depth
    if entry.use_regex is not None:
        result["use_regex"] = entry.use_regex
    return result


def _book_to_dict(book: CharacterBook) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key in ("name", "description", "scan_depth", "token_budget", "recursive_scanning"):
        value = getattr(book, key)
        if value is not None:
            result[key] = value
    result["extensions"] = copy.deepcopy(book.extensions)
    # Ordinal order is the stored order; never sorted by priority here
    result["entries"] = [_entry_to_dict(entry) for entry in book.entries]
    return result


def _parked_v3_fields(card: Card) -> Dict[str, Any]:
    """v3-only values with non-default content, for the v2 extensions bag."""
    parked: Dict[str, Any] = {}
    if card.group_only_greetings:
        parked["group_only_greetings"] = list(card.group_only_greetings)
    if card.assets:
        parked["assets"] = [asset.model_dump() for asset in card.assets]
    for key in ("nickname", "creator_notes_multilingual", "source", "creation_date", "modification_date"):
        value = getattr(card, key)
        if value is not None:
            parked[key] = copy.deepcopy(value)
    return parked


def serialize_v2(card: Card) -> Dict[str, Any]:
    """Serialize as ``chara_card_v2``; optional fields only when present."""
    data: Dict[str, Any] = {
        "name": card.name,
        "description": card.description,
        "personality": card.personality,
        "scenario": card.scenario,
        "first_mes": card.first_mes,
        "mes_example": card.mes_example,
    }
    for key in V2_OPTIONAL_STRINGS:
        value = getattr(card, key)
        if value is not None:
            data[key] = value
    if card.tags is not None:
        data["tags"] = list(card.tags)
    if card.alternate_greetings is not None:
        data["alternate_greetings"] = list(card.alternate_greetings)
    if card.character_book is not None:
        data["character_book"] = _book_to_dict(card.character_book)

    extensions = copy.deepcopy(card.extensions)
    parked = _parked_v3_fields(card)
    if parked:
        logger.debug(f"Parking v3-only fields in extensions.{V3_FIELDS_KEY}: {sorted(parked)}")
        extensions[V3_FIELDS_KEY] = parked
    data["extensions"] = extensions

    return {
        "spec": SPEC_IDENTIFIERS[CardSpec.V2],
        "spec_version": SPEC_VERSIONS[CardSpec.V2],
        "data": data,
    }


def serialize_v3(card: Card) -> Dict[str, Any]:
    """Serialize as ``chara_card_v3``; required v3 fields always present."""
    data: Dict[str, Any] = {
        "name": card.name,
        "description": card.description,
        "personality": card.personality,
        "scenario": card.scenario,
        "first_mes": card.first_mes,
        "mes_example": card.mes_example,
        "creator": card.creator or "",
        "character_version": card.character_version or "",
        "tags": list(card.tags or []),
        "alternate_greetings": list(card.alternate_greetings or []),
        "group_only_greetings": list(card.group_only_greetings),
    }
    for key in ("system_prompt", "post_history_instructions", "creator_notes"):
        value = getattr(card, key)
        if value is not None:
            data[key] = value
    if card.character_book is not None:
        data["character_book"] = _book_to_dict(card.character_book)
    data["assets"] = [asset.model_dump() for asset in card.assets]
    for key in ("nickname", "creator_notes_multilingual", "source", "creation_date", "modification_date"):
        value = getattr(card, key)
        if value is not None:
            data[key] = copy.deepcopy(value)
    data["extensions"] = copy.deepcopy(card.extensions)

    return {
        "spec": SPEC_IDENTIFIERS[CardSpec.V3],
        "spec_version": SPEC_VERSIONS[CardSpec.V3],
        "data": data,
    }


def serialize_card(card: Card, target_spec: Optional[Union[CardSpec, str]] = None) -> Dict[str, Any]:
    """Serialize to the target dialect; defaults to the card's own spec."""
    spec = CardSpec(target_spec) if target_spec is not None else card.spec
    if spec == CardSpec.V3:
        return serialize_v3(card)
    return serialize_v2(card)


def convert_card(payload: Any, target_spec: Union[CardSpec, str]) -> tuple[Dict[str, Any], List[str]]:
    """
    Normalize a payload of any dialect and serialize it as ``target_spec``.

    Returns:
        Tuple of (serialized dict, normalizer warnings)
    """
    normalized = normalize_card(payload, target_spec=target_spec)
    return serialize_card(normalized.card), normalized.warnings
