"""
Card Validation
==============

Schema checks for raw CCv2/CCv3 payloads, run before normalization.

Normalization repairs almost anything, so these checks are the only place a
caller learns that the source file itself is out of spec. Missing or mistyped
required fields are errors; problems in optional fields are warnings.
"""

import logging
from typing import Any, Dict, List

from .models import CardSpec, CardValidationResult, ValidationIssue, ValidationSeverity
from .normalizer import CORE_FIELDS, SPEC_TOKENS

logger = logging.getLogger(__name__)

V2_OPTIONAL_STRINGS = ("creator", "character_version", "creator_notes", "system_prompt", "post_history_instructions")
V3_REQUIRED_STRINGS = CORE_FIELDS + ("creator", "character_version")
V3_OPTIONAL_STRINGS = ("creator_notes", "system_prompt", "post_history_instructions")


def _error(message: str) -> ValidationIssue:
    return ValidationIssue(message=message, severity=ValidationSeverity.ERROR)


def _warning(message: str) -> ValidationIssue:
    return ValidationIssue(message=message, severity=ValidationSeverity.WARNING)


def _check_book(data: Dict[str, Any], prefix: str, issues: List[ValidationIssue]) -> None:
    if data.get("character_book") is None:
        return
    book = data["character_book"]
    if not isinstance(book, dict):
        issues.append(_warning(f"Field '{prefix}character_book' must be an object"))
    elif "entries" in book and not isinstance(book["entries"], list):
        issues.append(_warning(f"{prefix}character_book.entries must be an array"))


def validate_v2(payload: Any) -> CardValidationResult:
    """Validate a CCv2 payload, wrapped or legacy unwrapped."""
    issues: List[ValidationIssue] = []
    if not isinstance(payload, dict):
        return CardValidationResult(spec=CardSpec.V2, issues=[_error("Data must be an object")])

    if isinstance(payload.get("data"), dict):
        data = payload["data"]
    elif "name" in payload:
        data = payload
    else:
        return CardValidationResult(
            spec=CardSpec.V2,
            issues=[_error('Card must have either a "data" object (wrapped) or "name" field (unwrapped)')],
        )

    for field in CORE_FIELDS:
        if field not in data:
            issues.append(_error(f"Missing required field: {field}"))
        elif not isinstance(data[field], str):
            issues.append(_error(f"Field '{field}' must be a string"))

    for field in V2_OPTIONAL_STRINGS:
        if data.get(field) is not None and not isinstance(data[field], str):
            issues.append(_warning(f"Field '{field}' must be a string if present"))

    for field in ("tags", "alternate_greetings"):
        if data.get(field) is None:
            continue
        if not isinstance(data[field], list):
            issues.append(_warning(f"Field '{field}' must be an array"))
        elif not all(isinstance(item, str) for item in data[field]):
            issues.append(_warning(f"All {field} must be strings"))

    _check_book(data, "", issues)
    return CardValidationResult(spec=CardSpec.V2, issues=issues)


def validate_v3(payload: Any) -> CardValidationResult:
    """Validate a CCv3 payload; v3 cards are always wrapped."""
    issues: List[ValidationIssue] = []
    if not isinstance(payload, dict):
        return CardValidationResult(spec=CardSpec.V3, issues=[_error("Data must be an object")])

    if payload.get("spec") != "chara_card_v3":
        issues.append(_error("Field 'spec' must be 'chara_card_v3'"))
    if not payload.get("spec_version") or not isinstance(payload["spec_version"], str):
        issues.append(_error("Field 'spec_version' is required and must be a string"))

    data = payload.get("data")
    if not isinstance(data, dict):
        issues.append(_error("Field 'data' is required and must be an object"))
        return CardValidationResult(spec=CardSpec.V3, issues=issues)

    for field in V3_REQUIRED_STRINGS:
        if field not in data:
            issues.append(_error(f"Missing required field: data.{field}"))
        elif not isinstance(data[field], str):
            issues.append(_error(f"Field 'data.{field}' must be a string"))

    for field in ("tags", "group_only_greetings"):
        if field not in data:
            issues.append(_error(f"Missing required field: data.{field}"))
        elif not isinstance(data[field], list):
            issues.append(_error(f"Field 'data.{field}' must be an array"))

    for field in V3_OPTIONAL_STRINGS:
        if data.get(field) is not None and not isinstance(data[field], str):
            issues.append(_warning(f"Field 'data.{field}' must be a string if present"))

    if data.get("alternate_greetings") is not None and not isinstance(data["alternate_greetings"], list):
        issues.append(_warning("Field 'data.alternate_greetings' must be an array"))

    _check_book(data, "data.", issues)
    return CardValidationResult(spec=CardSpec.V3, issues=issues)


def validate_card_payload(payload: Any) -> CardValidationResult:
    """Validate against the dialect the payload declares (v2 when it declares none)."""
    spec = CardSpec.V2
    if isinstance(payload, dict):
        raw_spec = payload.get("spec")
        if raw_spec is not None:
            spec = SPEC_TOKENS.get(str(raw_spec).strip().lower(), CardSpec.V2)
        elif str(payload.get("spec_version", "")).startswith("3"):
            spec = CardSpec.V3

    result = validate_v3(payload) if spec == CardSpec.V3 else validate_v2(payload)
    if not result.valid:
        logger.debug(f"Card payload fails {spec.value} validation with {len(result.errors)} error(s)")
    return result
