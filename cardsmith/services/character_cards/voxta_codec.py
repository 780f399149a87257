"""
Voxta Package Codec
==================

Maps canonical cards to and from Voxta packages (``.voxpkg``)::

    package.json
    Characters/{id}/character.json
    Characters/{id}/thumbnail.{ext}           main icon
    Characters/{id}/Assets/Avatars/Default/    emotions, extra icons
    Characters/{id}/Assets/Backgrounds/
    Characters/{id}/Assets/VoiceSamples/
    Characters/{id}/Assets/Misc/
    Books/{id}/book.json                       lorebook

The conversion is lossy by design. Voxta has no slot for system_prompt,
post_history_instructions, group_only_greetings, extensions outside
``voxta``, or lorebook position/selective/secondary keys; those are dropped
on export and reported as warnings.

Voxta writes macros as ``{{ user }}``; imported text is compacted to
``{{user}}`` and exported text is spaced again.
"""

import json
import logging
import math
import posixpath
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from cardsmith.config.models import VoxtaConfig

from .asset_fetcher import AssetFetcher
from .charx_codec import EMBEDDED_SCHEME, REMOTE_PREFIXES, match_asset_blobs
from .errors import AssetFetchError, ContainerShapeUnknownError, UnrecognizedCardShapeError
from .extensions import VOXTA_KEY, CardExtensions
from .macro_processor import MacroProcessor
from .models import (
    Asset,
    AssetBlob,
    BuildResult,
    Card,
    CardSpec,
    CharacterBook,
    ContainerReadResult,
    LorebookEntry,
    MAIN_ICON_NAME,
)
from .normalizer import coerce_timestamp
from .zip_container import ZipWriter, read_entries, voxta_character_ids

logger = logging.getLogger(__name__)

PACKAGE_ENTRY = "package.json"

# Stable ids for cards that never came from Voxta
ID_NAMESPACE = uuid.UUID("6f0d3c1e-58c4-4c43-9a53-2f7c1b8d9e40")

# Voxta folder -> canonical asset type
ASSET_FOLDERS = {
    "Avatars": "emotion",
    "Backgrounds": "background",
    "VoiceSamples": "sound",
    "Misc": "custom",
}

# Canonical asset type -> path below Characters/{id}/
EXPORT_FOLDERS = {
    "icon": "Assets/Avatars/Default/",
    "emotion": "Assets/Avatars/Default/",
    "background": "Assets/Backgrounds/",
    "sound": "Assets/VoiceSamples/",
}
MISC_FOLDER = "Assets/Misc/"

CHAT_SETTING_KEYS = (
    "Culture",
    "ExplicitContent",
    "Label",
    "EnableThinkingSpeech",
    "NotifyUserAwayReturn",
    "TimeAware",
    "UseMemory",
    "MaxTokens",
    "MaxSentences",
)

# character.json keys with a canonical home
MAPPED_KEYS = {
    "$type", "Id", "PackageId", "Name", "Version", "Description", "Personality",
    "Profile", "Scenario", "FirstMessage", "AlternativeFirstMessages",
    "MessageExamples", "Creator", "CreatorNotes", "Tags", "MemoryBooks",
    "Scripts", "TextToSpeech", "DateCreated", "DateModified",
}


def _stable_id(*parts: str) -> str:
    return str(uuid.uuid5(ID_NAMESPACE, "/".join(parts)))


def _parse_voxta_date(value: Any, field: str, warnings: List[str]) -> Optional[int]:
    """Voxta stores ISO-8601 strings; numbers go through the usual coercion."""
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return coerce_timestamp(value, field, warnings)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp())
    return coerce_timestamp(value, field, warnings)


def _format_voxta_date(timestamp: Optional[int], field: str, warnings: List[str]) -> Optional[str]:
    if timestamp is None:
        return None
    try:
        moment = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except (OSError, OverflowError, ValueError):
        warnings.append(f"{field} timestamp {timestamp} is out of range; omitted")
        return None
    return moment.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def _weight(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 10
    if isinstance(value, float) and not math.isfinite(value):
        return 10
    return int(value)


def _load_json(entries: Dict[str, bytes], path: str) -> Dict[str, Any]:
    try:
        value = json.loads(entries[path].decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise UnrecognizedCardShapeError(f"{path} is not valid JSON: {e}") from e
    if not isinstance(value, dict):
        raise UnrecognizedCardShapeError(f"{path} must contain a JSON object")
    return value


def _text(value: Any) -> str:
    if value is None:
        return ""
    return MacroProcessor.compact(value if isinstance(value, str) else str(value))


def _text_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [_text(item) for item in value if item is not None]


# ===========================
# Read
# ===========================

def _read_book(book: Dict[str, Any], offset: int) -> Tuple[List[LorebookEntry], Optional[str]]:
    entries = []
    items = book.get("Items") or []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        keywords = item.get("Keywords") or []
        entries.append(LorebookEntry(
            id=item.get("Id"),
            keys=[str(k) for k in keywords if k is not None],
            content=_text(item.get("Text")),
            priority=_weight(item.get("Weight")),
            insertion_order=offset + index,
            enabled=not bool(item.get("Deleted", False)),
        ))
    name = book.get("Name")
    return entries, name if isinstance(name, str) else None


def read_voxta(data: bytes, character_id: Optional[str] = None) -> ContainerReadResult:
    """
    Read one character from a Voxta package.

    Args:
        data: Package bytes
        character_id: Character directory to read; defaults to the package
            entry character, else the first one found

    Returns:
        ContainerReadResult with a v3 card. The thumbnail comes back as an
        AssetBlob flagged ``is_main`` with no descriptor on the card.

    Raises:
        CorruptZipError: unreadable archive
        ContainerShapeUnknownError: no (matching) character directory
        UnrecognizedCardShapeError: character.json is not an object
    """
    entries = read_entries(data)
    names = list(entries)
    warnings: List[str] = []

    package: Dict[str, Any] = {}
    if PACKAGE_ENTRY in entries:
        package = _load_json(entries, PACKAGE_ENTRY)

    ids = [cid for cid in voxta_character_ids(names) if f"Characters/{cid}/character.json" in entries]
    if not ids:
        raise ContainerShapeUnknownError("Voxta package has no Characters/{id}/character.json")

    if character_id is None:
        entry = package.get("EntryResource")
        entry_id = entry.get("Id") if isinstance(entry, dict) else None
        character_id = entry_id if entry_id in ids else ids[0]
    elif character_id not in ids:
        raise ContainerShapeUnknownError(f"Voxta package has no character '{character_id}'")
    if len(ids) > 1:
        warnings.append(f"Package contains {len(ids)} characters; imported {character_id}")

    base = f"Characters/{character_id}/"
    character = _load_json(entries, base + "character.json")

    voxta: Dict[str, Any] = {"id": character.get("Id", character_id)}
    if character.get("PackageId") or package.get("Id"):
        voxta["package_id"] = character.get("PackageId") or package.get("Id")
    if character.get("Description"):
        voxta["appearance"] = _text(character.get("Description"))
    chat_settings = {k: character[k] for k in CHAT_SETTING_KEYS if k in character}
    if chat_settings:
        voxta["chat_settings"] = chat_settings
    if character.get("Scripts"):
        voxta["scripts"] = character["Scripts"]
    if character.get("TextToSpeech"):
        voxta["text_to_speech"] = character["TextToSpeech"]
    extra = {
        k: v for k, v in character.items()
        if k not in MAPPED_KEYS and k not in CHAT_SETTING_KEYS
    }
    if extra:
        voxta["extra"] = extra

    tags = character.get("Tags")
    card = Card(
        spec=CardSpec.V3,
        name=_text(character.get("Name")),
        description=_text(character.get("Profile")),
        personality=_text(character.get("Personality")),
        scenario=_text(character.get("Scenario")),
        first_mes=_text(character.get("FirstMessage")),
        mes_example=_text(character.get("MessageExamples")),
        creator=str(character.get("Creator") or ""),
        character_version=str(character.get("Version") or ""),
        tags=[str(t) for t in tags if t is not None] if isinstance(tags, list) else [],
        alternate_greetings=_text_list(character.get("AlternativeFirstMessages")),
        creator_notes=_text(character["CreatorNotes"]) if character.get("CreatorNotes") else None,
        creation_date=_parse_voxta_date(character.get("DateCreated"), "DateCreated", warnings),
        modification_date=_parse_voxta_date(character.get("DateModified"), "DateModified", warnings),
        extensions={VOXTA_KEY: voxta},
    )

    card.character_book = _read_books(entries, character, warnings)
    blobs = _read_assets(entries, base, card, warnings)

    logger.info(f"Read Voxta character '{card.name}' with {len(blobs)} asset(s)")
    return ContainerReadResult(card=card, assets=blobs, warnings=warnings)


def _read_books(entries: Dict[str, bytes], character: Dict[str, Any], warnings: List[str]) -> Optional[CharacterBook]:
    book_ids = character.get("MemoryBooks")
    if isinstance(book_ids, list) and book_ids:
        paths = []
        for book_id in book_ids:
            path = f"Books/{book_id}/book.json"
            if path in entries:
                paths.append(path)
            else:
                warnings.append(f"Memory book '{book_id}' is not in the package")
    else:
        paths = [p for p in entries if posixpath.basename(p) == "book.json" and p.startswith("Books/")]

    if not paths:
        return None

    entries_out: List[LorebookEntry] = []
    book_name = None
    for path in paths:
        book_entries, name = _read_book(_load_json(entries, path), len(entries_out))
        entries_out.extend(book_entries)
        book_name = book_name or name
    if len(paths) > 1:
        warnings.append(f"Merged {len(paths)} memory books into one lorebook")
    return CharacterBook(name=book_name, entries=entries_out)


def _read_assets(entries: Dict[str, bytes], base: str, card: Card, warnings: List[str]) -> List[AssetBlob]:
    blobs: List[AssetBlob] = []
    for path, payload in entries.items():
        if not path.startswith(base):
            continue
        relative = path[len(base):]
        stem, ext = posixpath.splitext(posixpath.basename(relative))
        ext = ext.lstrip(".").lower()

        if relative.startswith("thumbnail."):
            blobs.append(AssetBlob(
                type="icon", name=MAIN_ICON_NAME, ext=ext, data=payload, path=path, is_main=True,
            ))
            continue
        if not relative.startswith("Assets/"):
            continue

        parts = relative.split("/")
        asset_type = ASSET_FOLDERS.get(parts[1], "custom") if len(parts) > 2 else "custom"
        if asset_type == "emotion" and stem == MAIN_ICON_NAME:
            warnings.append(f"Skipped avatar '{relative}': the main icon is the thumbnail")
            continue
        uri = f"{EMBEDDED_SCHEME}assets/{asset_type}/{stem}.{ext}"
        card.assets.append(Asset(type=asset_type, name=stem, uri=uri, ext=ext))
        blobs.append(AssetBlob(type=asset_type, name=stem, ext=ext, data=payload, path=path, uri=uri))
    return blobs


# ===========================
# Write
# ===========================

def _dropped_fields(card: Card) -> List[str]:
    dropped = []
    if card.system_prompt:
        dropped.append("system_prompt")
    if card.post_history_instructions:
        dropped.append("post_history_instructions")
    if card.group_only_greetings:
        dropped.append("group_only_greetings")
    other = [k for k in card.extensions if k != VOXTA_KEY]
    if other:
        dropped.append(f"extensions ({', '.join(other)})")
    book = card.character_book
    if book and any(e.secondary_keys or e.selective or e.position != "after_char" for e in book.entries):
        dropped.append("lorebook position/selective/secondary_keys")
    return dropped


def _book_json(card: Card, book_id: str, package_id: str) -> Dict[str, Any]:
    book = card.character_book
    items = []
    for index, entry in enumerate(book.entries):
        entry_id = entry.id if isinstance(entry.id, str) and entry.id else _stable_id(book_id, str(index))
        items.append({
            "Id": entry_id,
            "Keywords": list(entry.keys),
            "Text": MacroProcessor.spaced(entry.content),
            "Weight": entry.priority,
            "Deleted": not entry.enabled,
        })
    return {
        "$type": "memoryBook",
        "Id": book_id,
        "PackageId": package_id,
        "Name": book.name or f"{card.name} Lorebook",
        "Description": book.description or "",
        "Creator": card.creator or "",
        "Items": items,
    }


def _asset_payload(
    asset: Asset,
    blob: Optional[AssetBlob],
    fetcher: Optional[AssetFetcher],
    warnings: List[str],
) -> Optional[bytes]:
    if blob is not None:
        return blob.data
    if asset.uri.startswith(REMOTE_PREFIXES) and fetcher is not None:
        try:
            return fetcher.fetch(asset.uri)
        except AssetFetchError as e:
            warnings.append(f"Asset '{asset.name}' not packaged: {e.reason}")
            return None
    warnings.append(f"Asset '{asset.name}' ({asset.uri or 'no uri'}) has no payload; not packaged")
    return None


def build_voxta(
    card: Card,
    assets: Optional[Sequence[AssetBlob]] = None,
    fetcher: Optional[AssetFetcher] = None,
    config: Optional[VoxtaConfig] = None,
    compression_level: int = 6,
    json_indent: Optional[int] = 2,
) -> BuildResult:
    """
    Build a Voxta package for one character.

    The main icon becomes ``thumbnail.{ext}`` and is never written under
    ``Assets/Avatars/``.

    Args:
        card: Canonical card
        assets: Binary payloads; a blob flagged ``is_main`` wins as thumbnail
        fetcher: Used for remote assets; None skips them with a warning
        config: Culture/version defaults
        compression_level: DEFLATE level 0-9
        json_indent: Indentation for the JSON entries

    Returns:
        BuildResult with package bytes and the card with its Voxta ids
    """
    config = config or VoxtaConfig()
    out = card.model_copy(deep=True)
    warnings: List[str] = []

    dropped = _dropped_fields(out)
    if dropped:
        warnings.append(f"Voxta export drops: {', '.join(dropped)}")

    ext_view = CardExtensions(out.extensions)
    voxta = dict(ext_view.voxta)
    character_id = str(voxta.get("id") or _stable_id("character", out.name))
    package_id = str(voxta.get("package_id") or _stable_id("package", out.name))
    book_id = _stable_id("book", character_id)
    voxta["id"] = character_id
    voxta["package_id"] = package_id
    ext_view.set_section(VOXTA_KEY, voxta)

    base = f"Characters/{character_id}/"
    blobs = list(assets or [])
    pairing, extra = match_asset_blobs(out, blobs)

    main_blob = next((b for b in blobs if b.is_main), None)
    main_asset = out.main_icon()
    main_index = out.assets.index(main_asset) if main_asset is not None else None
    if main_blob is None and main_index is not None:
        main_blob = pairing.get(main_index)

    planned: List[Tuple[str, bytes]] = []
    thumbnail_ext = None
    if main_blob is not None:
        thumbnail_ext = (main_blob.ext or "png").lower()
        planned.append((f"{base}thumbnail.{thumbnail_ext}", main_blob.data))
    elif main_asset is not None:
        payload = _asset_payload(main_asset, None, fetcher, warnings)
        if payload is not None:
            thumbnail_ext = (main_asset.ext or "png").lower()
            planned.append((f"{base}thumbnail.{thumbnail_ext}", payload))

    used: Set[str] = set()
    for index, asset in enumerate(out.assets):
        if index == main_index:
            continue
        blob = pairing.get(index)
        if blob is not None and blob is main_blob:
            continue
        payload = _asset_payload(asset, blob, fetcher, warnings)
        if payload is not None:
            planned.append(_asset_path(base, asset.type, asset.name, asset.ext or (blob.ext if blob else ""), payload, used))
    for blob in extra:
        if blob is main_blob:
            continue
        planned.append(_asset_path(base, blob.type, blob.name, blob.ext, blob.data, used))

    writer = ZipWriter(compression_level)
    writer.add(PACKAGE_ENTRY, _dump(_package_json(out, package_id, character_id, thumbnail_ext, config), json_indent))
    writer.add(f"{base}character.json", _dump(_character_json(out, voxta, book_id, config, warnings), json_indent))
    if out.character_book is not None and out.character_book.entries:
        writer.add(f"Books/{book_id}/book.json", _dump(_book_json(out, book_id, package_id), json_indent))
    for path, payload in planned:
        writer.add(path, payload)

    logger.info(f"Built Voxta package for '{out.name}' ({len(planned)} asset file(s))")
    return BuildResult(data=writer.finish(), card=out, warnings=warnings)


def _asset_path(
    base: str,
    asset_type: str,
    name: str,
    ext: str,
    payload: bytes,
    used: Set[str],
) -> Tuple[str, bytes]:
    folder = base + EXPORT_FOLDERS.get(asset_type, MISC_FOLDER)
    stem = (name or asset_type or "asset").replace("/", "_").replace("\\", "_")
    if stem == MAIN_ICON_NAME:
        # Avatars/*/main.* is reserved for the thumbnail
        stem = f"{MAIN_ICON_NAME}_{asset_type}"
    ext = (ext or "bin").lstrip(".").lower()
    candidate = f"{folder}{stem}.{ext}"
    counter = 1
    while candidate in used:
        candidate = f"{folder}{stem}_{counter}.{ext}"
        counter += 1
    used.add(candidate)
    return candidate, payload


def _dump(value: Dict[str, Any], indent: Optional[int]) -> bytes:
    return json.dumps(value, ensure_ascii=False, indent=indent).encode("utf-8")


def _package_json(
    card: Card,
    package_id: str,
    character_id: str,
    thumbnail_ext: Optional[str],
    config: VoxtaConfig,
) -> Dict[str, Any]:
    package = {
        "$type": "package",
        "Id": package_id,
        "Name": card.name,
        "Version": card.character_version or config.default_version,
        "Creator": card.creator or "",
        "Description": CardExtensions(card.extensions).tagline or "",
        "ExplicitContent": config.explicit_content,
        "EntryResource": {"Kind": 1, "Id": character_id},
    }
    if thumbnail_ext:
        package["ThumbnailResource"] = {"Kind": 1, "Id": character_id}
    return package


def _character_json(
    card: Card,
    voxta: Dict[str, Any],
    book_id: str,
    config: VoxtaConfig,
    warnings: List[str],
) -> Dict[str, Any]:
    appearance = voxta.get("appearance")
    if not isinstance(appearance, str) or not appearance:
        appearance = CardExtensions(card.extensions).visual_description or ""

    character: Dict[str, Any] = {
        "$type": "character",
        "Id": voxta["id"],
        "PackageId": voxta["package_id"],
        "Name": card.name,
        "Version": card.character_version or config.default_version,
        "Description": MacroProcessor.spaced(appearance),
        "Personality": MacroProcessor.spaced(card.personality),
        "Profile": MacroProcessor.spaced(card.description),
        "Scenario": MacroProcessor.spaced(card.scenario),
        "FirstMessage": MacroProcessor.spaced(card.first_mes),
        "AlternativeFirstMessages": [MacroProcessor.spaced(g) for g in card.alternate_greetings or []],
        "MessageExamples": MacroProcessor.spaced(card.mes_example),
        "Creator": card.creator or "",
        "CreatorNotes": card.creator_notes or "",
        "Tags": list(card.tags or []),
        "Culture": config.culture,
        "ExplicitContent": config.explicit_content,
    }

    # Imported settings override the configured defaults
    for key, value in (voxta.get("chat_settings") or {}).items():
        character[key] = value
    if card.character_book is not None and card.character_book.entries:
        character["MemoryBooks"] = [book_id]
    if voxta.get("scripts"):
        character["Scripts"] = voxta["scripts"]
    if voxta.get("text_to_speech"):
        character["TextToSpeech"] = voxta["text_to_speech"]
    for key, value in (voxta.get("extra") or {}).items():
        character.setdefault(key, value)

    created = _format_voxta_date(card.creation_date, "DateCreated", warnings)
    if created:
        character["DateCreated"] = created
    modified = _format_voxta_date(card.modification_date, "DateModified", warnings)
    if modified:
        character["DateModified"] = modified
    return character
