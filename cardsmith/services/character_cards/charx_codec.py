"""
CHARX Codec
==========

Reads and builds CHARX packages: a ZIP holding a CCv3 ``card.json`` at the
root plus binary assets under ``assets/{type}/``. Card asset descriptors point
into the archive with ``embeded://{path}`` URIs (the misspelling is part of
the format).
"""

import json
import logging
import posixpath
import re
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from .asset_fetcher import AssetFetcher
from .errors import (
    AssetFetchError,
    ContainerShapeUnknownError,
    DanglingAssetReferenceError,
    UnrecognizedCardShapeError,
)
from .models import (
    Asset,
    AssetBlob,
    BuildResult,
    Card,
    CardSpec,
    ContainerReadResult,
    KNOWN_ASSET_TYPES,
    MAIN_ICON_NAME,
)
from .normalizer import normalize_card
from .serializers import serialize_v3
from .zip_container import CHARX_CARD_ENTRY, ZipWriter, read_entries

logger = logging.getLogger(__name__)

EMBEDDED_SCHEME = "embeded://"
# Accepted on read only
EMBEDDED_ALIASES = (EMBEDDED_SCHEME, "embedded://")
# URIs can sit inside free text such as markdown image links
EMBEDDED_REFERENCE = re.compile(r"embedd?ed://[^\s\"'()<>\[\]]+")

ASSET_ROOT = "assets/"

# URIs written to card.json unchanged
PASSTHROUGH_PREFIXES = ("ccdefault:", "data:", "__asset:", "asset:")
REMOTE_PREFIXES = ("https://", "http://")

# Directory for descriptor types outside the standard set
OTHER_ASSET_DIR = "other"


def embedded_path(uri: str) -> Optional[str]:
    """Archive path of an embedded URI, or None for other schemes."""
    for prefix in EMBEDDED_ALIASES:
        if uri.startswith(prefix):
            return uri[len(prefix):]
    return None


def embedded_references(value: Any) -> Iterator[str]:
    """Every embedded URI mentioned anywhere in a JSON value, in document order."""
    if isinstance(value, str):
        if embedded_path(value) is not None:
            yield value
        else:
            yield from EMBEDDED_REFERENCE.findall(value)
    elif isinstance(value, dict):
        for item in value.values():
            yield from embedded_references(item)
    elif isinstance(value, list):
        for item in value:
            yield from embedded_references(item)


def split_asset_path(path: str) -> Tuple[str, str, str]:
    """
    Infer (type, name, ext) from an archive path such as ``assets/icon/main.png``.

    The first directory below ``assets/`` is the type; unknown directories
    map to ``custom``.
    """
    relative = path[len(ASSET_ROOT):] if path.startswith(ASSET_ROOT) else path
    parts = relative.split("/")
    folder = parts[0] if len(parts) > 1 else ""
    asset_type = folder if folder in KNOWN_ASSET_TYPES else "custom"

    filename = parts[-1]
    stem, ext = posixpath.splitext(filename)
    return asset_type, stem, ext.lstrip(".").lower()


def read_charx(data: bytes) -> ContainerReadResult:
    """
    Read a CHARX archive.

    Returns:
        ContainerReadResult with a v3 card, one AssetBlob per archive asset
        and warnings

    Raises:
        CorruptZipError: unreadable archive
        ContainerShapeUnknownError: no root card.json
        UnrecognizedCardShapeError: card.json is not a card
    """
    entries = read_entries(data)
    if CHARX_CARD_ENTRY not in entries:
        raise ContainerShapeUnknownError(f"CHARX archive has no root {CHARX_CARD_ENTRY}")

    try:
        payload = json.loads(entries[CHARX_CARD_ENTRY].decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise UnrecognizedCardShapeError(f"{CHARX_CARD_ENTRY} is not valid JSON: {e}") from e

    normalized = normalize_card(payload, target_spec=CardSpec.V3)
    card = normalized.card
    warnings = list(normalized.warnings)

    # Readers tolerate dangling references; only the builder treats them as fatal
    kept = []
    for asset in card.assets:
        path = embedded_path(asset.uri)
        if path is not None and path not in entries:
            warnings.append(f"Asset '{asset.name}' references missing archive entry '{path}'; dropped")
            continue
        kept.append(asset)
    card.assets = kept

    main_icon = card.main_icon()
    blobs: List[AssetBlob] = []
    referenced: Set[str] = set()
    for asset in card.assets:
        path = embedded_path(asset.uri)
        if path is None:
            continue
        referenced.add(path)
        _, stem, ext = split_asset_path(path)
        blobs.append(AssetBlob(
            type=asset.type,
            name=asset.name or stem,
            ext=asset.ext or ext,
            data=entries[path],
            path=path,
            uri=asset.uri,
            is_main=asset is main_icon,
        ))

    unlisted = [
        path for path in entries
        if path.startswith(ASSET_ROOT) and path not in referenced and not path.endswith("/")
    ]
    for path in unlisted:
        asset_type, name, ext = split_asset_path(path)
        uri = EMBEDDED_SCHEME + path
        card.assets.append(Asset(type=asset_type, name=name, uri=uri, ext=ext))
        blobs.append(AssetBlob(type=asset_type, name=name, ext=ext, data=entries[path], path=path, uri=uri))
    if unlisted:
        warnings.append(f"{len(unlisted)} archive asset(s) missing from card.json were appended")

    if main_icon is None:
        # An unlisted icon may have become the main icon
        new_main = card.main_icon()
        if new_main is not None:
            for blob in blobs:
                blob.is_main = blob.uri == new_main.uri

    ignored = [p for p in entries if p != CHARX_CARD_ENTRY and not p.startswith(ASSET_ROOT)]
    if ignored:
        logger.debug(f"Ignoring {len(ignored)} non-asset CHARX entries: {ignored}")

    logger.info(f"Read CHARX card '{card.name}' with {len(blobs)} asset(s)")
    return ContainerReadResult(card=card, assets=blobs, warnings=warnings, payload=payload)


def _safe_name(name: str, fallback: str) -> str:
    cleaned = name.replace("/", "_").replace("\\", "_").strip()
    return cleaned or fallback


def _unique_path(folder: str, name: str, ext: str, used: Set[str]) -> str:
    """``name``, then ``name_1``, ``name_2``... until the path is free."""
    suffix = f".{ext}" if ext else ""
    candidate = f"{folder}{name}{suffix}"
    counter = 1
    while candidate in used:
        candidate = f"{folder}{name}_{counter}{suffix}"
        counter += 1
    used.add(candidate)
    return candidate


def match_asset_blobs(card: Card, blobs: Sequence[AssetBlob]) -> Tuple[Dict[int, AssetBlob], List[AssetBlob]]:
    """
    Pair card asset descriptors with binary payloads.

    A blob matches by URI first, then by (type, name). Returns the pairing
    keyed by descriptor index plus the blobs that matched nothing.
    """
    pairing: Dict[int, AssetBlob] = {}
    remaining = list(blobs)

    for index, asset in enumerate(card.assets):
        for blob in remaining:
            if blob.uri and blob.uri == asset.uri:
                pairing[index] = blob
                remaining.remove(blob)
                break

    for index, asset in enumerate(card.assets):
        if index in pairing:
            continue
        for blob in remaining:
            if blob.type == asset.type and blob.name == asset.name:
                pairing[index] = blob
                remaining.remove(blob)
                break

    return pairing, remaining


def build_charx(
    card: Card,
    assets: Optional[Sequence[AssetBlob]] = None,
    fetcher: Optional[AssetFetcher] = None,
    compression_level: int = 6,
    json_indent: Optional[int] = 2,
) -> BuildResult:
    """
    Build a CHARX archive.

    ``card.json`` is written first, then assets in card asset order. Blobs
    without a matching descriptor (e.g. the carrier image of a PNG import)
    get one appended.

    Args:
        card: Canonical card (exported as v3)
        assets: Binary payloads for the card's assets
        fetcher: Used for remote assets; None leaves them as remote URIs
        compression_level: DEFLATE level 0-9
        json_indent: Indentation for card.json

    Returns:
        BuildResult with archive bytes and the card as written

    Raises:
        DanglingAssetReferenceError: embedded URI with no payload supplied
    """
    out = card.model_copy(deep=True)
    out.spec = CardSpec.V3
    warnings: List[str] = []

    pairing, extra = match_asset_blobs(out, assets or [])
    has_icon = any(a.type == "icon" for a in out.assets)
    for blob in extra:
        name = blob.name
        if blob.is_main and not has_icon:
            name = MAIN_ICON_NAME
            has_icon = True
        out.assets.append(Asset(type=blob.type, name=name, uri="", ext=blob.ext))
        pairing[len(out.assets) - 1] = blob

    used_paths: Set[str] = {CHARX_CARD_ENTRY}
    planned: List[Tuple[str, bytes]] = []
    dangling: List[str] = []

    for index, asset in enumerate(out.assets):
        payload: Optional[bytes] = None
        blob = pairing.get(index)

        if blob is not None:
            payload = blob.data
        elif asset.uri.startswith(REMOTE_PREFIXES):
            if fetcher is None:
                continue
            try:
                payload = fetcher.fetch(asset.uri)
            except AssetFetchError as e:
                warnings.append(f"Asset '{asset.name}' kept as remote reference: {e.reason}")
                continue
        elif asset.uri.startswith(PASSTHROUGH_PREFIXES):
            continue
        elif embedded_path(asset.uri) is not None:
            dangling.append(asset.uri)
            continue
        else:
            warnings.append(f"Asset '{asset.name}' has unsupported URI '{asset.uri}'; kept as-is")
            continue

        ext = (asset.ext or (blob.ext if blob else "") or "bin").lstrip(".").lower()
        folder_type = asset.type if asset.type in KNOWN_ASSET_TYPES else OTHER_ASSET_DIR
        name = _safe_name(asset.name, asset.type or "asset")
        path = _unique_path(f"{ASSET_ROOT}{folder_type}/", name, ext, used_paths)

        asset.uri = EMBEDDED_SCHEME + path
        asset.ext = ext
        planned.append((path, payload))

    payload_v3 = serialize_v3(out)
    written = {path for path, _ in planned}
    # Descriptors were checked above; scan everything else
    others = {key: value for key, value in payload_v3["data"].items() if key != "assets"}
    for uri in embedded_references(others):
        if embedded_path(uri) not in written and uri not in dangling:
            dangling.append(uri)
    if dangling:
        raise DanglingAssetReferenceError(dangling)

    writer = ZipWriter(compression_level)
    card_json = json.dumps(payload_v3, ensure_ascii=False, indent=json_indent)
    writer.add(CHARX_CARD_ENTRY, card_json.encode("utf-8"))
    for path, payload in planned:
        writer.add(path, payload)

    logger.info(f"Built CHARX for '{out.name}' with {len(planned)} embedded asset(s)")
    return BuildResult(data=writer.finish(), card=out, warnings=warnings)
