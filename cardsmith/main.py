"""Main entry point for Cardsmith."""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from cardsmith.config import ConfigLoader, ConfigLoadError, ConverterConfig
from cardsmith.services.character_cards import (
    CardError,
    CharacterCardExporter,
    CharacterCardImporter,
    ExportFormat,
    FormatDetector,
)
from cardsmith.services.character_cards.asset_fetcher import build_fetcher
from cardsmith.services.character_cards.extensions import CardExtensions
from cardsmith.services.character_cards.format_detector import CardFormat
from cardsmith.services.character_cards.models import CardValidationResult
from cardsmith.services.character_cards.serializers import serialize_v3

logger = logging.getLogger(__name__)


def setup_logging(debug: bool = False):
    """Configure logging."""
    # Output goes to stdout; keep logs off it
    handlers = [logging.StreamHandler(sys.stderr)]

    logging.basicConfig(
        level=logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True  # Force reconfiguration even if already configured
    )

    # Only our loggers get the requested level, not third-party libraries
    app_logger = logging.getLogger('cardsmith')
    app_logger.setLevel(logging.DEBUG if debug else logging.WARNING)

    # Silence noisy third-party loggers
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('PIL').setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cardsmith",
        description="Convert character cards between CCv2/CCv3 JSON, PNG, CHARX and Voxta"
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to cardsmith.yaml (default: ./config/cardsmith.yaml)"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Verbose logging"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    detect = subparsers.add_parser("detect", help="Print the detected format of a file")
    detect.add_argument("file", type=Path)

    inspect = subparsers.add_parser("inspect", help="Summarize a card and list import warnings")
    inspect.add_argument("file", type=Path)
    inspect.add_argument(
        "--json",
        action="store_true",
        help="Print the normalized card as CCv3 JSON instead of a summary"
    )

    convert = subparsers.add_parser("convert", help="Convert a card to another format")
    convert.add_argument("file", type=Path)
    convert.add_argument(
        "--to",
        required=True,
        choices=[f.value for f in ExportFormat] + ["json", "png"],
        help="Target format; json and png use export.default_spec"
    )
    convert.add_argument(
        "-o", "--output",
        type=Path,
        help="Output file (default: card name plus format extension, next to the input)"
    )
    convert.add_argument(
        "--image",
        type=Path,
        help="Image to use as PNG carrier / main icon"
    )
    convert.add_argument(
        "--fetch-remote",
        action="store_true",
        help="Download remote assets into CHARX/Voxta packages"
    )
    return parser


def cmd_detect(args: argparse.Namespace, config: ConverterConfig) -> int:
    data = args.file.read_bytes()
    result = FormatDetector.detect(data, filename=args.file.name)
    line = result.format.value
    if result.zip_offset:
        line += f" (ZIP data at offset {result.zip_offset})"
    if result.format == CardFormat.JSON:
        line += f" ({FormatDetector.classify_json(result.payload).value})"
    print(line)
    return 0 if result.format != CardFormat.UNKNOWN else 1


def cmd_inspect(args: argparse.Namespace, config: ConverterConfig) -> int:
    result = CharacterCardImporter().import_file(args.file)
    card = result.card

    if args.json:
        print(json.dumps(serialize_v3(card), ensure_ascii=False, indent=2))
    else:
        print(f"Format:      {result.format}")
        print(f"Name:        {card.name}")
        print(f"Spec:        {card.spec.value}")
        print(f"Creator:     {card.creator or '-'}")
        print(f"Tags:        {', '.join(card.tags or []) or '-'}")
        print(f"Greetings:   {1 + len(card.alternate_greetings or [])}")
        entries = len(card.character_book.entries) if card.character_book else 0
        print(f"Lorebook:    {entries} entries")
        print(f"Assets:      {len(card.assets)} listed, {len(result.assets)} embedded")
        for asset in card.assets:
            print(f"  - {asset.type}/{asset.name}.{asset.ext} <{asset.uri}>")
        print(f"Extensions:  {', '.join(card.extensions) or '-'}")
        unknown = CardExtensions(card.extensions).unknown_keys()
        if unknown:
            print(f"  (opaque: {', '.join(unknown)})")
        _print_validation(result.validation)

    _print_warnings(result.warnings)
    return 0


def cmd_convert(args: argparse.Namespace, config: ConverterConfig) -> int:
    target = args.to
    if target in ("json", "png"):
        target = f"{target}_{config.export.default_spec}"

    imported = CharacterCardImporter().import_file(args.file)
    image = args.image.read_bytes() if args.image else None

    remote = config.remote_assets
    if args.fetch_remote:
        remote = remote.model_copy(update={"enabled": True})
    fetcher = build_fetcher(remote)
    try:
        exporter = CharacterCardExporter(config, fetcher=fetcher)
        result = exporter.export(imported.card, ExportFormat(target), image=image, assets=imported.assets)
    finally:
        if fetcher is not None:
            fetcher.close()

    output = args.output or args.file.with_name(
        CharacterCardExporter.suggested_filename(imported.card, result)
    )
    if output.resolve() == args.file.resolve():
        print(f"error: output would overwrite {args.file}; pass -o", file=sys.stderr)
        return 1

    output.write_bytes(result.data)
    print(f"Wrote {output} ({result.media_type}, {len(result.data)} bytes)")
    _print_warnings(imported.warnings + result.warnings)
    return 0


def _print_validation(validation: Optional[CardValidationResult]) -> None:
    if validation is None:
        return
    status = "ok" if validation.valid else "invalid"
    print(f"Validation:  {status} as {validation.spec.value} ({len(validation.issues)} issue(s))")
    for issue in validation.issues:
        print(f"  - [{issue.severity.value}] {issue.message}")


def _print_warnings(warnings: List[str]) -> None:
    if not warnings:
        return
    print(f"\n{len(warnings)} warning(s):")
    for warning in warnings:
        print(f"  • {warning}")


COMMANDS = {
    "detect": cmd_detect,
    "inspect": cmd_inspect,
    "convert": cmd_convert,
}


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point; returns the process exit status."""
    args = build_parser().parse_args(argv)

    try:
        config = ConfigLoader().load_converter_config(args.config)
    except ConfigLoadError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    setup_logging(args.debug or config.debug)

    try:
        return COMMANDS[args.command](args, config)
    except CardError as e:
        logger.debug("Conversion failed", exc_info=True)
        print(f"error: {type(e).__name__}: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
