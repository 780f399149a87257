"""
Character Card Errors
====================

Fatal conditions raised by the detectors, normalizer and codecs. Recoverable
problems are never raised; they travel as warning strings on the result.
"""


class CardError(Exception):
    """Base exception for character card conversion errors."""
    pass


class UnrecognizedCardShapeError(CardError):
    """Payload has neither a ``data`` object nor a top-level ``name``."""
    pass


class ContainerShapeUnknownError(CardError):
    """ZIP archive is neither a CHARX nor a Voxta package."""
    pass


class CorruptPNGError(CardError):
    """PNG chunk stream is malformed."""
    pass


class CorruptZipError(CardError):
    """ZIP archive or its central directory is malformed."""
    pass


class NoEmbeddedCardDataError(CardError):
    """
    PNG is valid but carries no recognized card chunk.

    Callers may recover by treating the file as a plain image.
    """
    pass


class DanglingAssetReferenceError(CardError):
    """An ``embeded://`` URI in the card JSON has no archive entry."""

    def __init__(self, uris: list[str]):
        self.uris = uris
        super().__init__(
            "Card references embedded assets missing from the archive: "
            + ", ".join(uris)
        )


class AssetFetchError(CardError):
    """A remote asset could not be fetched."""

    def __init__(self, uri: str, reason: str):
        self.uri = uri
        self.reason = reason
        super().__init__(f"Failed to fetch asset '{uri}': {reason}")


class UnsupportedFormatError(CardError):
    """Input bytes match no supported card format."""
    pass
