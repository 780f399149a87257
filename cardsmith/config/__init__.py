"""Configuration loading and validation."""

from .models import (
    ConverterConfig,
    RemoteAssetConfig,
    VoxtaConfig,
    ExportConfig,
)
from .loader import ConfigLoader, ConfigLoadError, ConfigValidationError

__all__ = [
    "ConverterConfig",
    "RemoteAssetConfig",
    "VoxtaConfig",
    "ExportConfig",
    "ConfigLoader",
    "ConfigLoadError",
    "ConfigValidationError",
]
