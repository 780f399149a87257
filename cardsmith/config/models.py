"""Pydantic models for configuration validation."""

from typing import Literal
from pydantic import BaseModel, Field, field_validator, ConfigDict


class RemoteAssetConfig(BaseModel):
    """Remote asset fetching used by the CHARX/Voxta builders."""

    enabled: bool = False
    timeout_seconds: float = Field(default=15.0, gt=0)
    max_bytes: int = Field(default=50 * 1024 * 1024, gt=0)
    allowed_schemes: list[str] = Field(default_factory=lambda: ["https", "http"])
    user_agent: str = "cardsmith/0.1"

    @field_validator('allowed_schemes')
    @classmethod
    def validate_schemes(cls, v: list[str]) -> list[str]:
        """Only network schemes make sense for a remote fetch."""
        cleaned = [s.lower().rstrip(':/') for s in v]
        for scheme in cleaned:
            if scheme not in ("http", "https"):
                raise ValueError(f"unsupported scheme '{scheme}' (expected http or https)")
        return cleaned


class VoxtaConfig(BaseModel):
    """Voxta package export settings."""

    culture: str = "en-US"
    default_version: str = "1.0.0"
    explicit_content: bool = False


class ExportConfig(BaseModel):
    """Defaults applied when exporting cards."""

    default_spec: Literal["v2", "v3"] = "v3"
    zip_compression_level: int = Field(default=6, ge=0, le=9)
    json_indent: int | None = Field(default=2, ge=0, le=8)


class ConverterConfig(BaseModel):
    """Top-level converter configuration."""

    model_config = ConfigDict(extra='ignore')

    remote_assets: RemoteAssetConfig = Field(default_factory=RemoteAssetConfig)
    voxta: VoxtaConfig = Field(default_factory=VoxtaConfig)
    export: ExportConfig = Field(default_factory=ExportConfig)
    debug: bool = False
