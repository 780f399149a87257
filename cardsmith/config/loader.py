"""Configuration loader with validation and error handling."""

import yaml
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from pydantic import ValidationError

from .models import ConverterConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "cardsmith.yaml"


class ConfigLoadError(Exception):
    """Base exception for configuration loading errors."""
    pass


class ConfigValidationError(ConfigLoadError):
    """Configuration validation failed."""

    def __init__(self, errors: list[dict], file_path: Path):
        self.errors = errors
        self.file_path = file_path
        super().__init__(self._format_errors())

    def _format_errors(self) -> str:
        """Format validation errors for user display."""
        lines = [f"Configuration validation failed for {self.file_path}:\n"]
        for error in self.errors:
            loc = " → ".join(str(l) for l in error['loc'])
            msg = error['msg']
            lines.append(f"  • {loc}: {msg}")
        return "\n".join(lines)


class ConfigLoader:
    """Loads and validates converter configuration files."""

    def __init__(self, config_dir: Path = Path(".")):
        self.config_dir = Path(config_dir)

    def load_yaml(self, file_path: Path) -> Dict[str, Any]:
        """Load YAML file with error handling."""
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
                if data is None:
                    return {}
                if not isinstance(data, dict):
                    raise ConfigLoadError(f"Top level of {file_path} must be a mapping")
                return data
        except FileNotFoundError:
            raise ConfigLoadError(f"Configuration file not found: {file_path}")
        except yaml.YAMLError as e:
            raise ConfigLoadError(f"Invalid YAML in {file_path}: {e}")
        except OSError as e:
            raise ConfigLoadError(f"Failed to load {file_path}: {e}")

    def load_converter_config(self, file_path: Optional[Path] = None) -> ConverterConfig:
        """
        Load converter configuration.

        Falls back to defaults if file not found.
        """
        if file_path is None:
            file_path = self.config_dir / "config" / DEFAULT_CONFIG_NAME
        file_path = Path(file_path)

        try:
            if not file_path.exists():
                logger.info(f"Converter config not found at {file_path}, using defaults")
                return ConverterConfig()

            data = self.load_yaml(file_path)
            config = ConverterConfig(**data)
            logger.info(f"Loaded converter config from {file_path}")
            return config

        except ValidationError as e:
            raise ConfigValidationError(e.errors(), file_path)

    def validate_config(self, data: Dict[str, Any]) -> tuple[bool, list[str]]:
        """
        Validate configuration data without loading.

        Returns (is_valid, errors).
        """
        try:
            ConverterConfig(**data)
            return True, []
        except ValidationError as e:
            errors = [f"{' → '.join(str(l) for l in err['loc'])}: {err['msg']}"
                     for err in e.errors()]
            return False, errors
