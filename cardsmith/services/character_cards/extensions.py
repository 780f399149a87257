"""
Card Extensions
==============

The ``extensions`` bag is an ordered, opaque mapping. Unknown keys are never
dropped or renamed. A handful of keys are understood and read through typed
accessors over the same underlying dict.
"""

import copy
import logging
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

DEPTH_PROMPT_KEY = "depth_prompt"
VISUAL_DESCRIPTION_KEY = "visual_description"
CHUB_KEY = "chub"
RISUAI_KEY = "risuai"
VOXTA_KEY = "voxta"
TAGLINE_KEY = "tagline"

# Holds v3-only fields when a card is written in the v2 dialect
V3_FIELDS_KEY = "v3_fields"

KNOWN_EXTENSION_KEYS = (
    DEPTH_PROMPT_KEY,
    VISUAL_DESCRIPTION_KEY,
    CHUB_KEY,
    RISUAI_KEY,
    VOXTA_KEY,
    TAGLINE_KEY,
    V3_FIELDS_KEY,
)


class DepthPrompt(BaseModel):
    """SillyTavern character note injected at a fixed chat depth."""
    prompt: str = ""
    depth: int = 4
    role: str = "system"


class CardExtensions:
    """Typed view over a card's extensions dict. Mutations write through."""

    def __init__(self, data: Dict[str, Any]):
        self.data = data

    @property
    def depth_prompt(self) -> Optional[DepthPrompt]:
        raw = self.data.get(DEPTH_PROMPT_KEY)
        if not isinstance(raw, dict):
            return None
        try:
            return DepthPrompt(**raw)
        except ValidationError as e:
            logger.debug(f"Ignoring malformed depth_prompt extension: {e}")
            return None

    @depth_prompt.setter
    def depth_prompt(self, value: Optional[DepthPrompt]) -> None:
        if value is None:
            self.data.pop(DEPTH_PROMPT_KEY, None)
        else:
            self.data[DEPTH_PROMPT_KEY] = value.model_dump()

    @property
    def visual_description(self) -> Optional[str]:
        value = self.data.get(VISUAL_DESCRIPTION_KEY)
        return value if isinstance(value, str) else None

    @property
    def tagline(self) -> Optional[str]:
        value = self.data.get(TAGLINE_KEY)
        return value if isinstance(value, str) else None

    @property
    def chub(self) -> Dict[str, Any]:
        return self._section(CHUB_KEY)

    @property
    def risuai(self) -> Dict[str, Any]:
        return self._section(RISUAI_KEY)

    @property
    def voxta(self) -> Dict[str, Any]:
        return self._section(VOXTA_KEY)

    def _section(self, key: str) -> Dict[str, Any]:
        value = self.data.get(key)
        return value if isinstance(value, dict) else {}

    def set_section(self, key: str, value: Dict[str, Any]) -> None:
        """Replace a sub-object, keeping its original position when present."""
        self.data[key] = value

    def unknown_keys(self) -> List[str]:
        return [key for key in self.data if key not in KNOWN_EXTENSION_KEYS]


def normalize_extensions(raw: Any, warnings: List[str], where: str = "extensions") -> Dict[str, Any]:
    """
    Deep-copy an extensions value into a dict, canonicalizing understood keys.

    Anything other than a mapping becomes ``{}``; ``None`` does so silently.
    """
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        warnings.append(f"{where} is not an object ({type(raw).__name__}); replaced with {{}}")
        return {}

    extensions = copy.deepcopy(raw)

    depth_prompt = extensions.get(DEPTH_PROMPT_KEY)
    if isinstance(depth_prompt, dict) and isinstance(depth_prompt.get("depth"), str):
        try:
            depth_prompt["depth"] = int(depth_prompt["depth"].strip())
        except ValueError:
            warnings.append(
                f"{where}.depth_prompt.depth '{depth_prompt['depth']}' is not a number; left unchanged"
            )

    return extensions
