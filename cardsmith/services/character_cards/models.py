"""
Character Card Data Models
=========================

Pydantic models for the canonical card representation that every dialect and
container normalizes into, plus the import/export DTOs.
"""

from enum import Enum
from typing import Optional, Dict, List, Any, Literal
from pydantic import BaseModel, Field


# ===========================
# Canonical Card
# ===========================

class CardSpec(str, Enum):
    """Dialect capability set of a canonical card."""
    V2 = "v2"
    V3 = "v3"


SPEC_IDENTIFIERS = {
    CardSpec.V2: "chara_card_v2",
    CardSpec.V3: "chara_card_v3",
}

SPEC_VERSIONS = {
    CardSpec.V2: "2.0",
    CardSpec.V3: "3.0",
}

KNOWN_ASSET_TYPES = ("icon", "emotion", "background", "custom", "sound")

MAIN_ICON_NAME = "main"

LorebookPosition = Literal["before_char", "after_char"]
SelectiveLogic = Literal["AND", "NOT"]


class LorebookEntry(BaseModel):
    """Keyword-triggered lorebook entry."""
    keys: List[str] = Field(default_factory=list)
    secondary_keys: List[str] = Field(default_factory=list)
    content: str = ""
    priority: int = 10
    insertion_order: int = 100
    position: LorebookPosition = "after_char"
    probability: int = 100
    selective: bool = False
    selective_logic: Optional[SelectiveLogic] = None
    constant: bool = False
    case_sensitive: Optional[bool] = None
    depth: Optional[int] = None
    enabled: bool = True
    extensions: Dict[str, Any] = Field(default_factory=dict)

    # Optional schema fields carried verbatim
    id: Optional[Any] = None
    name: Optional[str] = None
    comment: Optional[str] = None
    use_regex: Optional[bool] = None


class CharacterBook(BaseModel):
    """Character lorebook / world info."""
    name: Optional[str] = None
    description: Optional[str] = None
    scan_depth: Optional[int] = None
    token_budget: Optional[int] = None
    recursive_scanning: Optional[bool] = None
    extensions: Dict[str, Any] = Field(default_factory=dict)
    entries: List[LorebookEntry] = Field(default_factory=list)

    def activation_order(self) -> List[LorebookEntry]:
        """
        Entries in prompt insertion order.

        Higher priority first, ties broken by insertion_order ascending. The
        stored entry order is left untouched.
        """
        indexed = list(enumerate(self.entries))
        indexed.sort(key=lambda pair: (-pair[1].priority, pair[1].insertion_order, pair[0]))
        return [entry for _, entry in indexed]


class Asset(BaseModel):
    """Asset descriptor as listed in a CCv3 card."""
    type: str
    name: str = ""
    uri: str = ""
    ext: str = ""

    @property
    def is_main_icon(self) -> bool:
        return self.type == "icon" and self.name == MAIN_ICON_NAME


class Card(BaseModel):
    """Canonical in-memory character card."""
    spec: CardSpec = CardSpec.V2

    # Core narrative fields (never None)
    name: str = ""
    description: str = ""
    personality: str = ""
    scenario: str = ""
    first_mes: str = ""
    mes_example: str = ""

    # Required in v3, optional in v2
    creator: Optional[str] = None
    character_version: Optional[str] = None
    tags: Optional[List[str]] = None

    alternate_greetings: Optional[List[str]] = None
    group_only_greetings: List[str] = Field(default_factory=list)
    character_book: Optional[CharacterBook] = None

    system_prompt: Optional[str] = None
    post_history_instructions: Optional[str] = None
    creator_notes: Optional[str] = None

    # V3 additions
    assets: List[Asset] = Field(default_factory=list)
    nickname: Optional[str] = None
    creator_notes_multilingual: Optional[Dict[str, str]] = None
    source: Optional[List[str]] = None
    creation_date: Optional[int] = None
    modification_date: Optional[int] = None

    # Opaque platform extensions
    extensions: Dict[str, Any] = Field(default_factory=dict)

    def main_icon(self) -> Optional[Asset]:
        """The card's avatar: the icon named 'main', else the first icon."""
        icons = [a for a in self.assets if a.type == "icon"]
        for asset in icons:
            if asset.is_main_icon:
                return asset
        return icons[0] if icons else None


class AssetBlob(BaseModel):
    """Binary asset payload travelling alongside a card."""
    type: str
    name: str
    ext: str = ""
    data: bytes = b""
    path: Optional[str] = None  # archive path when read from a container
    uri: Optional[str] = None
    is_main: bool = False


# ===========================
# Validation
# ===========================

class ValidationSeverity(str, Enum):
    """Errors make a payload invalid; warnings do not."""
    ERROR = "error"
    WARNING = "warning"


class ValidationIssue(BaseModel):
    """Single problem found in a raw card payload."""
    message: str
    severity: ValidationSeverity = ValidationSeverity.ERROR


class CardValidationResult(BaseModel):
    """Schema check of a raw CCv2/CCv3 payload against its declared dialect."""
    spec: CardSpec
    issues: List[ValidationIssue] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not any(i.severity == ValidationSeverity.ERROR for i in self.issues)

    @property
    def errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.ERROR]


# ===========================
# Results
# ===========================

class NormalizedCard(BaseModel):
    """Canonical card plus the non-fatal warnings raised while normalizing."""
    card: Card
    warnings: List[str] = Field(default_factory=list)


class ContainerReadResult(BaseModel):
    """Result of reading a CHARX or Voxta archive."""
    card: Card
    assets: List[AssetBlob] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    payload: Optional[Any] = None  # raw card JSON, when the container stores one


class BuildResult(BaseModel):
    """Result of building a container; ``card`` reflects rewritten asset URIs."""
    data: bytes
    card: Card
    warnings: List[str] = Field(default_factory=list)


class CardImportResult(BaseModel):
    """Result of character card import operation."""
    card: Card
    format: str
    assets: List[AssetBlob] = Field(default_factory=list)
    image: Optional[bytes] = None  # PNG carrier image, if any
    warnings: List[str] = Field(default_factory=list)
    validation: Optional[CardValidationResult] = None  # None for Voxta packages


class CardExportResult(BaseModel):
    """Result of character card export operation."""
    data: bytes
    format: str
    media_type: str
    extension: str
    warnings: List[str] = Field(default_factory=list)
