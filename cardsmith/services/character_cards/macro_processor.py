"""
Macro processor for character card text fields.

Card tools disagree on macro spacing: SillyTavern and CCv2/CCv3 cards write
``{{user}}`` while Voxta packages write ``{{ user }}``. Both spellings mean the
same thing, so conversion only rewrites the spacing inside the braces.

Legacy angle bracket forms (``<USER>``, ``<BOT>``, ``<CHAR>``) are rewritten to
brace macros only on request.
"""

import re
from typing import Callable, List, Optional

from .models import Card


class MacroProcessor:
    """
    Rewrites macro spacing in card text.

    - compact: {{ user }} → {{user}}
    - spaced:  {{user}} → {{ user }}
    - legacy:  <USER> → {{user}}, <BOT>/<CHAR> → {{char}}
    """

    # Innermost braces only; the body may hold '::' arguments but no braces
    MACRO_PATTERN = re.compile(r'\{\{\s*([^{}]*?)\s*\}\}')

    @classmethod
    def compact(cls, text: Optional[str]) -> str:
        """
        Remove whitespace just inside macro braces.

        Args:
            text: Text containing macros

        Returns:
            Text with every macro in ``{{name}}`` form
        """
        if not text:
            return text or ""
        return cls.MACRO_PATTERN.sub(lambda m: '{{' + m.group(1) + '}}' if m.group(1) else m.group(0), text)

    @classmethod
    def spaced(cls, text: Optional[str]) -> str:
        """
        Put a single space just inside macro braces (Voxta style).

        Args:
            text: Text containing macros

        Returns:
            Text with every macro in ``{{ name }}`` form
        """
        if not text:
            return text or ""
        return cls.MACRO_PATTERN.sub(lambda m: '{{ ' + m.group(1) + ' }}' if m.group(1) else m.group(0), text)

    @staticmethod
    def replace_legacy(text: Optional[str]) -> str:
        """
        Replace angle bracket macros with brace macros.

        Handles:
        - <USER>
        - <BOT>
        - <CHAR>
        """
        if not text:
            return text or ""
        text = re.sub(r'<USER>', '{{user}}', text, flags=re.IGNORECASE)
        text = re.sub(r'<(BOT|CHAR)>', '{{char}}', text, flags=re.IGNORECASE)
        return text

    @classmethod
    def equivalent(cls, left: Optional[str], right: Optional[str]) -> bool:
        """True when two texts differ only in macro spacing."""
        return cls.compact(left) == cls.compact(right)


# Fields that carry prompt text with macros
TEXT_FIELDS = (
    'description',
    'personality',
    'scenario',
    'first_mes',
    'mes_example',
    'system_prompt',
    'post_history_instructions',
    'creator_notes',
)

LIST_FIELDS = (
    'alternate_greetings',
    'group_only_greetings',
)


def process_card_macros(card: Card, transform: Callable[[str], str]) -> Card:
    """
    Apply a macro transform to all prompt text of a card.

    Lorebook entry content is included. The card is copied, never mutated.

    Args:
        card: Canonical card
        transform: e.g. ``MacroProcessor.compact``

    Returns:
        New card with transformed text
    """
    processed = card.model_copy(deep=True)

    for field in TEXT_FIELDS:
        value = getattr(processed, field)
        if value:
            setattr(processed, field, transform(value))

    for field in LIST_FIELDS:
        values: Optional[List[str]] = getattr(processed, field)
        if values:
            setattr(processed, field, [transform(item) for item in values])

    if processed.character_book is not None:
        for entry in processed.character_book.entries:
            entry.content = transform(entry.content)

    return processed
