"""
Phrase matching for inbound messages.

A config's optoutPhrase / optinPhrase hold one or more comma-separated,
case-insensitive trigger phrases. A phrase matches when the trimmed,
uppercased message equals it or starts with it followed by a space, so
"Stop please" still opts out.
"""

from enum import Enum
from typing import Iterable, Optional

from optout_gate.schemas import OptOutConfig
from optout_gate.utils import normalize_number


class Classification(str, Enum):
    OPTOUT = "optout"
    OPTIN = "optin"
    NONE = "none"


def split_phrases(phrases: Optional[str]) -> list[str]:
    """Split a comma-separated phrase list into trimmed, uppercased phrases."""
    if not phrases:
        return []
    return [p.strip().upper() for p in phrases.split(",") if p.strip()]


def matches(text: str, phrase: str) -> bool:
    return text == phrase or text.startswith(phrase + " ")


def find_config(configs: Iterable[OptOutConfig], destination: Optional[str]) -> Optional[OptOutConfig]:
    """
    Return the first config whose receiving number equals the destination.

    Numbers are compared in normalized form; an empty destination never
    matches.
    """
    normalized = normalize_number(destination)
    if not normalized:
        return None
    for config in configs:
        if normalize_number(config.optout_number) == normalized:
            return config
    return None


def classify_text(config: OptOutConfig, text: Optional[str]) -> Classification:
    """Classify a message against one config. Opt-out phrases win ties."""
    cleaned = (text or "").strip().upper()
    if not cleaned:
        return Classification.NONE
    if any(matches(cleaned, p) for p in split_phrases(config.optout_phrase)):
        return Classification.OPTOUT
    if any(matches(cleaned, p) for p in split_phrases(config.optin_phrase)):
        return Classification.OPTIN
    return Classification.NONE


def classify(configs: Iterable[OptOutConfig], destination: Optional[str], text: Optional[str]) -> Classification:
    config = find_config(configs, destination)
    if config is None:
        return Classification.NONE
    return classify_text(config, text)
