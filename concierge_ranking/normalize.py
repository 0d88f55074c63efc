from __future__ import annotations

"""
Text normalisation helpers shared by the request assembler and the
constraint checks.

The goal is to have a single, well-defined place that turns catalog HTML,
marketing copy and shopper intent into something reasonably clean for both
the prompt and the runtime text-match checks.

Public helpers:

* basic_clean(text) -> str
    HTML strip + unicode / whitespace normalisation.

* clean_description(text, max_chars) -> str
    basic_clean plus truncation, used for prompt serialisation.

* enhance_user_intent(text) -> str
    Abbreviation expansion and shopping-phrase normalisation.

* normalize_for_match(text) -> str
    Lower-cased, punctuation-light form used for term matching so the
    intent side and the catalog side see the same view of text.
"""

import re
import unicodedata
from typing import Dict

from bs4 import BeautifulSoup

MAX_INPUT_CHARS = 20_000

_ABBREVIATIONS: Dict[str, str] = {
    "w/o": "without",
    "w/": "with",
    "vs": "versus",
    "e.g.": "for example",
    "etc.": "and so on",
    "approx": "approximately",
    "min": "minimum",
    "max": "maximum",
}

_INTENT_PHRASES = [
    (r"\bi'm looking for\b", "I need"),
    (r"\bi am looking for\b", "I need"),
    (r"\bi want\b", "I need"),
    (r"\bi need\b", "I need"),
    (r"\bsomething\b", "a product"),
    (r"\bstuff\b", "items"),
    (r"\bthings\b", "products"),
]

NO_INTENT_TEXT = "No specific intent provided"


# ---------------------------------------------------------------------------
# Low-level helpers
# ---------------------------------------------------------------------------


def strip_html(text: str) -> str:
    if not text:
        return ""
    if "<" not in text and "&" not in text:
        return text
    soup = BeautifulSoup(text, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return soup.get_text(" ", strip=True)


def _normalise_unicode(text: str) -> str:
    # Normalise quotes, accents etc. into a consistent representation.
    text = unicodedata.normalize("NFKC", text)
    text = text.replace("‘", "'").replace("’", "'")
    text = text.replace("“", '"').replace("”", '"')
    text = text.replace("–", "-").replace("—", "-")
    text = text.replace(" ", " ")
    return text


def _abbreviation_pattern(abbrev: str) -> re.Pattern:
    # Abbreviations may end in punctuation, so \b is only used where the
    # boundary character is a word character.
    head = r"\b" if abbrev[0].isalnum() else ""
    tail = r"\b" if abbrev[-1].isalnum() else ""
    return re.compile(head + re.escape(abbrev) + tail, flags=re.IGNORECASE)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def basic_clean(text: str | None) -> str:
    """Light-weight clean for catalog fields.

    * strips HTML (script/style bodies dropped)
    * normalises unicode and whitespace
    * truncates excessively long inputs
    """
    if text is None:
        return ""
    if not isinstance(text, str):
        text = str(text)

    if len(text) > MAX_INPUT_CHARS:
        text = text[:MAX_INPUT_CHARS]

    text = strip_html(text)
    text = _normalise_unicode(text)
    text = re.sub(r"\s+", " ", text).strip()
    return text


def clean_description(text: str | None, max_chars: int) -> str:
    """Clean a product description and cap it at ``max_chars`` (+ '...')."""
    cleaned = basic_clean(text)
    if max_chars > 0 and len(cleaned) > max_chars:
        return cleaned[:max_chars].rstrip() + "..."
    return cleaned


def enhance_user_intent(text: str | None) -> str:
    """Expand common abbreviations and normalise shopping phrasing."""
    if not text or not text.strip():
        return NO_INTENT_TEXT

    out = basic_clean(text)
    for abbrev, expansion in _ABBREVIATIONS.items():
        out = _abbreviation_pattern(abbrev).sub(expansion, out)
    for pattern, replacement in _INTENT_PHRASES:
        out = re.sub(pattern, replacement, out, flags=re.IGNORECASE)
    return out


def normalize_for_match(text: str | None) -> str:
    """Lower-case, unicode-normalise and collapse separators for matching."""
    norm = basic_clean(text).lower()
    if not norm:
        return ""
    norm = re.sub(r"[_\-/|,;:!?()\[\]{}\"']+", " ", norm)
    norm = re.sub(r"\s+", " ", norm).strip()
    return norm
