"""Runtime text and facet matching against a candidate's own fields."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from .config import ProductCandidate
from .normalize import normalize_for_match
from .text_utils import word_tokens

FUZZY_MIN_WORD_LEN = 3

_FACET_ATTRS = {"size": "sizes", "color": "colors", "material": "materials"}
_FACET_OPTION_NAMES = {
    "size": ("size", "sizes"),
    "color": ("color", "colour", "colors", "colours"),
    "material": ("material", "materials", "fabric"),
}

FACET_CONTAINMENT_MIN_LEN = 3

_SIZE_ALIASES = {
    "s": ("s", "small"),
    "m": ("m", "medium"),
    "l": ("l", "large"),
    "xl": ("xl", "extra large", "x large"),
    "xxl": ("xxl", "extra extra large", "xx large", "2xl"),
}
# alias -> canonical size code
_SIZE_ALIAS_GROUPS = {alias: code for code, aliases in _SIZE_ALIASES.items() for alias in aliases}


def field_texts(candidate: ProductCandidate) -> Dict[str, str]:
    """Normalised text per inspected field."""
    return {
        "title": normalize_for_match(candidate.title),
        "product_type": normalize_for_match(candidate.product_type),
        "tags": normalize_for_match(" ".join(candidate.tags or [])),
        "description": normalize_for_match(candidate.description),
    }


def search_text(candidate: ProductCandidate) -> str:
    return " ".join(t for t in field_texts(candidate).values() if t)


def term_in_text(term: str, text: str) -> bool:
    """
    Exact substring match first; otherwise every word of the term with at
    least three characters must appear as a word in the text.
    """
    needle = normalize_for_match(term)
    if not needle or not text:
        return False
    if needle in text:
        return True

    words = word_tokens(needle, min_len=FUZZY_MIN_WORD_LEN)
    if not words:
        return False
    haystack = set(word_tokens(text))
    return all(w in haystack for w in words)


def matching_fields(term: str, candidate: ProductCandidate) -> List[str]:
    """Names of the fields in which ``term`` matches."""
    return [name for name, text in field_texts(candidate).items() if term_in_text(term, text)]


def contains_any(candidate: ProductCandidate, terms: Iterable[str]) -> Optional[str]:
    """First term found (exact substring) in the candidate's text, else None."""
    text = search_text(candidate)
    for term in terms:
        needle = normalize_for_match(term)
        if needle and needle in text:
            return term
    return None


def value_matches(values: Iterable[str], desired: str) -> bool:
    """Case-insensitive containment in either direction."""
    d = (desired or "").strip().lower()
    if not d:
        return False
    for v in values:
        vv = str(v).strip().lower()
        if not vv:
            continue
        if vv == d or d in vv or vv in d:
            return True
    return False


def _facet_norm(value: str) -> str:
    return " ".join(str(value).replace("-", " ").strip().lower().split())


def facet_value_matches(values: Iterable[str], required: str) -> bool:
    """
    Hard-facet match: exact normalised value, then the size alias table,
    then containment for non-size values longer than three characters, so
    "L" never satisfies "XL" and "Large" never satisfies "Extra Large".
    """
    r = _facet_norm(required or "")
    if not r:
        return False
    r_group = _SIZE_ALIAS_GROUPS.get(r)
    for v in values:
        vv = _facet_norm(v)
        if not vv:
            continue
        if vv == r:
            return True
        if r_group is not None and _SIZE_ALIAS_GROUPS.get(vv) == r_group:
            return True
        if r_group is not None or vv in _SIZE_ALIAS_GROUPS:
            continue
        if len(vv) > FACET_CONTAINMENT_MIN_LEN and len(r) > FACET_CONTAINMENT_MIN_LEN and (r in vv or vv in r):
            return True
    return False


def option_values_for(candidate: ProductCandidate, option_name: str) -> List[str]:
    wanted = option_name.strip().lower()
    for name, values in (candidate.option_values or {}).items():
        if name.strip().lower() == wanted:
            return list(values or [])
    return []


def facet_values(candidate: ProductCandidate, facet: str) -> List[str]:
    """All values the candidate offers for size/color/material."""
    values = list(getattr(candidate, _FACET_ATTRS[facet]) or [])
    for option_name in _FACET_OPTION_NAMES[facet]:
        values.extend(option_values_for(candidate, option_name))
    return values


def matched_facets(candidate: ProductCandidate, required: Dict[str, List[str]]) -> Dict[str, List[str]]:
    """Required facet values the candidate actually offers, per facet."""
    out: Dict[str, List[str]] = {}
    for facet, wanted in required.items():
        offered = facet_values(candidate, facet)
        out[facet] = [w for w in wanted if facet_value_matches(offered, w)]
    return out
