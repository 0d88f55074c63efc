"""Lenient JSON extraction for provider replies.

The provider is asked for strict JSON but does not always deliver it:
markdown fences, chatty preambles, trailing commas and missing commas
between values all show up in practice. ``parse_provider_json`` walks a
ladder of repair stages ordered from least to most invasive and stops at
the first stage that yields valid JSON, so well-formed output is never
touched by an aggressive rule.

Every stage is a plain function and can be exercised on its own.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable, List, Optional, Tuple

from loguru import logger

from .pipeline_types import ParsedMalformed, ParsedProvider, ParsedValid

_FENCE_RX = re.compile(r"```(?:json|JSON)?\s*(.*?)\s*```", re.DOTALL)

# Targeted boundaries: a closed value directly followed by the start of the
# next value or property name, separated only by whitespace.
_MISSING_COMMA_RULES: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"}(\s*){"), r"},\1{"),
    (re.compile(r"](\s*)\["), r"],\1["),
    (re.compile(r"}(\s*)\["), r"},\1["),
    (re.compile(r"](\s*){"), r"],\1{"),
    (re.compile(r'}(\s*)"'), r'},\1"'),
    (re.compile(r'](\s*)"'), r'],\1"'),
    (re.compile(r'"(\s*\n\s*)"'), r'",\1"'),
    (re.compile(r'"(\s+)([{\[])'), r'",\1\2'),
]

# Broader boundaries: literals and numbers too, any whitespace.
_AGGRESSIVE_RULES: List[Tuple[re.Pattern, str]] = [
    (re.compile(r'([}\]"])(\s+)(?=["{\[])'), r"\1,\2"),
    (re.compile(r'(\d|true|false|null)(\s+)(?=")'), r"\1,\2"),
    (re.compile(r'([}\]"]|\d|true|false|null)(\s+)(?=-?\d)'), r"\1,\2"),
    (re.compile(r",(\s*,)+"), ","),
    (re.compile(r"([\[{])\s*,"), r"\1"),
]


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

def strip_fences_and_slice(text: str) -> str:
    """Stage 1: drop markdown fences, then keep the outermost ``{...}``.

    A bare JSON array (legacy shape) is kept as an array, sliced out of any
    surrounding prose when the text holds no object.
    """
    s = (text or "").strip()
    m = _FENCE_RX.search(s)
    if m:
        s = m.group(1).strip()
    if s.startswith("["):
        return s
    start, end = s.find("{"), s.rfind("}")
    if start != -1 and end > start:
        return s[start:end + 1]
    if start == -1:
        start, end = s.find("["), s.rfind("]")
        if start != -1 and end > start:
            return s[start:end + 1]
    return s


def _drop_trailing_commas_once(s: str) -> str:
    out: List[str] = []
    in_string = False
    escaped = False
    n = len(s)
    for i, ch in enumerate(s):
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
            out.append(ch)
            continue
        if ch == ",":
            j = i + 1
            while j < n and s[j] in " \t\r\n":
                j += 1
            if j < n and s[j] in "]}":
                continue
        out.append(ch)
    return "".join(out)


def remove_trailing_commas(text: str) -> str:
    """Stage 2: remove commas directly before ``]``/``}`` until nothing changes.

    String contents are never touched.
    """
    prev, cur = None, text
    while cur != prev:
        prev, cur = cur, _drop_trailing_commas_once(cur)
    return cur


def try_parse(text: str) -> Optional[Any]:
    """Stage 3: plain ``json.loads``; None when it fails."""
    if not text:
        return None
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None


_PLACEHOLDER_RX = re.compile(r'"(\d+)"')


def _mask_strings(text: str) -> Tuple[str, List[str]]:
    """Replace every string literal with ``"<n>"``; an unterminated one runs to the end."""
    out: List[str] = []
    literals: List[str] = []
    i, n = 0, len(text)
    while i < n:
        ch = text[i]
        if ch != '"':
            out.append(ch)
            i += 1
            continue
        j = i + 1
        escaped = False
        while j < n:
            if escaped:
                escaped = False
            elif text[j] == "\\":
                escaped = True
            elif text[j] == '"':
                break
            j += 1
        literals.append(text[i:j + 1])
        out.append(f'"{len(literals) - 1}"')
        i = j + 1
    return "".join(out), literals


def _apply_rules(text: str, rules: List[Tuple[re.Pattern, str]]) -> str:
    # rules only ever see structure; string contents are restored untouched
    masked, literals = _mask_strings(text)
    for rx, repl in rules:
        masked = rx.sub(repl, masked)
    return _PLACEHOLDER_RX.sub(lambda m: literals[int(m.group(1))], masked)


def insert_missing_commas(text: str) -> str:
    """Stage 4: add commas between adjacent values / property names."""
    return remove_trailing_commas(_apply_rules(text, _MISSING_COMMA_RULES))


def aggressive_comma_repair(text: str) -> str:
    """Stage 5: broader boundary rules, collapse repeated commas."""
    repaired = _apply_rules(insert_missing_commas(text), _AGGRESSIVE_RULES)
    return remove_trailing_commas(repaired)


def extract_balanced_object(text: str) -> Optional[str]:
    """Stage 6: first brace-balanced ``{...}``, honouring strings and escapes."""
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


# ---------------------------------------------------------------------------
# Ladder
# ---------------------------------------------------------------------------

def _parse_balanced(original: str) -> Optional[Any]:
    unfenced = (original or "").strip()
    m = _FENCE_RX.search(unfenced)
    if m:
        unfenced = m.group(1)
    chunk = extract_balanced_object(unfenced)
    if chunk is None:
        return None
    parsed = try_parse(chunk)
    if parsed is None:
        parsed = try_parse(remove_trailing_commas(chunk))
    return parsed


def parse_provider_json(raw: str) -> ParsedProvider:
    """
    Decode a provider reply through the repair ladder.

    Returns ParsedValid with the name of the stage that succeeded, or
    ParsedMalformed carrying the original text. Never raises and never
    returns partially guessed data.
    """
    if raw is None or not str(raw).strip():
        return ParsedMalformed(raw=raw or "", reason="empty content")

    sliced = strip_fences_and_slice(raw)
    cleaned = remove_trailing_commas(sliced)

    stages: List[Tuple[str, Callable[[], Optional[Any]]]] = [
        ("direct", lambda: try_parse(cleaned)),
        ("missing_commas", lambda: try_parse(insert_missing_commas(cleaned))),
        ("aggressive", lambda: try_parse(aggressive_comma_repair(cleaned))),
        ("balanced_object", lambda: _parse_balanced(raw)),
    ]
    for name, stage in stages:
        parsed = stage()
        if parsed is not None:
            if name != "direct":
                logger.info("Provider JSON recovered at stage '{}'", name)
            return ParsedValid(data=parsed, stage=name)

    logger.warning("Provider JSON unrecoverable after all repair stages (chars={})", len(raw))
    return ParsedMalformed(raw=raw, reason="no repair stage produced valid JSON")
