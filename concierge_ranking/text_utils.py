import math
import re
from typing import List, Optional

_PRICE_RX = re.compile(r"-?\d+(?:\.\d+)?")
_WORD_RX = re.compile(r"[a-z0-9]+")


def parse_price(value) -> Optional[float]:
    """
    Parse a price from whatever the catalog hands us.
    Examples:
      '49.99' -> 49.99, '$1,299.00' -> 1299.0, 'unknown' -> None, 12 -> 12.0
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        f = float(value)
        return f if math.isfinite(f) else None
    s = str(value).replace(",", "").strip()
    if not s:
        return None
    m = _PRICE_RX.search(s)
    if not m:
        return None
    return float(m.group(0))


def word_tokens(text: str, min_len: int = 1) -> List[str]:
    """Lower-cased alphanumeric words of at least ``min_len`` characters."""
    if not text:
        return []
    return [w for w in _WORD_RX.findall(text.lower()) if len(w) >= min_len]
