from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional


_CHANGE_PUNCT_RE = re.compile(r"[+$,%()]")


def parse_amount(value: Optional[str]) -> Optional[Decimal]:
    """
    Parse values like:
    - "$3,040.16"
    - "3040.16"
    - "-$12.34"
    - "3.1416"

    Empty cells return None. Parentheses are stripped, not treated as negative (the site
    carries the sign as a leading minus).
    """
    if value is None:
        return None

    s = value.strip()
    if not s:
        return None

    s = s.replace("$", "").replace(",", "").replace("(", "").replace(")", "").strip()
    if s.startswith("+"):
        s = s[1:]
    try:
        return Decimal(s)
    except InvalidOperation as e:
        raise ValueError(f"parse_amount: not a number: {value!r}") from e


def strip_change_punctuation(value: str) -> str:
    """Remove `+ $ , % ( )` from a day-change / gain-or-loss fragment."""
    return _CHANGE_PUNCT_RE.sub("", (value or "").strip())


def format_usd(value: Optional[Decimal]) -> str:
    if value is None:
        return ""
    dec = Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    if dec < 0:
        return f"-${-dec:,.2f}"
    return f"${dec:,.2f}"
