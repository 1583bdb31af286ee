from __future__ import annotations

import re
from datetime import date, datetime

from dateutil import parser as date_parser


_OFX_DATE_RE = re.compile(r"^\s*(\d{8})(\d{6})?")


def parse_us_date(value: str) -> date:
    """
    Parse dates like:
    - "12/26/2025"
    - "2025-12-26"
    """
    if value is None:
        raise ValueError("parse_us_date: value is None")
    s = value.strip()
    if not s:
        raise ValueError("parse_us_date: empty string")
    dt = date_parser.parse(s, dayfirst=False, yearfirst=False)
    return dt.date()


def format_us_date(value: date) -> str:
    # The site's date inputs are always zero-padded MM/DD/YYYY.
    return value.strftime("%m/%d/%Y")


def parse_ofx_date(value: str) -> date:
    """
    Parse OFX datetimes like "20110503", "20110503120000" or "20110503120000.000[-5:EST]".
    Only the calendar date is kept.
    """
    m = _OFX_DATE_RE.match(value or "")
    if not m:
        raise ValueError(f"parse_ofx_date: unrecognized OFX date {value!r}")
    return datetime.strptime(m.group(1), "%Y%m%d").date()
