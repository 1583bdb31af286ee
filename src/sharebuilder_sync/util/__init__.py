from .dates import format_us_date, parse_ofx_date, parse_us_date
from .money import format_usd, parse_amount, strip_change_punctuation

__all__ = [
    "format_us_date",
    "parse_ofx_date",
    "parse_us_date",
    "format_usd",
    "parse_amount",
    "strip_change_punctuation",
]
