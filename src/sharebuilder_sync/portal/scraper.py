from __future__ import annotations

import html as _html
import logging
import re
from decimal import Decimal
from typing import Iterable, Optional, Pattern, Union

from bs4 import BeautifulSoup
from pydantic import ValidationError

from ..errors import MalformedPage
from ..models import AccountRecord, PositionRecord
from ..util.money import parse_amount, strip_change_punctuation
from .variants import SHAREBUILDER, RowSchema


logger = logging.getLogger(__name__)


DEFAULT_TOKEN_FIELDS: tuple[str, ...] = SHAREBUILDER.token_fields

# Per-request hidden fields named by a bare md5-like hex id or a braced GUID.
_GENERIC_TOKEN_ID_RE = re.compile(r"^(?:[0-9a-f]{32}|\{[0-9A-F-]{36}\})$")

POSITION_HEADERS: tuple[str, ...] = (
    "Symbol",
    "Description",
    "Quote",
    "Day Change",
    "Quantity",
    "Market Value",
    "Cost/Share",
    "Cost Basis",
    "Gain or Loss",
)

_DEFAULT_IMAGE_PATTERN = SHAREBUILDER.challenge_image_pattern


def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def extract_tokens(html: str, token_fields: Iterable[str] = DEFAULT_TOKEN_FIELDS) -> dict[str, str]:
    """
    Collect the hidden state tokens a page expects back on the next request.

    Every fixed token name is always present in the result; names missing from the page map to "" so
    that merging the result clears a stale value instead of resending it. Generic GUID-named fields
    are only reported when they carry a value.
    """
    soup = _soup(html)
    fixed = tuple(token_fields)
    out: dict[str, str] = {name: "" for name in fixed}

    for inp in soup.find_all("input"):
        ident = inp.get("id") or ""
        name = inp.get("name") or ""
        value = inp.get("value") or ""

        key = ident if ident in out else name if name in out else None
        if key is not None:
            # First occurrence wins; later duplicates are usually empty template copies.
            if not out[key]:
                out[key] = value
            continue

        if ident and value and _GENERIC_TOKEN_ID_RE.match(ident):
            out.setdefault(ident, value)

    return out


def extract_verification_markers(
    html: str,
    expected_image_name: str,
    expected_phrase: str,
    *,
    image_pattern: str = _DEFAULT_IMAGE_PATTERN,
) -> bool:
    """
    True when the challenge page shows both the secret image and the secret phrase.

    The image must appear as `ii=<image>` on the same line as a `SelectedSecurityImage` <img>; the
    phrase may appear raw or HTML-escaped anywhere in the document.
    """
    if not html or not expected_image_name or not expected_phrase:
        return False

    image_re = re.compile(image_pattern.format(image=re.escape(expected_image_name)))
    image_ok = any(image_re.search(line) for line in html.splitlines())

    # The site HTML-encodes the phrase, including quotes as &#39; and &quot;.
    phrase_ok = expected_phrase in html or expected_phrase in _html.unescape(html)
    if not image_ok:
        logger.debug("Challenge page does not show the configured security image.")
    if not phrase_ok:
        logger.debug("Challenge page does not show the configured security phrase.")
    return image_ok and phrase_ok


def extract_single_value(html: str, pattern: Union[str, Pattern[str]]) -> Optional[str]:
    m = re.search(pattern, html or "")
    if not m:
        return None
    return m.group(1) if m.groups() else m.group(0)


def extract_accounts(html: str, schema: RowSchema = SHAREBUILDER.account_rows) -> list[AccountRecord]:
    """
    Decode the account listing on the overview page.

    Every element whose id matches `schema.marker` is one cell; cells come in fixed-order runs of
    `schema.stride` (type marker, nickname, number, placeholder/available, balance).
    """
    soup = _soup(html)
    cells: list[tuple[re.Match[str], str]] = []
    for el in soup.find_all(id=True):
        m = schema.marker.fullmatch(el.get("id") or "")
        if m:
            cells.append((m, el.get_text(" ", strip=True)))

    if len(cells) % schema.stride:
        raise MalformedPage(
            f"Account listing has {len(cells)} row cells; expected a multiple of {schema.stride}"
        )

    accounts: list[AccountRecord] = []
    for start in range(0, len(cells), schema.stride):
        run = cells[start : start + schema.stride]
        values: dict[str, object] = {}
        for row_field, (m, text) in zip(schema.fields, run):
            if row_field.name is None:
                continue
            if row_field.source == "marker":
                kind = m.groupdict().get("kind") or ""
                values[row_field.name] = schema.kinds.get(kind, kind.lower())
            elif row_field.source == "amount":
                try:
                    values[row_field.name] = parse_amount(text)
                except ValueError as e:
                    raise MalformedPage(f"Account row {row_field.name} is not an amount: {text!r}") from e
            else:
                values[row_field.name] = text
        try:
            accounts.append(AccountRecord.model_validate(values))
        except ValidationError as e:
            raise MalformedPage(f"Could not decode account row run starting at cell {start}: {e}") from e

    return accounts


def _normalize_header(text: str) -> str:
    s = " ".join((text or "").split())
    return re.sub(r"\s*/\s*", "/", s)


def _cell_text(cell) -> str:
    # Keep a separator between block children so "amount<br>(pct)" still splits.
    return " ".join(cell.get_text(" ").split())


def _split_change(text: str) -> tuple[str, str]:
    parts = (text or "").split()
    amount = parts[0] if parts else ""
    pct = parts[1] if len(parts) > 1 else ""
    return amount, pct


def _change_pair(text: str) -> tuple[Optional[str], Optional[str]]:
    raw_amount, raw_pct = _split_change(text)
    amount = strip_change_punctuation(raw_amount)
    pct = strip_change_punctuation(raw_pct)
    # The percent carries its sign through the amount only.
    if "-" in raw_amount and pct and not pct.startswith("-"):
        pct = "-" + pct
    return amount or None, pct or None


def _number(value: Optional[str], *, column: str) -> Optional[Decimal]:
    # Quotes and day changes show "N/A" or "--" for rows that did not trade.
    try:
        return parse_amount(value)
    except ValueError:
        logger.warning("Position column %r is not numeric: %r", column, value)
        return None


def extract_positions(html: str) -> list[PositionRecord]:
    soup = _soup(html)
    expected = [_normalize_header(h) for h in POSITION_HEADERS]

    header_row = None
    for tr in soup.find_all("tr"):
        cells = tr.find_all(["th", "td"], recursive=False)
        if [_normalize_header(_cell_text(c)) for c in cells] == expected:
            header_row = tr
            break

    if header_row is None:
        raise MalformedPage("Positions table header row not found")

    positions: list[PositionRecord] = []
    for tr in header_row.find_all_next("tr"):
        if tr.find_parent("table") is not header_row.find_parent("table"):
            continue
        cells = [_cell_text(c) for c in tr.find_all(["td", "th"], recursive=False)]
        if len(cells) != len(expected):
            continue

        symbol, description, quote, day_change, quantity, value, cost_per_share, basis, change = cells
        if not description:
            continue

        day_amount, day_pct = _change_pair(day_change)
        change_amount, change_pct = _change_pair(change)

        positions.append(
            PositionRecord(
                symbol=symbol,
                description=description,
                quote=_number(quote, column="Quote"),
                quantity=_number(quantity, column="Quantity"),
                value=_number(value, column="Market Value"),
                cost_per_share=_number(cost_per_share, column="Cost/Share"),
                basis=_number(basis, column="Cost Basis"),
                day_change=_number(day_amount, column="Day Change"),
                day_change_pct=_number(day_pct, column="Day Change"),
                change=_number(change_amount, column="Gain or Loss"),
                change_pct=_number(change_pct, column="Gain or Loss"),
            )
        )

    return positions
