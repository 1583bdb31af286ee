from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Iterator, Mapping, Optional

from ..errors import MalformedPage, UnknownSecurity
from ..models import TransactionRecord
from ..util.dates import parse_ofx_date


logger = logging.getLogger(__name__)


# (section element, wrapper element holding the common fields, record type)
_SECTIONS: tuple[tuple[str, Optional[str], str], ...] = (
    ("buystock", "invbuy", "buy"),
    ("sellstock", "invsell", "sell"),
    ("reinvest", None, "reinvest"),
)


def _as_list(value: Any) -> list[Any]:
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return value
    return [value]


def _find_all(node: Any, key: str) -> Iterator[Any]:
    """Depth-first search for every value stored under `key`, in document order."""
    if isinstance(node, Mapping):
        for k, v in node.items():
            if k == key:
                yield from _as_list(v)
            else:
                yield from _find_all(v, key)
    elif isinstance(node, list):
        for item in node:
            yield from _find_all(item, key)


def _get(node: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(node, Mapping):
            return None
        node = node.get(key)
    return node


def _decimal(value: Any, *, field: str) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value).strip())
    except InvalidOperation as e:
        raise MalformedPage(f"OFX {field} is not a number: {value!r}") from e


def security_map(tree: Mapping[str, Any]) -> dict[str, str]:
    """`security id -> ticker` built from every SECINFO in the security list."""
    out: dict[str, str] = {}
    for seclist in _find_all(tree, "seclist"):
        for secinfo in _find_all(seclist, "secinfo"):
            uniqueid = _get(secinfo, "secid", "uniqueid")
            ticker = _get(secinfo, "ticker")
            if uniqueid and ticker:
                out[str(uniqueid)] = str(ticker)
    return out


def _record(
    txn_type: str,
    body: Mapping[str, Any],
    secmap: Mapping[str, str],
    *,
    strict: bool,
) -> TransactionRecord:
    security_id = _get(body, "secid", "uniqueid")
    if not security_id:
        raise MalformedPage(f"OFX {txn_type} transaction has no SECID/UNIQUEID")
    security_id = str(security_id)

    symbol = secmap.get(security_id)
    if symbol is None:
        if strict:
            raise UnknownSecurity(security_id)
        logger.warning("No ticker for OFX security id=%s; using the raw id as symbol.", security_id)
        symbol = security_id

    dttrade = _get(body, "invtran", "dttrade")
    if not dttrade:
        raise MalformedPage(f"OFX {txn_type} transaction for {security_id} has no DTTRADE")

    total = _decimal(_get(body, "total"), field="TOTAL")
    if total is None:
        raise MalformedPage(f"OFX {txn_type} transaction for {security_id} has no TOTAL")

    return TransactionRecord(
        type=txn_type,
        symbol=symbol,
        trade_date=parse_ofx_date(str(dttrade)),
        total=Decimal(0) - total,
        # Reinvestments should carry a zero commission; whatever the document says is kept.
        commission=_decimal(_get(body, "commission"), field="COMMISSION"),
        cost_per_share=_decimal(_get(body, "unitprice"), field="UNITPRICE"),
        quantity=_decimal(_get(body, "units"), field="UNITS"),
        security_id=security_id,
    )


def normalize(tree: Mapping[str, Any], *, strict: bool = False) -> list[TransactionRecord]:
    """
    Flatten the investment transactions of a parsed OFX tree.

    Records come out grouped by section (buys, then sells, then reinvestments) in document order
    within each section; nothing is sorted. With `strict=True` an unmapped security id raises
    UnknownSecurity, otherwise the raw id is used as the symbol.
    """
    secmap = security_map(tree)
    invtranlists = list(_find_all(tree, "invtranlist"))

    records: list[TransactionRecord] = []
    for section, wrapper, txn_type in _SECTIONS:
        for invtranlist in invtranlists:
            for entry in _as_list(_get(invtranlist, section)):
                body = _get(entry, wrapper) if wrapper else entry
                if not isinstance(body, Mapping):
                    raise MalformedPage(f"OFX {section.upper()} entry is missing its {wrapper or section} body")
                records.append(_record(txn_type, body, secmap, strict=strict))

    logger.debug("Normalized %d OFX transactions (%d securities).", len(records), len(secmap))
    return records
