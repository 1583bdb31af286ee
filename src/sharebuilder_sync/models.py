from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel


AccountType = Literal["investment", "retirement", "savings"]
TransactionType = Literal["buy", "sell", "reinvest", "other"]


class AccountRecord(BaseModel):
    number: str
    type: AccountType
    nickname: str
    balance: Decimal
    # Only decoded by variants whose account rows carry an available-balance cell.
    available: Optional[Decimal] = None


class PositionRecord(BaseModel):
    symbol: str
    description: str
    quantity: Optional[Decimal] = None
    quote: Optional[Decimal] = None
    value: Optional[Decimal] = None
    cost_per_share: Optional[Decimal] = None
    basis: Optional[Decimal] = None

    day_change: Optional[Decimal] = None
    day_change_pct: Optional[Decimal] = None
    change: Optional[Decimal] = None
    change_pct: Optional[Decimal] = None

    @property
    def is_down(self) -> bool:
        return self.change is not None and self.change < 0


class TransactionRecord(BaseModel):
    type: TransactionType
    symbol: str
    trade_date: date
    # Outflows are negative: the raw OFX TOTAL is negated.
    total: Decimal
    commission: Optional[Decimal] = None
    cost_per_share: Optional[Decimal] = None
    quantity: Optional[Decimal] = None

    # Raw OFX unique id, kept so unresolved symbols can be traced back.
    security_id: str = ""
