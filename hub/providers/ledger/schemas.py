"""Pydantic schemas for Ledger API payloads."""

import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class LedgerBalance(BaseModel):
    current: Optional[float] = None
    available: Optional[float] = None
    iso_currency_code: Optional[str] = None


class LedgerAccount(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    account_id: str = Field(..., min_length=1)
    name: str
    type: str
    subtype: Optional[str] = None
    mask: Optional[str] = None
    balances: LedgerBalance = Field(default_factory=LedgerBalance)


class LedgerTransaction(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    transaction_id: str = Field(..., min_length=1)
    account_id: str
    amount: float
    date: datetime.date
    name: str = ""
    pending: bool = False
    iso_currency_code: Optional[str] = None


class LedgerInstitution(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    institution_id: str = Field(..., min_length=1)
    name: str
    url: Optional[str] = None
