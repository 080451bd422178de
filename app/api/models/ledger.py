# app/api/models/ledger.py
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from app.x402.models import LedgerRecord


class LedgerRecordCreate(BaseModel):
    """A confirmed transfer reported by the account-abstraction layer."""
    txHash: str = Field(..., min_length=1, example="0x" + "ab" * 32)
    token: str = Field("", example="0x0ff5393387ad2f9f691fd6fd28e07e3969e27e63")
    recipient: str = Field("", example="0x6d705b93f0da7dc26e46cb39decc3baa4fb4dd29")
    amount: str = Field("", example="0.05")
    status: str = Field("unknown", example="success")
    type: str = Field("unknown", example="x402-payment")
    time: Optional[str] = None
    payer: str = ""
    requestId: str = ""
    block: Optional[int] = None

    class Config:
        coerce_numbers_to_str = True


class LedgerRecordListResponse(BaseModel):
    ok: bool = True
    total: int
    items: List[LedgerRecord]


class OnchainListResponse(BaseModel):
    ok: bool = True
    total: int
    items: List[Dict[str, Any]]
