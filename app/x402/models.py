# app/x402/models.py
"""
Persisted records of the settlement gateway.

Field names follow the JSON documents on disk, so a record round-trips
through model_validate / model_dump without any renaming.
"""
import time
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


class RequestStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"


class PaymentProof(BaseModel):
    """Caller-submitted claim that a challenge was paid."""
    requestId: str
    txHash: str
    payer: str = ""
    tokenAddress: str
    recipient: str
    amount: str

    class Config:
        extra = "forbid"
        coerce_numbers_to_str = True


class PaymentRequest(BaseModel):
    """One x402 challenge/response cycle."""
    requestId: str
    action: str
    query: str = ""
    payer: str = ""
    amount: str
    tokenAddress: str
    recipient: str
    status: RequestStatus = RequestStatus.PENDING
    createdAt: int
    expiresAt: int
    paidAt: Optional[int] = None
    paymentTxHash: Optional[str] = None
    paymentProof: Optional[PaymentProof] = None
    policySnapshot: Optional[Dict[str, Any]] = None
    proofVerification: Optional[Dict[str, Any]] = None
    actionParams: Optional[Dict[str, Any]] = None
    identity: Optional[Dict[str, str]] = None

    def is_past_expiry(self, at_ms: Optional[int] = None) -> bool:
        return (at_ms if at_ms is not None else now_ms()) > self.expiresAt

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class LedgerRecord(BaseModel):
    """A confirmed on-chain transfer, as recorded by the account-abstraction layer."""
    time: str = ""
    type: str = "unknown"
    txHash: str
    token: str = ""
    recipient: str = ""
    amount: str = ""
    status: str = "unknown"
    payer: str = ""
    requestId: str = ""
    block: Optional[int] = None

    class Config:
        extra = "ignore"
        coerce_numbers_to_str = True


class PolicyFailureRecord(BaseModel):
    """Immutable audit entry for a denied attempt."""
    time: str
    action: str = ""
    payer: str = ""
    recipient: str = ""
    amount: str = ""
    code: str
    message: str = ""
    evidence: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        coerce_numbers_to_str = True
