# app/api/models/x402.py
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from app.x402.models import LedgerRecord, PaymentRequest, PolicyFailureRecord
from app.x402.policy import PolicyConfig


class ActionRequest(BaseModel):
    """
    Request body for a pay-per-request action.

    Without requestId/paymentProof the gateway answers 402 with a challenge.
    With both, the proof is verified and the action result is released.
    """
    payer: str = Field("", description="Address expected to pay.", example="0x1234567890abcdef1234567890abcdef12345678")
    query: str = Field("", description="Free text, action-specific.", example="top KOLs in DeFi")
    action: str = Field("kol-score", description="Action to unlock.", example="kol-score")
    requestId: Optional[str] = Field(None, description="Challenge being answered.")
    paymentProof: Optional[Dict[str, Any]] = Field(None, description="txHash plus the paid fields.")
    actionParams: Optional[Dict[str, Any]] = Field(None, description="Action-specific params.")
    debugForceExpire: bool = Field(False, description="Testing hook: expire the request before verifying.")


class TransferIntentRequest(BaseModel):
    """Request body for a caller-priced transfer intent."""
    payer: str = Field("", example="0x1234567890abcdef1234567890abcdef12345678")
    recipient: str = Field("", example="0x6d705b93f0da7dc26e46cb39decc3baa4fb4dd29")
    amount: str = Field("", description="Decimal string.", example="0.05")
    tokenAddress: Optional[str] = Field(None, description="Defaults to the settlement token.")
    requestId: Optional[str] = None
    paymentProof: Optional[Dict[str, Any]] = None
    simulateInsufficientFunds: bool = Field(False, description="Testing hook: fail as unfunded.")
    debugForceExpire: bool = Field(False, description="Testing hook: expire the request before verifying.")

    class Config:
        coerce_numbers_to_str = True


class PolicyUpdateRequest(BaseModel):
    """Replacement policy. Each invalid field falls back to its default."""
    maxPerTx: Optional[Any] = Field(None, example=0.2)
    dailyLimit: Optional[Any] = Field(None, example=0.6)
    allowedRecipients: Optional[Any] = Field(None, description="List or comma-separated string.")
    revokedPayers: Optional[Any] = Field(None, description="List or comma-separated string.")


class RevokeRequest(BaseModel):
    payer: str = Field("", example="0x1234567890abcdef1234567890abcdef12345678")


class PolicyResponse(BaseModel):
    ok: bool = True
    policy: PolicyConfig


class RevokeResponse(BaseModel):
    ok: bool = True
    action: str
    payer: str
    policy: PolicyConfig


class PolicyFailureListResponse(BaseModel):
    ok: bool = True
    total: int
    items: List[PolicyFailureRecord]
    stats: Optional[Dict[str, Any]] = None


class PaymentRequestListResponse(BaseModel):
    ok: bool = True
    total: int
    items: List[PaymentRequest]


class DashboardResponse(BaseModel):
    ok: bool = True
    total: int
    kpi: Dict[str, Any]
    items: List[Dict[str, Any]]


class PaymentRequestStatusResponse(BaseModel):
    ok: bool = True
    requestId: str
    status: str
    action: str
    createdAt: int
    expiresAt: int
    paidAt: Optional[int] = None
    paymentTxHash: str = ""


class PaymentEvidenceResponse(BaseModel):
    """Audit bundle for one request."""
    ok: bool = True
    request: PaymentRequest
    payment: Dict[str, str]
    transferRecord: Optional[LedgerRecord] = None
    policy: Optional[Dict[str, Any]] = None
    identity: Optional[Dict[str, Any]] = None
