# app/x402/engine.py
"""
Policy evaluation for transfer-style requests.

evaluate() is a pure decision function: it reads the policy and the payer's
paid history and never touches storage. Checks run in a fixed order and stop
at the first failure:

1. payer is a valid address          -> invalid_payer
2. payer is not revoked              -> payer_revoked
3. amount is a finite number > 0     -> invalid_amount
4. recipient is a valid address      -> invalid_recipient
5. recipient is allow-listed         -> scope_violation
6. amount <= maxPerTx                -> over_limit_per_tx
7. spent today + amount <= dailyLimit -> over_limit_daily

"Today" is the current UTC calendar day (YYYY-MM-DD), not a rolling 24h
window. Two payments one second apart around midnight UTC count against
different days.

Amounts are summed as Decimal so repeated 0.20 payments add up to exactly
0.60. Evidence carries plain floats so it serializes as JSON numbers.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Optional

from app.x402.addresses import is_valid_address, normalize_address
from app.x402.models import PaymentRequest, RequestStatus, now_ms
from app.x402.policy import PolicyConfig

logger = logging.getLogger(__name__)

# Decision codes
ALLOWED = "allowed"
INVALID_PAYER = "invalid_payer"
PAYER_REVOKED = "payer_revoked"
INVALID_AMOUNT = "invalid_amount"
INVALID_RECIPIENT = "invalid_recipient"
SCOPE_VIOLATION = "scope_violation"
OVER_LIMIT_PER_TX = "over_limit_per_tx"
OVER_LIMIT_DAILY = "over_limit_daily"


@dataclass(frozen=True)
class PolicyDecision:
    ok: bool
    code: str
    message: str
    evidence: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"decision": self.code, "message": self.message, "evidence": self.evidence}


def parse_amount(value: Any) -> Optional[Decimal]:
    """Parse a decimal amount. Returns None unless the value is a finite number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def utc_date_key(ms: int) -> str:
    """Calendar day key (YYYY-MM-DD, UTC) for an epoch-milliseconds timestamp."""
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def sum_paid_for_utc_day(requests: Iterable[PaymentRequest], payer: str, day_key: str) -> Decimal:
    """Total of the payer's paid requests whose paidAt (or createdAt) falls on day_key."""
    payer_lc = normalize_address(payer)
    total = Decimal("0")
    for item in requests:
        if item.status != RequestStatus.PAID:
            continue
        if normalize_address(item.payer) != payer_lc:
            continue
        mark = item.paidAt or item.createdAt
        if not mark or utc_date_key(mark) != day_key:
            continue
        amount = parse_amount(item.amount)
        if amount is not None:
            total += amount
    return total


def _deny(code: str, message: str, evidence: Dict[str, Any]) -> PolicyDecision:
    return PolicyDecision(ok=False, code=code, message=message, evidence=evidence)


def evaluate(
    payer: str,
    recipient: str,
    amount: Any,
    requests: Iterable[PaymentRequest],
    policy: PolicyConfig,
    now: Optional[int] = None,
) -> PolicyDecision:
    """
    Decide whether a challenge for (payer, recipient, amount) may be issued.

    Args:
        payer: Address expected to pay
        recipient: Address the payment goes to
        amount: Decimal string (or number) requested
        requests: Historical requests; only the payer's paid ones are counted
        policy: Policy in force
        now: Evaluation time in epoch milliseconds (defaults to the current time)

    Returns:
        PolicyDecision with ok=True and code "allowed", or the first failing check
    """
    payer_lc = normalize_address(payer)
    if not is_valid_address(payer_lc):
        return _deny(INVALID_PAYER, "Payer must be a valid address.", {"actual": payer})

    if payer_lc in policy.revokedPayers:
        return _deny(PAYER_REVOKED, "Payer is revoked by gateway guardrail.", {
            "payer": payer_lc,
            "revokedPayers": list(policy.revokedPayers),
        })

    amount_dec = parse_amount(amount)
    if amount_dec is None or amount_dec <= 0:
        return _deny(INVALID_AMOUNT, "Amount must be a positive number.", {
            "actual": amount,
            "expected": "> 0",
        })

    if not is_valid_address(recipient):
        return _deny(INVALID_RECIPIENT, "Recipient must be a valid address.", {
            "actual": recipient,
            "expected": "0x + 40 hex address",
        })

    recipient_lc = normalize_address(recipient)
    if recipient_lc not in policy.allowedRecipients:
        return _deny(SCOPE_VIOLATION, "Recipient is outside allowed scope.", {
            "actualRecipient": recipient_lc,
            "allowedRecipients": list(policy.allowedRecipients),
        })

    max_per_tx = Decimal(str(policy.maxPerTx))
    if amount_dec > max_per_tx:
        return _deny(OVER_LIMIT_PER_TX, "Amount exceeds per-transaction limit.", {
            "actualAmount": float(amount_dec),
            "maxPerTx": policy.maxPerTx,
        })

    day_key = utc_date_key(now if now is not None else now_ms())
    spent_today = sum_paid_for_utc_day(requests, payer_lc, day_key)
    projected = spent_today + amount_dec
    if projected > Decimal(str(policy.dailyLimit)):
        return _deny(OVER_LIMIT_DAILY, "Amount exceeds daily budget limit.", {
            "utcDate": day_key,
            "spentToday": float(spent_today),
            "requestedAmount": float(amount_dec),
            "projectedTotal": float(projected),
            "dailyLimit": policy.dailyLimit,
        })

    return PolicyDecision(ok=True, code=ALLOWED, message="Policy checks passed.", evidence={
        "amount": float(amount_dec),
        "recipient": recipient_lc,
        **policy.model_dump(),
    })
