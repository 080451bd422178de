# app/x402/errors.py
"""
Error taxonomy for the settlement gateway.

- InvalidInput: malformed request data, reported synchronously, no state change
- PolicyDenied: structured denial from the policy engine, logged to the failure trail
- PaymentRequiredError and subclasses: x402 protocol errors (not found, expired, bad proof)
- InsufficientFunds: simulated funding failure
- StorageError: durable-store failure, kept apart from business denials
- LedgerResponseError: unparsable answer from the remote transfer indexer
"""
from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base class for every per-request failure the gateway reports to callers."""

    status_code = 400
    code = "gateway_error"

    def __init__(self, reason: str, code: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        if code is not None:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "reason": self.reason}


class InvalidInput(GatewayError):
    status_code = 400
    code = "invalid_input"


class PolicyDenied(GatewayError):
    """Raised when the policy engine refuses to issue a challenge."""

    status_code = 403

    def __init__(self, decision, policy: Dict[str, Any]):
        super().__init__(decision.message, code=decision.code)
        self.decision = decision
        self.policy = policy

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "reason": self.reason,
            "evidence": self.decision.evidence,
            "policy": self.policy,
        }


class InsufficientFunds(GatewayError):
    status_code = 402
    code = "insufficient_funds"


class PaymentRequiredError(GatewayError):
    """
    A protocol error answered with HTTP 402.

    When the request is known the response echoes its challenge so the
    caller can retry the payment.
    """

    status_code = 402
    code = "payment_required"

    def __init__(self, reason: str, request=None):
        super().__init__(reason)
        self.request = request


class RequestNotFound(PaymentRequiredError):
    def __init__(self, request_id: str):
        super().__init__("request not found")
        self.request_id = request_id


class RequestExpired(PaymentRequiredError):
    def __init__(self, request):
        super().__init__("request expired", request=request)


class ProofRejected(PaymentRequiredError):
    """Proof failed the field check or has no matching ledger record."""


class StorageError(Exception):
    """Durable store could not be read or written."""

    def __init__(self, path: str, detail: str):
        super().__init__(f"{path}: {detail}")
        self.path = path
        self.detail = detail


class LedgerResponseError(ValueError):
    """The remote transfer indexer answered with something unparsable."""
