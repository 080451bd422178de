# app/x402/proof.py
"""
Payment proof parsing and field validation.

A proof can arrive as the JSON `paymentProof` field or, following the x402
HTTP convention, base64-encoded in the X-PAYMENT header. After a successful
unlock the X-PAYMENT-RESPONSE header carries a base64 settlement summary.
"""
import json
import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError
from x402.encoding import safe_base64_decode, safe_base64_encode

from app.x402.addresses import addresses_equal, is_valid_tx_hash
from app.x402.errors import InvalidInput
from app.x402.models import PaymentProof, PaymentRequest

logger = logging.getLogger(__name__)

X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"
INVALID_PAYMENT_PROOF = "invalid_payment_proof"


def parse_proof(raw: Any) -> Optional[PaymentProof]:
    """
    Coerce a JSON proof object into a PaymentProof.

    Returns None when no proof was sent.

    Raises:
        InvalidInput: The proof does not validate as a PaymentProof
    """
    if raw is None or isinstance(raw, PaymentProof):
        return raw
    if not isinstance(raw, dict):
        raise InvalidInput("invalid payment proof: expected a JSON object", code=INVALID_PAYMENT_PROOF)
    try:
        return PaymentProof.model_validate(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'proof'}: {error['msg']}" for error in e.errors()
        )
        logger.warning(f"x402: Rejected payment proof: {problems}")
        raise InvalidInput(f"invalid payment proof: {problems}", code=INVALID_PAYMENT_PROOF)


def decode_payment_header(header_value: Optional[str]) -> Optional[PaymentProof]:
    """
    Decode the X-PAYMENT header into a PaymentProof.

    Args:
        header_value: Base64-encoded JSON proof

    Returns:
        PaymentProof if a header was sent, None otherwise

    Raises:
        InvalidInput: The header is not base64 JSON or does not hold a valid proof
    """
    if not header_value:
        return None
    try:
        # safe_base64_decode returns str, not bytes
        decoded_str = safe_base64_decode(header_value)
        if not decoded_str:
            raise InvalidInput("invalid payment proof: X-PAYMENT is not base64", code=INVALID_PAYMENT_PROOF)
        raw = json.loads(decoded_str)
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse X-PAYMENT header JSON: {e}")
        raise InvalidInput(f"invalid payment proof: X-PAYMENT is not JSON ({e.msg})", code=INVALID_PAYMENT_PROOF)
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning(f"Failed to decode X-PAYMENT header: {e}")
        raise InvalidInput("invalid payment proof: X-PAYMENT is not base64", code=INVALID_PAYMENT_PROOF)
    return parse_proof(raw)


def encode_payment_response(summary: Dict[str, Any]) -> str:
    """Base64-encode a settlement summary for the X-PAYMENT-RESPONSE header."""
    return safe_base64_encode(json.dumps(summary).encode("utf-8"))


def validate_proof_fields(request: PaymentRequest, proof: Optional[PaymentProof]) -> Optional[str]:
    """
    Compare a proof's declared fields with the outstanding request.

    Addresses compare case-insensitively; the amount must match as a string.

    Returns:
        None when every field matches, else the first mismatch reason
    """
    if proof is None:
        return "missing payment proof"
    if not proof.txHash:
        return "missing txHash"
    if proof.requestId != request.requestId:
        return "requestId mismatch"
    if not addresses_equal(proof.tokenAddress, request.tokenAddress):
        return "token mismatch"
    if not addresses_equal(proof.recipient, request.recipient):
        return "recipient mismatch"
    if str(proof.amount) != str(request.amount):
        return "amount mismatch"
    if not is_valid_tx_hash(proof.txHash):
        return "invalid txHash format"
    return None
