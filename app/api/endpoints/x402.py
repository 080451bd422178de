# app/api/endpoints/x402.py
from fastapi import APIRouter, Header, Query, status
from starlette.responses import JSONResponse
from requests.exceptions import RequestException
from typing import Any, Optional
import logging

from app.core.config import settings
from app.x402.actions import TRANSFER_INTENT, build_capabilities
from app.x402.errors import (
    GatewayError,
    InvalidInput,
    LedgerResponseError,
    PaymentRequiredError,
    RequestNotFound,
    StorageError,
)
from app.x402.gateway import get_gateway
from app.x402.lifecycle import ProofOutcome, build_payment_required
from app.x402.models import PaymentProof
from app.x402.proof import (
    X_PAYMENT_RESPONSE_HEADER,
    decode_payment_header,
    encode_payment_response,
    parse_proof,
)
from app.api.models.x402 import (
    ActionRequest,
    DashboardResponse,
    PaymentEvidenceResponse,
    PaymentRequestListResponse,
    PaymentRequestStatusResponse,
    PolicyFailureListResponse,
    PolicyResponse,
    PolicyUpdateRequest,
    RevokeRequest,
    RevokeResponse,
    TransferIntentRequest,
)

router = APIRouter()
a2a_router = APIRouter()
logger = logging.getLogger(__name__)


def clamp_limit(limit: Optional[int]) -> int:
    """Bound a listing limit to [1, X402_QUERY_LIMIT_MAX]."""
    if limit is None:
        limit = settings.X402_QUERY_LIMIT_DEFAULT
    return max(1, min(limit, settings.X402_QUERY_LIMIT_MAX))


def error_response(exc: Exception) -> JSONResponse:
    """Translate a gateway, storage or ledger failure into its JSON response."""
    if isinstance(exc, PaymentRequiredError) and exc.request is not None:
        return JSONResponse(status_code=exc.status_code, content=build_payment_required(exc.request, exc.reason))
    if isinstance(exc, GatewayError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
    if isinstance(exc, StorageError):
        logger.error(f"x402: Storage failure: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "storage_error", "reason": "Gateway storage is unavailable."},
        )
    # RequestException or LedgerResponseError
    logger.error(f"x402: Ledger lookup failed: {exc}")
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"error": "ledger_unavailable", "reason": f"Could not query transfer records: {exc}"},
    )


def success_response(outcome: ProofOutcome) -> JSONResponse:
    """200 with the unlocked result and the X-PAYMENT-RESPONSE settlement header."""
    settlement = {
        "success": True,
        "requestId": outcome.request.requestId,
        "txHash": outcome.request.paymentTxHash,
        "network": settings.X402_NETWORK,
    }
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=outcome.to_dict(),
        headers={X_PAYMENT_RESPONSE_HEADER: encode_payment_response(settlement)},
    )


def resolve_proof(body_proof: Optional[Any], header_value: Optional[str]) -> Optional[PaymentProof]:
    """Proof from the JSON body, else from the X-PAYMENT header."""
    if body_proof is not None:
        return parse_proof(body_proof)
    return decode_payment_header(header_value)


def debug_flag(value: bool) -> bool:
    return bool(value) and settings.X402_DEBUG_FLAGS_ENABLED


@router.post("/action-request", summary="Request a Pay-per-request Action")
@router.post("/kol-score", include_in_schema=False)
async def action_request(
    body: ActionRequest,
    x_payment: Optional[str] = Header(None, alias="X-PAYMENT"),
) -> JSONResponse:
    """
    Runs the x402 challenge/response cycle for a catalog action.

    - No proof: policy check, then 402 with a challenge (403 on denial)
    - Proof for a known request: verification, then 200 with the result
    - Proof for an unknown request: a fresh challenge is issued
    """
    gateway = get_gateway()

    try:
        proof = resolve_proof(body.paymentProof, x_payment)
        request_id = (body.requestId or (proof.requestId if proof else "") or "").strip()
        if body.action.strip().lower() != TRANSFER_INTENT and not body.query.strip():
            raise InvalidInput("query is required", code="query_required")

        if request_id and proof is not None:
            try:
                outcome = gateway.lifecycle.submit_proof(
                    request_id, proof, force_expire=debug_flag(body.debugForceExpire)
                )
                return success_response(outcome)
            except RequestNotFound:
                logger.info(f"x402: Proof for unknown request {request_id}, issuing a new challenge")

        challenge = gateway.lifecycle.create_or_fetch_challenge(
            action=body.action,
            query=body.query.strip(),
            payer=body.payer.strip(),
            action_params=body.actionParams,
            request_id=request_id or None,
        )
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content=build_payment_required(challenge.request, challenge.reason),
        )
    except (GatewayError, StorageError, RequestException, LedgerResponseError) as e:
        return error_response(e)


@router.post("/transfer-intent", summary="Request a Transfer Intent")
async def transfer_intent(
    body: TransferIntentRequest,
    x_payment: Optional[str] = Header(None, alias="X-PAYMENT"),
) -> JSONResponse:
    """
    Caller-priced transfer: the payer names recipient and amount.

    The policy engine decides before any challenge exists; a denial is a 403
    carrying the policy code, evidence and the policy in force.
    """
    request_id = (body.requestId or "").strip()
    payer = body.payer.strip()
    recipient = body.recipient.strip()
    amount = body.amount.strip()
    gateway = get_gateway()

    try:
        proof = resolve_proof(body.paymentProof, x_payment)
        if request_id and proof is not None:
            outcome = gateway.lifecycle.submit_proof(
                request_id, proof, force_expire=debug_flag(body.debugForceExpire)
            )
            return success_response(outcome)

        if not recipient or not amount:
            raise InvalidInput("recipient and amount are required", code="missing_fields")

        if debug_flag(body.simulateInsufficientFunds):
            gateway.lifecycle.simulate_insufficient_funds(TRANSFER_INTENT, payer, recipient, amount)

        action_params = {"recipient": recipient, "amount": amount}
        if body.tokenAddress:
            action_params["tokenAddress"] = body.tokenAddress.strip()
        challenge = gateway.lifecycle.create_or_fetch_challenge(
            action=TRANSFER_INTENT,
            query="",
            payer=payer,
            action_params=action_params,
            request_id=request_id or None,
        )
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content=build_payment_required(challenge.request, challenge.reason),
        )
    except (GatewayError, StorageError, RequestException, LedgerResponseError) as e:
        return error_response(e)


@router.get("/policy", response_model=PolicyResponse, summary="Get Spending Policy")
async def get_policy() -> Any:
    try:
        return PolicyResponse(policy=get_gateway().policy.get())
    except StorageError as e:
        return error_response(e)


@router.post("/policy", response_model=PolicyResponse, summary="Replace Spending Policy")
async def set_policy(body: PolicyUpdateRequest) -> Any:
    """
    Replaces the whole policy document. Fields are sanitized one by one;
    an invalid or missing value falls back to its configured default.
    """
    try:
        return PolicyResponse(policy=get_gateway().policy.set(body.model_dump()))
    except StorageError as e:
        return error_response(e)


@router.post("/policy/revoke", response_model=RevokeResponse, summary="Revoke a Payer")
async def revoke_payer(body: RevokeRequest) -> Any:
    try:
        policy = get_gateway().policy.revoke(body.payer)
        return RevokeResponse(action="revoked", payer=body.payer.strip().lower(), policy=policy)
    except (GatewayError, StorageError) as e:
        return error_response(e)


@router.post("/policy/unrevoke", response_model=RevokeResponse, summary="Restore a Revoked Payer")
async def unrevoke_payer(body: RevokeRequest) -> Any:
    try:
        policy = get_gateway().policy.unrevoke(body.payer)
        return RevokeResponse(action="unrevoked", payer=body.payer.strip().lower(), policy=policy)
    except (GatewayError, StorageError) as e:
        return error_response(e)


@router.get("/policy-failures", response_model=PolicyFailureListResponse, summary="List Policy Denials")
async def list_policy_failures(
    code: Optional[str] = Query(None, description="Denial code, e.g. over_limit_daily."),
    action: Optional[str] = Query(None),
    payer: Optional[str] = Query(None),
    limit: Optional[int] = Query(None, description="1 to X402_QUERY_LIMIT_MAX."),
) -> Any:
    """Most recent denials first."""
    failures = get_gateway().failures
    try:
        rows = failures.read(code=code, action=action, payer=payer)
        stats = failures.stats()
    except StorageError as e:
        return error_response(e)
    return PolicyFailureListResponse(total=len(rows), items=rows[:clamp_limit(limit)], stats=stats)


@router.get("/requests", response_model=PaymentRequestListResponse, summary="List Payment Requests")
async def list_requests(
    requestId: Optional[str] = Query(None),
    txHash: Optional[str] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    action: Optional[str] = Query(None),
    limit: Optional[int] = Query(None),
) -> Any:
    try:
        rows = get_gateway().lifecycle.list_requests(
            request_id=requestId, tx_hash=txHash, status=status_filter, action=action
        )
    except StorageError as e:
        return error_response(e)
    return PaymentRequestListResponse(total=len(rows), items=rows[:clamp_limit(limit)])


def request_not_found(request_id: str) -> JSONResponse:
    logger.info(f"x402: Lookup of unknown request {request_id}")
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"error": "not_found", "reason": "request not found"},
    )


@router.get(
    "/requests/{requestId}",
    response_model=PaymentRequestStatusResponse,
    summary="Get Payment Request Status",
)
async def get_request_status(requestId: str) -> Any:
    """A pending request past its expiry is reported (and stored) as expired."""
    try:
        request = get_gateway().lifecycle.get(requestId)
    except StorageError as e:
        return error_response(e)
    if request is None:
        return request_not_found(requestId)
    return PaymentRequestStatusResponse(
        requestId=request.requestId,
        status=request.status.value,
        action=request.action,
        createdAt=request.createdAt,
        expiresAt=request.expiresAt,
        paidAt=request.paidAt,
        paymentTxHash=request.paymentTxHash or (request.paymentProof.txHash if request.paymentProof else ""),
    )


@router.get(
    "/requests/{requestId}/evidence",
    response_model=PaymentEvidenceResponse,
    summary="Get Payment Evidence",
)
async def get_request_evidence(requestId: str) -> Any:
    """
    The request, the payment it claims, the ledger record for that
    transaction (if any), the policy snapshot taken at issue time and the
    payer identity.
    """
    gateway = get_gateway()
    try:
        request = gateway.lifecycle.get(requestId)
        if request is None:
            return request_not_found(requestId)
        proof = request.paymentProof
        tx_hash = request.paymentTxHash or (proof.txHash if proof else "")
        record = gateway.ledger.get_by_tx_hash(tx_hash) if tx_hash else None
    except (StorageError, RequestException, LedgerResponseError) as e:
        return error_response(e)

    return PaymentEvidenceResponse(
        request=request,
        payment={
            "txHash": tx_hash,
            "tokenAddress": proof.tokenAddress if proof else request.tokenAddress,
            "recipient": proof.recipient if proof else request.recipient,
            "amount": proof.amount if proof else request.amount,
        },
        transferRecord=record,
        policy=request.policySnapshot,
        identity=request.identity,
    )


@router.get("/mapping/latest", response_model=DashboardResponse, summary="Dashboard View of Requests")
async def mapping_latest(limit: Optional[int] = Query(None)) -> Any:
    try:
        rows, kpi = get_gateway().lifecycle.dashboard(clamp_limit(limit))
    except StorageError as e:
        return error_response(e)
    return DashboardResponse(total=len(rows), kpi=kpi, items=rows)


@a2a_router.get("/capabilities", summary="Agent-to-agent Capabilities")
async def a2a_capabilities() -> Any:
    """Actions sold by this gateway and how to pay for them."""
    return build_capabilities()
