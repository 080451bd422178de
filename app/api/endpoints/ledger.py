# app/api/endpoints/ledger.py
from datetime import datetime
from fastapi import APIRouter, Query
from requests.exceptions import RequestException
from typing import Any, Dict, List, Optional
import logging

from app.x402.errors import LedgerResponseError, StorageError
from app.x402.gateway import get_gateway
from app.x402.models import RequestStatus
from app.api.endpoints.x402 import clamp_limit, error_response
from app.api.models.ledger import LedgerRecordCreate, LedgerRecordListResponse, OnchainListResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/records", response_model=LedgerRecordListResponse, summary="List Confirmed Transfers")
async def list_records(limit: Optional[int] = Query(None)) -> Any:
    """Ledger records, newest first."""
    try:
        records = get_gateway().ledger.list()
    except (StorageError, RequestException, LedgerResponseError) as e:
        return error_response(e)
    return LedgerRecordListResponse(total=len(records), items=records[:clamp_limit(limit)])


@router.post("/records", summary="Record a Confirmed Transfer")
async def create_record(body: LedgerRecordCreate) -> Any:
    """
    Called by the account-abstraction layer once a transfer is confirmed.
    A record with the same txHash replaces the earlier one.
    """
    try:
        record = get_gateway().ledger.append(body.model_dump(exclude_none=True))
    except (StorageError, RequestException, LedgerResponseError) as e:
        return error_response(e)
    return {"ok": True, "record": record.model_dump(mode="json")}


@router.get("/onchain/latest", response_model=OnchainListResponse, summary="Latest On-chain Settlements")
async def onchain_latest(limit: Optional[int] = Query(None)) -> Any:
    """
    Paid requests and ledger records merged into one feed, de-duplicated by
    txHash (paid requests win) and sorted newest first.
    """
    gateway = get_gateway()
    try:
        paid = gateway.lifecycle.list_requests(status=RequestStatus.PAID.value)
        records = gateway.ledger.list()
    except (StorageError, RequestException, LedgerResponseError) as e:
        return error_response(e)

    rows: List[Dict[str, Any]] = []
    for request in paid:
        tx_hash = request.paymentTxHash or (request.paymentProof.txHash if request.paymentProof else "")
        if not tx_hash:
            continue
        block = (request.proofVerification or {}).get("details", {}).get("block")
        rows.append({
            "source": "x402",
            "requestId": request.requestId,
            "txHash": tx_hash,
            "from": request.payer,
            "to": request.recipient,
            "amount": request.amount,
            "tokenAddress": request.tokenAddress,
            "block": block,
            "timeMs": request.paidAt or request.createdAt,
        })
    for record in records:
        rows.append({
            "source": record.type or "record",
            "requestId": record.requestId,
            "txHash": record.txHash,
            "from": record.payer,
            "to": record.recipient,
            "amount": record.amount,
            "tokenAddress": record.token,
            "block": record.block,
            "timeMs": _iso_to_ms(record.time),
        })

    seen = set()
    merged = []
    for row in rows:
        key = row["txHash"].lower()
        if key in seen:
            continue
        seen.add(key)
        merged.append(row)
    merged.sort(key=lambda row: row["timeMs"] or 0, reverse=True)

    return OnchainListResponse(total=len(merged), items=merged[:clamp_limit(limit)])


def _iso_to_ms(value: str) -> int:
    if not value:
        return 0
    try:
        return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000)
    except ValueError:
        return 0
