# app/x402/lifecycle.py
"""
x402 challenge/response lifecycle.

A PaymentRequest moves through:

    pending --(valid proof + ledger match)--> paid      (terminal)
    pending --(observed past expiresAt)-----> expired   (terminal)

Flow:
1. Caller asks for an action without proof: the policy engine runs and, if it
   allows, a pending request is stored and returned as a 402 challenge
2. Caller pays on-chain (outside this service)
3. Caller resubmits with a proof: fields are checked against the request,
   then the txHash is looked up in the ledger
4. On a match the request becomes paid and the action result is released

Expiry is lazy: whichever operation first sees now > expiresAt flips the
status and persists it. A paid request answers every later proof with the
same result and never touches the ledger again.

All mutations of the requests document happen under its store lock, and
every transition is written before the operation returns.
"""
import logging
import secrets
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from app.core.config import settings
from app.x402.actions import TRANSFER_INTENT, get_action_spec
from app.x402.addresses import addresses_equal
from app.x402.audit import FailureAuditLog
from app.x402.engine import evaluate, parse_amount, utc_date_key
from app.x402.errors import (
    InsufficientFunds,
    PolicyDenied,
    ProofRejected,
    RequestExpired,
    RequestNotFound,
)
from app.x402.models import PaymentProof, PaymentRequest, RequestStatus, now_ms
from app.x402.policy import PolicyStore
from app.x402.proof import validate_proof_fields
from app.x402.storage import JsonDocumentStore

logger = logging.getLogger(__name__)

REQUESTS_FILE_NAME = "x402_requests.json"
PROOF_NOT_FOUND = "proof not found in transfer records"
REGENERATED = "request not found, regenerated"


@dataclass
class Challenge:
    """A pending request handed back to the caller as a 402."""
    request: PaymentRequest
    created: bool
    reason: str = ""


@dataclass
class ProofOutcome:
    """Result of an accepted (or replayed) proof."""
    request: PaymentRequest
    result: Dict[str, Any]
    reused: bool

    @property
    def payment(self) -> Dict[str, Any]:
        return {
            "txHash": self.request.paymentTxHash,
            "amount": self.request.amount,
            "tokenAddress": self.request.tokenAddress,
            "recipient": self.request.recipient,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "mode": "x402",
            "requestId": self.request.requestId,
            "reused": self.reused,
            "payment": self.payment,
            "result": self.result,
        }


def build_payment_required(request: PaymentRequest, reason: str = "") -> Dict[str, Any]:
    """Body of a 402 Payment Required response for the given request."""
    return {
        "error": "payment_required",
        "reason": reason,
        "x402": {
            "version": settings.X402_PROTOCOL_VERSION,
            "requestId": request.requestId,
            "expiresAt": request.expiresAt,
            "accepts": [
                {
                    "scheme": settings.X402_SCHEME,
                    "network": settings.X402_NETWORK,
                    "tokenAddress": request.tokenAddress,
                    "amount": request.amount,
                    "recipient": request.recipient,
                    "decimals": settings.X402_TOKEN_DECIMALS,
                }
            ],
        },
    }


def _load_requests(documents: List[Any]) -> List[PaymentRequest]:
    return [PaymentRequest.model_validate(doc) for doc in documents if isinstance(doc, dict)]


def _find_index(documents: List[Any], request_id: str) -> int:
    for index, doc in enumerate(documents):
        if isinstance(doc, dict) and doc.get("requestId") == request_id:
            return index
    return -1


class RequestLifecycleManager:
    """
    Sole owner of PaymentRequest mutation.

    Args:
        requests_path: File holding the requests document
        policy_store: Source of the policy in force
        ledger: Anything with find_transfer(tx_hash, token, recipient, amount)
        failure_log: Where denials are recorded
        clock: Returns the current time in epoch milliseconds
    """

    def __init__(
        self,
        requests_path: Union[str, Path],
        policy_store: PolicyStore,
        ledger,
        failure_log: FailureAuditLog,
        clock: Callable[[], int] = now_ms,
    ):
        self._store = JsonDocumentStore(requests_path, default_factory=list)
        self.policy_store = policy_store
        self.ledger = ledger
        self.failure_log = failure_log
        self._clock = clock

    # --- challenge issuance ---

    def _new_request_id(self, documents: List[Any], at_ms: int) -> str:
        taken = {doc.get("requestId") for doc in documents if isinstance(doc, dict)}
        while True:
            request_id = f"x402_{at_ms}_{secrets.token_hex(4)}"
            if request_id not in taken:
                return request_id

    def create_or_fetch_challenge(
        self,
        action: str,
        query: str,
        payer: str,
        action_params: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
        amount: Optional[str] = None,
        recipient: Optional[str] = None,
        token_address: Optional[str] = None,
    ) -> Challenge:
        """
        Return the caller's outstanding challenge or issue a new one.

        A known pending request with the same action, payer and payment terms
        is returned as is. Otherwise, including when the amount, recipient or
        token changed, the policy engine runs; a denial is logged to the
        failure trail and raised as PolicyDenied, an allow stores a fresh
        pending request carrying the decision evidence.

        Raises:
            InvalidInput: Unsupported action or invalid action params
            PolicyDenied: Policy refused the payment
        """
        spec = get_action_spec(action)
        params = spec.parse_params(action_params)
        params_dict = params.model_dump(exclude_none=True) or None

        if spec.name == TRANSFER_INTENT:
            amount = amount or params.amount
            recipient = recipient or params.recipient
            token_address = token_address or params.tokenAddress
        amount = str(amount or spec.default_amount()).strip()
        recipient = (recipient or spec.default_recipient()).strip()
        token_address = (token_address or settings.X402_SETTLEMENT_TOKEN).strip()
        if spec.name == TRANSFER_INTENT and not query:
            query = f"transfer {amount} to {recipient}"

        with self._store.lock:
            documents = self._store.read()
            at_ms = self._clock()
            reason = ""

            if request_id:
                index = _find_index(documents, request_id)
                if index < 0:
                    reason = REGENERATED
                    logger.info(f"x402: Request {request_id} not found, regenerating")
                else:
                    existing = PaymentRequest.model_validate(documents[index])
                    if existing.status == RequestStatus.PENDING and existing.is_past_expiry(at_ms):
                        existing.status = RequestStatus.EXPIRED
                        documents[index] = existing.to_document()
                        self._store.write(documents)
                        logger.info(f"x402: Request {request_id} expired")
                    elif (
                        existing.status == RequestStatus.PENDING
                        and existing.action == spec.name
                        and addresses_equal(existing.payer, payer)
                        and existing.amount == amount
                        and addresses_equal(existing.recipient, recipient)
                        and addresses_equal(existing.tokenAddress, token_address)
                    ):
                        return Challenge(request=existing, created=False)

            policy = self.policy_store.get()
            decision = evaluate(
                payer=payer,
                recipient=recipient,
                amount=amount,
                requests=_load_requests(documents),
                policy=policy,
                now=at_ms,
            )
            if not decision.ok:
                self.failure_log.record(
                    action=spec.name,
                    payer=payer,
                    recipient=recipient,
                    amount=amount,
                    code=decision.code,
                    message=decision.message,
                    evidence=decision.evidence,
                )
                raise PolicyDenied(decision, policy.model_dump())

            request = PaymentRequest(
                requestId=self._new_request_id(documents, at_ms),
                action=spec.name,
                query=query or "",
                payer=payer,
                amount=amount,
                tokenAddress=token_address,
                recipient=recipient,
                status=RequestStatus.PENDING,
                createdAt=at_ms,
                expiresAt=at_ms + settings.X402_REQUEST_TTL_SECONDS * 1000,
                policySnapshot={
                    "decision": decision.code,
                    "snapshot": policy.model_dump(),
                    "evidence": decision.evidence,
                },
                actionParams=params_dict,
                identity={
                    "registry": settings.X402_IDENTITY_REGISTRY,
                    "agentId": settings.X402_AGENT_ID,
                },
            )
            documents.insert(0, request.to_document())
            self._store.write(documents)

        logger.info(
            f"x402: Challenge {request.requestId} issued for {spec.name}: "
            f"{request.amount} to {request.recipient}"
        )
        return Challenge(request=request, created=True, reason=reason)

    def simulate_insufficient_funds(self, action: str, payer: str, recipient: str, amount: str) -> None:
        """Record and raise a funding failure without issuing a challenge."""
        self.failure_log.record(
            action=action,
            payer=payer,
            recipient=recipient,
            amount=amount,
            code="insufficient_funds",
            message="Simulated insufficient funds for graceful-failure demo.",
            evidence={"mode": "demo_flag", "requiredAmount": amount},
        )
        raise InsufficientFunds("Insufficient funds to satisfy x402 payment requirement (demo).")

    # --- proof submission ---

    def submit_proof(
        self,
        request_id: str,
        proof: Optional[PaymentProof],
        force_expire: bool = False,
    ) -> ProofOutcome:
        """
        Verify a proof and release the action result.

        Args:
            request_id: Request the proof is for
            proof: Caller's payment claim
            force_expire: Move expiresAt into the past first (debug hook)

        Raises:
            RequestNotFound: No such request; the caller should start over
            RequestExpired: Request is past its deadline (status persisted as expired)
            ProofRejected: Field mismatch or no matching ledger record; state unchanged
        """
        with self._store.lock:
            documents = self._store.read()
            index = _find_index(documents, request_id)
            if index < 0:
                raise RequestNotFound(request_id)

            request = PaymentRequest.model_validate(documents[index])
            spec = get_action_spec(request.action)

            if request.status == RequestStatus.PAID:
                logger.info(f"x402: Request {request_id} already paid, replaying result")
                return ProofOutcome(request=request, result=spec.build_result(request), reused=True)

            at_ms = self._clock()
            if force_expire and request.status == RequestStatus.PENDING:
                request.expiresAt = at_ms - 1

            if request.status == RequestStatus.EXPIRED or request.is_past_expiry(at_ms):
                if request.status == RequestStatus.PENDING:
                    request.status = RequestStatus.EXPIRED
                    documents[index] = request.to_document()
                    self._store.write(documents)
                    logger.info(f"x402: Request {request_id} expired")
                raise RequestExpired(request)

            mismatch = validate_proof_fields(request, proof)
            if mismatch:
                logger.warning(f"x402: Proof rejected for {request_id}: {mismatch}")
                raise ProofRejected(mismatch, request=request)

            record = self.ledger.find_transfer(
                tx_hash=proof.txHash,
                token=request.tokenAddress,
                recipient=request.recipient,
                amount=request.amount,
            )
            if record is None:
                logger.warning(f"x402: No ledger record for {proof.txHash} ({request_id})")
                raise ProofRejected(PROOF_NOT_FOUND, request=request)

            request.status = RequestStatus.PAID
            request.paidAt = self._clock()
            request.paymentTxHash = proof.txHash
            request.paymentProof = proof
            request.proofVerification = {
                "mode": "ledger_record",
                "verifiedAt": request.paidAt,
                "details": record.model_dump(mode="json"),
            }
            documents[index] = request.to_document()
            self._store.write(documents)

        logger.info(f"x402: Request {request_id} paid by {proof.txHash}")
        return ProofOutcome(request=request, result=spec.build_result(request), reused=False)

    # --- read side ---

    def _observe_expiry(self) -> List[PaymentRequest]:
        """Load every request, persisting pending -> expired for overdue ones."""
        with self._store.lock:
            documents = self._store.read()
            at_ms = self._clock()
            requests = _load_requests(documents)
            changed = False
            for request in requests:
                if request.status == RequestStatus.PENDING and request.is_past_expiry(at_ms):
                    request.status = RequestStatus.EXPIRED
                    changed = True
            if changed:
                self._store.write([request.to_document() for request in requests])
            return requests

    def get(self, request_id: str) -> Optional[PaymentRequest]:
        for request in self._observe_expiry():
            if request.requestId == request_id:
                return request
        return None

    def list_requests(
        self,
        request_id: Optional[str] = None,
        tx_hash: Optional[str] = None,
        status: Optional[str] = None,
        action: Optional[str] = None,
    ) -> List[PaymentRequest]:
        """Requests matching every given filter (case-insensitive), newest first."""
        request_id = (request_id or "").strip().lower()
        tx_hash = (tx_hash or "").strip().lower()
        status = (status or "").strip().lower()
        action = (action or "").strip().lower()

        matches = []
        for request in self._observe_expiry():
            if request_id and request.requestId.lower() != request_id:
                continue
            if tx_hash:
                proof_hash = request.paymentProof.txHash if request.paymentProof else ""
                if (request.paymentTxHash or "").lower() != tx_hash and proof_hash.lower() != tx_hash:
                    continue
            if status and request.status.value != status:
                continue
            if action and request.action.lower() != action:
                continue
            matches.append(request)
        return matches

    def dashboard(self, limit: int) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        """Flattened rows for the newest requests plus KPI over all of them."""
        requests = self._observe_expiry()
        day_key = utc_date_key(self._clock())
        kpi = {"pending": 0, "paid": 0, "failed": 0, "todaySpend": 0.0}
        spend = Decimal("0")
        for request in requests:
            if request.status == RequestStatus.PAID:
                kpi["paid"] += 1
                mark = request.paidAt or request.createdAt
                amount = parse_amount(request.amount)
                if mark and utc_date_key(mark) == day_key and amount is not None:
                    spend += amount
            elif request.status == RequestStatus.PENDING:
                kpi["pending"] += 1
            else:
                kpi["failed"] += 1
        kpi["todaySpend"] = float(spend)

        rows = [
            {
                "requestId": request.requestId,
                "action": request.action,
                "payer": request.payer,
                "amount": request.amount,
                "status": request.status.value,
                "createdAt": request.createdAt,
                "paidAt": request.paidAt,
                "paymentTxHash": request.paymentTxHash or "",
                "query": request.query,
                "tokenAddress": request.tokenAddress,
                "recipient": request.recipient,
                "policyDecision": (request.policySnapshot or {}).get("decision", ""),
            }
            for request in requests[:limit]
        ]
        return rows, kpi
