# app/x402/ledger.py
"""
Ledger of confirmed on-chain transfers.

The ledger is the ground truth for proof verification. It is populated by the
account-abstraction layer whenever a transfer is confirmed; this service only
appends what it is handed and looks records up.

A record proves a payment when its txHash matches (case-insensitive), its
token and recipient match (case-insensitive), its amount matches as a string
(no numeric tolerance) and its status is "success".
"""
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from app.x402.addresses import normalize_address
from app.x402.models import LedgerRecord
from app.x402.storage import JsonDocumentStore

logger = logging.getLogger(__name__)

LEDGER_FILE_NAME = "records.json"
SUCCESS_STATUS = "success"


def record_matches(record: LedgerRecord, tx_hash: str, token: str, recipient: str, amount: str) -> bool:
    """Check a ledger record against the payment it is supposed to prove."""
    return (
        normalize_address(record.txHash) == normalize_address(tx_hash)
        and normalize_address(record.token) == normalize_address(token)
        and normalize_address(record.recipient) == normalize_address(recipient)
        and str(record.amount) == str(amount)
        and str(record.status).strip().lower() == SUCCESS_STATUS
    )


def find_matching_record(
    records: Iterable[LedgerRecord], tx_hash: str, token: str, recipient: str, amount: str
) -> Optional[LedgerRecord]:
    for record in records:
        if record_matches(record, tx_hash, token, recipient, amount):
            return record
    return None


def find_by_tx_hash(records: Iterable[LedgerRecord], tx_hash: str) -> Optional[LedgerRecord]:
    key = normalize_address(tx_hash)
    if not key:
        return None
    for record in records:
        if normalize_address(record.txHash) == key:
            return record
    return None


def parse_records(raw_records: Iterable[Any]) -> List[LedgerRecord]:
    records = []
    for raw in raw_records:
        if not isinstance(raw, dict) or not raw.get("txHash"):
            continue
        try:
            records.append(LedgerRecord.model_validate(raw))
        except ValueError as e:
            logger.warning(f"Skipping malformed ledger record: {e}")
    return records


class LedgerStore:
    """Local ledger kept in a JSON document, newest record first."""

    def __init__(self, path: Union[str, Path]):
        self._store = JsonDocumentStore(path, default_factory=list)

    def append(self, record: Union[LedgerRecord, Dict[str, Any]]) -> LedgerRecord:
        """
        Record a confirmed transfer.

        A record with the same txHash (case-insensitive) is replaced, so the
        ledger never holds two records for one transaction.
        """
        if not isinstance(record, LedgerRecord):
            record = LedgerRecord.model_validate(record)
        if not record.time:
            record = record.model_copy(update={"time": datetime.now(timezone.utc).isoformat()})
        key = normalize_address(record.txHash)

        def upsert(entries: List[Dict[str, Any]]) -> None:
            entries[:] = [
                item for item in entries
                if not (isinstance(item, dict) and normalize_address(item.get("txHash")) == key)
            ]
            entries.insert(0, record.model_dump(mode="json"))

        self._store.update(upsert)
        logger.info(f"Ledger record stored: {record.txHash} ({record.status})")
        return record

    def list(self, limit: Optional[int] = None) -> List[LedgerRecord]:
        records = parse_records(self._store.read())
        return records[:limit] if limit is not None else records

    def find_transfer(self, tx_hash: str, token: str, recipient: str, amount: str) -> Optional[LedgerRecord]:
        """Return the record proving this payment, or None."""
        return find_matching_record(self.list(), tx_hash, token, recipient, amount)

    def get_by_tx_hash(self, tx_hash: str) -> Optional[LedgerRecord]:
        """Any record for this transaction, whatever its status."""
        return find_by_tx_hash(self.list(), tx_hash)
