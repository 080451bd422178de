# app/x402/audit.py
"""
Audit trail of denied x402 attempts.

Every refusal to issue a challenge (policy denial, simulated funding failure)
is recorded with its evidence for:
- Dispute resolution
- Tuning spend limits
- Spotting revoked or misbehaving payers

Log format: one JSON array, most recent entry first
Log location: <X402_DATA_DIR>/policy_failures.json
Retention: the newest X402_POLICY_FAILURE_LOG_MAX entries are kept
"""
import logging
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from app.core.config import settings
from app.x402.models import PolicyFailureRecord
from app.x402.storage import JsonDocumentStore

logger = logging.getLogger(__name__)

FAILURE_LOG_FILE_NAME = "policy_failures.json"


class FailureAuditLog:
    """
    Bounded, most-recent-first log of denials.

    Args:
        path: File holding the log
        max_entries: Retention window. If None, uses config.
    """

    def __init__(self, path: Union[str, Path], max_entries: Optional[int] = None):
        self._store = JsonDocumentStore(path, default_factory=list)
        self._max_entries = max_entries

    @property
    def max_entries(self) -> int:
        if self._max_entries is not None:
            return self._max_entries
        return settings.X402_POLICY_FAILURE_LOG_MAX

    def record(
        self,
        action: str,
        payer: str,
        recipient: str,
        amount: Any,
        code: str,
        message: str,
        evidence: Optional[Dict[str, Any]] = None,
    ) -> PolicyFailureRecord:
        """
        Prepend a denial to the log and truncate it to the retention window.

        Returns:
            The stored entry
        """
        entry = PolicyFailureRecord(
            time=datetime.now(timezone.utc).isoformat(),
            action=action or "",
            payer=payer or "",
            recipient=recipient or "",
            amount="" if amount is None else str(amount),
            code=code,
            message=message,
            evidence=evidence or {},
        )
        limit = self.max_entries

        def prepend(entries: List[Dict[str, Any]]) -> None:
            entries.insert(0, entry.model_dump(mode="json"))
            del entries[limit:]

        self._store.update(prepend)
        logger.warning(f"x402: Denied {action} for payer {payer or '-'}: {code}")
        return entry

    def read(
        self,
        code: Optional[str] = None,
        action: Optional[str] = None,
        payer: Optional[str] = None,
    ) -> List[PolicyFailureRecord]:
        """
        Read entries, most recent first.

        Args:
            code: Filter by denial code (case-insensitive)
            action: Filter by action (case-insensitive)
            payer: Filter by payer address (case-insensitive)
        """
        code = (code or "").strip().lower()
        action = (action or "").strip().lower()
        payer = (payer or "").strip().lower()

        entries = []
        for raw in self._store.read():
            if not isinstance(raw, dict):
                continue
            if code and str(raw.get("code", "")).lower() != code:
                continue
            if action and str(raw.get("action", "")).lower() != action:
                continue
            if payer and str(raw.get("payer", "")).lower() != payer:
                continue
            try:
                entries.append(PolicyFailureRecord.model_validate(raw))
            except ValueError as e:
                logger.warning(f"Skipping malformed failure entry: {e}")
        return entries

    def stats(self) -> Dict[str, Any]:
        """Counts by code plus the time range covered by the log."""
        entries = self.read()
        by_code = Counter(entry.code for entry in entries)
        return {
            "total": len(entries),
            "byCode": dict(by_code),
            "newest": entries[0].time if entries else None,
            "oldest": entries[-1].time if entries else None,
            "maxEntries": self.max_entries,
        }
