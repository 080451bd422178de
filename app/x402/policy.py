# app/x402/policy.py
"""
Spending policy document and its administration.

The policy holds:
- maxPerTx: largest single payment a challenge may ask for
- dailyLimit: per-payer budget for one UTC calendar day
- allowedRecipients: recipients a challenge may point at (never empty)
- revokedPayers: payers refused outright

The document is materialized with defaults on first read. Every field is
sanitized on its own: a bad value falls back to the configured default
instead of failing the whole update.
"""
import logging
import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from app.core.config import settings
from app.x402.addresses import is_valid_address, normalize_address, parse_address_list
from app.x402.errors import InvalidInput
from app.x402.storage import JsonDocumentStore

logger = logging.getLogger(__name__)

POLICY_FILE_NAME = "policy_config.json"


class PolicyConfig(BaseModel):
    """Process-wide spending policy."""
    maxPerTx: float = Field(..., gt=0, description="Per-transaction cap.")
    dailyLimit: float = Field(..., gt=0, description="Per-payer budget for one UTC day.")
    allowedRecipients: List[str] = Field(..., min_length=1, description="Lowercased recipient allow-list.")
    revokedPayers: List[str] = Field(default_factory=list, description="Lowercased revoked payers.")


def _positive_number(value: Any, fallback: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number) or number <= 0:
        return fallback
    return number


def sanitize_policy(raw: Optional[Dict[str, Any]] = None) -> PolicyConfig:
    """
    Build a valid PolicyConfig out of arbitrary input.

    Args:
        raw: Partial or malformed policy fields

    Returns:
        A PolicyConfig where every invalid field was replaced by its default
    """
    raw = raw or {}
    allowed = parse_address_list(raw.get("allowedRecipients"))
    return PolicyConfig(
        maxPerTx=_positive_number(raw.get("maxPerTx"), settings.X402_POLICY_MAX_PER_TX),
        dailyLimit=_positive_number(raw.get("dailyLimit"), settings.X402_POLICY_DAILY_LIMIT),
        allowedRecipients=allowed or parse_address_list(settings.default_allowed_recipients()),
        revokedPayers=parse_address_list(raw.get("revokedPayers")),
    )


def default_policy() -> PolicyConfig:
    return sanitize_policy({
        "maxPerTx": settings.X402_POLICY_MAX_PER_TX,
        "dailyLimit": settings.X402_POLICY_DAILY_LIMIT,
        "allowedRecipients": settings.default_allowed_recipients(),
    })


class PolicyStore:
    """Durable policy document. All writers go through the store lock."""

    def __init__(self, path: Union[str, Path]):
        self._store = JsonDocumentStore(path, default_factory=dict)

    @property
    def lock(self):
        return self._store.lock

    def get(self) -> PolicyConfig:
        """Current policy; writes the defaults on first access."""
        with self._store.lock:
            document = self._store.read()
            if not document:
                policy = default_policy()
                self._store.write(policy.model_dump())
                logger.info("Initialized policy document with defaults")
                return policy
            return sanitize_policy(document)

    def set(self, raw: Optional[Dict[str, Any]]) -> PolicyConfig:
        """Replace the whole policy with the sanitized input."""
        policy = sanitize_policy(raw)
        self._store.write(policy.model_dump())
        logger.info(
            f"Policy replaced: maxPerTx={policy.maxPerTx} dailyLimit={policy.dailyLimit} "
            f"recipients={len(policy.allowedRecipients)} revoked={len(policy.revokedPayers)}"
        )
        return policy

    def _mutate_revoked(self, payer: str, revoke: bool) -> PolicyConfig:
        address = normalize_address(payer)
        if not is_valid_address(address):
            raise InvalidInput("Payer must be a valid address.", code="invalid_payer")

        with self._store.lock:
            current = self.get()
            revoked = [item for item in current.revokedPayers if item != address]
            if revoke:
                revoked.append(address)
            return self.set({**current.model_dump(), "revokedPayers": revoked})

    def revoke(self, payer: str) -> PolicyConfig:
        """Add a payer to the revocation set."""
        policy = self._mutate_revoked(payer, revoke=True)
        logger.warning(f"x402: Payer revoked: {normalize_address(payer)}")
        return policy

    def unrevoke(self, payer: str) -> PolicyConfig:
        """Remove a payer from the revocation set."""
        policy = self._mutate_revoked(payer, revoke=False)
        logger.info(f"x402: Payer unrevoked: {normalize_address(payer)}")
        return policy
