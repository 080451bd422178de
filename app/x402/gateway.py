# app/x402/gateway.py
"""
Process-wide wiring of the gateway components.

The stores are built lazily from settings on first use and shared by every
endpoint. reset_gateway() drops them so tests can point X402_DATA_DIR at a
temporary directory.
"""
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from app.core.config import settings
from app.services.ledger_api import RemoteLedgerClient
from app.x402.audit import FAILURE_LOG_FILE_NAME, FailureAuditLog
from app.x402.ledger import LEDGER_FILE_NAME, LedgerStore
from app.x402.lifecycle import REQUESTS_FILE_NAME, RequestLifecycleManager
from app.x402.policy import POLICY_FILE_NAME, PolicyStore

logger = logging.getLogger(__name__)


@dataclass
class Gateway:
    policy: PolicyStore
    ledger: object
    failures: FailureAuditLog
    lifecycle: RequestLifecycleManager


def build_gateway(data_dir: Optional[str] = None) -> Gateway:
    """Assemble the stores under data_dir (defaults to X402_DATA_DIR)."""
    base = Path(data_dir or settings.X402_DATA_DIR)
    policy = PolicyStore(base / POLICY_FILE_NAME)
    failures = FailureAuditLog(base / FAILURE_LOG_FILE_NAME)
    if settings.X402_LEDGER_API_URL:
        ledger = RemoteLedgerClient()
        logger.info(f"Using remote ledger at {settings.X402_LEDGER_API_URL}")
    else:
        ledger = LedgerStore(base / LEDGER_FILE_NAME)
    lifecycle = RequestLifecycleManager(base / REQUESTS_FILE_NAME, policy, ledger, failures)
    return Gateway(policy=policy, ledger=ledger, failures=failures, lifecycle=lifecycle)


# Global gateway instance
_gateway: Optional[Gateway] = None
_gateway_lock = threading.Lock()


def get_gateway() -> Gateway:
    """
    Get the global gateway instance.

    Returns:
        The singleton Gateway
    """
    global _gateway

    if _gateway is None:
        with _gateway_lock:
            if _gateway is None:
                _gateway = build_gateway()

    return _gateway


def reset_gateway() -> None:
    """Drop the global gateway (useful for testing)."""
    global _gateway
    with _gateway_lock:
        _gateway = None
