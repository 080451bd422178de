# tests/conftest.py
"""Shared fixtures: every test gets its own data directory."""
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from app.core.config import settings
from app.x402.audit import FailureAuditLog
from app.x402.gateway import reset_gateway
from app.x402.ledger import LedgerStore
from app.x402.lifecycle import RequestLifecycleManager
from app.x402.policy import PolicyStore

PAYER = "0x1111111111111111111111111111111111111111"
OTHER_PAYER = "0x2222222222222222222222222222222222222222"
RECIPIENT = "0x6d705b93f0da7dc26e46cb39decc3baa4fb4dd29"
OUTSIDER = "0x3333333333333333333333333333333333333333"
TOKEN = settings.X402_SETTLEMENT_TOKEN

# 2026-03-10 12:00:00 UTC
NOON_MS = int(datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc).timestamp() * 1000)


def tx_hash(n: int) -> str:
    """Deterministic, well-formed transaction hash."""
    return "0x" + format(n, "064x")


class FakeClock:
    """Settable epoch-milliseconds clock."""

    def __init__(self, start_ms: int = NOON_MS):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy_store(tmp_path):
    store = PolicyStore(tmp_path / "policy_config.json")
    store.set({"maxPerTx": 0.20, "dailyLimit": 0.60, "allowedRecipients": [RECIPIENT]})
    return store


@pytest.fixture
def failure_log(tmp_path):
    return FailureAuditLog(tmp_path / "policy_failures.json", max_entries=300)


@pytest.fixture
def ledger(tmp_path):
    return LedgerStore(tmp_path / "records.json")


@pytest.fixture
def manager(tmp_path, policy_store, ledger, failure_log, clock):
    return RequestLifecycleManager(
        tmp_path / "x402_requests.json", policy_store, ledger, failure_log, clock=clock
    )


@pytest.fixture
def client(tmp_path, monkeypatch):
    """TestClient whose gateway lives in tmp_path."""
    from app.main import app

    monkeypatch.setattr(settings, "X402_DATA_DIR", str(tmp_path))
    monkeypatch.setattr(settings, "X402_LEDGER_API_URL", None)
    reset_gateway()
    yield TestClient(app)
    reset_gateway()
