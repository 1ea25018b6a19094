# tests/conftest.py
"""
Shared fixtures: audit output redirected per test, an in-memory store
holding one merchant with a signed tool, and a self-hosted backend whose
Solana RPC client is mocked.
"""
import pytest
from unittest.mock import MagicMock

from v402.core.config import settings
from v402.gateway.backend import LocalBackend
from v402.gateway.store import IntentStore
from v402.protocol.verify import LedgerVerifier

from factories import (
    DEST_TOKEN_ACCOUNT,
    ENCRYPTION_KEY,
    MERCHANT_WALLET,
    PAYER_WALLET,
    SOURCE_TOKEN_ACCOUNT,
    USDC_MINT,
    make_merchant,
    make_tool,
)


@pytest.fixture(autouse=True)
def audit_log_path(tmp_path, monkeypatch):
    """Keep audit output inside the test's temp directory."""
    path = tmp_path / "logs" / "audit.jsonl"
    monkeypatch.setattr(settings, "V402_AUDIT_LOG_PATH", str(path))
    return path


@pytest.fixture
def store():
    s = IntentStore("sqlite:///:memory:")
    s.init_db()
    return s


@pytest.fixture
def merchant(store):
    m = make_merchant()
    store.upsert_merchant(m)
    return m


@pytest.fixture
def tool(store, merchant):
    t = make_tool()
    store.upsert_tool(t)
    return t


@pytest.fixture
def rpc():
    """RPC mock with no transactions and the test token accounts' owners."""
    client = MagicMock()
    client.get_transaction.return_value = None
    owners = {DEST_TOKEN_ACCOUNT: MERCHANT_WALLET, SOURCE_TOKEN_ACCOUNT: PAYER_WALLET}
    client.get_token_account_owner.side_effect = lambda address: owners.get(address)
    return client


@pytest.fixture
def backend(store, tool, rpc):
    verifier = LedgerVerifier(rpc, usdc_mint=USDC_MINT, usdc_decimals=6)
    return LocalBackend(store, verifier, encryption_key=ENCRYPTION_KEY)
