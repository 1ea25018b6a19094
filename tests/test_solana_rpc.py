# tests/test_solana_rpc.py
"""
Unit tests for the Solana JSON-RPC client.
"""
import pytest
import requests
from unittest.mock import MagicMock

from v402.core.exceptions import RpcError
from v402.services.solana_rpc import SolanaRpcClient


def rpc_with(payload=None, error=None):
    session = MagicMock()
    if error is not None:
        session.post.side_effect = error
    else:
        response = MagicMock()
        response.raise_for_status.return_value = None
        response.json.return_value = payload
        session.post.return_value = response
    return SolanaRpcClient(rpc_url="https://rpc.example", commitment="confirmed", timeout=3, session=session), session


class TestSolanaRpcClient:
    """Test RPC calls and error mapping."""

    def test_get_transaction(self):
        """getTransaction asks for jsonParsed at the configured commitment."""
        client, session = rpc_with({"jsonrpc": "2.0", "id": 1, "result": {"slot": 5}})

        assert client.get_transaction("sig") == {"slot": 5}
        args, kwargs = session.post.call_args
        assert args == ("https://rpc.example",)
        assert kwargs["timeout"] == 3
        assert kwargs["json"]["method"] == "getTransaction"
        assert kwargs["json"]["params"][1] == {
            "encoding": "jsonParsed",
            "commitment": "confirmed",
            "maxSupportedTransactionVersion": 0,
        }

    def test_unknown_transaction(self):
        """A null result is None."""
        client, _ = rpc_with({"jsonrpc": "2.0", "id": 1, "result": None})
        assert client.get_transaction("sig") is None

    @pytest.mark.parametrize("payload", [
        {"jsonrpc": "2.0", "id": 1, "error": {"code": -32005, "message": "Node is behind"}},
        {"jsonrpc": "2.0", "id": 1},
        ["not", "an", "object"],
    ])
    def test_bad_replies(self, payload):
        """JSON-RPC errors and malformed replies are RpcError."""
        client, _ = rpc_with(payload)
        with pytest.raises(RpcError):
            client.get_transaction("sig")

    def test_timeout(self):
        """Transport timeouts are RpcError."""
        client, _ = rpc_with(error=requests.exceptions.Timeout("slow"))
        with pytest.raises(RpcError) as exc_info:
            client.get_transaction("sig")
        assert exc_info.value.reason == "RPC_ERROR"
        assert exc_info.value.status_code == 503

    def test_token_account_owner(self):
        """The owner is read from the parsed token account."""
        client, _ = rpc_with({"jsonrpc": "2.0", "id": 1, "result": {
            "context": {"slot": 1},
            "value": {"data": {"parsed": {"type": "account", "info": {"owner": "OwnerWallet"}}}},
        }})
        assert client.get_token_account_owner("acct") == "OwnerWallet"

    def test_missing_account(self):
        """A missing account has no owner."""
        client, _ = rpc_with({"jsonrpc": "2.0", "id": 1, "result": {"context": {"slot": 1}, "value": None}})
        assert client.get_token_account_owner("acct") is None
