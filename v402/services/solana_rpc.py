# v402/services/solana_rpc.py
import itertools
import logging
from typing import Any, Dict, List, Optional

import requests
from requests.exceptions import RequestException

from v402.core.config import settings
from v402.core.exceptions import RpcError

logger = logging.getLogger(__name__)


class SolanaRpcClient:
    """
    Minimal Solana JSON-RPC client covering what payment verification needs.

    Every call is bounded by `timeout`; transport failures, timeouts, JSON-RPC
    error objects and malformed replies all surface as RpcError.
    """

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        commitment: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.rpc_url = rpc_url or settings.SOLANA_RPC_URL
        self.commitment = commitment or settings.SOLANA_COMMITMENT
        self.timeout = timeout if timeout is not None else settings.V402_RPC_TIMEOUT_SECONDS
        self._session = session or requests.Session()
        self._ids = itertools.count(1)

    def _call(self, method: str, params: List[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        try:
            response = self._session.post(self.rpc_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except RequestException as e:
            logger.error(f"Solana RPC {method} failed ({self.rpc_url}): {e}")
            raise RpcError(f"RPC {method} failed: {e}") from e
        except ValueError as e:
            logger.error(f"Solana RPC {method} returned invalid JSON: {e}")
            raise RpcError(f"RPC {method} returned invalid JSON") from e

        if not isinstance(data, dict):
            raise RpcError(f"RPC {method} returned an unexpected payload")
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            logger.warning(f"Solana RPC {method} error: {message}")
            raise RpcError(f"RPC {method} error: {message}", details={"rpc_error": error})
        if "result" not in data:
            raise RpcError(f"RPC {method} response missing 'result' field")

        return data["result"]

    def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a transaction in jsonParsed encoding.

        Returns:
            The transaction object, or None when the node does not know it
            (yet) at the configured commitment.
        """
        return self._call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": self.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    def get_account_info(self, address: str) -> Optional[Dict[str, Any]]:
        """Fetch an account in jsonParsed encoding; None when it does not exist."""
        result = self._call(
            "getAccountInfo",
            [address, {"encoding": "jsonParsed", "commitment": self.commitment}],
        )
        if not isinstance(result, dict):
            return None
        return result.get("value")

    def get_token_account_owner(self, address: str) -> Optional[str]:
        """Owner wallet of an SPL token account, or None if it is not one."""
        account = self.get_account_info(address)
        if not account:
            return None
        data = account.get("data")
        if not isinstance(data, dict):
            return None
        info = (data.get("parsed") or {}).get("info") or {}
        owner = info.get("owner")
        return owner if isinstance(owner, str) else None
