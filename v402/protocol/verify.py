# v402/protocol/verify.py
"""
On-chain payment verification.

Decides whether a Solana transaction satisfies a payment intent. The ledger
endpoint is untrusted input: every field read from it is checked for shape
before use, and any failure maps to one machine-readable reason.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from v402.api.models.intent import PaymentIntent
from v402.core.config import settings
from v402.core.exceptions import ExpiredError, NotFoundError, VerificationFailedError
from v402.protocol.address import (
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    get_associated_token_address,
)
from v402.protocol.amount import SOL_DECIMALS, to_atomic_units
from v402.protocol.memo import collect_memos, count_v402_memos
from v402.services.solana_rpc import SolanaRpcClient

logger = logging.getLogger(__name__)

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
TOKEN_PROGRAM_IDS = frozenset({TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID})

# Reasons carried in details["reason"]
RPC_ERROR = "RPC_ERROR"
NOT_FOUND = "NOT_FOUND"
EXPIRED = "EXPIRED"
TX_FAILED = "TX_FAILED"
MEMO_MISSING = "MEMO_MISSING"
TRANSFER_NOT_FOUND = "TRANSFER_NOT_FOUND"
AMOUNT_TOO_LOW = "AMOUNT_TOO_LOW"
RECIPIENT_MISMATCH = "RECIPIENT_MISMATCH"
PAYER_MISMATCH = "PAYER_MISMATCH"
REQUEST_MISMATCH = "REQUEST_MISMATCH"


@dataclass
class VerifiedPayment:
    """A transaction proven to pay an intent."""
    tx_sig: str
    payer: str
    block_time: int
    slot: Optional[int] = None


@dataclass
class VerifyConfig:
    usdc_mint: str
    usdc_decimals: int = 6


def _pubkey(account: Any) -> Optional[str]:
    if isinstance(account, str):
        return account
    if isinstance(account, dict) and isinstance(account.get("pubkey"), str):
        return account["pubkey"]
    return None


def _program_of(ix: Dict[str, Any]) -> Optional[str]:
    return ix.get("programId") or ix.get("program")


def _parse_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isascii() and value.isdigit():
        return int(value)
    return None


class LedgerVerifier:
    """
    Verify a transaction signature against a payment intent.

    Usage:
        verifier = LedgerVerifier(SolanaRpcClient())
        payment = verifier.verify(tx_sig, intent)
    """

    def __init__(
        self,
        rpc: SolanaRpcClient,
        usdc_mint: Optional[str] = None,
        usdc_decimals: Optional[int] = None,
    ):
        self.rpc = rpc
        self.usdc_mint = usdc_mint or settings.USDC_MINT
        self.usdc_decimals = usdc_decimals if usdc_decimals is not None else settings.USDC_DECIMALS

    @classmethod
    def from_config(cls, rpc: SolanaRpcClient, config: VerifyConfig) -> "LedgerVerifier":
        return cls(rpc, usdc_mint=config.usdc_mint, usdc_decimals=config.usdc_decimals)


    def verify(self, tx_signature: str, intent: PaymentIntent) -> VerifiedPayment:
        """
        Check that `tx_signature` pays `intent`.

        Returns:
            VerifiedPayment with the derived payer

        Raises:
            RpcError: ledger unreachable, timed out or errored (retryable)
            NotFoundError: transaction unknown or not yet confirmed
            ExpiredError: transaction landed after intent.expiresAt
            VerificationFailedError: any other mismatch; details["reason"] names it
        """
        tx = self.rpc.get_transaction(tx_signature)
        message = None
        if isinstance(tx, dict):
            message = (tx.get("transaction") or {}).get("message")
        if not isinstance(message, dict):
            raise NotFoundError(
                f"Transaction {tx_signature} not found or not confirmed",
                details={"reason": NOT_FOUND, "tx_sig": tx_signature},
            )

        block_time = _parse_int(tx.get("blockTime"))
        if block_time is None:
            raise NotFoundError(
                f"Transaction {tx_signature} has no block time yet",
                details={"reason": NOT_FOUND, "tx_sig": tx_signature},
            )

        if block_time > intent.expiresAt.timestamp():
            raise ExpiredError(
                "Transaction landed after the intent expired",
                details={"tx_sig": tx_signature, "block_time": block_time},
            )

        meta = tx.get("meta") if isinstance(tx.get("meta"), dict) else {}
        if meta.get("err"):
            raise VerificationFailedError("Transaction failed on-chain", TX_FAILED)

        top_level = [ix for ix in (message.get("instructions") or []) if isinstance(ix, dict)]
        inner = list(self._inner_instructions(meta))

        memo_count = count_v402_memos(collect_memos(top_level + inner), intent.reference)
        if memo_count != 1:
            raise VerificationFailedError(
                f"Expected exactly one memo with v402:{intent.reference}, found {memo_count}",
                MEMO_MISSING,
            )

        account_keys = [_pubkey(k) for k in (message.get("accountKeys") or [])]

        if intent.currency == "SOL":
            payer = self._verify_sol(top_level, account_keys, intent)
        else:
            payer = self._verify_usdc(top_level + inner, account_keys, meta, intent)

        if intent.payer and intent.payer != payer:
            raise VerificationFailedError(
                "Transaction payer does not match the intent payer",
                PAYER_MISMATCH,
                details={"expected": intent.payer, "actual": payer},
            )

        logger.info(
            f"Verified {intent.currency} payment {tx_signature} for intent {intent.intentId} from {payer}"
        )
        return VerifiedPayment(
            tx_sig=tx_signature,
            payer=payer,
            block_time=block_time,
            slot=_parse_int(tx.get("slot")),
        )

    @staticmethod
    def _inner_instructions(meta: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        for group in meta.get("innerInstructions") or []:
            if not isinstance(group, dict):
                continue
            for ix in group.get("instructions") or []:
                if isinstance(ix, dict):
                    yield ix

    def _verify_sol(
        self,
        instructions: List[Dict[str, Any]],
        account_keys: List[Optional[str]],
        intent: PaymentIntent,
    ) -> str:
        required = to_atomic_units(intent.amount, SOL_DECIMALS)
        amount_too_low = False

        for ix in instructions:
            if _program_of(ix) not in (SYSTEM_PROGRAM_ID, "system"):
                continue
            parsed = ix.get("parsed")
            if not isinstance(parsed, dict) or parsed.get("type") != "transfer":
                continue
            info = parsed.get("info") or {}
            if info.get("destination") != intent.recipient:
                continue
            lamports = _parse_int(info.get("lamports"))
            if lamports is None or lamports < required:
                amount_too_low = True
                continue

            payer = account_keys[0] if account_keys else None
            if not payer:
                raise VerificationFailedError("Could not derive payer", TRANSFER_NOT_FOUND)
            return payer

        if amount_too_low:
            raise VerificationFailedError(
                "SOL transfer to recipient is below the required amount",
                AMOUNT_TOO_LOW,
                details={"required": required},
            )
        raise VerificationFailedError("SOL transfer to recipient not found", TRANSFER_NOT_FOUND)

    def _verify_usdc(
        self,
        instructions: List[Dict[str, Any]],
        account_keys: List[Optional[str]],
        meta: Dict[str, Any],
        intent: PaymentIntent,
    ) -> str:
        required = to_atomic_units(intent.amount, self.usdc_decimals)
        expected_mint = intent.mint or self.usdc_mint
        balances = self._token_balances(meta, account_keys)
        amount_too_low = False
        recipient_mismatch = False

        for ix in instructions:
            program_id = _program_of(ix)
            if program_id not in TOKEN_PROGRAM_IDS and program_id != "spl-token":
                continue
            parsed = ix.get("parsed")
            if not isinstance(parsed, dict) or parsed.get("type") not in ("transfer", "transferChecked"):
                continue
            info = parsed.get("info") or {}
            source = info.get("source")
            destination = info.get("destination")
            if not isinstance(source, str) or not isinstance(destination, str):
                continue

            mint = info.get("mint") or (balances.get(destination) or {}).get("mint") \
                or (balances.get(source) or {}).get("mint")
            if mint != expected_mint:
                continue

            raw_amount = info.get("amount")
            if raw_amount is None:
                raw_amount = (info.get("tokenAmount") or {}).get("amount")
            amount = _parse_int(raw_amount)
            if amount is None or amount < required:
                amount_too_low = True
                continue

            token_program = program_id if program_id in TOKEN_PROGRAM_IDS else TOKEN_PROGRAM_ID
            if not self._owned_by(destination, intent.recipient, mint, token_program):
                recipient_mismatch = True
                continue

            payer = (balances.get(source) or {}).get("owner") or self.rpc.get_token_account_owner(source)
            if not payer:
                raise VerificationFailedError("Could not derive payer", TRANSFER_NOT_FOUND)
            return payer

        if recipient_mismatch:
            raise VerificationFailedError(
                "USDC transfer destination is not owned by the intent recipient",
                RECIPIENT_MISMATCH,
            )
        if amount_too_low:
            raise VerificationFailedError(
                "USDC transfer is below the required amount",
                AMOUNT_TOO_LOW,
                details={"required": required},
            )
        raise VerificationFailedError("USDC transfer for intent recipient/mint not found", TRANSFER_NOT_FOUND)

    @staticmethod
    def _token_balances(meta: Dict[str, Any], account_keys: List[Optional[str]]) -> Dict[str, Dict[str, Any]]:
        """Map token account address -> {mint, owner} from pre/post token balances."""
        balances: Dict[str, Dict[str, Any]] = {}
        for entry in (meta.get("preTokenBalances") or []) + (meta.get("postTokenBalances") or []):
            if not isinstance(entry, dict):
                continue
            index = _parse_int(entry.get("accountIndex"))
            if index is None or index >= len(account_keys) or not account_keys[index]:
                continue
            record = balances.setdefault(account_keys[index], {})
            for key in ("mint", "owner"):
                if isinstance(entry.get(key), str):
                    record.setdefault(key, entry[key])
        return balances

    def _owned_by(self, token_account: str, owner: str, mint: str, token_program: str) -> bool:
        """Destination belongs to owner: derived ATA match, else on-chain owner lookup."""
        try:
            if get_associated_token_address(owner, mint, token_program) == token_account:
                return True
        except ValueError as e:
            logger.debug(f"ATA derivation failed for {owner}/{mint}: {e}")
        return self.rpc.get_token_account_owner(token_account) == owner


def verify_payment(
    tx_signature: str,
    intent: PaymentIntent,
    config: Optional[VerifyConfig] = None,
    rpc: Optional[SolanaRpcClient] = None,
) -> VerifiedPayment:
    """One-shot verification using the configured RPC endpoint and mint."""
    config = config or VerifyConfig(usdc_mint=settings.USDC_MINT, usdc_decimals=settings.USDC_DECIMALS)
    verifier = LedgerVerifier.from_config(rpc or SolanaRpcClient(), config)
    return verifier.verify(tx_signature, intent)
