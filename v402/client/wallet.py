# v402/client/wallet.py
"""
Wallet capability used by the client to pay an intent.

The client never holds keys: a WalletAdapter signs and submits the transfer
(with the "v402:<reference>" memo) and returns the transaction signature.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from v402.api.models.intent import PaymentIntent
from v402.protocol.memo import build_memo


@dataclass
class PayParams:
    recipient: str
    amount: str
    currency: str
    reference: str
    mint: Optional[str] = None

    @property
    def memo(self) -> str:
        """Memo the paying transaction must carry."""
        return build_memo(self.reference)


@dataclass
class PayResult:
    tx_sig: str


class WalletAdapter(ABC):
    """Pays intents on behalf of the caller."""

    @abstractmethod
    def pay(self, params: PayParams) -> PayResult:
        """Submit a transfer for `params` and return its signature once confirmed."""

    def get_public_key(self) -> Optional[str]:
        return None


def intent_to_pay_params(intent: PaymentIntent) -> PayParams:
    return PayParams(
        recipient=intent.recipient,
        amount=intent.amount,
        currency=intent.currency,
        reference=intent.reference,
        mint=intent.mint,
    )
