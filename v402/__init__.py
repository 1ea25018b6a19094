"""
v402 Payment Protocol.

Non-custodial HTTP 402 payments for paid tool/API calls, settled on Solana.

Key components:
- protocol: request canonicalization, amount codec, on-chain verification, receipts
- gateway: payment intent state machine, spending policies, rate limiting, audit log
- client: 402 -> pay -> retry orchestration for callers

Configuration is loaded from environment variables via v402.core.config.
"""

__version__ = "0.1.0"
