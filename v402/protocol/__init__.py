# v402/protocol/__init__.py
"""
v402 protocol core.

Pure building blocks shared by the gateway and the client:
- canonical: request canonicalization and hashing
- amount: decimal string <-> atomic units
- memo: v402:<reference> memo codec
- address: associated token account derivation
- verify: on-chain payment verification
- receipt: Ed25519 receipt signing and verification
- tool_metadata: tool metadata signatures and path patterns
"""
