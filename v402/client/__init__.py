"""
v402 client.

V402Client wraps requests and handles the 402 -> pay -> retry cycle; a
WalletAdapter supplies the payment.
"""
