"""
v402 gateway: payment intents, policy enforcement, receipts and the HTTP binding.
"""
