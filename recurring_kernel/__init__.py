"""
Recurring Kernel - recurring-order transaction engine.

Turns a declarative recurring swap/payment policy into blockchain
transactions over time with:
- Exact budget distribution across N orders
- Exactly-once order execution tracked by a durable progress counter
- Approve-then-swap batches validated before signing
- Full audit trail of every broadcast attempt
"""

__version__ = "0.1.0"
