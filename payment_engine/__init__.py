"""
Payment Processing Engine

Simulates a payment gateway core:
1. Card (Luhn, network, expiry, CVV) and UPI instrument validation
2. Order/payment state machine guarded by compare-and-swap store updates
3. Asynchronous settlement with at-most-one in-flight attempt per order
4. Refunds bounded by the remaining refundable balance
5. Read-only ledger statistics for merchants
"""

__version__ = "0.1.0"
