"""
Ledger Core

Multi-currency balance ledger and money-movement engine: deposits,
withdrawals, transfers, currency exchange, loan repayments and investment
payouts, with Decimal financial math, exactly-once operations and a
reconstructable transaction history.
"""

__version__ = "1.0.0"
