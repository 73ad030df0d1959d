"""
Core Ledger

A ledger-backed account service: deposits, withdrawals and transfers with
row-locked balances, tiered limits, step-up OTP checks and an audit trail.
All monetary values use Decimal.
"""

__version__ = "1.0.0"
