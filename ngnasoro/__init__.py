"""
N'GNA SÔRÔ! Loan Repayment Service

Flat-rate loan amortization, persisted repayment schedules and the daily
payment reminder sweep for SFD loans, with a hash-chained audit trail.
"""

__version__ = "1.0.0"
