"""
Loan Servicing Ledger

A loan transaction and schedule recalculation engine: amortization
schedules, transaction replay with penny-exact component allocation,
lifecycle state management and downstream accounting hooks.
"""

__version__ = "1.0.0"
