"""
afipsync - P2P trade to AFIP electronic invoice reconciliation.

Fetches exchange orders, invoices each one at most once through the
tax authority gateway and keeps the outcome in a persistent ledger.
"""

__version__ = "0.1.0"
