"""
Domain package - Core business logic with no external dependencies.

Value objects, the invoice date rule and the Order/Invoice entities
that encode AFIP's invoicing rules for P2P trades.
"""
