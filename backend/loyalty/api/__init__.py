"""
Loyalty Ledger - HTTP routes
"""
