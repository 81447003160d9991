"""
Loyalty Ledger - Services
"""
