"""
E-Wallet Ledger Core

Account balances in integer minor units, an append-only transaction log,
and atomic deposit, withdrawal and transfer operations over a local store.
"""

__version__ = "1.0.0"
