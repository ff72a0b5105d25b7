"""
Custodial wallet store.
Relational schema for users, MPC key shares, token balances and transactions,
with a thin SQLAlchemy access layer over it.
"""

__all__ = ["balances", "cli", "crypto", "db", "errors", "keyshares", "log", "models", "schemas", "transactions", "users"]
