"""
Ledger Engine

Transactional money movement over a multi-tenant document store: optimistic
concurrency on account balances, paired ledger entries, compensating rollback
and paginated transaction history. All amounts use Decimal.
"""

__version__ = "1.0.0"
