"""
Table Definitions

Key layout of the three tables the ledger uses. All tables are partitioned
by tenant so every query stays inside one tenant's data.
"""

from typing import Optional

from .config import LedgerConfig, get_config
from .storage import IndexSchema, StorageInterface, TableSchema


# Transactions table indexes
ACCOUNT_INDEX = "AccountIndex"
FROM_ACCOUNT_INDEX = "FromAccountIndex"
TO_ACCOUNT_INDEX = "ToAccountIndex"
TRANSACTION_DATE_INDEX = "TransactionDateIndex"

# Ledger table indexes
LEDGER_TRANSACTION_INDEX = "TransactionIndex"
LEDGER_ACCOUNT_INDEX = "AccountIndex"


def accounts_schema(name: str) -> TableSchema:
    return TableSchema(name=name, partition_key="tenant_id", sort_key="account_id")


def ledger_schema(name: str) -> TableSchema:
    return TableSchema(
        name=name,
        partition_key="tenant_id",
        sort_key="entry_id",
        indexes={
            LEDGER_TRANSACTION_INDEX: IndexSchema(LEDGER_TRANSACTION_INDEX, "tenant_id", "system_transaction_id"),
            LEDGER_ACCOUNT_INDEX: IndexSchema(LEDGER_ACCOUNT_INDEX, "tenant_id", "account_id"),
        }
    )


def transactions_schema(name: str) -> TableSchema:
    return TableSchema(
        name=name,
        partition_key="tenant_id",
        sort_key="transaction_id",
        indexes={
            ACCOUNT_INDEX: IndexSchema(ACCOUNT_INDEX, "tenant_id", "account_id"),
            FROM_ACCOUNT_INDEX: IndexSchema(FROM_ACCOUNT_INDEX, "tenant_id", "from_account"),
            TO_ACCOUNT_INDEX: IndexSchema(TO_ACCOUNT_INDEX, "tenant_id", "to_account"),
            TRANSACTION_DATE_INDEX: IndexSchema(TRANSACTION_DATE_INDEX, "tenant_id", "transaction_date"),
        }
    )


def create_tables(storage: StorageInterface, config: Optional[LedgerConfig] = None) -> None:
    """Register every ledger table on a storage backend"""
    config = config or get_config()
    storage.create_table(accounts_schema(config.accounts_table))
    storage.create_table(ledger_schema(config.ledger_table))
    storage.create_table(transactions_schema(config.transactions_table))
