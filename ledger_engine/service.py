"""
Ledger Service

Wires the ledger components over one storage backend and exposes the public
operation surface used by the HTTP API and by embedding applications. Tenant
arguments may be empty; they are resolved per call from the tenant context
and configuration.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from .accounts import Account, AccountAdmin, AccountStore
from .audit_log import TransactionAuditLog, TransactionPatch, TransactionRecord
from .config import LedgerConfig, get_config
from .errors import ValidationError
from .ledger import LedgerWriter
from .logging_config import get_logger
from .queries import AccountSide, TransactionFilter, TransactionPage, TransactionQueryService
from .reconciliation import TransferReconciler
from .storage import InMemoryStorage, SQLiteStorage, StorageInterface
from .tables import create_tables
from .tenancy import resolve_tenant
from .transfers import TransferCoordinator, TransferResult


def create_storage(config: LedgerConfig) -> StorageInterface:
    """Build the storage backend named by the configuration"""
    if config.storage_backend == "memory":
        return InMemoryStorage()
    if config.storage_backend == "sqlite":
        return SQLiteStorage(config.database_path, timeout=config.storage_timeout_seconds)
    raise ValidationError(f"Unknown storage backend: {config.storage_backend}")


class LedgerService:
    """Ledger engine with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[LedgerConfig] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config)
        create_tables(self.storage, self.config)

        self.accounts = AccountStore(self.storage, self.config)
        self.account_admin = AccountAdmin(self.storage, self.config)
        self.ledger = LedgerWriter(self.storage, self.config)
        self.audit_log = TransactionAuditLog(self.storage, self.config)
        self.queries = TransactionQueryService(self.storage, self.config)
        self.coordinator = TransferCoordinator(
            self.accounts, self.ledger, self.audit_log, self.config
        )
        self.reconciler = TransferReconciler(
            self.accounts, self.ledger, self.audit_log, self.config
        )
        self.logger = get_logger("ledger_engine.service")

    def _tenant(self, tenant_id: Optional[str]) -> str:
        return resolve_tenant(tenant_id, self.config)

    # Accounts

    def check_exist(self, tenant_id: Optional[str], account_ids: List[str]) -> List[str]:
        """Return the account ids that do not exist"""
        return self.accounts.batch_exists(self._tenant(tenant_id), account_ids)

    def inquire(self, tenant_id: Optional[str], account_id: str) -> Decimal:
        """Current balance of an account"""
        return self.accounts.inquire(self._tenant(tenant_id), account_id)

    def get_account(self, tenant_id: Optional[str], account_id: str) -> Account:
        return self.accounts.read(self._tenant(tenant_id), account_id)

    def create_account(self, tenant_id: Optional[str], account_id: str,
                       balance: Any = Decimal('0'), currency: Optional[str] = None,
                       full_name: str = "", mobile_number: str = "") -> Account:
        return self.account_admin.create_account(
            self._tenant(tenant_id), account_id, balance=balance, currency=currency,
            full_name=full_name, mobile_number=mobile_number
        )

    # Transfers

    def transfer(self, tenant_id: Optional[str], from_account: str, to_account: str,
                 amount: Any, initiator: str = "") -> TransferResult:
        """Move amount between two accounts of a tenant"""
        return self.coordinator.transfer(tenant_id, from_account, to_account, amount, initiator)

    # History

    def list_by_account(self, tenant_id: Optional[str], account_id: str,
                        limit: Optional[int] = None,
                        cursor: Optional[str] = None) -> TransactionPage:
        return self.queries.by_account_primary(self._tenant(tenant_id), account_id, limit, cursor)

    def list_by_side(self, tenant_id: Optional[str], side: AccountSide, account_id: str,
                     limit: Optional[int] = None,
                     cursor: Optional[str] = None) -> TransactionPage:
        return self.queries.by_account_index(self._tenant(tenant_id), side, account_id, limit, cursor)

    def list_detailed(self, tenant_id: Optional[str], account_id: str,
                      limit: Optional[int] = None) -> List[TransactionRecord]:
        return self.queries.detailed(self._tenant(tenant_id), account_id, limit)

    def get_one(self, tenant_id: Optional[str], account_id: str,
                transaction_id: str) -> Optional[TransactionRecord]:
        return self.queries.by_id(self._tenant(tenant_id), account_id, transaction_id)

    def search(self, tenant_id: Optional[str], criteria: TransactionFilter) -> TransactionPage:
        return self.queries.search(self._tenant(tenant_id), criteria)

    def patch_transaction(self, tenant_id: Optional[str], transaction_id: str,
                          patch: TransactionPatch) -> TransactionRecord:
        return self.audit_log.apply_patch(self._tenant(tenant_id), transaction_id, patch)

    # Operations

    def reconcile(self, tenant_id: Optional[str] = None,
                  min_age_seconds: Optional[int] = None) -> Dict[str, Any]:
        return self.reconciler.reconcile(self._tenant(tenant_id), min_age_seconds)

    @property
    def halted(self) -> bool:
        return self.coordinator.halted

    def acknowledge_inconsistency(self) -> Optional[Dict[str, Any]]:
        """Resume transfers after an inconsistency; returns what was acknowledged"""
        fatal = self.coordinator.acknowledge_inconsistency()
        if fatal is None:
            return None
        return {
            'tenant_id': fatal.tenant_id,
            'transaction_id': fatal.transaction_id,
            'account_id': fatal.account_id,
            'amount': str(fatal.amount),
            'message': fatal.message
        }

    def close(self) -> None:
        self.storage.close()
