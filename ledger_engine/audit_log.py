"""
Transaction Audit Log Module

Durable record of every transfer attempt, independent of whether money
moved. A record is written as PENDING before the first balance mutation and
finalised exactly once as SUCCESS or FAILED, so a record still PENDING after
its transfer returned marks a transfer that stopped between its writes.

Ledger entries record the effect of a transfer; this log records the intent.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .conditions import Attr, Key
from .config import LedgerConfig, get_config
from .errors import ConditionalCheckFailedError, ConflictError, NotFoundError, ValidationError
from .logging_config import get_logger
from .storage import StorageInterface


class TransactionStatus(Enum):
    """Outcome of a transfer attempt"""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class TransactionRecord:
    """One transfer attempt"""
    tenant_id: str
    system_transaction_id: str
    from_account: str
    to_account: str
    amount: Decimal
    currency: str
    status: TransactionStatus
    comment: str
    transaction_date: int  # Epoch seconds
    initiator: str = ""
    error_code: Optional[str] = None
    updated_at: Optional[datetime] = None
    transaction_id: Optional[str] = None  # Storage key, equals system_transaction_id for records written here

    def __post_init__(self):
        if self.transaction_id is None:
            self.transaction_id = self.system_transaction_id

    @property
    def is_final(self) -> bool:
        return self.status != TransactionStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {
            'tenant_id': self.tenant_id,
            'transaction_id': self.transaction_id,
            'system_transaction_id': self.system_transaction_id,
            'account_id': self.from_account,
            'from_account': self.from_account,
            'to_account': self.to_account,
            'amount': str(self.amount),
            'currency': self.currency,
            'status': self.status.value,
            'comment': self.comment,
            'transaction_date': self.transaction_date,
            'initiator': self.initiator,
            'error_code': self.error_code,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransactionRecord':
        """Create TransactionRecord from dictionary"""
        updated_at = data.get('updated_at')
        if isinstance(updated_at, str):
            updated_at = datetime.fromisoformat(updated_at)
        return cls(
            tenant_id=data['tenant_id'],
            system_transaction_id=data.get('system_transaction_id') or data['transaction_id'],
            from_account=data.get('from_account', data.get('account_id', "")),
            to_account=data.get('to_account', ""),
            amount=Decimal(str(data.get('amount', '0'))),
            currency=data.get('currency') or get_config().default_currency,
            status=TransactionStatus(data.get('status', TransactionStatus.PENDING.value)),
            comment=data.get('comment', ""),
            transaction_date=int(data.get('transaction_date', 0)),
            initiator=data.get('initiator', ""),
            error_code=data.get('error_code'),
            updated_at=updated_at,
            transaction_id=data['transaction_id']
        )


@dataclass
class TransactionPatch:
    """
    Typed partial update of a transaction record.

    Only the fields listed here can be corrected after the fact; amounts,
    accounts and ids are immutable.
    """
    comment: Optional[str] = None
    status: Optional[TransactionStatus] = None
    error_code: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.comment is not None:
            result['comment'] = self.comment
        if self.status is not None:
            result['status'] = self.status.value
        if self.error_code is not None:
            result['error_code'] = self.error_code
        return result


class TransactionAuditLog:
    """Writes and reads transfer attempt records"""

    def __init__(self, storage: StorageInterface, config: Optional[LedgerConfig] = None):
        self.storage = storage
        self.config = config or get_config()
        self.table_name = self.config.transactions_table
        self.logger = get_logger("ledger_engine.audit_log")

    @staticmethod
    def _key(tenant_id: str, transaction_id: str) -> Dict[str, str]:
        return {'tenant_id': tenant_id, 'transaction_id': transaction_id}

    def record_intent(self, record: TransactionRecord) -> None:
        """
        Write the PENDING record of a transfer before any money moves.

        Raises:
            ConflictError: A record with this id already exists
        """
        record.status = TransactionStatus.PENDING
        record.updated_at = datetime.now(timezone.utc)
        try:
            self.storage.put_item(
                self.table_name, record.to_dict(),
                condition=Attr('transaction_id').not_exists()
            )
        except ConditionalCheckFailedError as e:
            raise ConflictError(f"Transaction {record.system_transaction_id} already recorded", cause=e)

    def finalize(self, tenant_id: str, transaction_id: str, status: TransactionStatus,
                 error_code: Optional[str] = None,
                 currency: Optional[str] = None) -> TransactionRecord:
        """
        Move a PENDING record to its terminal status, exactly once.

        Finalising a record again with the status it already holds returns it
        unchanged, so the coordinator and the reconciler can both settle the
        same transfer.

        Raises:
            ValidationError: status is not terminal
            ConflictError: Record missing or final with another status
        """
        if status == TransactionStatus.PENDING:
            raise ValidationError("A transaction can only be finalised as success or failed")

        changes: Dict[str, Any] = {
            'status': status.value,
            'updated_at': datetime.now(timezone.utc).isoformat()
        }
        if error_code:
            changes['error_code'] = error_code
        if currency:
            changes['currency'] = currency
        try:
            updated = self.storage.update_item(
                self.table_name, self._key(tenant_id, transaction_id),
                set_values=changes,
                condition=Attr('status').eq(TransactionStatus.PENDING.value)
            )
        except ConditionalCheckFailedError as e:
            if e.item and e.item.get('status') == status.value:
                return TransactionRecord.from_dict(e.item)
            raise ConflictError(f"Transaction {transaction_id} is not pending", cause=e)
        return TransactionRecord.from_dict(updated)

    def get(self, tenant_id: str, transaction_id: str) -> Optional[TransactionRecord]:
        """Point lookup by primary key"""
        data = self.storage.get_item(self.table_name, self._key(tenant_id, transaction_id))
        if data:
            return TransactionRecord.from_dict(data)
        return None

    def pending(self, tenant_id: str, older_than: Optional[int] = None) -> List[TransactionRecord]:
        """PENDING records of a tenant, optionally only those dated before older_than"""
        condition = Attr('status').eq(TransactionStatus.PENDING.value)
        if older_than is not None:
            condition = condition & Attr('transaction_date').lt(older_than)
        page = self.storage.query(
            self.table_name,
            Key('tenant_id').eq(tenant_id),
            filter_condition=condition
        )
        return [TransactionRecord.from_dict(item) for item in page.items]

    def apply_patch(self, tenant_id: str, transaction_id: str,
                    patch: TransactionPatch) -> TransactionRecord:
        """
        Correct fields of an existing record after the fact.

        Raises:
            ValidationError: Empty patch
            NotFoundError: No such record
        """
        changes = patch.changes()
        if not changes:
            raise ValidationError("Patch contains no fields")
        changes['updated_at'] = datetime.now(timezone.utc).isoformat()
        try:
            updated = self.storage.update_item(
                self.table_name, self._key(tenant_id, transaction_id),
                set_values=changes,
                condition=Attr('transaction_id').exists()
            )
        except ConditionalCheckFailedError as e:
            raise NotFoundError(f"Transaction {transaction_id} not found", cause=e)

        self.logger.info(
            "Transaction patched: %s", transaction_id,
            extra={'tenant_id': tenant_id, 'transaction_id': transaction_id,
                   'action': "patch_transaction", 'extra': {'fields': sorted(changes)}}
        )
        return TransactionRecord.from_dict(updated)
