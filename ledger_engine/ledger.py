"""
Ledger Entry Module

Append-only record of money movement. Every entry is written in the same
atomic call as the balance mutation it describes, so an entry exists exactly
when its balance change committed. A transfer leaves either no entries or a
pair: debit + credit on success, debit + compensation when the credit had to
be rolled back. Credit and compensation share one entry id, so at most one of
them can ever commit for a transfer.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .conditions import Attr, Key
from .config import LedgerConfig, get_config
from .errors import ConflictError, EntryExistsError, TransactionCanceledError
from .storage import Put, QueryPage, StorageInterface, Update, decode_token, encode_token
from .tables import LEDGER_ACCOUNT_INDEX, LEDGER_TRANSACTION_INDEX


class EntryType(Enum):
    """Side of a money movement"""
    DEBIT = "debit"
    CREDIT = "credit"


class EntryLeg(Enum):
    """Step of the transfer protocol that produced an entry"""
    DEBIT = "debit"                # Sender debit
    CREDIT = "credit"              # Receiver credit
    COMPENSATION = "compensation"  # Sender refund after a failed credit

    @property
    def slot(self) -> str:
        """Part of the entry id; credit and compensation settle the same slot"""
        if self is EntryLeg.DEBIT:
            return "debit"
        return "settlement"

    @property
    def entry_type(self) -> EntryType:
        if self is EntryLeg.DEBIT:
            return EntryType.DEBIT
        return EntryType.CREDIT


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable record of one side of a money movement"""
    tenant_id: str
    account_id: str
    system_transaction_id: str
    leg: EntryLeg
    amount: Decimal
    timestamp: int
    initiator: str = ""

    @property
    def entry_id(self) -> str:
        return f"{self.system_transaction_id}#{self.leg.slot}"

    @property
    def type(self) -> EntryType:
        return self.leg.entry_type

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {
            'tenant_id': self.tenant_id,
            'entry_id': self.entry_id,
            'account_id': self.account_id,
            'system_transaction_id': self.system_transaction_id,
            'type': self.type.value,
            'leg': self.leg.value,
            'amount': str(self.amount),
            'timestamp': self.timestamp,
            'initiator': self.initiator
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerEntry':
        """Create LedgerEntry from dictionary"""
        return cls(
            tenant_id=data['tenant_id'],
            account_id=data['account_id'],
            system_transaction_id=data['system_transaction_id'],
            leg=EntryLeg(data.get('leg', data['type'])),
            amount=Decimal(str(data['amount'])),
            timestamp=int(data['timestamp']),
            initiator=data.get('initiator', "")
        )


class LedgerWriter:
    """Writes ledger entries together with their balance mutation"""

    def __init__(self, storage: StorageInterface, config: Optional[LedgerConfig] = None):
        self.storage = storage
        self.config = config or get_config()
        self.table_name = self.config.ledger_table

    def entry_put(self, entry: LedgerEntry) -> Put:
        """Write item for one entry; an entry id can only ever be written once"""
        return Put(
            table=self.table_name,
            item=entry.to_dict(),
            condition=Attr('entry_id').not_exists()
        )

    def append(self, entry: LedgerEntry, balance_update: Update) -> Dict[str, Any]:
        """
        Write one entry and its balance mutation in a single atomic call.

        No retry: failure of the compound write is failure of the append.

        Returns:
            The account item as the balance mutation left it

        Raises:
            EntryExistsError: The entry's slot is taken, for a settlement leg by
                the other of credit and compensation
            ConflictError: The balance mutation's precondition failed
            StorageError: The backend rejected or failed the write
        """
        try:
            return self.storage.transact_write([balance_update, self.entry_put(entry)])[0]
        except TransactionCanceledError as e:
            if len(e.reasons) > 1 and e.reasons[1] == "ConditionalCheckFailed":
                raise EntryExistsError(
                    f"Entry {entry.entry_id} already written, {entry.leg.value} refused",
                    cause=e
                )
            if e.reasons and e.reasons[0] == "ConditionalCheckFailed":
                raise ConflictError(
                    f"Precondition failed for {entry.leg.value} of "
                    f"{entry.system_transaction_id} on account {entry.account_id}",
                    cause=e
                )
            raise

    def entries_for(self, tenant_id: str, system_transaction_id: str) -> List[LedgerEntry]:
        """All entries written for one transfer"""
        page = self.storage.query(
            self.table_name,
            Key('tenant_id').eq(tenant_id) & Key('system_transaction_id').eq(system_transaction_id),
            index_name=LEDGER_TRANSACTION_INDEX
        )
        return [LedgerEntry.from_dict(item) for item in page.items]

    def entries_for_account(self, tenant_id: str, account_id: str,
                            limit: Optional[int] = None,
                            cursor: Optional[str] = None) -> Tuple[List[LedgerEntry], str]:
        """Statement of an account: its entries oldest first, paged"""
        page: QueryPage = self.storage.query(
            self.table_name,
            Key('tenant_id').eq(tenant_id) & Key('account_id').eq(account_id),
            index_name=LEDGER_ACCOUNT_INDEX,
            limit=limit,
            exclusive_start_key=decode_token(cursor)
        )
        return [LedgerEntry.from_dict(item) for item in page.items], encode_token(page.last_evaluated_key)
