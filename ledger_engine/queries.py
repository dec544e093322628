"""
Transaction Query Module

Read side of the transactions table. Every lookup stays within one tenant
partition and pages with a cursor: a plain transaction id for the
account-keyed listing, an opaque continuation token elsewhere. Listings are
most recent first, which the time-sortable transaction ids give for free.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .audit_log import TransactionRecord, TransactionStatus
from .conditions import Attr, Condition, Key
from .config import LedgerConfig, get_config
from .errors import ValidationError
from .storage import StorageInterface, decode_token, encode_token
from .tables import ACCOUNT_INDEX, FROM_ACCOUNT_INDEX, TO_ACCOUNT_INDEX, TRANSACTION_DATE_INDEX


class AccountSide(Enum):
    """Which side of a transfer an account listing follows"""
    FROM = "from"
    TO = "to"

    @property
    def index_name(self) -> str:
        if self is AccountSide.FROM:
            return FROM_ACCOUNT_INDEX
        return TO_ACCOUNT_INDEX

    @property
    def attribute(self) -> str:
        return "from_account" if self is AccountSide.FROM else "to_account"


@dataclass
class TransactionFilter:
    """Search criteria; every field is optional"""
    account_id: Optional[str] = None
    start_time: Optional[int] = None  # Epoch seconds, inclusive
    end_time: Optional[int] = None    # Epoch seconds, inclusive
    status: Optional[Union[TransactionStatus, str]] = None
    cursor: Optional[str] = None
    limit: Optional[int] = None


@dataclass
class TransactionPage:
    """One page of transaction records plus the cursor of the next page"""
    items: List[TransactionRecord] = field(default_factory=list)
    cursor: str = ""

    @property
    def has_more(self) -> bool:
        return bool(self.cursor)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'items': [item.to_dict() for item in self.items],
            'cursor': self.cursor
        }


class TransactionQueryService:
    """Transaction history lookups"""

    def __init__(self, storage: StorageInterface, config: Optional[LedgerConfig] = None):
        self.storage = storage
        self.config = config or get_config()
        self.table_name = self.config.transactions_table

    def _page_size(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.config.default_page_size
        if limit <= 0:
            raise ValidationError("limit must be positive")
        return min(limit, self.config.max_page_size)

    def by_account_primary(self, tenant_id: str, account_id: str,
                           limit: Optional[int] = None,
                           cursor: Optional[str] = None) -> TransactionPage:
        """
        Transactions sent from an account, newest first.

        The cursor is the transaction id of the last item returned; pass it
        back to read the following page.
        """
        start_key = None
        if cursor:
            start_key = {'tenant_id': tenant_id, 'account_id': account_id, 'transaction_id': cursor}
        page = self.storage.query(
            self.table_name,
            Key('tenant_id').eq(tenant_id) & Key('account_id').eq(account_id),
            index_name=ACCOUNT_INDEX,
            limit=self._page_size(limit),
            exclusive_start_key=start_key,
            scan_forward=False
        )
        next_cursor = ""
        if page.last_evaluated_key:
            next_cursor = page.last_evaluated_key['transaction_id']
        return TransactionPage(
            items=[TransactionRecord.from_dict(item) for item in page.items],
            cursor=next_cursor
        )

    def by_account_index(self, tenant_id: str, side: AccountSide, account_id: str,
                         limit: Optional[int] = None,
                         cursor: Optional[str] = None) -> TransactionPage:
        """Transactions with the account on one side, newest first"""
        page = self.storage.query(
            self.table_name,
            Key('tenant_id').eq(tenant_id) & Key(side.attribute).eq(account_id),
            index_name=side.index_name,
            limit=self._page_size(limit),
            exclusive_start_key=decode_token(cursor),
            scan_forward=False
        )
        return TransactionPage(
            items=[TransactionRecord.from_dict(item) for item in page.items],
            cursor=encode_token(page.last_evaluated_key)
        )

    def detailed(self, tenant_id: str, account_id: str,
                 limit: Optional[int] = None) -> List[TransactionRecord]:
        """
        Outgoing then incoming transactions of an account.

        The two lists are concatenated as read: not merged by time and not
        de-duplicated, so a self-transfer appears twice. Each side holds at
        most limit items.
        """
        sent = self.by_account_index(tenant_id, AccountSide.FROM, account_id, limit)
        received = self.by_account_index(tenant_id, AccountSide.TO, account_id, limit)
        return sent.items + received.items

    def by_id(self, tenant_id: str, account_id: str,
              transaction_id: str) -> Optional[TransactionRecord]:
        """
        Single transaction by id.

        Tries the primary key first and falls back to scanning the account's
        partition for a record whose system transaction id matches, for
        records stored under a different key.
        """
        data = self.storage.get_item(
            self.table_name, {'tenant_id': tenant_id, 'transaction_id': transaction_id}
        )
        if data:
            return TransactionRecord.from_dict(data)

        page = self.storage.query(
            self.table_name,
            Key('tenant_id').eq(tenant_id) & Key('account_id').eq(account_id),
            index_name=ACCOUNT_INDEX,
            filter_condition=Attr('system_transaction_id').eq(transaction_id),
            limit=1
        )
        if page.items:
            return TransactionRecord.from_dict(page.items[0])
        return None

    def search(self, tenant_id: str, criteria: TransactionFilter) -> TransactionPage:
        """
        Filtered listing of a tenant's transactions, newest first.

        With both time bounds the date index is queried by range; a single
        bound is applied as a filter over the tenant partition instead. The
        account filter matches either side of a transfer.

        Args:
            tenant_id: Tenant to search
            criteria: Optional account, time range, status, cursor and limit

        Returns:
            TransactionPage with an opaque cursor, empty on the last page
        """
        if (criteria.start_time is not None and criteria.end_time is not None
                and criteria.start_time > criteria.end_time):
            raise ValidationError("start_time must not be after end_time")

        filters: List[Condition] = []
        if criteria.account_id:
            filters.append(
                Attr('from_account').eq(criteria.account_id) | Attr('to_account').eq(criteria.account_id)
            )
        if criteria.status is not None:
            status = criteria.status
            if not isinstance(status, TransactionStatus):
                try:
                    status = TransactionStatus(status)
                except ValueError:
                    raise ValidationError(f"Unknown transaction status: {criteria.status}")
            filters.append(Attr('status').eq(status.value))

        key_condition = Key('tenant_id').eq(tenant_id)
        index_name = None
        if criteria.start_time is not None and criteria.end_time is not None:
            key_condition = key_condition & Key('transaction_date').between(
                criteria.start_time, criteria.end_time
            )
            index_name = TRANSACTION_DATE_INDEX
        elif criteria.start_time is not None:
            filters.append(Attr('transaction_date').gte(criteria.start_time))
        elif criteria.end_time is not None:
            filters.append(Attr('transaction_date').lte(criteria.end_time))

        filter_condition = None
        for condition in filters:
            filter_condition = condition if filter_condition is None else filter_condition & condition

        page = self.storage.query(
            self.table_name,
            key_condition,
            index_name=index_name,
            filter_condition=filter_condition,
            limit=self._page_size(criteria.limit),
            exclusive_start_key=decode_token(criteria.cursor),
            scan_forward=False
        )
        return TransactionPage(
            items=[TransactionRecord.from_dict(item) for item in page.items],
            cursor=encode_token(page.last_evaluated_key)
        )
