"""
Account Management Module

AccountStore owns the balance and version counter of each (tenant, account)
and exposes point reads plus a single-item, version-conditioned balance
mutation. The store enforces only the version precondition: whether the
sender can afford a debit is checked by the caller beforehand.

AccountAdmin is the onboarding side: it creates accounts with their opening
balance and edits profile fields. It never touches balance or version of an
existing account.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .conditions import Attr
from .config import LedgerConfig, get_config
from .currency import Currency, quantize, to_decimal
from .errors import (
    ConditionalCheckFailedError, ConflictError, NotFoundError, ValidationError
)
from .logging_config import get_logger, log_action
from .storage import StorageInterface, Update


@dataclass
class Account:
    """Balance-carrying account of one tenant"""
    tenant_id: str
    account_id: str
    balance: Decimal
    version: Optional[int]  # None for legacy records written without a counter
    currency: str
    full_name: str = ""
    mobile_number: str = ""
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = {
            'tenant_id': self.tenant_id,
            'account_id': self.account_id,
            'balance': str(self.balance),
            'currency': self.currency,
            'full_name': self.full_name,
            'mobile_number': self.mobile_number,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }
        if self.version is not None:
            result['version'] = self.version
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        """Create Account from dictionary"""
        created_at = data.get('created_at')
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        return cls(
            tenant_id=data['tenant_id'],
            account_id=data['account_id'],
            balance=Decimal(str(data.get('balance', '0'))),
            version=data.get('version'),
            currency=data.get('currency') or get_config().default_currency,
            full_name=data.get('full_name', ""),
            mobile_number=data.get('mobile_number', ""),
            created_at=created_at
        )


class AccountStore:
    """Balance and version storage keyed by (tenant, account)"""

    def __init__(self, storage: StorageInterface, config: Optional[LedgerConfig] = None):
        self.storage = storage
        self.config = config or get_config()
        self.table_name = self.config.accounts_table

    @staticmethod
    def _key(tenant_id: str, account_id: str) -> Dict[str, str]:
        return {'tenant_id': tenant_id, 'account_id': account_id}

    def read(self, tenant_id: str, account_id: str) -> Account:
        """
        Point read of an account.

        Raises:
            NotFoundError: No such account in this tenant
            StorageError: Backend call failed
        """
        data = self.storage.get_item(self.table_name, self._key(tenant_id, account_id))
        if data is None:
            raise NotFoundError(f"Account {account_id} does not exist")
        return Account.from_dict(data)

    def inquire(self, tenant_id: str, account_id: str) -> Decimal:
        """Current balance of an account"""
        return self.read(tenant_id, account_id).balance

    def batch_exists(self, tenant_id: str, account_ids: List[str]) -> List[str]:
        """Return the ids among account_ids that do not exist in the tenant"""
        if not account_ids:
            return []
        unique_ids = list(dict.fromkeys(account_ids))
        found = self.storage.batch_get(
            self.table_name, [self._key(tenant_id, account_id) for account_id in unique_ids]
        )
        found_ids = {item['account_id'] for item in found}
        return [account_id for account_id in account_ids if account_id not in found_ids]

    def adjust_operation(self, tenant_id: str, account_id: str, delta: Decimal,
                         expected_version: Optional[int] = None,
                         require_exists: bool = False) -> Update:
        """
        Build the balance mutation as a write item for an atomic compound write.

        Args:
            tenant_id: Tenant of the account
            account_id: Account to adjust
            delta: Signed amount added to the balance
            expected_version: Version the account must still carry (absent also passes)
            require_exists: Only require that the account exists in this tenant

        Returns:
            Update applying balance += delta and version += 1
        """
        exists = Attr('account_id').exists() & Attr('tenant_id').eq(tenant_id)
        if require_exists:
            condition = exists
        else:
            condition = exists & (Attr('version').not_exists() | Attr('version').eq(expected_version))

        return Update(
            table=self.table_name,
            key=self._key(tenant_id, account_id),
            add_values={'balance': delta, 'version': 1},
            condition=condition
        )

    def conditional_adjust(self, tenant_id: str, account_id: str, delta: Decimal,
                           expected_version: Optional[int]) -> int:
        """
        Atomically apply balance += delta when the version still matches.

        Returns:
            The new version

        Raises:
            ConflictError: The account changed since expected_version was read
        """
        op = self.adjust_operation(tenant_id, account_id, delta, expected_version)
        try:
            updated = self.storage.update_item(
                op.table, op.key, add_values=op.add_values, condition=op.condition
            )
        except ConditionalCheckFailedError as e:
            raise ConflictError(
                f"Version conflict on account {account_id}: expected {expected_version}", cause=e
            )
        return updated['version']


class AccountAdmin:
    """Account onboarding: creation with opening balance and profile edits"""

    PROFILE_FIELDS = ('full_name', 'mobile_number')

    def __init__(self, storage: StorageInterface, config: Optional[LedgerConfig] = None):
        self.storage = storage
        self.config = config or get_config()
        self.table_name = self.config.accounts_table
        self.logger = get_logger("ledger_engine.accounts")

    def create_account(self, tenant_id: str, account_id: str,
                       balance: Any = Decimal('0'),
                       currency: Optional[str] = None,
                       full_name: str = "",
                       mobile_number: str = "") -> Account:
        """
        Create a new account with an opening balance.

        Unlike a blind put, creation never overwrites an existing account.

        Raises:
            ValidationError: Bad id, currency or negative balance
            ConflictError: Account already exists in this tenant
        """
        if not account_id:
            raise ValidationError("Account ID is required")
        currency_code = Currency.from_code(currency or self.config.default_currency).code
        opening = quantize(to_decimal(balance), currency_code)
        if opening < 0:
            raise ValidationError("Opening balance cannot be negative")

        account = Account(
            tenant_id=tenant_id,
            account_id=account_id,
            balance=opening,
            version=1,
            currency=currency_code,
            full_name=full_name,
            mobile_number=mobile_number,
            created_at=datetime.now(timezone.utc)
        )
        try:
            self.storage.put_item(
                self.table_name, account.to_dict(),
                condition=Attr('account_id').not_exists()
            )
        except ConditionalCheckFailedError as e:
            raise ConflictError(f"Account {account_id} already exists", cause=e)

        log_action(
            self.logger, "info", f"Account created: {account_id}",
            tenant_id=tenant_id, action="create_account",
            resource=f"account:{account_id}",
            extra={"currency": currency_code, "opening_balance": str(opening)}
        )
        return account

    def update_profile(self, tenant_id: str, account_id: str,
                       full_name: Optional[str] = None,
                       mobile_number: Optional[str] = None) -> Account:
        """Edit profile fields; balance and version are left alone"""
        changes = {}
        if full_name is not None:
            changes['full_name'] = full_name
        if mobile_number is not None:
            changes['mobile_number'] = mobile_number
        if not changes:
            raise ValidationError("No profile fields to update")

        try:
            updated = self.storage.update_item(
                self.table_name,
                {'tenant_id': tenant_id, 'account_id': account_id},
                set_values=changes,
                condition=Attr('account_id').exists()
            )
        except ConditionalCheckFailedError as e:
            raise NotFoundError(f"Account {account_id} does not exist", cause=e)
        return Account.from_dict(updated)
