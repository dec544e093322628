"""
Transfer Processing Module

Moves money between two accounts of one tenant. The backend can only make a
single account mutation atomic (together with its ledger entry), so a
transfer is a saga of two such writes:

    INIT -> SENDER_LOOKUP -> RECEIVER_LOOKUP -> BALANCE_CHECK -> DEBIT
         -> CREDIT -> SUCCESS
                   -> ROLLBACK -> FAILED

The debit is conditioned on the sender's version as read, so a concurrent
mutation turns into a debit failure instead of an overdraft. The balance
check before it is advisory only. When the credit fails the debit is
compensated synchronously; when the compensation fails too, the money is in
flight and InconsistencyError is raised instead of an ordinary error.

A PENDING audit record is written before anything is read or mutated and is
finalised on every exit, so each attempt leaves exactly one record.
"""

import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .accounts import Account, AccountStore
from .audit_log import TransactionAuditLog, TransactionRecord, TransactionStatus
from .config import LedgerConfig, get_config
from .currency import to_decimal
from .errors import (
    AccountNotFoundError, EntryExistsError, InconsistencyError, LedgerError, TransferErrorCode,
    TransferFailedError, TransferInsufficientFundsError, ValidationError
)
from .ids import new_transaction_id
from .ledger import EntryLeg, LedgerEntry, LedgerWriter
from .logging_config import get_logger, log_action
from .storage import deadline
from .tenancy import resolve_tenant


class TransferState(Enum):
    """Steps of the transfer protocol"""
    INIT = "init"
    SENDER_LOOKUP = "sender_lookup"
    RECEIVER_LOOKUP = "receiver_lookup"
    BALANCE_CHECK = "balance_check"
    DEBIT = "debit"
    CREDIT = "credit"
    SUCCESS = "success"
    ROLLBACK = "rollback"
    FAILED = "failed"


@dataclass
class TransferResult:
    """Outcome of a successful transfer"""
    system_transaction_id: str
    tenant_id: str
    amount: Decimal
    currency: str
    initiator: str = ""
    status: str = "success"
    code: str = "successful_transaction"
    message: str = "Transaction initiated successfully."

    def to_response(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "code": self.code,
            "message": self.message,
            "data": {
                "transaction_id": self.system_transaction_id,
                "amount": str(self.amount),
                "currency": self.currency,
                "initiator": self.initiator
            }
        }


class TransferCoordinator:
    """
    Runs the transfer protocol over AccountStore, LedgerWriter and
    TransactionAuditLog.

    After an InconsistencyError the coordinator refuses further transfers
    (when halt_on_inconsistency is set) until an operator calls
    acknowledge_inconsistency().
    """

    def __init__(
        self,
        accounts: AccountStore,
        ledger: LedgerWriter,
        audit_log: TransactionAuditLog,
        config: Optional[LedgerConfig] = None,
        id_generator: Callable[[], str] = new_transaction_id,
        clock: Callable[[], float] = time.time
    ):
        self.accounts = accounts
        self.ledger = ledger
        self.audit_log = audit_log
        self.config = config or get_config()
        self.id_generator = id_generator
        self.clock = clock
        self.logger = get_logger("ledger_engine.transfers")
        self._fatal: Optional[InconsistencyError] = None

    @property
    def halted(self) -> bool:
        return self._fatal is not None

    def acknowledge_inconsistency(self) -> Optional[InconsistencyError]:
        """Resume normal processing after an operator resolved the inconsistency"""
        fatal, self._fatal = self._fatal, None
        if fatal is not None:
            log_action(
                self.logger, "warning", "Inconsistency acknowledged, transfers resumed",
                tenant_id=fatal.tenant_id, transaction_id=fatal.transaction_id,
                action="acknowledge_inconsistency"
            )
        return fatal

    def transfer(
        self,
        tenant_id: Optional[str],
        from_account: str,
        to_account: str,
        amount: Any,
        initiator: str = "",
        timeout: Optional[float] = None
    ) -> TransferResult:
        """
        Transfer amount from one account to another.

        Args:
            tenant_id: Tenant of both accounts; resolved via tenancy rules when empty
            from_account: Sender account id
            to_account: Receiver account id
            amount: Positive decimal amount
            initiator: Who asked for the transfer
            timeout: Time budget in seconds for the store calls, at most and by default
                the configured storage timeout

        Returns:
            TransferResult carrying the system transaction id

        Raises:
            ValidationError: Malformed request, nothing recorded
            AccountNotFoundError: Sender or receiver lookup failed (user_not_found)
            TransferInsufficientFundsError: Advisory balance check failed (insufficient_balance)
            TransferFailedError: Debit or credit write failed (debit_failed / credit_failed)
            InconsistencyError: Credit and its compensation both failed, or the
                coordinator is halted by an earlier one
        """
        if self._fatal is not None and self.config.halt_on_inconsistency:
            raise InconsistencyError(
                f"Transfers halted by unresolved inconsistency in {self._fatal.transaction_id}",
                tenant_id=self._fatal.tenant_id,
                transaction_id=self._fatal.transaction_id,
                account_id=self._fatal.account_id,
                amount=self._fatal.amount,
                cause=self._fatal
            )

        if not from_account:
            raise ValidationError("You must provide the sender account ID")
        if not to_account:
            raise ValidationError("You must provide the receiver account ID")
        value = to_decimal(amount)
        if value <= 0:
            raise ValidationError("Transfer amount must be positive")
        if timeout is not None and not 0 < timeout <= self.config.storage_timeout_seconds:
            raise ValidationError(
                f"timeout must be positive and at most {self.config.storage_timeout_seconds} seconds"
            )

        tenant_id = resolve_tenant(tenant_id, self.config)
        if timeout is None:
            timeout = self.config.storage_timeout_seconds

        record = TransactionRecord(
            tenant_id=tenant_id,
            system_transaction_id=self.id_generator(),
            from_account=from_account,
            to_account=to_account,
            amount=value,
            currency=self.config.default_currency,
            status=TransactionStatus.PENDING,
            comment=self.config.transfer_comment,
            transaction_date=int(self.clock()),
            initiator=initiator
        )

        with deadline(timeout):
            self.audit_log.record_intent(record)
            self._transition(record, TransferState.INIT)
            return self._run(record)

    def _run(self, record: TransactionRecord) -> TransferResult:
        tenant_id = record.tenant_id

        # Fetch sender account
        self._transition(record, TransferState.SENDER_LOOKUP)
        try:
            sender = self.accounts.read(tenant_id, record.from_account)
        except LedgerError as e:
            self._fail(record, TransferErrorCode.USER_NOT_FOUND, e)
            raise AccountNotFoundError("Error in retrieving sender.", cause=e,
                                       transaction_id=record.system_transaction_id)
        record.currency = sender.currency

        # Fetch receiver account
        self._transition(record, TransferState.RECEIVER_LOOKUP)
        try:
            self.accounts.read(tenant_id, record.to_account)
        except LedgerError as e:
            self._fail(record, TransferErrorCode.USER_NOT_FOUND, e)
            raise AccountNotFoundError("Error in retrieving receiver.", cause=e,
                                       transaction_id=record.system_transaction_id)

        amount = record.amount

        # Advisory only: the authoritative guard is the version condition on the debit
        self._transition(record, TransferState.BALANCE_CHECK)
        if amount > sender.balance:
            self._fail(record, TransferErrorCode.INSUFFICIENT_BALANCE)
            raise TransferInsufficientFundsError(
                "Insufficient balance to complete the transaction.",
                transaction_id=record.system_transaction_id
            )

        self._transition(record, TransferState.DEBIT)
        try:
            debited = self.ledger.append(
                self._entry(record, EntryLeg.DEBIT, record.from_account),
                self.accounts.adjust_operation(
                    tenant_id, record.from_account, -amount, expected_version=sender.version
                )
            )
        except LedgerError as e:
            self._fail(record, TransferErrorCode.DEBIT_FAILED, e)
            raise TransferFailedError(
                f"Failed to debit from balance for user {record.from_account}",
                cause=e, transaction_id=record.system_transaction_id,
                code=TransferErrorCode.DEBIT_FAILED
            )

        # The debit is committed from here on; the hop to the credit is not atomic
        self._transition(record, TransferState.CREDIT)
        try:
            self.ledger.append(
                self._entry(record, EntryLeg.CREDIT, record.to_account),
                self.accounts.adjust_operation(
                    tenant_id, record.to_account, amount, require_exists=True
                )
            )
        except LedgerError as e:
            self._transition(record, TransferState.ROLLBACK)
            self._compensate(record, sender, debited['version'], e)
            self._fail(record, TransferErrorCode.CREDIT_FAILED, e)
            raise TransferFailedError(
                f"Failed to credit to balance for user {record.to_account}",
                cause=e, transaction_id=record.system_transaction_id,
                code=TransferErrorCode.CREDIT_FAILED
            )

        self._finalize(record, TransactionStatus.SUCCESS)
        self._transition(record, TransferState.SUCCESS)
        log_action(
            self.logger, "info",
            f"Transfer completed: {amount} {record.currency}",
            tenant_id=tenant_id, transaction_id=record.system_transaction_id,
            action="transfer", resource=f"account:{record.from_account}",
            extra={"from_account": record.from_account, "to_account": record.to_account,
                   "amount": str(amount), "initiator": record.initiator}
        )
        return TransferResult(
            system_transaction_id=record.system_transaction_id,
            tenant_id=tenant_id,
            amount=amount,
            currency=record.currency,
            initiator=record.initiator
        )

    def _compensate(self, record: TransactionRecord, sender: Account,
                    debited_version: int, credit_error: LedgerError) -> None:
        """
        Put the debited amount back on the sender.

        Conditioned on the version the debit left, so the refund only lands on
        the sender record exactly as this transfer left it. The pre-debit
        version cannot be used: the debit itself moved the monotonic version
        counter past it, so a refund conditioned on it could never apply.

        When the reconciler already refunded this debit, the settlement entry
        is taken by its compensation and there is nothing left to undo.
        """
        try:
            with deadline(None):
                self.ledger.append(
                    self._entry(record, EntryLeg.COMPENSATION, record.from_account),
                    self.accounts.adjust_operation(
                        record.tenant_id, record.from_account, record.amount,
                        expected_version=debited_version
                    )
                )
        except LedgerError as e:
            if isinstance(e, EntryExistsError) and self._compensated_elsewhere(record):
                log_action(
                    self.logger, "warning", "Debit already compensated by reconciliation",
                    tenant_id=record.tenant_id, transaction_id=record.system_transaction_id,
                    action="compensate", resource=f"account:{record.from_account}",
                    extra={"credit_error": str(credit_error)}
                )
                return
            fatal = InconsistencyError(
                f"Failed to rollback debit for user {record.from_account}: "
                f"{record.amount} {record.currency} debited without credit",
                tenant_id=record.tenant_id,
                transaction_id=record.system_transaction_id,
                account_id=record.from_account,
                amount=record.amount,
                cause=e
            )
            log_action(
                self.logger, "critical", fatal.message,
                tenant_id=record.tenant_id, transaction_id=record.system_transaction_id,
                action="compensate", resource=f"account:{record.from_account}",
                extra={"credit_error": str(credit_error), "compensation_error": str(e),
                       "original_version": sender.version, "debited_version": debited_version}
            )
            if self.config.halt_on_inconsistency:
                self._fatal = fatal
            raise fatal from e

        log_action(
            self.logger, "warning", "Debit compensated after failed credit",
            tenant_id=record.tenant_id, transaction_id=record.system_transaction_id,
            action="compensate", resource=f"account:{record.from_account}",
            extra={"credit_error": str(credit_error)}
        )

    def _compensated_elsewhere(self, record: TransactionRecord) -> bool:
        try:
            with deadline(None):
                entries = self.ledger.entries_for(record.tenant_id, record.system_transaction_id)
        except LedgerError:
            log_action(
                self.logger, "error", "Could not read ledger entries of transfer",
                tenant_id=record.tenant_id, transaction_id=record.system_transaction_id,
                action="compensate", exc_info=True
            )
            return False
        return any(entry.leg == EntryLeg.COMPENSATION for entry in entries)

    def _entry(self, record: TransactionRecord, leg: EntryLeg, account_id: str) -> LedgerEntry:
        return LedgerEntry(
            tenant_id=record.tenant_id,
            account_id=account_id,
            system_transaction_id=record.system_transaction_id,
            leg=leg,
            amount=record.amount,
            timestamp=int(self.clock()),
            initiator=record.initiator
        )

    def _fail(self, record: TransactionRecord, code: TransferErrorCode,
              cause: Optional[BaseException] = None) -> None:
        self._finalize(record, TransactionStatus.FAILED, code)
        self._transition(record, TransferState.FAILED)
        log_action(
            self.logger, "warning", f"Transfer failed: {code.value}",
            tenant_id=record.tenant_id, transaction_id=record.system_transaction_id,
            action="transfer", resource=f"account:{record.from_account}",
            extra={"code": code.value, "cause": str(cause) if cause else None}
        )

    def _finalize(self, record: TransactionRecord, status: TransactionStatus,
                  code: Optional[TransferErrorCode] = None) -> None:
        """Finalise the audit record; a failure leaves it PENDING for the reconciler"""
        record.status = status
        record.error_code = code.value if code else None
        try:
            with deadline(None):
                self.audit_log.finalize(record.tenant_id, record.system_transaction_id,
                                        status, record.error_code, currency=record.currency)
        except LedgerError:
            log_action(
                self.logger, "error", "Could not finalise transaction record",
                tenant_id=record.tenant_id, transaction_id=record.system_transaction_id,
                action="finalize", extra={"status": status.value}, exc_info=True
            )

    def _transition(self, record: TransactionRecord, state: TransferState) -> None:
        self.logger.debug(
            "Transfer state: %s", state.value,
            extra={'tenant_id': record.tenant_id,
                   'transaction_id': record.system_transaction_id}
        )
