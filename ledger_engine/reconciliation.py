"""
Transfer Reconciliation Module

Resolves transfers whose record is still PENDING after the coordinator
stopped working on them, typically because the process died between the
debit and the credit. The ledger entries of such a transfer tell how far it
got:

    debit + credit        -> finalise SUCCESS
    debit + compensation  -> finalise FAILED (credit_failed)
    debit only            -> compensate the sender, then finalise FAILED
    no entries            -> finalise FAILED, no money moved

Only records older than a minimum age are examined. A compensation written
here takes the same ledger slot as the credit, so a coordinator still working
on the transfer cannot credit the receiver afterwards, and a credit that
lands first makes the compensation fail instead. A record without entries is
only abandoned once it is older than the storage timeout, the longest a
coordinator keeps issuing writes for it.
"""

import math
import time
from typing import Any, Callable, Dict, Optional

from .accounts import AccountStore
from .audit_log import TransactionAuditLog, TransactionRecord, TransactionStatus
from .config import LedgerConfig, get_config
from .errors import EntryExistsError, LedgerError, TransferErrorCode, ValidationError
from .ledger import EntryLeg, LedgerEntry, LedgerWriter
from .logging_config import get_logger, log_action
from .tenancy import resolve_tenant


class TransferReconciler:
    """Finishes or rolls back transfers left PENDING"""

    def __init__(
        self,
        accounts: AccountStore,
        ledger: LedgerWriter,
        audit_log: TransactionAuditLog,
        config: Optional[LedgerConfig] = None,
        clock: Callable[[], float] = time.time
    ):
        self.accounts = accounts
        self.ledger = ledger
        self.audit_log = audit_log
        self.config = config or get_config()
        self.clock = clock
        self.logger = get_logger("ledger_engine.reconciliation")

    def reconcile(self, tenant_id: Optional[str] = None,
                  min_age_seconds: Optional[int] = None) -> Dict[str, Any]:
        """
        Resolve every stale PENDING transfer of a tenant.

        Args:
            tenant_id: Tenant to reconcile
            min_age_seconds: Skip records younger than this, configured default when None

        Returns:
            Dictionary with the transaction ids per outcome and the failures
        """
        tenant_id = resolve_tenant(tenant_id, self.config)
        if min_age_seconds is None:
            min_age_seconds = self.config.reconcile_min_age_seconds
        if min_age_seconds < 0:
            raise ValidationError("min_age_seconds must not be negative")
        older_than = None
        if min_age_seconds > 0:
            older_than = int(self.clock()) - min_age_seconds

        result: Dict[str, Any] = {
            'tenant_id': tenant_id,
            'examined': 0,
            'completed': [],
            'rolled_back': [],
            'compensated': [],
            'abandoned': [],
            'in_flight': [],
            'failures': []
        }

        # Transfers without entries may still be debited until their deadline passes
        settled_before = int(self.clock()) - math.ceil(self.config.storage_timeout_seconds) - 1

        for record in self.audit_log.pending(tenant_id, older_than=older_than):
            result['examined'] += 1
            try:
                outcome = self._resolve(record, settled_before)
            except LedgerError as e:
                log_action(
                    self.logger, "error", "Could not reconcile transfer",
                    tenant_id=tenant_id, transaction_id=record.system_transaction_id,
                    action="reconcile", extra={"error": str(e)}, exc_info=True
                )
                result['failures'].append({
                    'transaction_id': record.system_transaction_id,
                    'error': str(e)
                })
                continue
            result[outcome].append(record.system_transaction_id)

        log_action(
            self.logger, "info", "Reconciliation finished",
            tenant_id=tenant_id, action="reconcile",
            extra={key: (len(value) if isinstance(value, list) else value)
                   for key, value in result.items() if key != 'tenant_id'}
        )
        return result

    def _resolve(self, record: TransactionRecord, settled_before: int) -> str:
        tenant_id = record.tenant_id
        txid = record.system_transaction_id
        legs = {entry.leg for entry in self.ledger.entries_for(tenant_id, txid)}

        if legs == {EntryLeg.DEBIT, EntryLeg.CREDIT}:
            self.audit_log.finalize(tenant_id, txid, TransactionStatus.SUCCESS)
            return 'completed'

        if legs == {EntryLeg.DEBIT, EntryLeg.COMPENSATION}:
            self.audit_log.finalize(tenant_id, txid, TransactionStatus.FAILED,
                                    TransferErrorCode.CREDIT_FAILED.value)
            return 'rolled_back'

        if legs == {EntryLeg.DEBIT}:
            sender = self.accounts.read(tenant_id, record.from_account)
            try:
                self.ledger.append(
                    LedgerEntry(
                        tenant_id=tenant_id,
                        account_id=record.from_account,
                        system_transaction_id=txid,
                        leg=EntryLeg.COMPENSATION,
                        amount=record.amount,
                        timestamp=int(self.clock()),
                        initiator=record.initiator
                    ),
                    self.accounts.adjust_operation(
                        tenant_id, record.from_account, record.amount,
                        expected_version=sender.version
                    )
                )
            except EntryExistsError:
                # The coordinator settled the transfer since the entries were read
                return self._resolve(record, settled_before)
            log_action(
                self.logger, "warning", "Compensated debit of interrupted transfer",
                tenant_id=tenant_id, transaction_id=txid, action="compensate",
                resource=f"account:{record.from_account}",
                extra={"amount": str(record.amount)}
            )
            self.audit_log.finalize(tenant_id, txid, TransactionStatus.FAILED,
                                    TransferErrorCode.CREDIT_FAILED.value)
            return 'compensated'

        if not legs:
            if record.transaction_date >= settled_before:
                return 'in_flight'
            self.audit_log.finalize(tenant_id, txid, TransactionStatus.FAILED)
            return 'abandoned'

        raise LedgerError(
            f"Unexpected ledger entries for {txid}: {sorted(leg.value for leg in legs)}"
        )
