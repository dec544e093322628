"""
Tests for reconciliation of transfers left pending
"""

from decimal import Decimal

import pytest

from ledger_engine.accounts import AccountAdmin, AccountStore
from ledger_engine.audit_log import TransactionAuditLog, TransactionStatus
from ledger_engine.config import LedgerConfig
from ledger_engine.errors import StorageError, TransferFailedError, ValidationError
from ledger_engine.ledger import EntryLeg, LedgerEntry, LedgerWriter
from ledger_engine.reconciliation import TransferReconciler
from ledger_engine.storage import InMemoryStorage, Put, Update
from ledger_engine.tables import create_tables
from ledger_engine.transfers import TransferCoordinator


class Crash(BaseException):
    """Process death between two writes"""


class FaultyStorage(InMemoryStorage):
    """In-memory storage with injectable write and read faults"""

    def __init__(self):
        super().__init__()
        self.write_faults = []
        self.read_faults = []

    def get_item(self, table, key):
        for fault in self.read_faults:
            fault(table, key)
        return super().get_item(table, key)

    def transact_write(self, items, single=False):
        for fault in self.write_faults:
            fault(items)
        return super().transact_write(items, single=single)


class TestTransferReconciler:
    """Test resolution of every intermediate state a transfer can stop in"""

    def setup_method(self):
        self.config = LedgerConfig(storage_backend="memory", reconcile_min_age_seconds=60)
        self.storage = FaultyStorage()
        create_tables(self.storage, self.config)
        self.now = 1000
        self.accounts = AccountStore(self.storage, self.config)
        self.ledger = LedgerWriter(self.storage, self.config)
        self.audit_log = TransactionAuditLog(self.storage, self.config)
        self.coordinator = TransferCoordinator(
            self.accounts, self.ledger, self.audit_log, self.config, clock=lambda: self.now
        )
        self.reconciler = TransferReconciler(
            self.accounts, self.ledger, self.audit_log, self.config, clock=lambda: self.now
        )

        admin = AccountAdmin(self.storage, self.config)
        admin.create_account("t1", "alice", balance="100.00")
        admin.create_account("t1", "bob")

    def fail_leg(self, leg, error=None):
        def fault(items):
            for item in items:
                if isinstance(item, Put) and item.item.get('leg') == leg:
                    raise error or StorageError("backend unavailable")
        self.storage.write_faults.append(fault)

    def fail_finalize(self):
        def fault(items):
            item = items[0]
            if (isinstance(item, Update) and item.table == self.config.transactions_table
                    and 'status' in item.set_values):
                raise StorageError("backend unavailable")
        self.storage.write_faults.append(fault)

    def legs(self, txid):
        return sorted(entry.leg.value for entry in self.ledger.entries_for("t1", txid))

    def pending_id(self):
        records = self.audit_log.pending("t1")
        assert len(records) == 1
        return records[0].system_transaction_id

    def test_debit_only_is_compensated(self):
        self.fail_leg("credit", Crash())
        with pytest.raises(Crash):
            self.coordinator.transfer("t1", "alice", "bob", "30")
        self.storage.write_faults.clear()
        txid = self.pending_id()

        result = self.reconciler.reconcile("t1", min_age_seconds=0)

        assert result['compensated'] == [txid]
        assert result['examined'] == 1
        assert self.accounts.inquire("t1", "alice") == Decimal("100.00")
        assert self.accounts.inquire("t1", "bob") == Decimal("0.00")
        assert self.legs(txid) == ["compensation", "debit"]
        record = self.audit_log.get("t1", txid)
        assert record.status == TransactionStatus.FAILED
        assert record.error_code == "credit_failed"

    def test_completed_transfer_is_finalised(self):
        self.fail_finalize()
        result = self.coordinator.transfer("t1", "alice", "bob", "30")
        self.storage.write_faults.clear()

        # The caller saw success even though the record could not be finalised
        assert self.pending_id() == result.system_transaction_id

        report = self.reconciler.reconcile("t1", min_age_seconds=0)
        assert report['completed'] == [result.system_transaction_id]
        assert self.audit_log.get("t1", result.system_transaction_id).status == TransactionStatus.SUCCESS
        assert self.accounts.inquire("t1", "bob") == Decimal("30.00")

    def test_rolled_back_transfer_is_finalised(self):
        self.fail_leg("credit")
        self.fail_finalize()
        with pytest.raises(TransferFailedError):
            self.coordinator.transfer("t1", "alice", "bob", "30")
        self.storage.write_faults.clear()
        txid = self.pending_id()

        report = self.reconciler.reconcile("t1", min_age_seconds=0)
        assert report['rolled_back'] == [txid]
        assert self.audit_log.get("t1", txid).error_code == "credit_failed"
        assert self.accounts.inquire("t1", "alice") == Decimal("100.00")

    def test_transfer_without_entries_is_abandoned(self):
        def crash_on_lookup(table, key):
            if key.get("account_id") == "alice":
                raise Crash()
        self.storage.read_faults.append(crash_on_lookup)
        with pytest.raises(Crash):
            self.coordinator.transfer("t1", "alice", "bob", "30")
        self.storage.read_faults.clear()
        txid = self.pending_id()

        self.now = 1100
        report = self.reconciler.reconcile("t1", min_age_seconds=0)
        assert report['abandoned'] == [txid]
        assert self.audit_log.get("t1", txid).status == TransactionStatus.FAILED

    def test_transfer_without_entries_may_still_be_running(self):
        def crash_on_lookup(table, key):
            if key.get("account_id") == "alice":
                raise Crash()
        self.storage.read_faults.append(crash_on_lookup)
        with pytest.raises(Crash):
            self.coordinator.transfer("t1", "alice", "bob", "30")
        self.storage.read_faults.clear()
        txid = self.pending_id()

        self.now = 1005
        report = self.reconciler.reconcile("t1", min_age_seconds=0)
        assert report['in_flight'] == [txid]
        assert report['abandoned'] == []
        assert self.pending_id() == txid

    def test_recent_transfers_are_left_alone(self):
        self.fail_leg("credit", Crash())
        with pytest.raises(Crash):
            self.coordinator.transfer("t1", "alice", "bob", "30")
        self.storage.write_faults.clear()
        txid = self.pending_id()

        self.now = 1030
        report = self.reconciler.reconcile("t1")
        assert report['examined'] == 0
        assert self.accounts.inquire("t1", "alice") == Decimal("70.00")

        self.now = 1100
        report = self.reconciler.reconcile("t1")
        assert report['compensated'] == [txid]

    def test_failed_compensation_is_retried_later(self):
        self.fail_leg("credit", Crash())
        with pytest.raises(Crash):
            self.coordinator.transfer("t1", "alice", "bob", "30")
        self.storage.write_faults.clear()
        txid = self.pending_id()

        self.fail_leg("compensation")
        report = self.reconciler.reconcile("t1", min_age_seconds=0)
        assert [failure['transaction_id'] for failure in report['failures']] == [txid]
        assert self.pending_id() == txid
        self.storage.write_faults.clear()

        report = self.reconciler.reconcile("t1", min_age_seconds=0)
        assert report['compensated'] == [txid]
        assert self.audit_log.pending("t1") == []

    def test_nothing_to_do(self):
        self.coordinator.transfer("t1", "alice", "bob", "30")
        report = self.reconciler.reconcile("t1", min_age_seconds=0)
        assert report['examined'] == 0
        assert report['failures'] == []

    def test_credit_landing_during_compensation_completes_transfer(self):
        self.fail_leg("credit", Crash())
        with pytest.raises(Crash):
            self.coordinator.transfer("t1", "alice", "bob", "30")
        self.storage.write_faults.clear()
        txid = self.pending_id()
        record = self.audit_log.get("t1", txid)

        # The coordinator commits its credit after the reconciler read the entries
        def credit_first(items):
            if any(isinstance(item, Put) and item.item.get('leg') == "compensation" for item in items):
                self.storage.write_faults.clear()
                self.ledger.append(
                    LedgerEntry(tenant_id="t1", account_id="bob", system_transaction_id=txid,
                                leg=EntryLeg.CREDIT, amount=record.amount, timestamp=self.now),
                    self.accounts.adjust_operation("t1", "bob", record.amount, require_exists=True)
                )
        self.storage.write_faults.append(credit_first)

        report = self.reconciler.reconcile("t1", min_age_seconds=0)

        assert report['completed'] == [txid]
        assert report['compensated'] == []
        assert self.legs(txid) == ["credit", "debit"]
        assert self.accounts.inquire("t1", "alice") == Decimal("70.00")
        assert self.accounts.inquire("t1", "bob") == Decimal("30.00")
        assert self.audit_log.get("t1", txid).status == TransactionStatus.SUCCESS

    def test_negative_age_rejected(self):
        with pytest.raises(ValidationError):
            self.reconciler.reconcile("t1", min_age_seconds=-1)
