"""
Tests for transaction history queries

Covers the account-keyed listing with its plain cursor, the from/to index
listings, the detailed concatenation, point lookups with fallback and the
filtered search with continuation tokens.
"""

import base64

import pytest

from ledger_engine.accounts import AccountAdmin, AccountStore
from ledger_engine.audit_log import TransactionAuditLog, TransactionStatus
from ledger_engine.config import LedgerConfig
from ledger_engine.errors import TransferError, ValidationError
from ledger_engine.ledger import LedgerWriter
from ledger_engine.queries import AccountSide, TransactionFilter, TransactionQueryService
from ledger_engine.storage import InMemoryStorage
from ledger_engine.tables import create_tables
from ledger_engine.transfers import TransferCoordinator


def token(raw):
    return base64.urlsafe_b64encode(raw).decode("ascii")


class QueryTestCase:
    """Shared fixtures with a controllable clock for transaction dates"""

    def setup_method(self):
        self.config = LedgerConfig(storage_backend="memory", max_page_size=50)
        self.storage = InMemoryStorage()
        create_tables(self.storage, self.config)
        self.now = 1000
        self.coordinator = TransferCoordinator(
            AccountStore(self.storage, self.config),
            LedgerWriter(self.storage, self.config),
            TransactionAuditLog(self.storage, self.config),
            self.config,
            clock=lambda: self.now
        )
        self.queries = TransactionQueryService(self.storage, self.config)

        admin = AccountAdmin(self.storage, self.config)
        admin.create_account("t1", "alice", balance="1000")
        admin.create_account("t1", "bob", balance="100")
        admin.create_account("t1", "carol")

    def send(self, from_account, to_account, amount="1", at=None):
        if at is not None:
            self.now = at
        return self.coordinator.transfer("t1", from_account, to_account, amount).system_transaction_id


class TestAccountListings(QueryTestCase):
    """Test listings keyed by account"""

    def test_primary_listing_pages_without_overlap_or_gap(self):
        ids = [self.send("alice", "bob") for _ in range(7)]

        seen = []
        cursor = None
        pages = 0
        while True:
            page = self.queries.by_account_primary("t1", "alice", limit=3, cursor=cursor)
            seen.extend(record.system_transaction_id for record in page.items)
            pages += 1
            if not page.cursor:
                break
            cursor = page.cursor
            assert cursor == page.items[-1].system_transaction_id

        assert pages == 3
        assert seen == list(reversed(ids))

    def test_primary_listing_follows_sender(self):
        self.send("alice", "bob")
        assert self.queries.by_account_primary("t1", "bob").items == []

    def test_index_listing_by_side(self):
        ids = [self.send("alice", "bob") for _ in range(4)]
        self.send("bob", "carol")

        received = self.queries.by_account_index("t1", AccountSide.TO, "bob", limit=3)
        assert [r.system_transaction_id for r in received.items] == list(reversed(ids))[:3]
        assert received.has_more

        rest = self.queries.by_account_index("t1", AccountSide.TO, "bob", limit=3, cursor=received.cursor)
        assert [r.system_transaction_id for r in rest.items] == [ids[0]]
        assert rest.cursor == ""

        sent = self.queries.by_account_index("t1", AccountSide.FROM, "bob")
        assert [r.to_account for r in sent.items] == ["carol"]

    def test_detailed_concatenates_without_merging(self):
        out_first = self.send("alice", "bob")
        incoming = self.send("bob", "alice")
        out_second = self.send("alice", "carol")

        records = self.queries.detailed("t1", "alice")
        assert [r.system_transaction_id for r in records] == [out_second, out_first, incoming]

    def test_detailed_does_not_deduplicate(self):
        own = self.send("alice", "alice")
        records = self.queries.detailed("t1", "alice")
        assert [r.system_transaction_id for r in records] == [own, own]

    def test_detailed_limit_applies_per_side(self):
        for _ in range(3):
            self.send("alice", "bob")
            self.send("bob", "alice")
        assert len(self.queries.detailed("t1", "alice", limit=2)) == 4

    def test_listings_are_tenant_scoped(self):
        self.send("alice", "bob")
        assert self.queries.by_account_primary("t2", "alice").items == []
        assert self.queries.detailed("t2", "alice") == []


class TestPointLookup(QueryTestCase):
    """Test single transaction lookups"""

    def test_by_id(self):
        txid = self.send("alice", "bob", "7")
        record = self.queries.by_id("t1", "alice", txid)
        assert record.system_transaction_id == txid
        assert record.status == TransactionStatus.SUCCESS

    def test_by_id_missing(self):
        assert self.queries.by_id("t1", "alice", "nope") is None

    def test_by_id_falls_back_to_account_partition(self):
        self.storage.put_item(self.config.transactions_table, {
            "tenant_id": "t1",
            "transaction_id": "legacy-key",
            "system_transaction_id": "sys-1",
            "account_id": "alice",
            "from_account": "alice",
            "to_account": "bob",
            "amount": "3",
            "status": "success",
            "transaction_date": 10
        })
        record = self.queries.by_id("t1", "alice", "sys-1")
        assert record.transaction_id == "legacy-key"
        assert record.system_transaction_id == "sys-1"
        assert self.queries.by_id("t1", "bob", "sys-1") is None


class TestSearch(QueryTestCase):
    """Test the filtered search"""

    def test_default_page_size(self):
        for _ in range(30):
            self.send("alice", "bob")

        page = self.queries.search("t1", TransactionFilter())
        assert len(page.items) == 25
        assert page.cursor

        rest = self.queries.search("t1", TransactionFilter(cursor=page.cursor))
        assert len(rest.items) == 5
        assert rest.cursor == ""
        all_ids = [r.system_transaction_id for r in page.items + rest.items]
        assert len(set(all_ids)) == 30
        assert all_ids == sorted(all_ids, reverse=True)

    def test_limit_capped(self):
        for _ in range(3):
            self.send("alice", "bob")
        config = LedgerConfig(storage_backend="memory", max_page_size=2)
        page = TransactionQueryService(self.storage, config).search("t1", TransactionFilter(limit=100))
        assert len(page.items) == 2

    def test_account_matches_either_side(self):
        sent = self.send("alice", "bob")
        received = self.send("bob", "alice")
        self.send("bob", "carol")

        page = self.queries.search("t1", TransactionFilter(account_id="alice"))
        assert [r.system_transaction_id for r in page.items] == [received, sent]

    def test_time_range_uses_both_bounds(self):
        early = self.send("alice", "bob", at=100)
        middle = self.send("alice", "bob", at=200)
        late = self.send("alice", "bob", at=300)

        page = self.queries.search("t1", TransactionFilter(start_time=150, end_time=300))
        assert [r.system_transaction_id for r in page.items] == [late, middle]

        page = self.queries.search("t1", TransactionFilter(start_time=200))
        assert [r.system_transaction_id for r in page.items] == [late, middle]

        page = self.queries.search("t1", TransactionFilter(end_time=200))
        assert [r.system_transaction_id for r in page.items] == [middle, early]

    def test_time_range_pagination(self):
        ids = [self.send("alice", "bob", at=100 + n) for n in range(5)]
        first = self.queries.search("t1", TransactionFilter(start_time=100, end_time=200, limit=2))
        second = self.queries.search("t1", TransactionFilter(start_time=100, end_time=200, limit=2,
                                                             cursor=first.cursor))
        assert [r.system_transaction_id for r in first.items + second.items] == list(reversed(ids))[:4]

    def test_status_filter(self):
        ok = self.send("alice", "bob")
        with pytest.raises(TransferError) as exc_info:
            self.send("carol", "bob", "5")
        failed = exc_info.value.transaction_id

        page = self.queries.search("t1", TransactionFilter(status="failed"))
        assert [r.system_transaction_id for r in page.items] == [failed]
        assert page.items[0].error_code == "insufficient_balance"

        page = self.queries.search("t1", TransactionFilter(status=TransactionStatus.SUCCESS))
        assert [r.system_transaction_id for r in page.items] == [ok]

    def test_combined_filters(self):
        self.send("alice", "bob", at=100)
        match = self.send("bob", "carol", at=200)
        self.send("alice", "carol", at=300)

        page = self.queries.search("t1", TransactionFilter(
            account_id="bob", start_time=150, end_time=250, status="success"
        ))
        assert [r.system_transaction_id for r in page.items] == [match]

    def test_invalid_criteria(self):
        with pytest.raises(ValidationError):
            self.queries.search("t1", TransactionFilter(status="lost"))
        with pytest.raises(ValidationError):
            self.queries.search("t1", TransactionFilter(start_time=10, end_time=5))
        with pytest.raises(ValidationError):
            self.queries.search("t1", TransactionFilter(limit=0))
        with pytest.raises(ValidationError):
            self.queries.search("t1", TransactionFilter(cursor="aGVsbG8="))
        for raw in (b'{"x":1}', b'[1,2]', b'5'):
            with pytest.raises(ValidationError):
                self.queries.search("t1", TransactionFilter(cursor=token(raw)))

    def test_cursor_from_another_query_form(self):
        for _ in range(3):
            self.send("alice", "bob")
        cursor = self.queries.search("t1", TransactionFilter(limit=1)).cursor
        assert cursor

        with pytest.raises(ValidationError):
            self.queries.search("t1", TransactionFilter(start_time=0, end_time=5000, cursor=cursor))
        with pytest.raises(ValidationError):
            self.queries.by_account_index("t1", AccountSide.FROM, "alice", cursor=cursor)
