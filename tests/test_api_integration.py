"""
Integration tests for the Ledger Engine API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from ledger_engine.api import create_app
from ledger_engine.api import deps
from ledger_engine.config import LedgerConfig
from ledger_engine.errors import StorageError
from ledger_engine.service import LedgerService
from ledger_engine.storage import InMemoryStorage, Put


class FlakyStorage(InMemoryStorage):
    """In-memory storage that can refuse writes of chosen ledger legs"""

    def __init__(self):
        super().__init__()
        self.failing_legs = set()

    def transact_write(self, items, single=False):
        for item in items:
            if isinstance(item, Put) and item.item.get('leg') in self.failing_legs:
                raise StorageError("backend unavailable")
        return super().transact_write(items, single=single)


TENANT = {"X-Tenant-ID": "acme"}


@pytest.fixture
def service():
    """Ledger service over in-memory storage, installed as the global service"""
    config = LedgerConfig(storage_backend="memory")
    test_service = LedgerService(storage=FlakyStorage(), config=config)
    original = deps.ledger_service
    deps.set_ledger_service(test_service)
    yield test_service
    deps.set_ledger_service(original)


@pytest.fixture
def client(service):
    """Create a test client with alice (100.00) and bob (0.00) in tenant acme"""
    client = TestClient(create_app())
    assert client.post("/accounts", json={"account_id": "alice", "balance": "100.00"},
                       headers=TENANT).status_code == 201
    assert client.post("/accounts", json={"account_id": "bob"}, headers=TENANT).status_code == 201
    return client


class TestHealthEndpoints:
    """Test basic health endpoint"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestAccountEndpoints:
    """Account creation, balance and existence checks"""

    def test_balance(self, client):
        r = client.get("/accounts/alice/balance", headers=TENANT)
        assert r.status_code == 200
        assert r.json() == {"account_id": "alice", "balance": "100.00", "currency": "SDG"}

    def test_balance_missing_account(self, client):
        r = client.get("/accounts/ghost/balance", headers=TENANT)
        assert r.status_code == 404

    def test_accounts_are_tenant_scoped(self, client):
        r = client.get("/accounts/alice/balance", headers={"X-Tenant-ID": "other"})
        assert r.status_code == 404
        r = client.get("/accounts/alice/balance")
        assert r.status_code == 404

    def test_duplicate_account(self, client):
        r = client.post("/accounts", json={"account_id": "alice"}, headers=TENANT)
        assert r.status_code == 409

    def test_invalid_opening_balance(self, client):
        r = client.post("/accounts", json={"account_id": "zed", "balance": "lots"}, headers=TENANT)
        assert r.status_code == 400

    def test_check_exist(self, client):
        r = client.post("/accounts/check-exist", json={"account_ids": ["alice", "ghost", "bob"]},
                        headers=TENANT)
        assert r.status_code == 200
        assert r.json()["data"]["missing_accounts"] == ["ghost"]


class TestTransferFlow:
    """End-to-end transfer tests"""

    def test_transfer(self, client):
        r = client.post("/transactions/transfer", headers=TENANT, json={
            "from_account": "alice", "to_account": "bob", "amount": "25.50", "initiator": "alice"
        })
        assert r.status_code == 200
        data = r.json()
        assert data["code"] == "successful_transaction"
        txid = data["data"]["transaction_id"]

        assert client.get("/accounts/bob/balance", headers=TENANT).json()["balance"] == "25.50"

        r = client.get(f"/transactions/accounts/alice/{txid}", headers=TENANT)
        assert r.status_code == 200
        assert r.json()["status"] == "success"

    def test_unknown_receiver(self, client):
        r = client.post("/transactions/transfer", headers=TENANT, json={
            "from_account": "alice", "to_account": "ghost", "amount": "1"
        })
        assert r.status_code == 404
        data = r.json()
        assert data["code"] == "user_not_found"
        assert data["message"] == "Error in retrieving receiver."
        assert data["transaction_id"]

    def test_insufficient_balance(self, client):
        r = client.post("/transactions/transfer", headers=TENANT, json={
            "from_account": "bob", "to_account": "alice", "amount": "1"
        })
        assert r.status_code == 400
        assert r.json()["code"] == "insufficient_balance"

    def test_invalid_amount(self, client):
        r = client.post("/transactions/transfer", headers=TENANT, json={
            "from_account": "alice", "to_account": "bob", "amount": "-3"
        })
        assert r.status_code == 400

    def test_credit_failure(self, client, service):
        service.storage.failing_legs.add("credit")
        r = client.post("/transactions/transfer", headers=TENANT, json={
            "from_account": "alice", "to_account": "bob", "amount": "10"
        })
        assert r.status_code == 409
        assert r.json()["code"] == "credit_failed"
        assert client.get("/accounts/alice/balance", headers=TENANT).json()["balance"] == "100.00"

    def test_inconsistency_halts_until_acknowledged(self, client, service):
        service.storage.failing_legs.update({"credit", "compensation"})
        r = client.post("/transactions/transfer", headers=TENANT, json={
            "from_account": "alice", "to_account": "bob", "amount": "10"
        })
        assert r.status_code == 500
        assert r.json()["code"] == "inconsistency"
        service.storage.failing_legs.clear()

        r = client.post("/transactions/transfer", headers=TENANT, json={
            "from_account": "alice", "to_account": "bob", "amount": "1"
        })
        assert r.status_code == 500

        r = client.post("/admin/acknowledge-inconsistency")
        assert r.status_code == 200
        assert r.json()["halted"] is False
        assert r.json()["acknowledged"]["account_id"] == "alice"

        r = client.post("/transactions/transfer", headers=TENANT, json={
            "from_account": "alice", "to_account": "bob", "amount": "1"
        })
        assert r.status_code == 200


class TestHistoryEndpoints:
    """Listing, detailed view, search and patching"""

    def transfer(self, client, from_account, to_account, amount="1"):
        r = client.post("/transactions/transfer", headers=TENANT, json={
            "from_account": from_account, "to_account": to_account, "amount": amount
        })
        assert r.status_code == 200
        return r.json()["data"]["transaction_id"]

    def test_list_with_cursor(self, client):
        ids = [self.transfer(client, "alice", "bob") for _ in range(3)]

        r = client.get("/transactions/accounts/alice", params={"limit": 2}, headers=TENANT)
        first = r.json()
        assert [item["system_transaction_id"] for item in first["items"]] == [ids[2], ids[1]]

        r = client.get("/transactions/accounts/alice", params={"limit": 2, "cursor": first["cursor"]},
                       headers=TENANT)
        second = r.json()
        assert [item["system_transaction_id"] for item in second["items"]] == [ids[0]]
        assert second["cursor"] == ""

    def test_list_by_side(self, client):
        txid = self.transfer(client, "alice", "bob")
        r = client.get("/transactions/accounts/bob", params={"side": "to"}, headers=TENANT)
        assert [item["system_transaction_id"] for item in r.json()["items"]] == [txid]

        r = client.get("/transactions/accounts/bob", params={"side": "sideways"}, headers=TENANT)
        assert r.status_code == 400

    def test_detailed(self, client):
        sent = self.transfer(client, "alice", "bob", "5")
        received = self.transfer(client, "bob", "alice", "2")
        r = client.get("/transactions/accounts/alice/detailed", headers=TENANT)
        assert r.status_code == 200
        assert [item["system_transaction_id"] for item in r.json()["items"]] == [sent, received]

    def test_get_missing_transaction(self, client):
        r = client.get("/transactions/accounts/alice/nope", headers=TENANT)
        assert r.status_code == 404

    def test_search(self, client):
        sent = self.transfer(client, "alice", "bob", "5")
        r = client.post("/transactions/search", headers=TENANT,
                        json={"account_id": "bob", "status": "success"})
        assert r.status_code == 200
        assert [item["system_transaction_id"] for item in r.json()["items"]] == [sent]

        r = client.post("/transactions/search", headers=TENANT, json={"status": "lost"})
        assert r.status_code == 400

    def test_cursor_that_is_not_a_key(self, client):
        self.transfer(client, "alice", "bob")
        # base64 of {"x":1}
        r = client.post("/transactions/search", headers=TENANT, json={"cursor": "eyJ4IjoxfQ=="})
        assert r.status_code == 400
        r = client.get("/transactions/accounts/bob", params={"side": "to", "cursor": "WzEsMl0="},
                       headers=TENANT)
        assert r.status_code == 400

    def test_patch_transaction(self, client):
        txid = self.transfer(client, "alice", "bob")
        r = client.patch(f"/transactions/{txid}", headers=TENANT, json={"comment": "Rent"})
        assert r.status_code == 200
        assert r.json()["comment"] == "Rent"
        assert r.json()["amount"] == "1"

        r = client.patch(f"/transactions/{txid}", headers=TENANT, json={"status": "bogus"})
        assert r.status_code == 400
        r = client.patch("/transactions/nope", headers=TENANT, json={"comment": "x"})
        assert r.status_code == 404

    def test_reconcile(self, client):
        self.transfer(client, "alice", "bob")
        r = client.post("/admin/reconcile", headers=TENANT, json={"min_age_seconds": 0})
        assert r.status_code == 200
        assert r.json()["examined"] == 0
        assert r.json()["tenant_id"] == "acme"
