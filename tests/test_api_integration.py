"""
Integration tests for the E-Wallet Ledger API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from ewallet.api import app, get_wallet_system
from ewallet.commands import WalletSystem


@pytest.fixture
def client():
    """Create a test client backed by a fresh in-memory wallet"""
    test_system = WalletSystem.in_memory()
    app.dependency_overrides[get_wallet_system] = lambda: test_system

    yield TestClient(app)

    app.dependency_overrides.clear()
    test_system.close()


@pytest.fixture
def funded(client):
    """Accounts A (balance 1000) and B (balance 0)"""
    client.post("/accounts", json={"account_id": "A", "display_name": "Account A"})
    client.post("/accounts", json={"account_id": "B", "display_name": "Account B"})
    client.post("/transactions/deposit", json={"account_id": "A", "amount": 1000})
    return client


class TestHealthEndpoints:
    """Test basic health endpoint"""

    def test_health(self, client):
        """Test health endpoint"""
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestAccountFlow:
    """End-to-end account management tests"""

    def test_create_account(self, client):
        """Test creating a new account"""
        r = client.post("/accounts", json={"account_id": "A", "display_name": "Account A"})
        assert r.status_code == 201
        data = r.json()
        assert data["id"] == "A"
        assert data["balance"] == 0

        r = client.get("/accounts/A")
        assert r.status_code == 200
        assert r.json()["display_name"] == "Account A"

    def test_duplicate_account(self, client):
        """Test that a second account with the same id conflicts"""
        client.post("/accounts", json={"account_id": "A", "display_name": "Account A"})
        r = client.post("/accounts", json={"account_id": "A", "display_name": "Other"})
        assert r.status_code == 409
        assert r.json()["detail"]["error"] == "DuplicateAccount"

    def test_missing_account(self, client):
        """Test lookups of an unknown account"""
        for path in ["/accounts/ghost", "/accounts/ghost/balance", "/accounts/ghost/transactions"]:
            r = client.get(path)
            assert r.status_code == 404
            assert r.json()["detail"] == {"error": "AccountNotFound", "account_id": "ghost"}


class TestTransactionFlow:
    """End-to-end money movement tests"""

    def test_deposit_and_balance(self, funded):
        """Test deposit result and balance endpoint"""
        r = funded.get("/accounts/A/balance")
        assert r.status_code == 200
        assert r.json() == {"account_id": "A", "balance": 1000}

    def test_withdraw(self, funded):
        """Test a withdrawal and an overdrawing one"""
        r = funded.post("/transactions/withdraw", json={"account_id": "A", "amount": 300})
        assert r.status_code == 201
        assert r.json()["resulting_balance"] == 700

        r = funded.post("/transactions/withdraw", json={"account_id": "A", "amount": 800})
        assert r.status_code == 422
        assert r.json()["detail"] == {
            "error": "InsufficientFunds", "account_id": "A", "balance": 700, "requested": 800
        }

    def test_transfer(self, funded):
        """Test a transfer and its linked records"""
        r = funded.post("/transactions/transfer", json={
            "from_account_id": "A", "to_account_id": "B", "amount": 500
        })
        assert r.status_code == 201
        data = r.json()
        assert data["transfer_out"]["kind"] == "transfer_out"
        assert data["transfer_in"]["kind"] == "transfer_in"
        assert data["transfer_out"]["operation_id"] == data["operation_id"]
        assert data["transfer_in"]["operation_id"] == data["operation_id"]

        assert funded.get("/accounts/A/balance").json()["balance"] == 500
        assert funded.get("/accounts/B/balance").json()["balance"] == 500

    def test_transfer_rejections(self, funded):
        """Test rejected transfers"""
        r = funded.post("/transactions/transfer", json={
            "from_account_id": "A", "to_account_id": "A", "amount": 100
        })
        assert r.status_code == 422
        assert r.json()["detail"]["error"] == "SameAccount"

        r = funded.post("/transactions/transfer", json={
            "from_account_id": "A", "to_account_id": "ghost", "amount": 100
        })
        assert r.status_code == 404
        assert r.json()["detail"]["side"] == "destination"

    def test_invalid_amounts(self, funded):
        """Test semantic and syntactic amount errors"""
        r = funded.post("/transactions/deposit", json={"account_id": "A", "amount": -50})
        assert r.status_code == 422
        assert r.json()["detail"]["error"] == "InvalidAmount"

        r = funded.post("/transactions/deposit", json={"account_id": "A", "amount": 12.5})
        assert r.status_code == 422

        assert funded.get("/accounts/A/balance").json()["balance"] == 1000

    def test_idempotent_transfer(self, funded):
        """Test that a retried request with the same key applies once"""
        body = {
            "from_account_id": "A", "to_account_id": "B", "amount": 100,
            "idempotency_key": "retry-1"
        }
        first = funded.post("/transactions/transfer", json=body)
        second = funded.post("/transactions/transfer", json=body)
        assert first.json() == second.json()
        assert funded.get("/accounts/B/balance").json()["balance"] == 100

        body["amount"] = 200
        r = funded.post("/transactions/transfer", json=body)
        assert r.status_code == 409
        assert r.json()["detail"]["error"] == "IdempotencyConflict"


class TestHistoryFlow:
    """History and audit endpoints"""

    def test_history_filters(self, funded):
        """Test history with and without a kind filter"""
        funded.post("/transactions/withdraw", json={"account_id": "A", "amount": 100})
        funded.post("/transactions/transfer", json={
            "from_account_id": "A", "to_account_id": "B", "amount": 200
        })

        r = funded.get("/accounts/A/transactions")
        assert r.status_code == 200
        kinds = [t["kind"] for t in r.json()["transactions"]]
        assert kinds == ["deposit", "withdrawal", "transfer_out"]

        r = funded.get("/accounts/A/transactions", params={"kind": ["withdrawal", "transfer_out"]})
        kinds = [t["kind"] for t in r.json()["transactions"]]
        assert kinds == ["withdrawal", "transfer_out"]

    def test_invalid_filter(self, funded):
        """Test unknown kinds and inverted ranges"""
        r = funded.get("/accounts/A/transactions", params={"kind": "refund"})
        assert r.status_code == 422
        assert r.json()["detail"]["error"] == "InvalidFilter"

        r = funded.get("/accounts/A/transactions", params={
            "start": "2026-02-01T00:00:00Z", "end": "2026-01-01T00:00:00Z"
        })
        assert r.status_code == 422
        assert r.json()["detail"]["error"] == "InvalidFilter"

    def test_integrity(self, funded):
        """Test the ledger audit endpoint"""
        funded.post("/transactions/transfer", json={
            "from_account_id": "A", "to_account_id": "B", "amount": 250
        })

        r = funded.get("/ledger/integrity")
        assert r.status_code == 200
        data = r.json()
        assert data["valid"] is True
        assert data["total_balance"] == 1000
