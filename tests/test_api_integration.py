"""
Integration tests for the Core Ledger API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from core_ledger.api import create_app
from core_ledger.config import LedgerConfig
from core_ledger.storage import InMemoryStorage
from core_ledger.system import LedgerSystem


PASSWORD = "s3cretpass"


@pytest.fixture
def system():
    """Ledger system over in-memory storage"""
    config = LedgerConfig(jwt_secret="test-secret", storage_backend="memory")
    ledger_system = LedgerSystem(storage=InMemoryStorage(), config=config)
    yield ledger_system
    ledger_system.close()


@pytest.fixture
def client(system):
    """Create a test client for the API with an injected ledger system"""
    return TestClient(create_app(system))


def register(client, identity, **extra):
    body = {
        "identity": identity,
        "email": f"{identity}@example.com",
        "password": PASSWORD,
        "confirm_password": PASSWORD,
    }
    body.update(extra)
    return client.post("/auth/register", json=body)


def login(client, identity):
    r = client.post("/auth/login", json={"identity": identity, "password": PASSWORD})
    assert r.status_code == 200
    return {"Authorization": f"Bearer {r.json()['access_token']}"}


def signed_up(client, identity):
    assert register(client, identity).status_code == 201
    return login(client, identity)


class TestHealthEndpoints:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_no_cross_origin_headers(self, client):
        r = client.get("/health", headers={"Origin": "http://evil.example"})
        assert r.status_code == 200
        assert "access-control-allow-origin" not in r.headers
        assert "access-control-allow-credentials" not in r.headers


class TestAuthFlow:
    """Registration and login"""

    def test_register(self, client):
        r = register(client, "alice", name="Alice")
        assert r.status_code == 201
        data = r.json()
        assert data["identity"] == "alice"
        assert data["balance"] == "0.00"
        assert data["balance_minor"] == 0
        assert data["profile"]["email"] == "alice@example.com"
        assert data["profile"]["name"] == "Alice"

    def test_register_duplicate(self, client):
        register(client, "alice")
        r = register(client, "alice")
        assert r.status_code == 409
        assert r.json()["error"] == "already_exists"

    def test_register_password_mismatch(self, client):
        r = client.post("/auth/register", json={
            "identity": "alice",
            "email": "alice@example.com",
            "password": PASSWORD,
            "confirm_password": "something-else",
        })
        assert r.status_code == 422
        assert r.json()["error"] == "validation_error"

    def test_register_missing_field(self, client):
        r = client.post("/auth/register", json={"identity": "alice"})
        assert r.status_code == 422
        assert r.json()["error"] == "validation_error"

    def test_login_token_type(self, client):
        register(client, "alice")
        r = client.post("/auth/login", json={"identity": "alice", "password": PASSWORD})
        assert r.status_code == 200
        assert r.json()["token_type"] == "bearer"

    def test_login_bad_password(self, client):
        register(client, "alice")
        r = client.post("/auth/login", json={"identity": "alice", "password": "wrong-password"})
        assert r.status_code == 401
        assert r.json()["error"] == "authentication_failed"
        assert r.headers["WWW-Authenticate"] == "Bearer"

    def test_protected_routes_require_token(self, client):
        assert client.get("/accounts/me").status_code == 401
        assert client.post("/transactions/deposit", json={"amount": "1"}).status_code == 401
        assert client.get("/transactions").status_code == 401

    def test_invalid_token(self, client):
        r = client.get("/accounts/me", headers={"Authorization": "Bearer nonsense"})
        assert r.status_code == 401


class TestAccountFlow:

    def test_get_my_account(self, client):
        headers = signed_up(client, "alice")
        r = client.get("/accounts/me", headers=headers)
        assert r.status_code == 200
        assert r.json()["identity"] == "alice"

    def test_update_profile(self, client):
        headers = signed_up(client, "alice")
        r = client.put("/accounts/me/profile", headers=headers, json={
            "name": "Alice Smith",
            "branch_name": "Downtown",
            "gender": "F",
        })
        assert r.status_code == 200
        profile = r.json()["profile"]
        assert profile["name"] == "Alice Smith"
        assert profile["branch_name"] == "Downtown"
        # Fields not sent are left alone
        assert profile["email"] == "alice@example.com"

    def test_profile_update_cannot_touch_balance(self, client):
        headers = signed_up(client, "alice")
        r = client.put("/accounts/me/profile", headers=headers, json={"balance": "1000000"})
        assert r.status_code == 200
        assert r.json()["balance_minor"] == 0


class TestTransactionFlow:
    """End-to-end money movement"""

    def test_deposit_and_withdraw(self, client):
        headers = signed_up(client, "alice")

        r = client.post("/transactions/deposit", headers=headers, json={"amount": "100.00"})
        assert r.status_code == 200
        assert r.json()["balance"] == "100.00"
        assert r.json()["balance_minor"] == 10000

        r = client.post("/transactions/withdraw", headers=headers, json={"amount": "25.50"})
        assert r.status_code == 200
        assert r.json()["balance"] == "74.50"

    def test_overdraw(self, client):
        headers = signed_up(client, "alice")
        client.post("/transactions/deposit", headers=headers, json={"amount": "100"})

        r = client.post("/transactions/withdraw", headers=headers, json={"amount": "150"})
        assert r.status_code == 409
        assert r.json()["error"] == "insufficient_funds"

        r = client.get("/accounts/me", headers=headers)
        assert r.json()["balance"] == "100.00"

    @pytest.mark.parametrize("amount", ["-5", "0", "abc", "1.001", ""])
    def test_invalid_amount(self, client, amount):
        headers = signed_up(client, "alice")
        r = client.post("/transactions/deposit", headers=headers, json={"amount": amount})
        assert r.status_code == 400
        assert r.json()["error"] == "invalid_amount"

        r = client.get("/transactions", headers=headers)
        assert r.json()["transactions"] == []

    def test_amount_above_maximum(self, client):
        headers = signed_up(client, "alice")
        r = client.post("/transactions/deposit", headers=headers, json={"amount": "100000.01"})
        assert r.status_code == 400

    def test_transfer(self, client):
        alice = signed_up(client, "alice")
        bob = signed_up(client, "bob")
        client.post("/transactions/deposit", headers=alice, json={"amount": "100"})
        client.post("/transactions/deposit", headers=bob, json={"amount": "50"})

        r = client.post("/transactions/transfer", headers=alice, json={"recipient": "bob", "amount": "30"})
        assert r.status_code == 200
        assert r.json()["balance"] == "70.00"
        reference = r.json()["reference"]

        bob_history = client.get("/transactions", headers=bob).json()
        assert bob_history["balance"] == "80.00"
        last = bob_history["transactions"][-1]
        assert last["kind"] == "transfer_in"
        assert last["amount"] == "30.00"
        assert last["reference"] == reference

        alice_history = client.get("/transactions", headers=alice).json()
        assert alice_history["transactions"][-1]["kind"] == "transfer_out"

    def test_transfer_to_self(self, client):
        headers = signed_up(client, "alice")
        client.post("/transactions/deposit", headers=headers, json={"amount": "10"})

        r = client.post("/transactions/transfer", headers=headers, json={"recipient": "alice", "amount": "1"})
        assert r.status_code == 400
        assert r.json()["error"] == "invalid_transfer"

    def test_transfer_to_unknown_recipient(self, client):
        headers = signed_up(client, "alice")
        client.post("/transactions/deposit", headers=headers, json={"amount": "10"})

        r = client.post("/transactions/transfer", headers=headers, json={"recipient": "nobody", "amount": "1"})
        assert r.status_code == 404
        assert r.json()["error"] == "recipient_not_found"

    def test_history_order(self, client):
        headers = signed_up(client, "alice")
        for amount in ["10", "20", "30"]:
            client.post("/transactions/deposit", headers=headers, json={"amount": amount})
        client.post("/transactions/withdraw", headers=headers, json={"amount": "5"})

        data = client.get("/transactions", headers=headers).json()
        assert [t["amount"] for t in data["transactions"]] == ["10.00", "20.00", "30.00", "5.00"]
        assert data["balance"] == "55.00"

