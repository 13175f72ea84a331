"""
API tests for the HTTP trigger surface

Tests cover:
1. Payment confirmation -> credit + distribution
2. Idempotent replays answered as success
3. Error to status code mapping
"""

import pytest
from fastapi.testclient import TestClient

from staking.api import create_app

from .factories import seed_stake, seed_user


@pytest.fixture
def client(service):
    return TestClient(create_app(service=service))


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestDepositEndpoint:
    """Tests for POST /deposits/credit."""

    def test_credit_then_replay(self, client, store):
        """First confirmation creates the stake, the replay is a 200 no-op."""
        seed_user(store, "alice", returns_wallet=1000)
        payload = {"reference": "TX-1", "gross_amount": 2200, "user_id": "alice", "phone": "256700000001"}

        first = client.post("/deposits/credit", json=payload)
        second = client.post("/deposits/credit", json=payload)

        assert first.status_code == 201
        body = first.json()
        assert body["deposit"]["net_principal"] == 2000
        assert body["deposit"]["stake_created"] is True
        assert body["distribution"]["distributed"] == 1000

        assert second.status_code == 200
        assert second.json()["deposit"]["already_credited"] is True
        assert second.json()["distribution"] is None

        user = client.get("/users/alice").json()
        assert user["total_deposited"] == 2200
        assert user["account_balance"] == 1000

    def test_unknown_user(self, client):
        response = client.post("/deposits/credit", json={"reference": "TX-1", "gross_amount": 2200, "user_id": "ghost"})
        assert response.status_code == 404

    def test_invalid_amount(self, client, store):
        seed_user(store, "alice")
        response = client.post("/deposits/credit", json={"reference": "TX-1", "gross_amount": 0, "user_id": "alice"})
        assert response.status_code == 400


class TestAccrualEndpoint:
    """Tests for POST /jobs/daily-accrual."""

    def test_run_for_date(self, client, store):
        seed_user(store, "alice")
        seed_stake(store, "S1", "alice", 2000)

        response = client.post("/jobs/daily-accrual", json={"run_date": "2024-03-01"})
        again = client.post("/jobs/daily-accrual", json={"run_date": "2024-03-01"})

        assert response.status_code == 200
        assert response.json()["processed"] == 1
        assert response.json()["paid_total"] == 200
        assert again.json()["processed"] == 0
        assert client.get("/stakes/S1").json()["remaining_days"] == 19

    def test_bad_date(self, client):
        response = client.post("/jobs/daily-accrual", json={"run_date": "yesterday"})
        assert response.status_code == 400


class TestDistributionEndpoint:
    """Tests for POST /distributions/{stake_id}/run."""

    def test_run_then_already_processed(self, client, store):
        seed_user(store, "alice", returns_wallet=5000)
        seed_stake(store, "S1", "alice", 2000)

        first = client.post("/distributions/S1/run")
        second = client.post("/distributions/S1/run")

        assert first.status_code == 200
        assert first.json()["result"]["distributed"] == 2000
        assert second.status_code == 200
        assert second.json()["already_processed"] is True
        assert client.get("/users/alice").json()["account_balance"] == 2000

    def test_locked_job_conflicts(self, client, service, store, clock):
        seed_user(store, "alice")
        seed_stake(store, "S1", "alice", 2000)
        service.repo.update_job("S1", locked=True, locked_until=clock.now.replace(hour=23))

        assert client.post("/distributions/S1/run").status_code == 409

    def test_unknown_stake(self, client):
        assert client.post("/distributions/nope/run").status_code == 404
        assert client.get("/stakes/nope").status_code == 404

    def test_sweep(self, client, store):
        seed_user(store, "alice", returns_wallet=5000)
        seed_stake(store, "S1", "alice", 2000)

        response = client.post("/distributions/sweep")

        assert response.status_code == 200
        assert [o["status"] for o in response.json()["outcomes"]] == ["distributed"]
