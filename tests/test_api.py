"""
Tests for the HTTP API

Commands are signed by the caller with sign_request; queries are open.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from holdreg.api.auth import sign_request
from holdreg.api.routes import RegisterForRequest, RegisterRequest
from holdreg.config import RegistryConfig
from holdreg.core import (
    InMemoryAuthorityOracle,
    InMemoryBalanceOracle,
    JsonFileBalanceOracle,
    RegistryService,
    Signer,
)
from holdreg.main import create_app
from holdreg.observability import MetricsCollector, get_metrics


FACILITATOR_ROLE = "facilitator"


class Identity:
    def __init__(self):
        self.private_key, self.address = Signer.generate_keypair()

    def attest(self, message: str) -> str:
        return Signer.sign_personal_message(message, self.private_key)


def register_body(identity, amount, message, issued_at=None):
    body = RegisterRequest(
        caller=identity.address,
        amount=amount,
        message=message,
        issued_at=issued_at or datetime.now(timezone.utc),
    )
    return sign_request(body, identity.private_key).model_dump(mode="json")


def register_for_body(caller, actor, amount, message, signature):
    body = RegisterForRequest(
        caller=caller.address,
        actor=actor.address,
        amount=amount,
        message=message,
        signature=signature,
        issued_at=datetime.now(timezone.utc),
    )
    return sign_request(body, caller.private_key).model_dump(mode="json")


class TestRegistryAPI:

    @pytest.fixture
    def people(self):
        return {"facilitator": Identity(), "actor": Identity(), "stranger": Identity()}

    @pytest.fixture
    def balances(self, people):
        return InMemoryBalanceOracle({people["actor"].address: 1000})

    @pytest.fixture
    def registry(self, people, balances):
        return RegistryService(
            config=RegistryConfig(facilitator_role=FACILITATOR_ROLE, request_max_age_seconds=60),
            balance_oracle=balances,
            authority_oracle=InMemoryAuthorityOracle(
                {FACILITATOR_ROLE: [people["facilitator"].address]}
            ),
            metrics=MetricsCollector(),
        )

    @pytest.fixture
    def client(self, registry):
        return TestClient(create_app(registry=registry))

    # -------------------- self-registration --------------------

    def test_register(self, client, registry, people):
        actor = people["actor"]
        r = client.post("/api/v1/registry/register", json=register_body(actor, 500, "I hold"))

        assert r.status_code == 201
        j = r.json()
        assert j["actor"] == actor.address
        assert j["amount"] == 500
        assert j["message"] == "I hold"
        assert j["delegated"] is False
        assert j["sequence_number"] == 0
        assert registry.claimed_amount(actor.address) == 500

    def test_register_over_balance(self, client, registry, people):
        actor = people["actor"]
        r = client.post("/api/v1/registry/register", json=register_body(actor, 1001, "I hold"))

        assert r.status_code == 422
        assert "exceeds live balance" in r.json()["detail"]
        assert registry.event_count == 0

    def test_large_amount_over_json(self, client, registry, balances, people):
        actor = people["actor"]
        balances.set_balance(actor.address, 10**30)
        r = client.post("/api/v1/registry/register", json=register_body(actor, 10**30, "big"))

        assert r.status_code == 201
        assert registry.verified_amount(actor.address) == 10**30

    # -------------------- caller authentication --------------------

    def test_missing_caller_signature(self, client, people):
        body = register_body(people["actor"], 10, "m")
        body["caller_signature"] = ""
        r = client.post("/api/v1/registry/register", json=body)
        assert r.status_code == 401

    def test_body_altered_after_signing(self, client, registry, people):
        body = register_body(people["actor"], 10, "m")
        body["amount"] = 20
        r = client.post("/api/v1/registry/register", json=body)
        assert r.status_code == 401
        assert registry.event_count == 0

    def test_caller_impersonation(self, client, registry, people):
        """Signing with one key while naming another caller is rejected."""
        actor, stranger = people["actor"], people["stranger"]
        body = RegisterRequest(
            caller=actor.address,
            amount=10,
            message="m",
            issued_at=datetime.now(timezone.utc),
        )
        signed = sign_request(body, stranger.private_key).model_dump(mode="json")
        r = client.post("/api/v1/registry/register", json=signed)
        assert r.status_code == 401
        assert registry.event_count == 0

    def test_stale_request(self, client, people):
        issued_at = datetime.now(timezone.utc) - timedelta(minutes=10)
        r = client.post(
            "/api/v1/registry/register",
            json=register_body(people["actor"], 10, "m", issued_at=issued_at),
        )
        assert r.status_code == 401
        assert "request window" in r.json()["detail"]

    def test_replayed_request_rejected(self, client, registry, people):
        actor = people["actor"]
        first = register_body(actor, 700, "first")
        assert client.post("/api/v1/registry/register", json=first).status_code == 201
        assert client.post(
            "/api/v1/registry/register", json=register_body(actor, 200, "second")
        ).status_code == 201

        r = client.post("/api/v1/registry/register", json=first)
        assert r.status_code == 401
        assert "already submitted" in r.json()["detail"]
        assert registry.claimed_amount(actor.address) == 200
        assert registry.event_count == 2

    def test_replayed_delegated_request_rejected(self, client, registry, people):
        facilitator, actor = people["facilitator"], people["actor"]
        body = register_for_body(facilitator, actor, 700, "attest", actor.attest("attest"))
        assert client.post("/api/v1/registry/register-for", json=body).status_code == 201
        assert client.post("/api/v1/registry/register-for", json=body).status_code == 401
        assert registry.event_count == 1

    def test_amount_beyond_storage_limit(self, client, registry, balances, people):
        actor = people["actor"]
        balances.set_balance(actor.address, 10**80)
        r = client.post("/api/v1/registry/register", json=register_body(actor, 10**78, "big"))
        assert r.status_code == 400
        assert registry.event_count == 0

    def test_malformed_caller(self, client):
        body = {
            "caller": "0x1234",
            "amount": 1,
            "message": "m",
            "issued_at": datetime.now(timezone.utc).isoformat(),
            "caller_signature": "",
        }
        r = client.post("/api/v1/registry/register", json=body)
        assert r.status_code == 422

    # -------------------- delegated registration --------------------

    def test_register_for(self, client, registry, people):
        facilitator, actor = people["facilitator"], people["actor"]
        body = register_for_body(facilitator, actor, 700, "attest", actor.attest("attest"))
        r = client.post("/api/v1/registry/register-for", json=body)

        assert r.status_code == 201
        j = r.json()
        assert j["actor"] == actor.address
        assert j["registered_by"] == facilitator.address
        assert j["delegated"] is True
        assert registry.verified_amount(actor.address) == 700

    def test_register_for_unauthorized(self, client, registry, people):
        stranger, actor = people["stranger"], people["actor"]
        body = register_for_body(stranger, actor, 10, "attest", actor.attest("attest"))
        r = client.post("/api/v1/registry/register-for", json=body)

        assert r.status_code == 403
        assert registry.event_count == 0

    def test_register_for_wrong_signature(self, client, registry, people):
        facilitator, actor = people["facilitator"], people["actor"]
        body = register_for_body(facilitator, actor, 10, "attest", facilitator.attest("attest"))
        r = client.post("/api/v1/registry/register-for", json=body)

        assert r.status_code == 400
        assert registry.event_count == 0

    def test_register_for_over_balance(self, client, people):
        facilitator, actor = people["facilitator"], people["actor"]
        body = register_for_body(facilitator, actor, 5000, "attest", actor.attest("attest"))
        r = client.post("/api/v1/registry/register-for", json=body)
        assert r.status_code == 422

    # -------------------- queries --------------------

    def test_status_and_live_balance(self, client, registry, balances, people):
        actor = people["actor"]
        registry.register(actor.address, 500, "hold")

        r = client.get(f"/api/v1/registry/{actor.address}")
        assert r.status_code == 200
        assert r.json() == {
            "actor": actor.address,
            "claimed_amount": 500,
            "balance": 1000,
            "verified_amount": 500,
        }

        balances.set_balance(actor.address, 499)
        r = client.get(f"/api/v1/registry/{actor.address}/verified")
        assert r.json() == {"actor": actor.address, "verified_amount": 0}

    def test_eligibility(self, client, registry, people):
        actor, stranger = people["actor"], people["stranger"]
        registry.register(actor.address, 1, "hold")

        r = client.get(f"/api/v1/registry/{actor.address}/eligibility")
        assert r.json() == {"eligible": True, "standing": True}

        r = client.get(f"/api/v1/registry/{stranger.address}/eligibility")
        assert r.json() == {"eligible": False, "standing": True}

    def test_mixed_case_address_query(self, client, registry, people):
        actor = people["actor"]
        registry.register(actor.address, 5, "hold")
        r = client.get(f"/api/v1/registry/0x{actor.address[2:].upper()}/verified")
        assert r.status_code == 200
        assert r.json()["verified_amount"] == 5

    def test_invalid_address_query(self, client):
        r = client.get("/api/v1/registry/0xnothex/verified")
        assert r.status_code == 400

    def test_events(self, client, registry, people):
        actor, stranger = people["actor"], people["stranger"]
        registry.register(actor.address, 100, "one")
        registry.register(actor.address, 200, "two")

        r = client.get("/api/v1/registry/events")
        assert r.status_code == 200
        events = r.json()
        assert [e["amount"] for e in events] == [100, 200]
        assert [e["sequence_number"] for e in events] == [0, 1]

        r = client.get(f"/api/v1/registry/{actor.address}/events")
        assert [e["message"] for e in r.json()] == ["one", "two"]

        r = client.get(f"/api/v1/registry/{stranger.address}/events")
        assert r.json() == []


class TestSystemEndpoints:

    @pytest.fixture
    def registry(self):
        return RegistryService(
            config=RegistryConfig(),
            balance_oracle=InMemoryBalanceOracle(),
            authority_oracle=InMemoryAuthorityOracle(),
            metrics=MetricsCollector(),
        )

    @pytest.fixture
    def client(self, registry):
        return TestClient(create_app(registry=registry))

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_health_detailed(self, client):
        r = client.get("/health/detailed")
        assert r.status_code == 200
        j = r.json()
        assert j["status"] == "healthy"
        assert set(j["checks"]) == {"liveness", "store", "audit_chain"}

    def test_health_detailed_detects_tampering(self, client, registry):
        actor = Identity()
        registry.store._claims[actor.address] = 42

        r = client.get("/health/detailed")
        assert r.status_code == 503
        assert r.json()["checks"]["audit_chain"]["valid"] is False

    def test_request_id_header(self, client):
        r = client.get("/health", headers={"X-Request-ID": "abc123"})
        assert r.headers["X-Request-ID"] == "abc123"

    def test_metrics(self, client):
        get_metrics().reset()
        client.get("/health")
        r = client.get("/metrics")
        assert r.status_code == 200
        j = r.json()
        assert j["requests_total"] >= 1
        assert "registrations_rejected" in j


class TestOracleFailures:

    @pytest.fixture
    def actor(self):
        return Identity()

    @pytest.fixture
    def balances_path(self, tmp_path, actor):
        path = tmp_path / "balances.json"
        path.write_text(json.dumps({actor.address: 100}))
        return path

    @pytest.fixture
    def client(self, balances_path):
        registry = RegistryService(
            config=RegistryConfig(),
            balance_oracle=JsonFileBalanceOracle(balances_path),
            authority_oracle=InMemoryAuthorityOracle(),
            metrics=MetricsCollector(),
        )
        return TestClient(create_app(registry=registry))

    def test_missing_balance_file_is_503(self, client, balances_path, actor):
        balances_path.unlink()
        r = client.get(f"/api/v1/registry/{actor.address}/eligibility")
        assert r.status_code == 503
        assert "Cannot read" in r.json()["detail"]

    def test_invalid_balance_is_503(self, client, balances_path, actor):
        balances_path.write_text(json.dumps({actor.address: 100.5}))
        r = client.post("/api/v1/registry/register", json=register_body(actor, 50, "hold"))
        assert r.status_code == 503
        assert "Invalid balance" in r.json()["detail"]
