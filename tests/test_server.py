import pytest
from fastapi.testclient import TestClient

from agentid_gateway.config import GatewayConfig
from agentid_gateway.errors import ConfigurationError
from agentid_gateway.models import SessionStatus
from agentid_gateway.nonce_ledger import NonceLedger, NonceLedgerConfig
from agentid_gateway.server import create_app
from agentid_gateway.vault import SecretVault

from conftest import FakeVerifier, register_verified_agent, signed_body, valid_result

PROOF = {"a": ["1"], "b": [["2"]], "c": ["3"]}
SIGNALS = ["4", "5"]


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def app(tmp_path, verifier):
    cfg = GatewayConfig(db_path=str(tmp_path / "gw.db"), domain="agents.test", max_request_bytes=4096)
    return create_app(
        cfg,
        verifier=verifier,
        vault=SecretVault(server_secret="server-test-secret"),
        ledger=NonceLedger(NonceLedgerConfig()),
    )


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def _verify_agent(client, verifier, kp, public_key, name=None):
    start = client.post("/v1/verify/start", json={"agentPublicKey": public_key, "agentName": name})
    assert start.status_code == 200, start.text
    data = start.json()
    signed = client.post(
        "/v1/verify/sign-challenge",
        json={"sessionId": data["sessionId"], "signature": kp.sign(data["challenge"]).hex()},
    )
    assert signed.status_code == 200, signed.text
    verifier.result = valid_result(data["sessionId"], public_key)
    cb = client.post(
        "/v1/callback",
        json={"attestationId": 1, "proof": PROOF, "publicSignals": SIGNALS, "userContextData": "0xctx"},
    )
    assert cb.status_code == 200
    assert cb.json() == {"status": "success", "result": True}
    return data["sessionId"]


def test_full_verification_flow(client, verifier, agent_key, app):
    pk = agent_key.public_key_spki_b64
    session_id = _verify_agent(client, verifier, agent_key, pk, name="alpha")

    status = client.get(f"/v1/verify/status/{session_id}").json()
    assert status["status"] == "verified"
    assert status["agent"]["verificationLevel"] == "passport+signature"

    agent = client.get("/v1/agent", params={"publicKey": pk}).json()
    assert agent["verified"] is True
    assert agent["agentName"] == "alpha"
    assert agent["proof"]["available"] is True
    assert "zkProof" not in agent["metadata"]

    by_name = client.get("/v1/agent", params={"name": "ALPHA"}).json()
    assert by_name["publicKey"] == pk

    proof = client.get("/v1/agent/alpha/proof").json()
    assert proof["proof"]["proof"] == PROOF
    assert proof["proof"]["publicSignals"] == SIGNALS
    assert proof["proof"]["proofHash"] == agent["proof"]["hash"]

    me = client.post("/v1/agent/me", json=signed_body(agent_key, pk))
    assert me.status_code == 200, me.text
    assert me.json()["agent"]["publicKey"] == pk
    assert app.state.store.get_session(session_id).status == SessionStatus.VERIFIED


def test_start_returns_proof_request_and_config(client, agent_key):
    data = client.post("/v1/verify/start", json={"agentPublicKey": agent_key.public_key_hex}).json()
    assert data["signatureRequired"] is True
    assert data["proofRequest"]["userIdType"] == "uuid"
    assert len(data["proofRequest"]["userDefinedData"]) == 128
    assert data["config"]["endpoint"] == "https://agents.test/v1/callback"


def test_start_with_bad_key_returns_hint(client):
    r = client.post("/v1/verify/start", json={"agentPublicKey": "abcd"})
    assert r.status_code == 400
    body = r.json()
    assert body["code"] == "AGENTID_E_INVALID_KEY_FORMAT"
    assert "hint" in body["details"]


def test_sign_challenge_with_wrong_signature(client, agent_key, other_key):
    data = client.post("/v1/verify/start", json={"agentPublicKey": agent_key.public_key_hex}).json()
    r = client.post(
        "/v1/verify/sign-challenge",
        json={"sessionId": data["sessionId"], "signature": other_key.sign(data["challenge"]).hex()},
    )
    assert r.status_code == 400
    assert r.json()["code"] == "AGENTID_E_CHALLENGE_MISMATCH"


def test_callback_always_answers_200(client, verifier, agent_key, other_key):
    r = client.post("/v1/callback", content=b"{not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 200
    assert r.json() == {"status": "error", "result": False, "reason": "Missing required verification data"}

    r = client.post("/v1/callback", json=["not", "an", "object"])
    assert r.status_code == 200
    assert r.json()["result"] is False

    data = client.post("/v1/verify/start", json={"agentPublicKey": agent_key.public_key_hex}).json()
    verifier.result = valid_result(data["sessionId"], other_key.public_key_hex)
    r = client.post(
        "/v1/callback/",
        json={"attestationId": 1, "proof": PROOF, "publicSignals": SIGNALS, "userContextData": "0xctx"},
    )
    assert r.status_code == 200
    assert r.json() == {"status": "error", "result": False, "reason": "Agent key binding mismatch"}

    verifier.error = RuntimeError("verifier exploded")
    r = client.post(
        "/v1/callback",
        json={"attestationId": 1, "proof": PROOF, "publicSignals": SIGNALS, "userContextData": "0xctx"},
    )
    assert r.status_code == 200
    assert r.json()["reason"] == "Internal verification error"


def test_callback_get_describes_endpoint(client):
    for path in ("/v1/callback", "/v1/callback/"):
        r = client.get(path)
        assert r.status_code == 200
        assert r.json()["status"] == "ok"


def test_signed_request_errors_are_structured(client, agent_key):
    pk = agent_key.public_key_hex
    r = client.post("/v1/agent/me", json={"agentPublicKey": pk})
    assert r.status_code == 401
    assert r.json()["code"] == "AGENTID_E_MISSING_CREDENTIALS"

    r = client.post("/v1/agent/me", json=signed_body(agent_key, pk))
    assert r.status_code == 403
    assert r.json()["code"] == "AGENTID_E_UNKNOWN_AGENT"


def test_replayed_signed_request_rejected(client, verifier, agent_key):
    pk = agent_key.public_key_hex
    _verify_agent(client, verifier, agent_key, pk)
    body = signed_body(agent_key, pk)
    assert client.post("/v1/agent/me", json=body).status_code == 200
    r = client.post("/v1/agent/me", json=body)
    assert r.status_code == 401
    assert r.json()["code"] == "AGENTID_E_REPLAYED_REQUEST"


def test_custodial_key_store_and_reveal(client, verifier, agent_key, app):
    pk = agent_key.public_key_hex
    _verify_agent(client, verifier, agent_key, pk)

    r = client.post("/v1/wallet/custodial-key/reveal", json=signed_body(agent_key, pk))
    assert r.status_code == 404

    body = dict(signed_body(agent_key, pk), privateKey="0xPRIVATEKEY")
    r = client.post("/v1/wallet/custodial-key", json=body)
    assert r.status_code == 200, r.text
    stored = app.state.store.get_wallet_secret(pk)
    assert "PRIVATEKEY" not in stored.ciphertext

    r = client.post("/v1/wallet/custodial-key/reveal", json=signed_body(agent_key, pk))
    assert r.status_code == 200
    assert r.json()["privateKey"] == "0xPRIVATEKEY"
    assert r.headers["cache-control"] == "no-store"


def test_custodial_key_requires_private_key(client, verifier, agent_key):
    pk = agent_key.public_key_hex
    _verify_agent(client, verifier, agent_key, pk)
    r = client.post("/v1/wallet/custodial-key", json=signed_body(agent_key, pk))
    assert r.status_code == 400


def test_check_name_endpoint(client, verifier, agent_key):
    assert client.post("/v1/check-name", json={"name": "alpha"}).json() == {"available": True, "suggestions": []}
    _verify_agent(client, verifier, agent_key, agent_key.public_key_hex, name="alpha")
    r = client.post("/v1/check-name", json={"name": "alpha"}).json()
    assert r["available"] is False
    assert len(r["suggestions"]) == 3
    assert client.post("/v1/check-name", json={"name": "!"}).status_code == 400


def test_agent_lookup_errors(client):
    assert client.get("/v1/agent").status_code == 400
    assert client.get("/v1/agent", params={"publicKey": "ab" * 32}).status_code == 404
    assert client.get("/v1/agent/nobody/proof").status_code == 404


def test_agent_without_stored_proof(client, app, agent_key):
    register_verified_agent(app.state.store, agent_key.public_key_hex, agent_name="bare")
    r = client.get("/v1/agent/bare/proof")
    assert r.status_code == 404
    assert r.json()["code"] == "AGENTID_E_PROOF_NOT_FOUND"

    missing = client.get("/v1/agent/nobody/proof").json()
    assert missing["code"] == "AGENTID_E_UNKNOWN_AGENT"


def test_config_and_health(client):
    cfg = client.get("/v1/config").json()
    assert cfg == {
        "scope": "agent-verify",
        "endpoint": "https://agents.test/v1/callback",
        "appName": "Agent Identity",
        "version": 2,
        "staging": False,
        "minimumAge": 18,
    }
    health = client.get("/v1/health").json()
    assert health["status"] == "healthy"


def test_request_size_limit(client):
    r = client.post("/v1/callback", content=b"x" * 5000, headers={"Content-Type": "application/json"})
    assert r.status_code == 413


def test_metrics_endpoint(client):
    client.get("/v1/health")
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "agentid_http_requests_total" in r.text


def test_sweepers_run_under_lifespan(app):
    with TestClient(app):
        assert [s.name for s in app.state.sweepers] == ["nonce", "session"]
        assert all(s.running for s in app.state.sweepers)
    assert not any(s.running for s in app.state.sweepers)


def test_missing_server_secret_aborts_startup(tmp_path, monkeypatch):
    monkeypatch.delenv("AGENTID_SERVER_SECRET", raising=False)
    with pytest.raises(ConfigurationError):
        create_app(GatewayConfig(db_path=str(tmp_path / "gw.db")), verifier=FakeVerifier())
