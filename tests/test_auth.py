import threading

import pytest

import agentid_gateway.auth as auth_mod
import agentid_gateway.nonce_ledger as nl
import agentid_gateway.sessions as sessions_mod
from agentid_gateway.auth import RequestAuthenticator, canonical_request_message
from agentid_gateway.config import GatewayConfig
from agentid_gateway.errors import (
    AGENTID_E_INVALID_KEY_FORMAT,
    AGENTID_E_INVALID_NONCE,
    AGENTID_E_INVALID_SIGNATURE,
    AGENTID_E_MISSING_CREDENTIALS,
    AGENTID_E_NONCE_LEDGER_FULL,
    AGENTID_E_REPLAYED_REQUEST,
    AGENTID_E_STALE_REQUEST,
    AGENTID_E_UNKNOWN_AGENT,
    AGENTID_E_UNVERIFIED_AGENT,
    AgentIdError,
)
from agentid_gateway.nonce_ledger import NonceLedger, NonceLedgerConfig
from agentid_gateway.sessions import VerificationService

from conftest import FakeVerifier, register_verified_agent, signed_body

T0 = 1_768_219_200_000


@pytest.fixture
def clock(monkeypatch):
    now = {"ms": T0}
    monkeypatch.setattr(auth_mod, "_now_ms", lambda: now["ms"])
    monkeypatch.setattr(nl, "_now_ms", lambda: now["ms"])
    return now


@pytest.fixture
def ledger():
    return NonceLedger(NonceLedgerConfig())


@pytest.fixture
def authenticator(store, ledger):
    return RequestAuthenticator(store, ledger)


def _auth(authenticator, body):
    return authenticator.authenticate(body.get("agentPublicKey"), body.get("signature"), body.get("timestamp"), body.get("nonce"))


def test_canonical_message_layout():
    assert canonical_request_message("k", 1700000000000, "abcdefgh") == (
        '{"agentPublicKey":"k","timestamp":1700000000000,"nonce":"abcdefgh"}'
    )
    assert canonical_request_message("k", 1700000000000.0, "n") == canonical_request_message("k", 1700000000000, "n")
    assert canonical_request_message("k", "1700000000000", "n") == canonical_request_message("k", 1700000000000, "n")


def test_valid_request_authenticates(authenticator, store, agent_key, clock):
    pk = agent_key.public_key_spki_b64
    register_verified_agent(store, pk, human_id="a1b2c3d4e5f60718")

    agent = _auth(authenticator, signed_body(agent_key, pk, nonce="nonce-0001", ts=T0))
    assert agent.public_key == pk
    assert agent.human_id == "a1b2c3d4e5f60718"
    assert agent.identity.verification_level == "passport+signature"


def test_replay_rejected_four_minutes_later(authenticator, store, agent_key, clock):
    pk = agent_key.public_key_hex
    register_verified_agent(store, pk)
    body = signed_body(agent_key, pk, nonce="n1-nonce", ts=T0)

    _auth(authenticator, body)
    clock["ms"] = T0 + 4 * 60 * 1000
    with pytest.raises(AgentIdError) as ei:
        _auth(authenticator, body)
    assert ei.value.code == AGENTID_E_REPLAYED_REQUEST
    assert ei.value.http_status == 401

    # A fresh timestamp does not make the nonce reusable either.
    with pytest.raises(AgentIdError) as ei:
        _auth(authenticator, signed_body(agent_key, pk, nonce="n1-nonce", ts=clock["ms"]))
    assert ei.value.code == AGENTID_E_REPLAYED_REQUEST


@pytest.mark.parametrize("missing", ["agentPublicKey", "signature", "timestamp", "nonce"])
def test_missing_fields(authenticator, agent_key, clock, missing):
    body = signed_body(agent_key, agent_key.public_key_hex, ts=T0)
    body.pop(missing)
    with pytest.raises(AgentIdError) as ei:
        _auth(authenticator, body)
    assert ei.value.code == AGENTID_E_MISSING_CREDENTIALS
    assert ei.value.http_status == 401


@pytest.mark.parametrize("offset_ms", [-(5 * 60 * 1000 + 1), 5 * 60 * 1000 + 1])
def test_stale_in_either_direction(authenticator, store, agent_key, clock, offset_ms):
    register_verified_agent(store, agent_key.public_key_hex)
    body = signed_body(agent_key, agent_key.public_key_hex, ts=T0 + offset_ms)
    with pytest.raises(AgentIdError) as ei:
        _auth(authenticator, body)
    assert ei.value.code == AGENTID_E_STALE_REQUEST


def test_edge_of_window_is_fresh(authenticator, store, agent_key, clock):
    register_verified_agent(store, agent_key.public_key_hex)
    _auth(authenticator, signed_body(agent_key, agent_key.public_key_hex, ts=T0 - 5 * 60 * 1000))


def test_non_numeric_timestamp_is_stale(authenticator, agent_key, clock):
    body = signed_body(agent_key, agent_key.public_key_hex, ts=T0)
    body["timestamp"] = "yesterday"
    with pytest.raises(AgentIdError) as ei:
        _auth(authenticator, body)
    assert ei.value.code == AGENTID_E_STALE_REQUEST


@pytest.mark.parametrize("nonce", ["short", "x" * 65])
def test_nonce_length_bounds(authenticator, agent_key, clock, nonce):
    with pytest.raises(AgentIdError) as ei:
        _auth(authenticator, signed_body(agent_key, agent_key.public_key_hex, nonce=nonce, ts=T0))
    assert ei.value.code == AGENTID_E_INVALID_NONCE


def test_bad_signature_reports_expected_message_and_keeps_nonce(authenticator, store, agent_key, other_key, clock):
    pk = agent_key.public_key_hex
    register_verified_agent(store, pk)
    body = signed_body(agent_key, pk, nonce="nonce-0001", ts=T0)
    forged = dict(body, signature=other_key.sign("anything").hex())

    with pytest.raises(AgentIdError) as ei:
        _auth(authenticator, forged)
    assert ei.value.code == AGENTID_E_INVALID_SIGNATURE
    assert ei.value.http_status == 401
    assert ei.value.details["signed_message"] == canonical_request_message(pk, T0, "nonce-0001")
    assert "hint" in ei.value.details

    # The forged attempt must not burn the legitimate client's nonce.
    assert _auth(authenticator, body).public_key == pk


def test_malformed_key_reports_format_error(authenticator, agent_key, clock):
    body = signed_body(agent_key, agent_key.public_key_hex, ts=T0)
    body["agentPublicKey"] = "abcd"
    with pytest.raises(AgentIdError) as ei:
        _auth(authenticator, body)
    assert ei.value.code == AGENTID_E_INVALID_KEY_FORMAT


def test_unknown_agent(authenticator, agent_key, clock):
    with pytest.raises(AgentIdError) as ei:
        _auth(authenticator, signed_body(agent_key, agent_key.public_key_hex, ts=T0))
    assert ei.value.code == AGENTID_E_UNKNOWN_AGENT
    assert ei.value.http_status == 403
    assert "pending_session_id" not in ei.value.details


def test_unknown_agent_with_pending_session_gets_hint(authenticator, store, agent_key, tmp_path, monkeypatch, clock):
    monkeypatch.setattr(sessions_mod, "_now_ms", lambda: clock["ms"])
    service = VerificationService(store, FakeVerifier(), GatewayConfig(db_path=str(tmp_path / "x.db")))
    out = service.start_verification(agent_key.public_key_hex)

    with pytest.raises(AgentIdError) as ei:
        _auth(authenticator, signed_body(agent_key, agent_key.public_key_hex, ts=T0))
    assert ei.value.details["pending_session_id"] == out["sessionId"]


def test_unverified_agent(authenticator, store, agent_key, clock):
    register_verified_agent(store, agent_key.public_key_hex, human_id=None)
    with pytest.raises(AgentIdError) as ei:
        _auth(authenticator, signed_body(agent_key, agent_key.public_key_hex, ts=T0))
    assert ei.value.code == AGENTID_E_UNVERIFIED_AGENT
    assert ei.value.http_status == 403


def test_concurrent_replays_admit_exactly_one(authenticator, store, agent_key):
    pk = agent_key.public_key_hex
    register_verified_agent(store, pk)
    body = signed_body(agent_key, pk, nonce="race-nonce-1")
    barrier = threading.Barrier(8)
    outcomes = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            _auth(authenticator, body)
            outcome = "ok"
        except AgentIdError as e:
            outcome = e.code
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert outcomes.count("ok") == 1
    assert outcomes.count(AGENTID_E_REPLAYED_REQUEST) == 7


def test_full_ledger_is_retryable(store, agent_key, clock):
    pk = agent_key.public_key_hex
    register_verified_agent(store, pk)
    authenticator = RequestAuthenticator(store, NonceLedger(NonceLedgerConfig(max_items=1)))
    _auth(authenticator, signed_body(agent_key, pk, ts=T0))
    with pytest.raises(AgentIdError) as ei:
        _auth(authenticator, signed_body(agent_key, pk, ts=T0))
    assert ei.value.code == AGENTID_E_NONCE_LEDGER_FULL
    assert ei.value.retryable is True
