from __future__ import annotations

import secrets
import time
import uuid
from typing import Any, List, Optional

import pytest

from agentid_gateway.auth import canonical_request_message
from agentid_gateway.challenge import compute_agent_key_hash, pad_user_defined_data
from agentid_gateway.config import GatewayConfig
from agentid_gateway.keys import Ed25519KeyPair
from agentid_gateway.models import (
    VERIFICATION_LEVEL_PASSPORT_SIGNATURE,
    AgentIdentityRecord,
    IdentityMetadata,
    VerificationSession,
)
from agentid_gateway.store import IdentityStore
from agentid_gateway.verifier import VerificationResult


class FakeVerifier:
    """In-process ProofVerifier: returns `result` or raises `error`."""

    def __init__(self, result: Optional[VerificationResult] = None, error: Optional[Exception] = None):
        self.result = result
        self.error = error
        self.calls: List[tuple] = []

    def verify_proof(self, attestation_id: Any, proof: Any, public_signals: Any, user_context_data: Any) -> VerificationResult:
        self.calls.append((attestation_id, proof, public_signals, user_context_data))
        if self.error is not None:
            raise self.error
        assert self.result is not None, "FakeVerifier.result not configured"
        return self.result


def hex_ascii(s: str) -> str:
    """User data as the verifier reports it: ASCII bytes, hex-encoded."""
    return s.encode("ascii").hex()


def valid_result(session_id: str, agent_public_key: str, nullifier: Optional[str] = "nullifier-123", nationality: Optional[str] = "DEU") -> VerificationResult:
    return VerificationResult(
        is_valid=True,
        user_identifier=session_id,
        user_defined_data=hex_ascii(pad_user_defined_data(compute_agent_key_hash(agent_public_key))),
        nullifier=nullifier,
        nationality=nationality,
    )


def signed_body(kp: Ed25519KeyPair, public_key: str, nonce: Optional[str] = None, ts: Optional[int] = None) -> dict:
    ts = int(time.time() * 1000) if ts is None else ts
    nonce = nonce or secrets.token_hex(8)
    msg = canonical_request_message(public_key, ts, nonce)
    return {"agentPublicKey": public_key, "signature": kp.sign(msg).hex(), "timestamp": ts, "nonce": nonce}


def register_verified_agent(store: IdentityStore, public_key: str, human_id: Optional[str] = "a1b2c3d4e5f60718", agent_name: Optional[str] = None) -> AgentIdentityRecord:
    now = int(time.time() * 1000)
    session = VerificationSession(
        session_id=str(uuid.uuid4()),
        agent_public_key=public_key,
        agent_key_hash=compute_agent_key_hash(public_key),
        challenge="{}",
        challenge_expiry_ms=now + 600_000,
        created_at_ms=now,
        agent_name=agent_name,
    )
    store.create_session(session)
    identity = AgentIdentityRecord(
        public_key=public_key,
        human_id=human_id,
        verification_level=VERIFICATION_LEVEL_PASSPORT_SIGNATURE,
        metadata=IdentityMetadata(
            verified_via="zk-passport",
            signature_verified=True,
            last_updated="2026-01-12T12:00:00+00:00",
        ),
        agent_name=agent_name,
    )
    assert store.complete_verification(session.session_id, identity)
    return identity


@pytest.fixture
def store(tmp_path) -> IdentityStore:
    return IdentityStore(db_path=str(tmp_path / "agentid.db"))


@pytest.fixture
def config(tmp_path) -> GatewayConfig:
    return GatewayConfig(db_path=str(tmp_path / "agentid.db"), domain="agents.test")


@pytest.fixture
def agent_key() -> Ed25519KeyPair:
    return Ed25519KeyPair.from_seed(bytes(range(32)))


@pytest.fixture
def other_key() -> Ed25519KeyPair:
    return Ed25519KeyPair.from_seed(bytes(range(32, 64)))
