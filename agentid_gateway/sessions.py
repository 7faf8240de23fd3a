"""
Agent verification sessions.

Flow:
1. start_verification: an agent presents its public key (and optionally a
   name). A pending session is created with a challenge the key must sign and
   a proof-request descriptor for the external ZK passport app. The
   descriptor carries the agent key hash as user data; that is the only link
   between the eventual proof and this key.
2. sign_challenge: the agent proves possession of the key by signing the
   stored challenge before it expires.
3. handle_proof_callback: the ZK app posts the passport proof. Validity is
   delegated to the external verifier (no store access or lock is held while
   it runs). The proof is bound to the session through the key hash, a
   humanId is derived, and the identity upsert plus PENDING -> VERIFIED flip
   happen in one short transaction.

The callback never raises: every outcome is folded into a CallbackResult
because the upstream submitter's retry behavior is not under our control.
"""

from __future__ import annotations

import logging
import random
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .binding import (
    bind_proof_to_session,
    compute_proof_fingerprint,
    derive_human_id,
    sanitize_nationality,
)
from .challenge import build_proof_request, compute_agent_key_hash, generate_challenge
from .config import GatewayConfig
from .errors import (
    AGENTID_E_BAD_REQUEST,
    AGENTID_E_CHALLENGE_MISMATCH,
    AGENTID_E_NAME_TAKEN,
    AGENTID_E_SESSION_EXPIRED,
    AGENTID_E_SESSION_NOT_FOUND,
    KEY_FORMAT_HINT,
    AgentIdError,
    agentid_error,
)
from .keys import require_public_key, verify_ed25519_signature
from .models import (
    VERIFICATION_LEVEL_PASSPORT,
    VERIFICATION_LEVEL_PASSPORT_SIGNATURE,
    AgentIdentityRecord,
    CallbackResult,
    IdentityMetadata,
    NameCheck,
    ProofRecord,
    SessionStatus,
    VerificationSession,
)
from .store import IdentityStore
from .verifier import ProofVerifier

logger = logging.getLogger("agentid_gateway")

VERIFIED_VIA = "zk-passport"

_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
_NAME_MIN, _NAME_MAX = 2, 40


def _now_ms() -> int:
    return int(time.time() * 1000)


def _iso_from_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc).isoformat()


def _short(value: Optional[str]) -> str:
    return (value or "")[:8] + "..."


def normalize_agent_name(name: str) -> str:
    """Lower-cased agent name, or AGENTID_E_BAD_REQUEST if it is malformed."""
    normalized = (name or "").strip().lower()
    if len(normalized) < _NAME_MIN or len(normalized) > _NAME_MAX:
        raise agentid_error(AGENTID_E_BAD_REQUEST, f"Name must be {_NAME_MIN}-{_NAME_MAX} characters")
    if not _NAME_RE.match(normalized):
        raise agentid_error(
            AGENTID_E_BAD_REQUEST,
            "Name must start with a letter or number and contain only letters, numbers, hyphens, and underscores",
        )
    return normalized


def suggest_names(base_name: str) -> List[str]:
    suffixes: List[Any] = [
        random.randint(1, 99),
        "v2",
        "ai",
        random.randint(100, 1098),
        "agent",
        "x",
    ]
    random.shuffle(suffixes)
    return [f"{base_name}-{s}" for s in suffixes[:3]]


class VerificationService:
    """Owns the challenge -> proof session state machine."""

    def __init__(self, store: IdentityStore, verifier: ProofVerifier, config: Optional[GatewayConfig] = None):
        self.store = store
        self.verifier = verifier
        self.config = config or GatewayConfig.from_env()

    # ---------------------------
    # Names
    # ---------------------------

    def check_name(self, name: str) -> NameCheck:
        normalized = normalize_agent_name(name)
        if self.store.find_identity_by_name(normalized) is not None:
            return NameCheck(available=False, suggestions=suggest_names(normalized))
        return NameCheck(available=True)

    # ---------------------------
    # Session lifecycle
    # ---------------------------

    def start_verification(
        self,
        agent_public_key: str,
        agent_name: Optional[str] = None,
        signature: Optional[str] = None,
        human_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Open a pending verification session for an agent key.

        `human_id` is set when the caller already has an authenticated human
        context; the proof callback then reuses it instead of deriving one.
        """
        if not agent_public_key or not str(agent_public_key).strip():
            raise agentid_error(AGENTID_E_BAD_REQUEST, "agentPublicKey is required", hint=KEY_FORMAT_HINT)
        require_public_key(agent_public_key)

        agent_name = (agent_name or "").strip() or None
        if agent_name:
            # Only a collision is rejected here; the format rules belong to check_name.
            existing = self.store.find_identity_by_name(agent_name)
            if existing is not None and existing.public_key != agent_public_key:
                raise agentid_error(
                    AGENTID_E_NAME_TAKEN,
                    "Agent name already taken",
                    http_status=409,
                    suggestions=suggest_names(agent_name.lower()),
                )

        now = _now_ms()
        session_id = str(uuid.uuid4())
        agent_key_hash = compute_agent_key_hash(agent_public_key)
        challenge, expiry = generate_challenge(session_id, agent_key_hash, domain=self.config.domain, now_ms=now)

        signature_verified = False
        if signature:
            try:
                signature_verified = verify_ed25519_signature(agent_public_key, signature, challenge)
            except AgentIdError as e:
                logger.info("Up-front signature rejected for session %s: %s", session_id, e.code)

        session = VerificationSession(
            session_id=session_id,
            agent_public_key=agent_public_key,
            agent_name=agent_name,
            agent_key_hash=agent_key_hash,
            challenge=challenge,
            challenge_expiry_ms=expiry,
            created_at_ms=now,
            signature_verified=signature_verified,
            status=SessionStatus.PENDING,
            human_id=human_id or None,
        )
        self.store.create_session(session)
        logger.info("Started verification session %s for key hash %s", session_id, agent_key_hash)

        return {
            "sessionId": session_id,
            "agentKeyHash": agent_key_hash,
            "challenge": challenge,
            "challengeExpiry": _iso_from_ms(expiry),
            "signatureRequired": not signature_verified,
            "signatureVerified": signature_verified,
            "proofRequest": build_proof_request(
                session_id=session_id,
                agent_key_hash=agent_key_hash,
                app_name=self.config.app_name,
                scope=self.config.proof_scope,
                endpoint=self.config.endpoint,
                staging=self.config.staging,
                minimum_age=self.config.minimum_age,
            ),
        }

    def sign_challenge(self, session_id: str, signature: str) -> VerificationSession:
        """Record proof of key possession for a pending session."""
        if not session_id or not signature:
            raise agentid_error(
                AGENTID_E_BAD_REQUEST,
                "sessionId and signature are required",
                hint="Signature must be an Ed25519 signature of the exact challenge string. " + KEY_FORMAT_HINT,
            )

        session = self.store.get_session(session_id)
        if session is None or session.status != SessionStatus.PENDING:
            raise agentid_error(AGENTID_E_SESSION_NOT_FOUND, "Invalid or expired session", http_status=404)

        now = _now_ms()
        if session.is_expired(now):
            self.store.mark_session_expired(session_id)
            raise agentid_error(AGENTID_E_SESSION_EXPIRED, "Challenge has expired", http_status=410)

        if not verify_ed25519_signature(session.agent_public_key, signature, session.challenge):
            raise agentid_error(
                AGENTID_E_CHALLENGE_MISMATCH,
                "Invalid signature",
                hint="Sign the exact challenge string with the private key for this session's agentPublicKey. "
                + KEY_FORMAT_HINT,
            )

        if not self.store.set_signature_verified(session_id):
            raise agentid_error(AGENTID_E_SESSION_NOT_FOUND, "Invalid or expired session", http_status=404)
        session.signature_verified = True
        return session

    def verification_status(self, session_id: str) -> Dict[str, Any]:
        session = self.store.get_session(session_id)
        if session is None:
            return {"status": "not_found", "sessionId": session_id}

        status = session.status.value
        if session.status == SessionStatus.PENDING and session.is_expired(_now_ms()):
            status = SessionStatus.EXPIRED.value

        out: Dict[str, Any] = {
            "status": status,
            "sessionId": session_id,
            "agentPublicKey": session.agent_public_key,
            "agentName": session.agent_name,
            "signatureVerified": session.signature_verified,
        }
        if session.status == SessionStatus.VERIFIED:
            identity = self.store.get_identity(session.agent_public_key)
            if identity is not None:
                out["agent"] = identity.public_view()
        return out

    def expire_stale_sessions(self) -> int:
        return self.store.expire_stale_sessions(_now_ms())

    # ---------------------------
    # Proof callback
    # ---------------------------

    def handle_proof_callback(
        self,
        attestation_id: Any,
        proof: Any,
        public_signals: Any,
        user_context_data: Any,
    ) -> CallbackResult:
        try:
            return self._handle_proof_callback(attestation_id, proof, public_signals, user_context_data)
        except Exception:
            logger.exception("Proof callback failed unexpectedly (attestation_id=%r)", attestation_id)
            return CallbackResult.error("Internal verification error")

    def _handle_proof_callback(
        self,
        attestation_id: Any,
        proof: Any,
        public_signals: Any,
        user_context_data: Any,
    ) -> CallbackResult:
        if not proof or not public_signals or not attestation_id or not user_context_data:
            logger.warning("Proof callback rejected: missing required verification data")
            return CallbackResult.error("Missing required verification data")

        try:
            result = self.verifier.verify_proof(attestation_id, proof, public_signals, user_context_data)
        except AgentIdError as e:
            logger.warning("Proof verifier error (attestation_id=%r): %s details=%s", attestation_id, e, e.details)
            return CallbackResult.error("Proof verification error: " + e.message)

        if not result.is_valid:
            logger.warning("Proof invalid (attestation_id=%r): %s", attestation_id, result.details)
            return CallbackResult.error("Proof verification failed")

        session_id = result.user_identifier
        if not session_id:
            logger.warning("Proof callback rejected: verifier returned no session identifier")
            return CallbackResult.error("Missing session ID in proof")

        session = self.store.find_pending_session(session_id, _now_ms())
        if session is None:
            self.store.mark_session_expired(session_id)
            logger.warning("Proof callback for unknown, expired or closed session %s", session_id)
            return CallbackResult.error("Invalid or expired verification session")

        try:
            bind_proof_to_session(session, result.user_defined_data)
        except AgentIdError as e:
            logger.warning("Proof binding failed for session %s: %s details=%s", session_id, e.message, e.details)
            return CallbackResult.error(e.message)

        human_id = derive_human_id(session, result.nullifier, public_signals)
        if not session.human_id and not result.nullifier:
            logger.warning(
                "No nullifier in verify result for session %s; humanId derived from public signals", session_id
            )

        verified_at = datetime.now(timezone.utc).isoformat()
        metadata = IdentityMetadata(
            verified_via=VERIFIED_VIA,
            signature_verified=bool(session.signature_verified),
            last_updated=verified_at,
            nationality=sanitize_nationality(result.nationality),
            zk_proof=ProofRecord(
                attestation_id=attestation_id,
                proof=proof,
                public_signals=public_signals,
                proof_hash=compute_proof_fingerprint(attestation_id, proof, public_signals),
                verified_at=verified_at,
            ),
        )
        identity = AgentIdentityRecord(
            public_key=session.agent_public_key,
            agent_name=session.agent_name,
            human_id=human_id,
            verification_level=(
                VERIFICATION_LEVEL_PASSPORT_SIGNATURE if session.signature_verified else VERIFICATION_LEVEL_PASSPORT
            ),
            metadata=metadata,
            verified_at=verified_at,
        )

        if not self.store.complete_verification(session_id, identity):
            logger.warning("Session %s closed while its proof was being verified", session_id)
            return CallbackResult.error("Invalid or expired verification session")

        logger.info(
            "Agent verified: session=%s key_hash=%s human=%s level=%s",
            session_id,
            session.agent_key_hash,
            _short(human_id),
            identity.verification_level,
        )
        return CallbackResult.success()
