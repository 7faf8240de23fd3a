"""Data model for agent verification and identity records."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class SessionStatus(str, Enum):
    """Verification session lifecycle.

    Transitions are PENDING -> VERIFIED or PENDING -> EXPIRED only; both
    VERIFIED and EXPIRED are terminal.
    """

    PENDING = "pending"
    VERIFIED = "verified"
    EXPIRED = "expired"


VERIFICATION_LEVEL_PASSPORT = "passport"
VERIFICATION_LEVEL_PASSPORT_SIGNATURE = "passport+signature"


@dataclass
class VerificationSession:
    session_id: str
    agent_public_key: str
    agent_key_hash: str
    challenge: str
    challenge_expiry_ms: int
    created_at_ms: int
    agent_name: Optional[str] = None
    signature_verified: bool = False
    status: SessionStatus = SessionStatus.PENDING
    human_id: Optional[str] = None

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.challenge_expiry_ms

    def is_open(self, now_ms: int) -> bool:
        """Pending and not past its challenge expiry."""
        return self.status == SessionStatus.PENDING and not self.is_expired(now_ms)


@dataclass(frozen=True)
class ProofRecord:
    """The stored ZK proof, kept for independent re-verification."""

    attestation_id: Any
    proof: Any
    public_signals: Any
    proof_hash: str
    verified_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attestationId": self.attestation_id,
            "proof": self.proof,
            "publicSignals": self.public_signals,
            "proofHash": self.proof_hash,
            "verifiedAt": self.verified_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProofRecord":
        if not isinstance(data, dict):
            raise ValueError("zkProof must be an object")
        proof_hash = data.get("proofHash")
        if not isinstance(proof_hash, str) or len(proof_hash) != 64:
            raise ValueError("zkProof.proofHash must be a sha256 hex digest")
        return cls(
            attestation_id=data.get("attestationId"),
            proof=data.get("proof"),
            public_signals=data.get("publicSignals"),
            proof_hash=proof_hash,
            verified_at=str(data.get("verifiedAt") or ""),
        )


@dataclass(frozen=True)
class IdentityMetadata:
    """Metadata attached to an agent identity by a successful proof binding.

    Serialized with a `schema` tag; unknown keys are dropped when loading so
    the stored blob can never grow into an open dictionary.
    """

    SCHEMA = "agent-identity-metadata/v1"

    verified_via: str
    signature_verified: bool
    last_updated: str
    nationality: Optional[str] = None
    zk_proof: Optional[ProofRecord] = None

    def to_dict(self, include_proof: bool = True) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "schema": self.SCHEMA,
            "verifiedVia": self.verified_via,
            "signatureVerified": bool(self.signature_verified),
            "lastUpdated": self.last_updated,
            "nationality": self.nationality,
        }
        if include_proof and self.zk_proof is not None:
            d["zkProof"] = self.zk_proof.to_dict()
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IdentityMetadata":
        if not isinstance(data, dict):
            raise ValueError("metadata must be an object")
        schema = data.get("schema")
        if schema != cls.SCHEMA:
            raise ValueError(f"unsupported metadata schema: {schema!r}")
        nationality = data.get("nationality")
        zk = data.get("zkProof")
        return cls(
            verified_via=str(data.get("verifiedVia") or ""),
            signature_verified=bool(data.get("signatureVerified")),
            last_updated=str(data.get("lastUpdated") or ""),
            nationality=str(nationality) if nationality is not None else None,
            zk_proof=ProofRecord.from_dict(zk) if zk is not None else None,
        )


@dataclass
class AgentIdentityRecord:
    public_key: str
    human_id: Optional[str]
    verification_level: str
    metadata: Optional[IdentityMetadata] = None
    agent_name: Optional[str] = None
    verified_at: Optional[str] = None

    def public_view(self) -> Dict[str, Any]:
        """Identity as shown to third parties: no raw proof material."""
        meta = self.metadata
        return {
            "verified": bool(self.human_id),
            "publicKey": self.public_key,
            "agentName": self.agent_name,
            "humanId": self.human_id,
            "verificationLevel": self.verification_level,
            "verifiedAt": self.verified_at,
            "proof": {
                "available": bool(meta and meta.zk_proof),
                "hash": meta.zk_proof.proof_hash if meta and meta.zk_proof else None,
            },
            "metadata": meta.to_dict(include_proof=False) if meta else None,
        }


@dataclass(frozen=True)
class AuthenticatedAgent:
    """Result of a successful signed-request authentication."""

    public_key: str
    human_id: str
    identity: AgentIdentityRecord


@dataclass(frozen=True)
class CallbackResult:
    """Proof-callback response body (always delivered with HTTP 200)."""

    status: str
    result: bool
    reason: Optional[str] = None

    @classmethod
    def success(cls) -> "CallbackResult":
        return cls(status="success", result=True)

    @classmethod
    def error(cls, reason: str) -> "CallbackResult":
        return cls(status="error", result=False, reason=reason)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"status": self.status, "result": self.result}
        if self.reason is not None:
            d["reason"] = self.reason
        return d


@dataclass
class NameCheck:
    available: bool
    suggestions: List[str] = field(default_factory=list)
