"""agentid_gateway.verifier

Zero-knowledge proof verifier client interface.

The gateway never checks passport proofs itself. Validity is delegated to an
external verifier (e.g. a sidecar wrapping the proof system's backend SDK)
behind a minimal interface:

    verify_proof(attestation_id, proof, public_signals, user_context_data)
        -> VerificationResult

The HTTP adapter POSTs the four callback fields as JSON:

    {"attestationId": ..., "proof": ..., "publicSignals": ..., "userContextData": ...}

and accepts either a flat response

    {"isValid": true, "userIdentifier": "...", "userDefinedData": "...",
     "nullifier": "...", "nationality": "..."}

or the SDK-shaped response

    {"isValidDetails": {"isValid": true, ...},
     "userData": {"userIdentifier": "...", "userDefinedData": "..."},
     "discloseOutput": {"nullifier": "...", "nationality": "..."}}

Fail-closed behavior:
    Timeouts, network failures, non-2xx responses and unparseable bodies all
    raise AGENTID_E_PROOF_VERIFIER_ERROR. Nothing is retried.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from .errors import AGENTID_E_PROOF_VERIFIER_ERROR, agentid_error

logger = logging.getLogger("agentid_gateway")


@dataclass(frozen=True)
class VerificationResult:
    is_valid: bool
    user_identifier: Optional[str] = None
    user_defined_data: str = ""
    nullifier: Optional[str] = None
    nationality: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, decoded: Any) -> "VerificationResult":
        if not isinstance(decoded, dict):
            raise agentid_error(AGENTID_E_PROOF_VERIFIER_ERROR, "verifier returned a non-object body")

        details = decoded.get("isValidDetails")
        if isinstance(details, dict):
            is_valid = details.get("isValid")
        else:
            details = {}
            is_valid = decoded.get("isValid")
        if not isinstance(is_valid, bool):
            raise agentid_error(AGENTID_E_PROOF_VERIFIER_ERROR, "verifier response missing boolean isValid")

        user_data = decoded.get("userData") if isinstance(decoded.get("userData"), dict) else decoded
        disclose = decoded.get("discloseOutput") if isinstance(decoded.get("discloseOutput"), dict) else decoded

        def _opt_str(v: Any) -> Optional[str]:
            if v is None or v == "":
                return None
            return str(v)

        return cls(
            is_valid=is_valid,
            user_identifier=_opt_str(user_data.get("userIdentifier")),
            user_defined_data=str(user_data.get("userDefinedData") or ""),
            nullifier=_opt_str(disclose.get("nullifier")),
            nationality=_opt_str(disclose.get("nationality")),
            details=dict(details),
        )


class ProofVerifier(Protocol):
    """A minimal ZK verifier interface. Raises AgentIdError on malformed input."""

    def verify_proof(
        self,
        attestation_id: Any,
        proof: Any,
        public_signals: Any,
        user_context_data: Any,
    ) -> VerificationResult:
        ...


@dataclass
class HttpProofVerifier:
    """HTTP-based ZK verifier client."""

    url: str
    timeout_seconds: float = 10.0

    def verify_proof(
        self,
        attestation_id: Any,
        proof: Any,
        public_signals: Any,
        user_context_data: Any,
    ) -> VerificationResult:
        body = json.dumps({
            "attestationId": attestation_id,
            "proof": proof,
            "publicSignals": public_signals,
            "userContextData": user_context_data,
        }).encode("utf-8")
        req = urllib.request.Request(
            self.url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )

        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                resp_bytes = resp.read()
        except urllib.error.HTTPError as e:
            raise agentid_error(
                AGENTID_E_PROOF_VERIFIER_ERROR,
                f"verifier rejected request: HTTP {getattr(e, 'code', '???')}",
                upstream_status=getattr(e, "code", None),
            ) from e
        except (socket.timeout, TimeoutError) as e:
            raise agentid_error(AGENTID_E_PROOF_VERIFIER_ERROR, "verifier timed out", retryable=True) from e
        except (urllib.error.URLError, OSError) as e:
            raise agentid_error(
                AGENTID_E_PROOF_VERIFIER_ERROR,
                f"verifier unreachable: {type(e).__name__}: {e}",
                retryable=True,
            ) from e

        try:
            decoded = json.loads(resp_bytes.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise agentid_error(AGENTID_E_PROOF_VERIFIER_ERROR, "verifier returned invalid JSON") from e
        return VerificationResult.from_response(decoded)


@dataclass
class UnconfiguredProofVerifier:
    """Verifier used when no endpoint is configured: rejects every proof."""

    def verify_proof(
        self,
        attestation_id: Any,
        proof: Any,
        public_signals: Any,
        user_context_data: Any,
    ) -> VerificationResult:
        raise agentid_error(AGENTID_E_PROOF_VERIFIER_ERROR, "no proof verifier configured (AGENTID_VERIFIER_URL)")


def build_verifier_from_env() -> ProofVerifier:
    """Build the verifier client from env vars.

    Env:
      AGENTID_VERIFIER_URL: verifier endpoint; if unset every proof is rejected
      AGENTID_VERIFIER_TIMEOUT_SECONDS: optional, float (default 10)
    """
    url = os.getenv("AGENTID_VERIFIER_URL", "").strip()
    if not url:
        logger.warning("AGENTID_VERIFIER_URL not set; all proof callbacks will be rejected")
        return UnconfiguredProofVerifier()
    timeout_s = float(os.getenv("AGENTID_VERIFIER_TIMEOUT_SECONDS", "10") or "10")
    return HttpProofVerifier(url=url, timeout_seconds=max(0.1, timeout_s))
