"""Binding of externally produced proofs to verification sessions.

The ZK verifier returns the user-defined data the agent's session embedded,
hex-encoded as ASCII (two hex chars per original character). The first 16
characters of that data are the session's agentKeyHash. A proof is only bound
to a session when the decoded hash equals the stored one, which keeps a proof
made for one human from being attached to an unrelated agent key.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Optional

from .challenge import AGENT_KEY_HASH_LENGTH
from .errors import AGENTID_E_KEY_BINDING_MISMATCH, agentid_error
from .models import VerificationSession

HUMAN_ID_LENGTH = 16


def _json_compact(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def decode_user_defined_data(hex_data: Optional[str]) -> str:
    """Decode the leading key-hash characters from hex-encoded ASCII user data.

    Only the first 32 hex characters are read. Pairs that are not valid hex,
    and NUL bytes, contribute nothing.
    """
    if not hex_data:
        return ""
    portion = str(hex_data)[: AGENT_KEY_HASH_LENGTH * 2]
    chars = []
    for i in range(0, len(portion), 2):
        pair = portion[i:i + 2]
        try:
            code = int(pair, 16)
        except ValueError:
            continue
        if code > 0:
            chars.append(chr(code))
    return "".join(chars)


def bind_proof_to_session(session: VerificationSession, user_defined_data: Optional[str]) -> str:
    """Check that the proof's embedded key hash matches the session.

    Returns the decoded key hash; raises AGENTID_E_KEY_BINDING_MISMATCH otherwise.
    """
    decoded = decode_user_defined_data(user_defined_data)
    if not decoded:
        raise agentid_error(AGENTID_E_KEY_BINDING_MISMATCH, "Agent key binding required", session_id=session.session_id)
    # agentKeyHash is public and derived; plain comparison (see DESIGN.md open questions).
    if decoded != session.agent_key_hash:
        raise agentid_error(
            AGENTID_E_KEY_BINDING_MISMATCH,
            "Agent key binding mismatch",
            session_id=session.session_id,
            proof_key_hash=decoded,
            session_key_hash=session.agent_key_hash,
        )
    return decoded


def derive_human_id(session: VerificationSession, nullifier: Optional[str], public_signals: Any) -> str:
    """Resolve the humanId for a bound proof.

    Precedence: the session's pre-set humanId, then sha256(nullifier), then
    sha256 over the full public signals. The last fallback does not guarantee
    one humanId per person across repeated verifications.
    """
    if session.human_id:
        return session.human_id
    if nullifier:
        return hashlib.sha256(str(nullifier).encode("utf-8")).hexdigest()[:HUMAN_ID_LENGTH]
    return hashlib.sha256(_json_compact(public_signals).encode("utf-8")).hexdigest()[:HUMAN_ID_LENGTH]


def compute_proof_fingerprint(attestation_id: Any, proof: Any, public_signals: Any) -> str:
    """Server-side sha256 over attestationId, proof and publicSignals."""
    material = f"{attestation_id}:{_json_compact(proof)}:{_json_compact(public_signals)}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def sanitize_nationality(nationality: Optional[str]) -> Optional[str]:
    if not nationality:
        return None
    cleaned = str(nationality).replace("\x00", "").strip()
    return cleaned or None
