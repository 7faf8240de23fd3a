"""Challenge construction for agent verification sessions.

The challenge is a compact JSON string, serialized once and stored verbatim;
it is the exact message the agent's Ed25519 key must sign. Field order is
fixed: domain, action, sessionId, agentKeyHash, timestamp, nonce, expiresAt.

The domain tag is fixed per deployment: it comes from GatewayConfig.domain
(AGENTID_DOMAIN, read once at startup) and never from request input, so every
challenge a gateway issues names the same domain.
"""

from __future__ import annotations

import hashlib
import json
import secrets
import time
from typing import Any, Dict, Optional, Tuple

CHALLENGE_ACTION = "verify-agent"
CHALLENGE_TTL_MS = 10 * 60 * 1000

AGENT_KEY_HASH_LENGTH = 16
USER_DEFINED_DATA_LENGTH = 128


def _now_ms() -> int:
    return int(time.time() * 1000)


def compute_agent_key_hash(agent_public_key: str) -> str:
    """First 16 hex chars of sha256 over the public key string as submitted."""
    return hashlib.sha256(agent_public_key.encode("utf-8")).hexdigest()[:AGENT_KEY_HASH_LENGTH]


def generate_challenge(session_id: str, agent_key_hash: str, *, domain: str, now_ms: Optional[int] = None) -> Tuple[str, int]:
    """Build the challenge string. Returns (challenge, expires_at_ms)."""
    timestamp = _now_ms() if now_ms is None else int(now_ms)
    expires_at = timestamp + CHALLENGE_TTL_MS
    payload = {
        "domain": domain,
        "action": CHALLENGE_ACTION,
        "sessionId": session_id,
        "agentKeyHash": agent_key_hash,
        "timestamp": timestamp,
        "nonce": secrets.token_hex(16),
        "expiresAt": expires_at,
    }
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False), expires_at


def pad_user_defined_data(agent_key_hash: str) -> str:
    """Right-pad the key hash with '0' to the fixed 128-char user-data length."""
    return agent_key_hash.ljust(USER_DEFINED_DATA_LENGTH, "0")[:USER_DEFINED_DATA_LENGTH]


def build_proof_request(
    *,
    session_id: str,
    agent_key_hash: str,
    app_name: str,
    scope: str,
    endpoint: str,
    staging: bool,
    minimum_age: int = 18,
) -> Dict[str, Any]:
    """Proof-request descriptor handed to the external ZK app.

    userDefinedData is the only channel that ties the eventual proof back to
    this agent key; userId carries the session id.
    """
    return {
        "version": 2,
        "appName": app_name,
        "scope": scope,
        "endpoint": endpoint,
        "endpointType": "staging_https" if staging else "https",
        "userId": session_id,
        "userIdType": "uuid",
        "userDefinedData": pad_user_defined_data(agent_key_hash),
        "disclosures": {
            "minimumAge": int(minimum_age),
            "excludedCountries": [],
            "ofac": False,
        },
    }
