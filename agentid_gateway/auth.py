"""Signed-request authentication for verified agents.

Every authenticated call carries {agentPublicKey, signature, timestamp, nonce}.
The signature covers the compact JSON serialization of

    {"agentPublicKey": ..., "timestamp": ..., "nonce": ...}

in exactly that field order, with timestamp as a JSON number (milliseconds).

Checks run cheapest-first: presence, freshness, nonce shape, replay
deny-fast, signature, then the authoritative nonce consumption and finally
the identity lookup. The nonce is consumed before success is returned so a
signed request can be accepted at most once.
"""

from __future__ import annotations

import json
import logging
import math
import time
from typing import Any, Optional, Union

from .errors import (
    AGENTID_E_INVALID_NONCE,
    AGENTID_E_INVALID_SIGNATURE,
    AGENTID_E_MISSING_CREDENTIALS,
    AGENTID_E_NONCE_LEDGER_FULL,
    AGENTID_E_REPLAYED_REQUEST,
    AGENTID_E_STALE_REQUEST,
    AGENTID_E_UNKNOWN_AGENT,
    AGENTID_E_UNVERIFIED_AGENT,
    SIGNED_REQUEST_HINT,
    agentid_error,
)
from .keys import verify_ed25519_signature
from .models import AuthenticatedAgent
from .nonce_ledger import NonceLedger
from .store import IdentityStore

logger = logging.getLogger("agentid_gateway")

MAX_CLOCK_SKEW_MS = 5 * 60 * 1000
NONCE_MIN_LENGTH = 8
NONCE_MAX_LENGTH = 64


def _now_ms() -> int:
    return int(time.time() * 1000)


def _coerce_timestamp(value: Any) -> Optional[Union[int, float]]:
    """Numeric value of a timestamp field, or None when it is not a number.

    Numeric strings are accepted; integral values come back as int so they
    serialize without a fractional part.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        num: Union[int, float] = value
    elif isinstance(value, str):
        try:
            num = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if isinstance(num, float):
        if not math.isfinite(num):
            return None
        if num.is_integer():
            return int(num)
    return num


def canonical_request_message(agent_public_key: str, timestamp: Any, nonce: str) -> str:
    """The exact string a client signs for a signed request."""
    ts = _coerce_timestamp(timestamp)
    return json.dumps(
        {"agentPublicKey": agent_public_key, "timestamp": ts, "nonce": nonce},
        separators=(",", ":"),
        ensure_ascii=False,
    )


class RequestAuthenticator:
    """Validates signed requests against the nonce ledger and identity store."""

    def __init__(self, store: IdentityStore, ledger: NonceLedger, max_skew_ms: int = MAX_CLOCK_SKEW_MS):
        self.store = store
        self.ledger = ledger
        self.max_skew_ms = int(max_skew_ms)

    def authenticate(
        self,
        agent_public_key: Optional[str],
        signature: Optional[str],
        timestamp: Any,
        nonce: Optional[str],
    ) -> AuthenticatedAgent:
        if not agent_public_key or not signature or timestamp in (None, "") or not nonce:
            raise agentid_error(
                AGENTID_E_MISSING_CREDENTIALS,
                "Missing authentication fields",
                http_status=401,
                required=["agentPublicKey", "signature", "timestamp", "nonce"],
                hint=SIGNED_REQUEST_HINT,
            )
        if not isinstance(agent_public_key, str) or not isinstance(signature, str) or not isinstance(nonce, str):
            raise agentid_error(
                AGENTID_E_MISSING_CREDENTIALS,
                "agentPublicKey, signature and nonce must be strings",
                http_status=401,
                hint=SIGNED_REQUEST_HINT,
            )

        ts = _coerce_timestamp(timestamp)
        now = _now_ms()
        if ts is None or abs(now - ts) > self.max_skew_ms:
            raise agentid_error(
                AGENTID_E_STALE_REQUEST,
                "Request timestamp is too old or too far in the future",
                http_status=401,
                server_time=now,
                max_skew_ms=self.max_skew_ms,
            )

        if len(nonce) < NONCE_MIN_LENGTH or len(nonce) > NONCE_MAX_LENGTH:
            raise agentid_error(
                AGENTID_E_INVALID_NONCE,
                f"Nonce must be {NONCE_MIN_LENGTH}-{NONCE_MAX_LENGTH} characters",
                http_status=401,
            )

        if self.ledger.seen(agent_public_key, nonce):
            raise agentid_error(AGENTID_E_REPLAYED_REQUEST, "Nonce already used", http_status=401)

        message = canonical_request_message(agent_public_key, ts, nonce)
        if not verify_ed25519_signature(agent_public_key, signature, message):
            raise agentid_error(
                AGENTID_E_INVALID_SIGNATURE,
                "Invalid signature",
                http_status=401,
                signed_message=message,
                hint=SIGNED_REQUEST_HINT,
            )

        ok, reason = self.ledger.check_and_record(agent_public_key, nonce, request_timestamp_ms=int(ts))
        if not ok:
            if reason == "LEDGER_FULL":
                logger.error("Nonce ledger at capacity (%d entries); refusing signed request", len(self.ledger))
                raise agentid_error(
                    AGENTID_E_NONCE_LEDGER_FULL,
                    "Server is busy, retry shortly",
                    retryable=True,
                    http_status=503,
                )
            raise agentid_error(AGENTID_E_REPLAYED_REQUEST, "Nonce already used", http_status=401)

        identity = self.store.get_identity(agent_public_key)
        if identity is None:
            raise agentid_error(
                AGENTID_E_UNKNOWN_AGENT,
                "Agent not found",
                http_status=403,
                **self._pending_hint(agent_public_key),
            )
        if not identity.human_id:
            raise agentid_error(
                AGENTID_E_UNVERIFIED_AGENT,
                "Agent has not completed verification",
                http_status=403,
                **self._pending_hint(agent_public_key),
            )

        return AuthenticatedAgent(public_key=agent_public_key, human_id=identity.human_id, identity=identity)

    def _pending_hint(self, agent_public_key: str) -> dict:
        session = self.store.find_pending_session_for_key(agent_public_key, _now_ms())
        if session is None:
            return {"hint": "Start verification at POST /v1/verify/start"}
        return {
            "pending_session_id": session.session_id,
            "hint": "A verification session is pending for this key; complete the passport proof to finish",
        }
