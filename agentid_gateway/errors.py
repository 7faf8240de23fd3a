"""Stable error taxonomy for the agent identity gateway.

This module defines machine-readable error codes and a single exception type
used across key parsing, request authentication, verification sessions and
the custodial secret vault.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Optional `retryable` flag and `http_status` for transport layers.
- Structured `details` (hints, expected messages) so legitimate clients can
  self-correct without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Key material
AGENTID_E_INVALID_KEY_FORMAT = "AGENTID_E_INVALID_KEY_FORMAT"
AGENTID_E_INVALID_SIGNATURE_FORMAT = "AGENTID_E_INVALID_SIGNATURE_FORMAT"
AGENTID_E_INVALID_SIGNATURE = "AGENTID_E_INVALID_SIGNATURE"

# Signed requests
AGENTID_E_MISSING_CREDENTIALS = "AGENTID_E_MISSING_CREDENTIALS"
AGENTID_E_STALE_REQUEST = "AGENTID_E_STALE_REQUEST"
AGENTID_E_INVALID_NONCE = "AGENTID_E_INVALID_NONCE"
AGENTID_E_REPLAYED_REQUEST = "AGENTID_E_REPLAYED_REQUEST"
AGENTID_E_NONCE_LEDGER_FULL = "AGENTID_E_NONCE_LEDGER_FULL"
AGENTID_E_UNKNOWN_AGENT = "AGENTID_E_UNKNOWN_AGENT"
AGENTID_E_UNVERIFIED_AGENT = "AGENTID_E_UNVERIFIED_AGENT"

# Verification sessions / proof binding
AGENTID_E_SESSION_NOT_FOUND = "AGENTID_E_SESSION_NOT_FOUND"
AGENTID_E_SESSION_EXPIRED = "AGENTID_E_SESSION_EXPIRED"
AGENTID_E_CHALLENGE_MISMATCH = "AGENTID_E_CHALLENGE_MISMATCH"
AGENTID_E_KEY_BINDING_MISMATCH = "AGENTID_E_KEY_BINDING_MISMATCH"
AGENTID_E_PROOF_INVALID = "AGENTID_E_PROOF_INVALID"
AGENTID_E_PROOF_VERIFIER_ERROR = "AGENTID_E_PROOF_VERIFIER_ERROR"
AGENTID_E_NAME_TAKEN = "AGENTID_E_NAME_TAKEN"
AGENTID_E_PROOF_NOT_FOUND = "AGENTID_E_PROOF_NOT_FOUND"

# Vault
AGENTID_E_DECRYPTION_FAILED = "AGENTID_E_DECRYPTION_FAILED"

# Generic
AGENTID_E_BAD_REQUEST = "AGENTID_E_BAD_REQUEST"


KEY_FORMAT_HINT = (
    "Public key as base64 (raw 32-byte or SPKI DER MCowBQYDK2VwAyEA...) or hex "
    "(64 chars, with or without 0x prefix). Signature as hex (128 chars, with or "
    "without 0x prefix) or base64 (88 chars)."
)

SIGNED_REQUEST_HINT = (
    "Sign the exact compact JSON string {\"agentPublicKey\":...,\"timestamp\":...,"
    "\"nonce\":...} (fields in that order) with your Ed25519 private key. "
    "nonce must be a unique random string (8-64 chars) per request. timestamp "
    "must be milliseconds since the epoch, within 5 minutes of server time. "
    + KEY_FORMAT_HINT
)


@dataclass
class AgentIdError(Exception):
    """Base gateway exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ConfigurationError(RuntimeError):
    """Raised when required server configuration is absent (fatal)."""


def agentid_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> AgentIdError:
    return AgentIdError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)
