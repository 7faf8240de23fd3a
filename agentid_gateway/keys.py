"""
Agent key material: tolerant decoding and Ed25519 verification.

Agents submit public keys and signatures in whatever encoding their tooling
produced. The decoders below normalize them into raw bytes using a fixed,
order-dependent acceptance heuristic. Client integrations depend on this
order, so it must not be relaxed or reordered.

Public key acceptance order:
  (a) 64 hex chars, with or without 0x prefix          -> hex decode
  (b) base64 decoding to exactly 32 bytes              -> raw key
  (c) base64 decoding to exactly 44 bytes, 0x30 0x2A   -> strip 12-byte SPKI prefix
  (d) anything else                                    -> raw base64 bytes, unvalidated

Signature acceptance order:
  (a) entirely hex (odd length left-padded with one 0) -> accept if 64 bytes
  (b) base64                                           -> accept if 64 bytes
  (c) raw hex decode attempt, for the caller to length-check

This is NOT an ASN.1 parser. Lengths are enforced once, at verification time.
"""

from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from .errors import (
    AGENTID_E_INVALID_KEY_FORMAT,
    AGENTID_E_INVALID_SIGNATURE_FORMAT,
    KEY_FORMAT_HINT,
    agentid_error,
)

logger = logging.getLogger("agentid_gateway")

PUBLIC_KEY_LENGTH = 32
SIGNATURE_LENGTH = 64

# DER SubjectPublicKeyInfo header for id-Ed25519 (1.3.101.112) with a 32-byte key.
SPKI_ED25519_PREFIX = bytes.fromhex("302a300506032b6570032100")
_SPKI_TOTAL_LENGTH = len(SPKI_ED25519_PREFIX) + PUBLIC_KEY_LENGTH

_HEX64_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
_B64_ALPHABET_RE = re.compile(r"[^A-Za-z0-9+/]")


def _strip_0x(s: str) -> str:
    if s.startswith("0x") or s.startswith("0X"):
        return s[2:]
    return s


def _lenient_b64decode(s: str) -> bytes:
    """Decode base64 the forgiving way (url-safe chars, missing padding, junk ignored)."""
    cleaned = _B64_ALPHABET_RE.sub("", s.replace("-", "+").replace("_", "/"))
    if len(cleaned) % 4 == 1:
        # A single dangling sextet carries no full byte.
        cleaned = cleaned[:-1]
    cleaned += "=" * (-len(cleaned) % 4)
    return base64.b64decode(cleaned)


def _lenient_hexdecode(s: str) -> bytes:
    """Decode the longest valid prefix of hex pairs."""
    out = bytearray()
    for i in range(0, len(s) - 1, 2):
        pair = s[i:i + 2]
        if not _HEX_RE.match(pair):
            break
        out.append(int(pair, 16))
    return bytes(out)


def parse_public_key(public_key_input: str) -> bytes:
    """Normalize an agent public key into raw bytes.

    Returns 32 bytes for every recognized encoding. For unrecognized input the
    raw base64-decoded bytes are returned unvalidated; callers must length-check
    (see require_public_key).
    """
    if not isinstance(public_key_input, str) or not public_key_input.strip():
        raise agentid_error(AGENTID_E_INVALID_KEY_FORMAT, "public key must be a non-empty string", hint=KEY_FORMAT_HINT)
    raw = public_key_input.strip()

    unprefixed = _strip_0x(raw)
    if unprefixed != raw and _HEX64_RE.match(unprefixed):
        return bytes.fromhex(unprefixed)
    if _HEX64_RE.match(raw):
        return bytes.fromhex(raw)

    decoded = _lenient_b64decode(raw)
    if len(decoded) == PUBLIC_KEY_LENGTH:
        return decoded
    if len(decoded) == _SPKI_TOTAL_LENGTH and decoded[0] == 0x30 and decoded[1] == 0x2A:
        return decoded[len(SPKI_ED25519_PREFIX):]
    return decoded


def parse_signature(signature_input: str) -> bytes:
    """Normalize an Ed25519 signature into raw bytes (caller length-checks)."""
    if not isinstance(signature_input, str) or not signature_input.strip():
        raise agentid_error(AGENTID_E_INVALID_SIGNATURE_FORMAT, "signature must be a non-empty string", hint=KEY_FORMAT_HINT)
    sig = _strip_0x(signature_input.strip())

    if _HEX_RE.match(sig):
        padded = "0" + sig if len(sig) % 2 == 1 else sig
        decoded = bytes.fromhex(padded)
        if len(decoded) == SIGNATURE_LENGTH:
            return decoded

    decoded = _lenient_b64decode(sig)
    if len(decoded) == SIGNATURE_LENGTH:
        return decoded

    return _lenient_hexdecode(sig)


def require_public_key(public_key_input: str) -> bytes:
    """Parse a public key and insist on exactly 32 bytes."""
    key = parse_public_key(public_key_input)
    if len(key) != PUBLIC_KEY_LENGTH:
        raise agentid_error(
            AGENTID_E_INVALID_KEY_FORMAT,
            f"public key must decode to {PUBLIC_KEY_LENGTH} bytes, got {len(key)}",
            hint=KEY_FORMAT_HINT,
        )
    return key


def require_signature(signature_input: str) -> bytes:
    """Parse a signature and insist on exactly 64 bytes."""
    sig = parse_signature(signature_input)
    if len(sig) != SIGNATURE_LENGTH:
        raise agentid_error(
            AGENTID_E_INVALID_SIGNATURE_FORMAT,
            f"signature must decode to {SIGNATURE_LENGTH} bytes, got {len(sig)}",
            hint=KEY_FORMAT_HINT,
        )
    return sig


def verify_ed25519_signature(public_key_input: str, signature_input: str, message: Union[str, bytes]) -> bool:
    """Verify an Ed25519 signature over `message` (UTF-8 if str).

    Raises AgentIdError for key/signature material that does not decode to the
    exact expected length. Returns False for a well-formed but wrong signature.
    """
    key_bytes = require_public_key(public_key_input)
    sig_bytes = require_signature(signature_input)
    msg = message.encode("utf-8") if isinstance(message, str) else bytes(message)
    try:
        Ed25519PublicKey.from_public_bytes(key_bytes).verify(sig_bytes, msg)
        return True
    except InvalidSignature:
        return False
    except ValueError as e:
        logger.debug("Ed25519 verification rejected key material: %s", e)
        return False


@dataclass
class Ed25519KeyPair:
    """Ed25519 key pair used by agent-side tooling and tests.

    The gateway itself only ever holds agent PUBLIC keys.
    """
    public_key_bytes: bytes
    private_key_bytes: Optional[bytes] = None

    @classmethod
    def generate(cls) -> "Ed25519KeyPair":
        private_key = Ed25519PrivateKey.generate()
        return cls._from_private(private_key)

    @classmethod
    def from_seed(cls, seed: bytes) -> "Ed25519KeyPair":
        """Create a key pair from a 32-byte seed."""
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        return cls._from_private(Ed25519PrivateKey.from_private_bytes(seed))

    @classmethod
    def _from_private(cls, private_key: Ed25519PrivateKey) -> "Ed25519KeyPair":
        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return cls(public_key_bytes=public_bytes, private_key_bytes=private_bytes)

    @property
    def public_key_hex(self) -> str:
        return self.public_key_bytes.hex()

    @property
    def public_key_b64(self) -> str:
        return base64.b64encode(self.public_key_bytes).decode("ascii")

    @property
    def public_key_spki_b64(self) -> str:
        return base64.b64encode(SPKI_ED25519_PREFIX + self.public_key_bytes).decode("ascii")

    def public_key_as(self, fmt: str) -> str:
        """Render the public key as 'hex', 'base64' or 'spki'."""
        f = (fmt or "spki").strip().lower()
        if f == "hex":
            return self.public_key_hex
        if f in ("base64", "b64", "raw"):
            return self.public_key_b64
        if f in ("spki", "der"):
            return self.public_key_spki_b64
        raise ValueError(f"Unknown public key format: {fmt!r} (expected hex, base64 or spki)")

    def can_sign(self) -> bool:
        return self.private_key_bytes is not None

    def sign(self, message: Union[str, bytes]) -> bytes:
        if not self.can_sign():
            raise ValueError("Cannot sign: no private key available")
        msg = message.encode("utf-8") if isinstance(message, str) else bytes(message)
        return Ed25519PrivateKey.from_private_bytes(self.private_key_bytes).sign(msg)

    def verify(self, message: Union[str, bytes], signature: bytes) -> bool:
        return verify_ed25519_signature(self.public_key_hex, signature.hex(), message)
