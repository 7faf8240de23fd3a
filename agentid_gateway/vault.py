"""Custodial secret vault (AES-256-GCM, per-identity keys).

Custodial private keys are stored encrypted at rest under a key derived from
the server secret and the owning humanId:

    key = PBKDF2-HMAC-SHA512(password=server_secret, salt=humanId,
                             iterations=100_000, length=32)

Each encryption uses a fresh random 16-byte IV. Ciphertext, IV and the GCM
tag are stored hex-encoded. Decryption under any other humanId, or of
tampered bytes, fails with the same AGENTID_E_DECRYPTION_FAILED error.

Env:
- AGENTID_SERVER_SECRET (required; absence is a fatal ConfigurationError)
"""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass
from typing import Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import AGENTID_E_DECRYPTION_FAILED, AgentIdError, ConfigurationError, agentid_error

logger = logging.getLogger("agentid_gateway")

ENV_SERVER_SECRET = "AGENTID_SERVER_SECRET"

KEY_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16
PBKDF2_ITERATIONS = 100_000


@dataclass(frozen=True)
class WalletSecret:
    """An encrypted custodial secret bound to one humanId."""

    human_id: str
    ciphertext: str  # hex
    iv: str  # hex
    auth_tag: str  # hex

    def to_dict(self) -> Dict[str, str]:
        return {
            "humanId": self.human_id,
            "ciphertext": self.ciphertext,
            "iv": self.iv,
            "authTag": self.auth_tag,
        }


class SecretVault:
    """Per-identity authenticated encryption of custodial secrets."""

    def __init__(self, server_secret: Optional[str] = None):
        secret = server_secret if server_secret is not None else os.getenv(ENV_SERVER_SECRET, "")
        if not secret:
            raise ConfigurationError(
                f"{ENV_SERVER_SECRET} is required for custodial key encryption; refusing to start without it"
            )
        self._server_secret = secret.encode("utf-8")

    def derive_key(self, human_id: str) -> bytes:
        if not human_id:
            raise ValueError("human_id must be non-empty")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=KEY_LENGTH,
            salt=human_id.encode("utf-8"),
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(self._server_secret)

    def encrypt(self, plaintext: str, human_id: str) -> WalletSecret:
        key = self.derive_key(human_id)
        iv = secrets.token_bytes(IV_LENGTH)
        sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return WalletSecret(human_id=human_id, ciphertext=ciphertext.hex(), iv=iv.hex(), auth_tag=tag.hex())

    def decrypt(self, ciphertext: str, iv: str, auth_tag: str, human_id: str) -> str:
        """Decrypt or raise AGENTID_E_DECRYPTION_FAILED (never partial plaintext)."""
        try:
            ct = bytes.fromhex(ciphertext)
            iv_bytes = bytes.fromhex(iv)
            tag = bytes.fromhex(auth_tag)
            if len(iv_bytes) != IV_LENGTH or len(tag) != TAG_LENGTH:
                raise ValueError("bad iv/tag length")
            key = self.derive_key(human_id)
            plaintext = AESGCM(key).decrypt(iv_bytes, ct + tag, None)
            return plaintext.decode("utf-8")
        except (InvalidTag, ValueError, TypeError) as e:
            # UnicodeDecodeError is a ValueError; all failures look the same to callers.
            raise agentid_error(AGENTID_E_DECRYPTION_FAILED, "custodial secret could not be decrypted", http_status=403) from e

    def decrypt_secret(self, secret: WalletSecret, human_id: str) -> str:
        return self.decrypt(secret.ciphertext, secret.iv, secret.auth_tag, human_id)

    def decrypt_or_none(self, secret: Optional[WalletSecret], human_id: str) -> Optional[str]:
        """Best-effort decrypt for callers that treat a missing key as absent."""
        if secret is None or not secret.ciphertext or not secret.iv or not secret.auth_tag:
            return None
        try:
            return self.decrypt_secret(secret, human_id)
        except AgentIdError as e:
            logger.error("Custodial secret decryption failed: %s", e.code)
            return None
