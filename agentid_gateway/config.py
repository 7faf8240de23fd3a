"""Gateway configuration loaded from environment variables.

Environment variables:
- AGENTID_DB_PATH: sqlite database path (default: agentid_gateway.db)
- AGENTID_DOMAIN: fixed domain tag embedded in every challenge (default: localhost)
- AGENTID_APP_NAME: display name in proof requests (default: Agent Identity)
- AGENTID_PROOF_SCOPE: proof scope (default: agent-verify)
- AGENTID_CALLBACK_URL: public proof callback URL (default: https://<domain>/v1/callback)
- AGENTID_STAGING: '1' selects the staging proof endpoint type
- AGENTID_MINIMUM_AGE: disclosure requirement (default: 18)
- AGENTID_SESSION_SWEEP_SECONDS: session-expiry sweep interval (default: 300)
- AGENTID_MAX_REQUEST_BYTES: request body cap (default: 1048576)

Secrets (AGENTID_SERVER_SECRET) and nonce/verifier settings are read by the
components that own them; see vault.py, nonce_ledger.py and verifier.py.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class GatewayConfig:
    db_path: str = "agentid_gateway.db"
    domain: str = "localhost"
    app_name: str = "Agent Identity"
    proof_scope: str = "agent-verify"
    callback_url: str = ""
    staging: bool = False
    minimum_age: int = 18
    session_sweep_seconds: int = 300
    max_request_bytes: int = 1048576

    @property
    def endpoint(self) -> str:
        return self.callback_url or f"https://{self.domain}/v1/callback"

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        def _get_int(name: str, default: int) -> int:
            try:
                return int(os.getenv(name, str(default)).strip())
            except ValueError:
                return default

        sweep = _get_int("AGENTID_SESSION_SWEEP_SECONDS", cls.session_sweep_seconds)
        max_bytes = _get_int("AGENTID_MAX_REQUEST_BYTES", cls.max_request_bytes)
        min_age = _get_int("AGENTID_MINIMUM_AGE", cls.minimum_age)

        # Clamp
        sweep = max(5, min(sweep, 24 * 3600))
        if max_bytes < 1024:
            max_bytes = 1024
        if min_age < 0:
            min_age = cls.minimum_age

        return cls(
            db_path=os.getenv("AGENTID_DB_PATH", cls.db_path).strip() or cls.db_path,
            domain=os.getenv("AGENTID_DOMAIN", cls.domain).strip() or cls.domain,
            app_name=os.getenv("AGENTID_APP_NAME", cls.app_name).strip() or cls.app_name,
            proof_scope=os.getenv("AGENTID_PROOF_SCOPE", cls.proof_scope).strip() or cls.proof_scope,
            callback_url=os.getenv("AGENTID_CALLBACK_URL", "").strip(),
            staging=_env_bool("AGENTID_STAGING", False),
            minimum_age=min_age,
            session_sweep_seconds=sweep,
            max_request_bytes=max_bytes,
        )
