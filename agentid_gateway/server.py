"""
Agent Identity Gateway Server

FastAPI surface for agent verification and signed-request authentication.

Security Properties:
- An agent key is bound to a human only through a ZK passport proof whose
  embedded user data matches the session's agent key hash
- Signed requests are fresh (5 minute window) and single-use (nonce ledger)
- The proof callback always answers HTTP 200 so upstream submitters never
  enter retry storms on rejection
- Custodial keys are encrypted at rest per humanId and revealed only to the
  verified agent that owns them
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional, Union

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .auth import RequestAuthenticator
from .challenge import build_proof_request
from .config import GatewayConfig
from .errors import (
    AGENTID_E_BAD_REQUEST,
    AGENTID_E_PROOF_NOT_FOUND,
    AGENTID_E_UNKNOWN_AGENT,
    AgentIdError,
    agentid_error,
)
from .metrics import (
    instrument_fastapi,
    record_auth,
    record_proof_callback,
    record_sweep,
    record_verification_started,
    set_nonce_ledger_size,
)
from .models import AgentIdentityRecord, AuthenticatedAgent, CallbackResult
from .nonce_ledger import NonceLedger
from .sessions import VerificationService
from .store import IdentityStore
from .sweeper import PeriodicSweeper
from .vault import SecretVault
from .verifier import ProofVerifier, build_verifier_from_env

logger = logging.getLogger("agentid_gateway")


# ---------------------------
# Request Models
# ---------------------------

class SignedRequest(BaseModel):
    """Fields every signed request carries. All optional so absence maps to MissingCredentials."""
    agent_public_key: Optional[str] = Field(default=None, alias="agentPublicKey")
    signature: Optional[str] = None
    timestamp: Optional[Union[int, float, str]] = None
    nonce: Optional[str] = None


class CustodialKeyRequest(SignedRequest):
    private_key: Optional[str] = Field(default=None, alias="privateKey")


class StartVerificationRequest(BaseModel):
    agent_public_key: Optional[str] = Field(default=None, alias="agentPublicKey")
    agent_name: Optional[str] = Field(default=None, alias="agentName")
    signature: Optional[str] = None


class SignChallengeRequest(BaseModel):
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    signature: Optional[str] = None


class CheckNameRequest(BaseModel):
    name: str = ""


# ---------------------------
# FastAPI App Factory
# ---------------------------

def create_app(
    config: Optional[GatewayConfig] = None,
    *,
    store: Optional[IdentityStore] = None,
    verifier: Optional[ProofVerifier] = None,
    vault: Optional[SecretVault] = None,
    ledger: Optional[NonceLedger] = None,
) -> FastAPI:
    """Create the FastAPI application.

    Shared state (store, nonce ledger, vault) is built here once and hung on
    `app.state`; the lifespan only runs the periodic sweeps. A missing server
    secret raises ConfigurationError before the app exists.
    """
    from . import __version__ as agentid_version

    config = config or GatewayConfig.from_env()
    store = store or IdentityStore(config.db_path)
    vault = vault or SecretVault()
    ledger = ledger or NonceLedger()
    service = VerificationService(store, verifier or build_verifier_from_env(), config)
    authenticator = RequestAuthenticator(store, ledger)

    def _sweep_nonces() -> int:
        removed = ledger.sweep()
        set_nonce_ledger_size(len(ledger))
        record_sweep("nonce", removed)
        return removed

    def _sweep_sessions() -> int:
        expired = service.expire_stale_sessions()
        record_sweep("session", expired)
        return expired

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweepers = [
            PeriodicSweeper("nonce", ledger.config.sweep_interval_seconds, _sweep_nonces),
            PeriodicSweeper("session", config.session_sweep_seconds, _sweep_sessions),
        ]
        for s in sweepers:
            s.start()
        app.state.sweepers = sweepers
        logger.info("Agent identity gateway started (db=%s, domain=%s)", config.db_path, config.domain)
        try:
            yield
        finally:
            for s in sweepers:
                await s.stop()
            logger.info("Agent identity gateway stopped")

    app = FastAPI(
        title="Agent Identity Gateway",
        description="ZK passport verification and signed-request authentication for AI agents",
        version=agentid_version,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.store = store
    app.state.vault = vault
    app.state.ledger = ledger
    app.state.service = service
    app.state.authenticator = authenticator

    @app.exception_handler(AgentIdError)
    async def _agentid_error_handler(request: Request, exc: AgentIdError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    # ---------------------------
    # Observability (/metrics)
    # ---------------------------
    metrics_token = (os.getenv("AGENTID_METRICS_TOKEN", "") or "").strip()

    def _authorize_metrics(req: Request) -> bool:
        if not metrics_token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        return authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == metrics_token

    instrument_fastapi(app, authorize=_authorize_metrics)

    # Request body size limit (checks Content-Length).
    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        try:
            cl = req.headers.get("content-length")
            if cl is not None and int(cl) > config.max_request_bytes:
                return JSONResponse(status_code=413, content={"detail": "REQUEST_TOO_LARGE"})
        except ValueError:
            return JSONResponse(status_code=400, content={"detail": "BAD_CONTENT_LENGTH"})
        return await call_next(req)

    def _authenticate(body: SignedRequest) -> AuthenticatedAgent:
        try:
            agent = authenticator.authenticate(body.agent_public_key, body.signature, body.timestamp, body.nonce)
        except AgentIdError as e:
            record_auth(e.code)
            logger.info("Signed request rejected: %s", e.code)
            raise
        record_auth("ok")
        return agent

    def _lookup_identity(identifier: str) -> Optional[AgentIdentityRecord]:
        return store.get_identity(identifier) or store.find_identity_by_name(identifier)

    # ---------------------------
    # Verification
    # ---------------------------

    @app.get("/v1/config")
    async def verifier_config():
        """Static parameters the ZK passport app needs to build a proof request."""
        return {
            "scope": config.proof_scope,
            "endpoint": config.endpoint,
            "appName": config.app_name,
            "version": 2,
            "staging": config.staging,
            "minimumAge": config.minimum_age,
        }

    @app.post("/v1/check-name")
    async def check_name(request: CheckNameRequest):
        result = await asyncio.to_thread(service.check_name, request.name)
        return {"available": result.available, "suggestions": result.suggestions}

    @app.post("/v1/verify/start")
    async def start_verification(request: StartVerificationRequest):
        out = await asyncio.to_thread(
            service.start_verification,
            request.agent_public_key or "",
            request.agent_name,
            request.signature,
        )
        record_verification_started()
        out["config"] = {
            "appName": config.app_name,
            "scope": config.proof_scope,
            "endpoint": config.endpoint,
            "staging": config.staging,
        }
        return out

    @app.post("/v1/verify/sign-challenge")
    async def sign_challenge(request: SignChallengeRequest):
        session = await asyncio.to_thread(service.sign_challenge, request.session_id or "", request.signature or "")
        return {
            "success": True,
            "sessionId": session.session_id,
            "signatureVerified": True,
            "proofRequest": build_proof_request(
                session_id=session.session_id,
                agent_key_hash=session.agent_key_hash,
                app_name=config.app_name,
                scope=config.proof_scope,
                endpoint=config.endpoint,
                staging=config.staging,
                minimum_age=config.minimum_age,
            ),
        }

    @app.get("/v1/verify/status/{session_id}")
    async def verification_status(session_id: str):
        return await asyncio.to_thread(service.verification_status, session_id)

    @app.get("/v1/callback")
    @app.get("/v1/callback/", include_in_schema=False)
    async def callback_info():
        return {
            "status": "ok",
            "message": "Proof callback endpoint. Submit verification results with POST.",
            "scope": config.proof_scope,
        }

    @app.post("/v1/callback")
    @app.post("/v1/callback/", include_in_schema=False)
    async def proof_callback(request: Request):
        """Receive a ZK passport proof. Always HTTP 200 with {status, result, reason?}."""
        try:
            body = await request.json()
        except ValueError:
            body = None

        if not isinstance(body, dict):
            logger.warning("Proof callback with unreadable body")
            result = CallbackResult.error("Missing required verification data")
        else:
            result = await asyncio.to_thread(
                service.handle_proof_callback,
                body.get("attestationId"),
                body.get("proof"),
                body.get("publicSignals"),
                body.get("userContextData"),
            )
        record_proof_callback(result.status)
        return JSONResponse(status_code=200, content=result.as_dict())

    # ---------------------------
    # Agent lookup
    # ---------------------------

    @app.get("/v1/agent")
    async def get_agent(publicKey: Optional[str] = None, name: Optional[str] = None):
        if not publicKey and not name:
            raise agentid_error(AGENTID_E_BAD_REQUEST, "publicKey or name query parameter required")
        if publicKey:
            identity = await asyncio.to_thread(store.get_identity, publicKey)
        else:
            identity = await asyncio.to_thread(store.find_identity_by_name, name)
        if identity is None:
            raise agentid_error(AGENTID_E_UNKNOWN_AGENT, "Agent not found", http_status=404)
        return identity.public_view()

    @app.get("/v1/agent/{identifier}/proof")
    async def get_agent_proof(identifier: str):
        """Stored ZK proof for independent re-verification."""
        identity = await asyncio.to_thread(_lookup_identity, identifier)
        if identity is None:
            raise agentid_error(AGENTID_E_UNKNOWN_AGENT, "Agent not found", http_status=404)
        zk = identity.metadata.zk_proof if identity.metadata else None
        if zk is None:
            raise agentid_error(AGENTID_E_PROOF_NOT_FOUND, "No proof stored for this agent", http_status=404)
        return {
            "publicKey": identity.public_key,
            "agentName": identity.agent_name,
            "humanId": identity.human_id,
            "verificationLevel": identity.verification_level,
            "proof": zk.to_dict(),
        }

    @app.post("/v1/agent/me")
    async def whoami(request: SignedRequest):
        agent = await asyncio.to_thread(_authenticate, request)
        return {"authenticated": True, "agent": agent.identity.public_view()}

    # ---------------------------
    # Custodial keys
    # ---------------------------

    @app.post("/v1/wallet/custodial-key")
    async def store_custodial_key(request: CustodialKeyRequest):
        agent = await asyncio.to_thread(_authenticate, request)
        if not request.private_key:
            raise agentid_error(AGENTID_E_BAD_REQUEST, "privateKey is required")
        secret = await asyncio.to_thread(vault.encrypt, request.private_key, agent.human_id)
        await asyncio.to_thread(store.put_wallet_secret, agent.public_key, secret)
        logger.info("Stored custodial key for agent %s...", agent.public_key[:16])
        return {"success": True, "publicKey": agent.public_key}

    @app.post("/v1/wallet/custodial-key/reveal")
    async def reveal_custodial_key(request: SignedRequest):
        agent = await asyncio.to_thread(_authenticate, request)
        secret = await asyncio.to_thread(store.get_wallet_secret, agent.public_key)
        if secret is None:
            raise agentid_error(AGENTID_E_BAD_REQUEST, "No custodial key stored for this agent", http_status=404)
        plaintext = await asyncio.to_thread(vault.decrypt_secret, secret, agent.human_id)
        return JSONResponse(
            content={"publicKey": agent.public_key, "privateKey": plaintext},
            headers={"Cache-Control": "no-store"},
        )

    @app.get("/v1/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": agentid_version,
            "nonce_ledger_entries": len(ledger),
        }

    return app


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for agentid-gateway.

    Usage:
        agentid-gateway                    # Start on default port 8000
        agentid-gateway --port 9000        # Start on custom port
        agentid-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="Agent Identity Gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    AGENTID_SERVER_SECRET    Custodial key encryption secret (required)
    AGENTID_DB_PATH          Path to SQLite database (default: agentid_gateway.db)
    AGENTID_DOMAIN           Domain tag embedded in challenges
    AGENTID_VERIFIER_URL     External ZK proof verifier endpoint
    AGENTID_PROXY_HEADERS    If set (1/true), trust X-Forwarded-* headers
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--proxy-headers", action="store_true", help="Trust X-Forwarded-* headers (for reverse proxy)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    import uvicorn

    app = create_app()

    print(f"Starting Agent Identity Gateway on {args.host}:{args.port}")
    print("  Endpoints:")
    print("    POST /v1/verify/start          - Open verification session")
    print("    POST /v1/verify/sign-challenge - Prove key possession")
    print("    POST /v1/callback              - ZK proof callback")
    print("    POST /v1/agent/me              - Signed whoami")
    print("    GET  /v1/health                - Health check")
    print()

    env_proxy = os.environ.get("AGENTID_PROXY_HEADERS", "").strip().lower()
    proxy_headers = args.proxy_headers or env_proxy in ("1", "true", "yes")
    uvicorn.run(app, host=args.host, port=args.port, proxy_headers=proxy_headers)
    return 0


if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
