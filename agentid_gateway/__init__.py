"""Agent Identity Gateway package.

Binds AI agent Ed25519 keys to verified humans through ZK passport proofs and
authenticates subsequent signed requests from those agents:

- Multi-format Ed25519 key and signature parsing
- Challenge/proof verification sessions with key-hash binding
- Fresh, single-use signed requests (timestamp window + nonce ledger)
- Custodial secrets encrypted per humanId (AES-256-GCM)

Convenience imports
------------------
Loaded lazily so importing the package has no heavy side effects:

    from agentid_gateway import create_app, VerificationService, RequestAuthenticator
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = (
    _read_version_from_pyproject()
    or "0.3.0"
)

__all__ = [
    "__version__",
    "create_app",
    "VerificationService",
    "RequestAuthenticator",
    "NonceLedger",
    "SecretVault",
    "IdentityStore",
    "Ed25519KeyPair",
    "AgentIdError",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "create_app": ("agentid_gateway.server", "create_app"),
    "VerificationService": ("agentid_gateway.sessions", "VerificationService"),
    "RequestAuthenticator": ("agentid_gateway.auth", "RequestAuthenticator"),
    "NonceLedger": ("agentid_gateway.nonce_ledger", "NonceLedger"),
    "SecretVault": ("agentid_gateway.vault", "SecretVault"),
    "IdentityStore": ("agentid_gateway.store", "IdentityStore"),
    "Ed25519KeyPair": ("agentid_gateway.keys", "Ed25519KeyPair"),
    "AgentIdError": ("agentid_gateway.errors", "AgentIdError"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name), attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'agentid_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
