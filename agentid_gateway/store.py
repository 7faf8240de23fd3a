"""
Persistent storage for verification sessions, agent identities and
custodial wallet secrets.

Storage Properties:
- One sqlite database, one short-lived connection per operation
- WAL mode for concurrent readers
- Session status transitions are guarded by `WHERE status = 'pending'`, so
  VERIFIED and EXPIRED stay terminal no matter how requests interleave
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from .models import (
    AgentIdentityRecord,
    IdentityMetadata,
    SessionStatus,
    VerificationSession,
)
from .vault import WalletSecret

logger = logging.getLogger("agentid_gateway")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class IdentityStore:
    """sqlite-backed persistence collaborator."""

    def __init__(self, db_path: str = "agentid_gateway.db", busy_timeout_seconds: float = 5.0):
        self.db_path = db_path
        self.busy_timeout_seconds = float(busy_timeout_seconds)
        self._init_db()

    @contextmanager
    def _db(self, isolation_level: Optional[str] = "DEFERRED") -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout_seconds, isolation_level=isolation_level)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._db() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA busy_timeout = 5000")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS verification_sessions (
                session_id TEXT PRIMARY KEY,
                agent_public_key TEXT NOT NULL,
                agent_name TEXT,
                agent_key_hash TEXT NOT NULL,
                challenge TEXT NOT NULL,
                challenge_expiry_ms INTEGER NOT NULL,
                signature_verified INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                human_id TEXT,
                created_at_ms INTEGER NOT NULL
            )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_status_key "
                "ON verification_sessions (status, agent_public_key)"
            )

            conn.execute("""
            CREATE TABLE IF NOT EXISTS agent_identities (
                public_key TEXT PRIMARY KEY,
                agent_name TEXT,
                human_id TEXT,
                verification_level TEXT NOT NULL,
                metadata_json TEXT,
                verified_at_utc TEXT
            )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_identities_name "
                "ON agent_identities (LOWER(agent_name))"
            )

            conn.execute("""
            CREATE TABLE IF NOT EXISTS wallet_secrets (
                public_key TEXT PRIMARY KEY,
                human_id TEXT NOT NULL,
                ciphertext TEXT NOT NULL,
                iv TEXT NOT NULL,
                auth_tag TEXT NOT NULL,
                updated_at_utc TEXT NOT NULL
            )
            """)

    # ---------------------------
    # Row mapping
    # ---------------------------

    @staticmethod
    def _session_from_row(row: sqlite3.Row) -> VerificationSession:
        return VerificationSession(
            session_id=row["session_id"],
            agent_public_key=row["agent_public_key"],
            agent_name=row["agent_name"],
            agent_key_hash=row["agent_key_hash"],
            challenge=row["challenge"],
            challenge_expiry_ms=int(row["challenge_expiry_ms"]),
            signature_verified=bool(row["signature_verified"]),
            status=SessionStatus(row["status"]),
            human_id=row["human_id"],
            created_at_ms=int(row["created_at_ms"]),
        )

    @staticmethod
    def _identity_from_row(row: sqlite3.Row) -> AgentIdentityRecord:
        metadata = None
        raw = row["metadata_json"]
        if raw:
            try:
                metadata = IdentityMetadata.from_dict(json.loads(raw))
            except ValueError as e:
                # Corrupted or foreign blob: keep the identity, drop the metadata.
                logger.warning("Ignoring unreadable identity metadata for %s: %s", row["public_key"][:16], e)
        return AgentIdentityRecord(
            public_key=row["public_key"],
            agent_name=row["agent_name"],
            human_id=row["human_id"],
            verification_level=row["verification_level"],
            metadata=metadata,
            verified_at=row["verified_at_utc"],
        )

    # ---------------------------
    # Verification sessions
    # ---------------------------

    def create_session(self, session: VerificationSession) -> None:
        with self._db() as conn:
            conn.execute(
                "INSERT INTO verification_sessions (session_id, agent_public_key, agent_name, agent_key_hash, "
                "challenge, challenge_expiry_ms, signature_verified, status, human_id, created_at_ms) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    session.session_id,
                    session.agent_public_key,
                    session.agent_name,
                    session.agent_key_hash,
                    session.challenge,
                    int(session.challenge_expiry_ms),
                    1 if session.signature_verified else 0,
                    session.status.value,
                    session.human_id,
                    int(session.created_at_ms),
                ),
            )

    def get_session(self, session_id: str) -> Optional[VerificationSession]:
        with self._db() as conn:
            row = conn.execute(
                "SELECT * FROM verification_sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_pending_session(self, session_id: str, now_ms: int) -> Optional[VerificationSession]:
        """Pending session with this id whose challenge has not expired."""
        with self._db() as conn:
            row = conn.execute(
                "SELECT * FROM verification_sessions "
                "WHERE session_id = ? AND status = ? AND challenge_expiry_ms > ?",
                (session_id, SessionStatus.PENDING.value, int(now_ms)),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_pending_session_for_key(self, agent_public_key: str, now_ms: int) -> Optional[VerificationSession]:
        """Most recent open pending session for an agent key."""
        with self._db() as conn:
            row = conn.execute(
                "SELECT * FROM verification_sessions "
                "WHERE status = ? AND agent_public_key = ? AND challenge_expiry_ms > ? "
                "ORDER BY created_at_ms DESC LIMIT 1",
                (SessionStatus.PENDING.value, agent_public_key, int(now_ms)),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def set_signature_verified(self, session_id: str) -> bool:
        with self._db() as conn:
            cur = conn.execute(
                "UPDATE verification_sessions SET signature_verified = 1 WHERE session_id = ? AND status = ?",
                (session_id, SessionStatus.PENDING.value),
            )
            return int(cur.rowcount or 0) == 1

    def mark_session_expired(self, session_id: str) -> bool:
        with self._db() as conn:
            cur = conn.execute(
                "UPDATE verification_sessions SET status = ? WHERE session_id = ? AND status = ?",
                (SessionStatus.EXPIRED.value, session_id, SessionStatus.PENDING.value),
            )
            return int(cur.rowcount or 0) == 1

    def expire_stale_sessions(self, now_ms: int) -> int:
        """Bulk-expire pending sessions past their challenge expiry. Returns rows updated."""
        with self._db() as conn:
            cur = conn.execute(
                "UPDATE verification_sessions SET status = ? WHERE status = ? AND challenge_expiry_ms < ?",
                (SessionStatus.EXPIRED.value, SessionStatus.PENDING.value, int(now_ms)),
            )
            return int(cur.rowcount or 0)

    def complete_verification(self, session_id: str, identity: AgentIdentityRecord) -> bool:
        """Flip a pending session to VERIFIED and upsert the identity atomically.

        Returns False (and writes nothing) if the session is no longer pending.
        A requested name that another key claimed after the session opened is
        not taken over: the identity is stored without it.
        """
        metadata_json = json.dumps(identity.metadata.to_dict()) if identity.metadata else None
        verified_at = identity.verified_at or _now_iso()
        agent_name = identity.agent_name
        with self._db(isolation_level="IMMEDIATE") as conn:
            cur = conn.execute(
                "UPDATE verification_sessions SET status = ?, human_id = ? WHERE session_id = ? AND status = ?",
                (SessionStatus.VERIFIED.value, identity.human_id, session_id, SessionStatus.PENDING.value),
            )
            if int(cur.rowcount or 0) != 1:
                return False
            if agent_name:
                holder = conn.execute(
                    "SELECT public_key FROM agent_identities "
                    "WHERE LOWER(agent_name) = LOWER(?) AND public_key != ? LIMIT 1",
                    (agent_name, identity.public_key),
                ).fetchone()
                if holder is not None:
                    logger.warning(
                        "Name %r already held by another agent; verifying session %s without it",
                        agent_name,
                        session_id,
                    )
                    agent_name = None
            conn.execute(
                "INSERT INTO agent_identities (public_key, agent_name, human_id, verification_level, "
                "metadata_json, verified_at_utc) VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(public_key) DO UPDATE SET "
                "agent_name = COALESCE(excluded.agent_name, agent_identities.agent_name), "
                "human_id = excluded.human_id, "
                "verification_level = excluded.verification_level, "
                "metadata_json = excluded.metadata_json, "
                "verified_at_utc = excluded.verified_at_utc",
                (
                    identity.public_key,
                    agent_name,
                    identity.human_id,
                    identity.verification_level,
                    metadata_json,
                    verified_at,
                ),
            )
        return True

    # ---------------------------
    # Agent identities
    # ---------------------------

    def get_identity(self, public_key: str) -> Optional[AgentIdentityRecord]:
        with self._db() as conn:
            row = conn.execute(
                "SELECT * FROM agent_identities WHERE public_key = ?",
                (public_key,),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def find_identity_by_name(self, name: str) -> Optional[AgentIdentityRecord]:
        """Case-insensitive lookup by agent name."""
        with self._db() as conn:
            row = conn.execute(
                "SELECT * FROM agent_identities WHERE LOWER(agent_name) = LOWER(?) LIMIT 1",
                (name,),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    # ---------------------------
    # Custodial wallet secrets
    # ---------------------------

    def put_wallet_secret(self, public_key: str, secret: WalletSecret) -> None:
        with self._db() as conn:
            conn.execute(
                "INSERT INTO wallet_secrets (public_key, human_id, ciphertext, iv, auth_tag, updated_at_utc) "
                "VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(public_key) DO UPDATE SET human_id = excluded.human_id, "
                "ciphertext = excluded.ciphertext, iv = excluded.iv, auth_tag = excluded.auth_tag, "
                "updated_at_utc = excluded.updated_at_utc",
                (public_key, secret.human_id, secret.ciphertext, secret.iv, secret.auth_tag, _now_iso()),
            )

    def get_wallet_secret(self, public_key: str) -> Optional[WalletSecret]:
        with self._db() as conn:
            row = conn.execute(
                "SELECT human_id, ciphertext, iv, auth_tag FROM wallet_secrets WHERE public_key = ?",
                (public_key,),
            ).fetchone()
        if not row:
            return None
        return WalletSecret(
            human_id=row["human_id"],
            ciphertext=row["ciphertext"],
            iv=row["iv"],
            auth_tag=row["auth_tag"],
        )
