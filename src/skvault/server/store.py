"""
Vault service storage: keys, versions, sync rules, sessions.

One SQLite database per service. Tables:

    vaults          one row per owner, created at first key registration
    vault_keys      registered public keys; revoked, never deleted
    vault_versions  immutable push records
    sync_rules      (vault, profile, path) exclusions
    sessions        dashboard session tokens (hashes only)
    login_codes     single-use out-of-band login codes (hashes only)

Every multi-statement write runs in a single transaction, so readers
never see half of a replaced exclusion set.
"""

from __future__ import annotations

import json
import logging
import secrets
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional, Union

from ..auth import DASHBOARD_OPERATIONS, SessionToken, hash_token
from ..errors import AuthenticationError, ValidationError
from ..keys import fingerprint_of, load_public_key
from ..models import VaultKey, VaultVersion
from ..rules import validate_paths

logger = logging.getLogger("skvault.server.store")

SESSION_TTL_SECONDS = 3600
LOGIN_CODE_TTL_SECONDS = 600
MAX_LOGIN_ATTEMPTS = 5

SCHEMA = """
CREATE TABLE IF NOT EXISTS vaults (
    id TEXT PRIMARY KEY,
    email TEXT UNIQUE NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS vault_keys (
    id TEXT PRIMARY KEY,
    vault_id TEXT NOT NULL REFERENCES vaults(id),
    public_key TEXT NOT NULL,
    fingerprint TEXT NOT NULL,
    hostname TEXT NOT NULL DEFAULT '',
    instance_id TEXT NOT NULL DEFAULT '',
    registered_at TEXT NOT NULL,
    revoked_at TEXT
);

CREATE TABLE IF NOT EXISTS vault_versions (
    id TEXT PRIMARY KEY,
    vault_id TEXT NOT NULL REFERENCES vaults(id),
    location TEXT NOT NULL,
    size_bytes INTEGER NOT NULL DEFAULT 0,
    hash_sha256 TEXT NOT NULL,
    pushed_by TEXT NOT NULL DEFAULT '',
    profile_name TEXT NOT NULL DEFAULT 'default',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_rules (
    id TEXT PRIMARY KEY,
    vault_id TEXT NOT NULL REFERENCES vaults(id),
    profile_name TEXT NOT NULL,
    path TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE(vault_id, profile_name, path)
);

CREATE TABLE IF NOT EXISTS sessions (
    token_hash TEXT PRIMARY KEY,
    vault_id TEXT NOT NULL REFERENCES vaults(id),
    scopes TEXT NOT NULL,
    issued_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    revoked_at TEXT
);

CREATE TABLE IF NOT EXISTS login_codes (
    id TEXT PRIMARY KEY,
    vault_id TEXT NOT NULL REFERENCES vaults(id),
    code_hash TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    used_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_vault_keys_vault ON vault_keys(vault_id);
CREATE INDEX IF NOT EXISTS idx_vault_versions_profile ON vault_versions(vault_id, profile_name);
CREATE INDEX IF NOT EXISTS idx_sync_rules_profile ON sync_rules(vault_id, profile_name);
"""


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat()


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class VaultDatabase:
    """SQLite connection shared by the stores below.

    Args:
        db_path: Database file, or ``":memory:"``.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:") -> None:
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    def connect(self) -> "VaultDatabase":
        """Open the database and create the schema."""
        if self._conn is not None:
            return self
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.executescript(SCHEMA)
        self._conn.commit()
        logger.info("Vault database ready at %s", self.db_path)
        return self

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        assert self._conn is not None
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements atomically; roll back on any exception."""
        with self._lock:
            conn = self.conn
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    def query(self, sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, tuple(params)).fetchall()


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def _row_to_key(row: sqlite3.Row) -> VaultKey:
    return VaultKey(
        key_id=row["id"],
        vault_id=row["vault_id"],
        public_key=row["public_key"],
        fingerprint=row["fingerprint"],
        hostname=row["hostname"],
        instance_id=row["instance_id"],
        registered_at=_parse(row["registered_at"]),
        revoked_at=_parse(row["revoked_at"]),
    )


class KeyRegistry:
    """Which public keys may act on which vault."""

    def __init__(self, db: VaultDatabase) -> None:
        self.db = db

    def vault_for_owner(self, owner: str) -> Optional[str]:
        rows = self.db.query("SELECT id FROM vaults WHERE email = ?", (owner.strip().lower(),))
        return rows[0]["id"] if rows else None

    def register_key(
        self,
        owner: str,
        public_key: str,
        hostname: str = "",
        instance_id: str = "",
    ) -> tuple[str, VaultKey]:
        """Register a machine key, creating the owner's vault on first use.

        Re-registering an active key returns the existing row.

        Returns:
            (vault id, registered key).

        Raises:
            ValidationError: If the owner is empty or the key is not a
                readable Ed25519 public key.
        """
        owner = owner.strip().lower()
        if not owner:
            raise ValidationError("Owner must not be empty")
        load_public_key(public_key)
        fingerprint = fingerprint_of(public_key)
        now = _iso(datetime.now(timezone.utc))

        with self.db.transaction() as conn:
            row = conn.execute("SELECT id FROM vaults WHERE email = ?", (owner,)).fetchone()
            if row is None:
                vault_id = uuid.uuid4().hex
                conn.execute(
                    "INSERT INTO vaults (id, email, created_at) VALUES (?, ?, ?)",
                    (vault_id, owner, now),
                )
                logger.info("Created vault %s for %s", vault_id, owner)
            else:
                vault_id = row["id"]

            existing = conn.execute(
                "SELECT * FROM vault_keys WHERE vault_id = ? AND fingerprint = ? AND revoked_at IS NULL",
                (vault_id, fingerprint),
            ).fetchone()
            if existing is not None:
                return vault_id, _row_to_key(existing)

            key_id = uuid.uuid4().hex
            conn.execute(
                "INSERT INTO vault_keys (id, vault_id, public_key, fingerprint, hostname, "
                "instance_id, registered_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (key_id, vault_id, public_key.strip(), fingerprint, hostname, instance_id, now),
            )
            row = conn.execute("SELECT * FROM vault_keys WHERE id = ?", (key_id,)).fetchone()

        logger.info("Registered key %s for vault %s (%s)", fingerprint, vault_id, hostname)
        return vault_id, _row_to_key(row)

    def revoke_key(self, key_id: str) -> VaultKey:
        """Mark a key revoked. The row stays for audit.

        Raises:
            ValidationError: If no such key exists.
        """
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE vault_keys SET revoked_at = ? WHERE id = ? AND revoked_at IS NULL",
                (_iso(datetime.now(timezone.utc)), key_id),
            )
            row = conn.execute("SELECT * FROM vault_keys WHERE id = ?", (key_id,)).fetchone()
        if row is None:
            raise ValidationError(f"Unknown key '{key_id}'")
        logger.info("Revoked key %s", row["fingerprint"])
        return _row_to_key(row)

    def keys_for(self, vault_id: str) -> list[VaultKey]:
        """Every key of the vault, revoked ones included."""
        rows = self.db.query(
            "SELECT * FROM vault_keys WHERE vault_id = ? ORDER BY registered_at", (vault_id,)
        )
        return [_row_to_key(r) for r in rows]

    def active_keys(self, vault_id: str) -> list[VaultKey]:
        return [k for k in self.keys_for(vault_id) if not k.is_revoked]


# ---------------------------------------------------------------------------
# Sync rules
# ---------------------------------------------------------------------------


class SyncRulesStore:
    """Per-profile exclusion sets, replaced wholesale on every save."""

    def __init__(self, db: VaultDatabase) -> None:
        self.db = db

    def get(self, vault_id: str, profile: str) -> set[str]:
        """Excluded paths for (vault, profile); empty when none are set."""
        rows = self.db.query(
            "SELECT path FROM sync_rules WHERE vault_id = ? AND profile_name = ?",
            (vault_id, profile),
        )
        return {r["path"] for r in rows}

    def put(self, vault_id: str, profile: str, paths: Any) -> int:
        """Atomically replace the exclusion set.

        Returns:
            Number of paths stored.

        Raises:
            ValidationError: If any path is invalid; nothing changes.
        """
        cleaned = validate_paths(paths)
        now = _iso(datetime.now(timezone.utc))
        with self.db.transaction() as conn:
            conn.execute(
                "DELETE FROM sync_rules WHERE vault_id = ? AND profile_name = ?",
                (vault_id, profile),
            )
            conn.executemany(
                "INSERT INTO sync_rules (id, vault_id, profile_name, path, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                [(uuid.uuid4().hex, vault_id, profile, path, now) for path in cleaned],
            )
        logger.info("Stored %d exclusion(s) for %s/%s", len(cleaned), vault_id, profile)
        return len(cleaned)


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------


class VersionLedger:
    """Push records, append-only."""

    def __init__(self, db: VaultDatabase) -> None:
        self.db = db

    def record(self, version: VaultVersion) -> VaultVersion:
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO vault_versions (id, vault_id, location, size_bytes, hash_sha256, "
                "pushed_by, profile_name, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    version.version_id,
                    version.vault_id,
                    version.location,
                    version.size_bytes,
                    version.content_hash,
                    version.signed_by,
                    version.profile,
                    _iso(version.created_at),
                ),
            )
        return version

    def list_versions(
        self, vault_id: str, profile: Optional[str] = None, limit: int = 50
    ) -> list[VaultVersion]:
        """Versions newest first, optionally for one profile only."""
        sql = "SELECT * FROM vault_versions WHERE vault_id = ?"
        params: list = [vault_id]
        if profile is not None:
            sql += " AND profile_name = ?"
            params.append(profile)
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        return [
            VaultVersion(
                version_id=r["id"],
                vault_id=r["vault_id"],
                location=r["location"],
                size_bytes=r["size_bytes"],
                content_hash=r["hash_sha256"],
                signed_by=r["pushed_by"],
                profile=r["profile_name"],
                created_at=_parse(r["created_at"]),
            )
            for r in self.db.query(sql, params)
        ]


# ---------------------------------------------------------------------------
# Dashboard sessions
# ---------------------------------------------------------------------------


class SessionStore:
    """Login codes and the session tokens they are exchanged for.

    Only hashes are stored. Codes are single use; tokens expire after
    ``ttl_seconds`` and can be revoked early.

    Args:
        db: Service database.
        keys: Registry used to resolve an owner to their vault.
        ttl_seconds: Session lifetime.
        clock: Source of unix time, injectable for tests.
    """

    def __init__(
        self,
        db: VaultDatabase,
        keys: KeyRegistry,
        ttl_seconds: int = SESSION_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db = db
        self.keys = keys
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def request_login_code(self, owner: str) -> str:
        """Issue a six-digit code to be delivered out of band.

        Raises:
            ValidationError: If the owner has no vault.
        """
        vault_id = self.keys.vault_for_owner(owner)
        if vault_id is None:
            raise ValidationError("No vault registered for this owner")
        code = f"{secrets.randbelow(1_000_000):06d}"
        expires = self._now() + timedelta(seconds=LOGIN_CODE_TTL_SECONDS)
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO login_codes (id, vault_id, code_hash, expires_at) VALUES (?, ?, ?, ?)",
                (uuid.uuid4().hex, vault_id, hash_token(code), _iso(expires)),
            )
        logger.info("Login code issued for vault %s", vault_id)
        return code

    def redeem_login_code(self, owner: str, code: str) -> tuple[str, SessionToken]:
        """Exchange a valid, unused code for a session token.

        Returns:
            (raw token for the client, stored session record).

        Every failed attempt counts against all of the owner's open
        codes; after ``MAX_LOGIN_ATTEMPTS`` failures they stop working
        and a new code must be requested.

        Raises:
            AuthenticationError: If the code is unknown, used, expired,
                or locked out.
        """
        vault_id = self.keys.vault_for_owner(owner)
        if vault_id is None:
            raise AuthenticationError("Invalid login code")
        now = self._now()
        token = secrets.token_urlsafe(32)
        session = SessionToken(
            token_hash=hash_token(token),
            vault_id=vault_id,
            scopes=sorted(DASHBOARD_OPERATIONS),
            issued_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM login_codes "
                "WHERE vault_id = ? AND code_hash = ? AND used_at IS NULL AND attempts < ?",
                (vault_id, hash_token(code.strip()), MAX_LOGIN_ATTEMPTS),
            ).fetchone()
            if row is None or _parse(row["expires_at"]) <= now:
                conn.execute(
                    "UPDATE login_codes SET attempts = attempts + 1 "
                    "WHERE vault_id = ? AND used_at IS NULL",
                    (vault_id,),
                )
                row = None
            else:
                conn.execute("UPDATE login_codes SET used_at = ? WHERE id = ?", (_iso(now), row["id"]))
                conn.execute(
                    "INSERT INTO sessions (token_hash, vault_id, scopes, issued_at, expires_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        session.token_hash,
                        vault_id,
                        json.dumps(session.scopes),
                        _iso(session.issued_at),
                        _iso(session.expires_at),
                    ),
                )
        if row is None:
            logger.warning("Failed login attempt for vault %s", vault_id)
            raise AuthenticationError("Invalid or expired login code")
        logger.info("Session opened for vault %s", vault_id)
        return token, session

    def lookup(self, token: str) -> Optional[SessionToken]:
        rows = self.db.query("SELECT * FROM sessions WHERE token_hash = ?", (hash_token(token),))
        if not rows:
            return None
        row = rows[0]
        return SessionToken(
            token_hash=row["token_hash"],
            vault_id=row["vault_id"],
            scopes=json.loads(row["scopes"]),
            issued_at=_parse(row["issued_at"]),
            expires_at=_parse(row["expires_at"]),
            revoked_at=_parse(row["revoked_at"]),
        )

    def revoke_session(self, token: str) -> bool:
        """End a session. Returns False if it was unknown or already revoked."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE sessions SET revoked_at = ? WHERE token_hash = ? AND revoked_at IS NULL",
                (_iso(self._now()), hash_token(token)),
            )
        return cursor.rowcount > 0
