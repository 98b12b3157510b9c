"""
Encrypted OAuth 2.0 storage for the authorization endpoint

SQLite-backed persistence for the state the authorization front door needs
across its two round trips:

- Pending authorization requests, keyed by their auth state
- Previously granted access tokens, looked up by (resource owner, client)
- Client registrations, read by the request validator and the consent stage

Security Model:
- Sensitive columns encrypted with Fernet (AES-128-CBC + HMAC-SHA256)
- Keys derived from OAUTH2_ENCRYPTION_KEY (or an ephemeral secret) with PBKDF2-SHA256
- Per-row HMAC integrity hash, verified on every read
- Resource owners stored as keyed hashes so grants can be looked up without decryption
- Background sweep of pending requests older than the configured TTL
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import os
import secrets
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Protocol

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .oauth2_models import AccessToken, AuthorizationRequest, Client

logger = logging.getLogger(__name__)


class OAuth2StorageError(Exception):
    """OAuth 2.0 storage operation error."""
    pass


class OAuth2SecurityError(OAuth2StorageError):
    """OAuth 2.0 security violation error."""
    pass


class AuthorizationRequestRepository(Protocol):
    """Durable store of pending authorization requests."""

    def save(self, authorization_request: AuthorizationRequest) -> None:
        ...

    def find_by_auth_state(self, auth_state: str) -> AuthorizationRequest | None:
        ...

    def delete(self, auth_state: str) -> bool:
        ...


class AccessTokenRepository(Protocol):
    """Read-only query over granted access tokens."""

    def find_by_resource_owner_and_client(self, resource_owner_id: str, client: Client) -> list[AccessToken]:
        ...


def _to_iso(timestamp: float | None) -> str | None:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, timezone.utc).isoformat()


def _from_iso(value: str | None) -> float | None:
    if not value:
        return None
    return datetime.fromisoformat(value).timestamp()


class OAuth2EncryptedStorage:
    """
    Authorization endpoint storage with SQLite backend and field encryption.

    Implements AuthorizationRequestRepository, AccessTokenRepository and the
    validator's ClientRepository over a single database file.
    """

    SCHEMA_VERSION = 1
    DEFAULT_DB_PATH = "oauth2_authorization.db"
    ENCRYPTION_SALT = b"oauth2_authorization_storage_salt_v1"

    def __init__(
        self,
        db_path: str | None = None,
        encryption_key: str | None = None,
        pending_request_ttl: int = 600,  # 10 minutes
        cleanup_interval: int = 3600  # 1 hour
    ):
        """
        Initialize encrypted storage.

        Args:
            db_path: Path to SQLite database file
            encryption_key: Secret the field encryption key is derived from
            pending_request_ttl: Age in seconds after which pending requests are swept
            cleanup_interval: Seconds between background sweeps (0 disables the sweeper)
        """
        self.db_path = db_path or self.DEFAULT_DB_PATH
        self.pending_request_ttl = pending_request_ttl
        self.cleanup_interval = cleanup_interval

        # Thread safety
        self._lock = threading.RLock()
        self._shutdown = threading.Event()

        self.encryption_key = self._setup_encryption(encryption_key)
        self.cipher = Fernet(self.encryption_key)

        self._init_database()

        self._cleanup_thread = None
        if cleanup_interval > 0:
            self._cleanup_thread = threading.Thread(target=self._cleanup_worker, daemon=True)
            self._cleanup_thread.start()

        logger.info(f"OAuth2 encrypted storage initialized: {self.db_path}")

    def _setup_encryption(self, custom_key: str | None = None) -> bytes:
        """Derive the Fernet key from a custom secret, the environment, or an ephemeral value."""
        password = custom_key or os.getenv("OAUTH2_ENCRYPTION_KEY")
        if not password:
            # Generate ephemeral key (will not persist across restarts)
            password = secrets.token_urlsafe(32)
            logger.warning("Using ephemeral encryption key - pending requests will not survive restart")

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=self.ENCRYPTION_SALT,
            iterations=100000,
        )

        return base64.urlsafe_b64encode(kdf.derive(password.encode()))

    def _init_database(self):
        """Initialize SQLite database with schema."""
        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
            """)

            cursor = conn.execute("SELECT version FROM schema_version ORDER BY version DESC LIMIT 1")
            current_version = cursor.fetchone()
            current_version = current_version[0] if current_version else 0

            if current_version < self.SCHEMA_VERSION:
                self._apply_migrations(conn, current_version)

    def _apply_migrations(self, conn: sqlite3.Connection, from_version: int):
        """Apply database schema migrations."""
        logger.info(f"Applying OAuth2 schema migrations from version {from_version} to {self.SCHEMA_VERSION}")

        if from_version < 1:
            conn.execute("""
                CREATE TABLE oauth2_clients (
                    client_id TEXT PRIMARY KEY,
                    client_name TEXT NOT NULL,
                    redirect_uris_encrypted TEXT NOT NULL,
                    scopes_encrypted TEXT NOT NULL,
                    allowed_implicit_grant INTEGER NOT NULL DEFAULT 0,
                    skip_consent INTEGER NOT NULL DEFAULT 0,
                    integrity_hash TEXT NOT NULL,

                    CHECK (allowed_implicit_grant IN (0, 1)),
                    CHECK (skip_consent IN (0, 1))
                )
            """)

            conn.execute("""
                CREATE TABLE authorization_requests (
                    auth_state TEXT PRIMARY KEY,
                    response_type TEXT,
                    client_id TEXT,
                    redirect_uri_encrypted TEXT NOT NULL,
                    scopes_encrypted TEXT NOT NULL,
                    state_encrypted TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    integrity_hash TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE access_tokens (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    token_id TEXT UNIQUE NOT NULL,
                    resource_owner_hash TEXT NOT NULL,
                    resource_owner_encrypted TEXT NOT NULL,
                    client_id TEXT NOT NULL,
                    scopes_encrypted TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    expires_at TEXT,
                    integrity_hash TEXT NOT NULL
                )
            """)

            conn.execute("CREATE INDEX idx_auth_requests_created_at ON authorization_requests (created_at)")
            conn.execute(
                "CREATE INDEX idx_access_tokens_owner_client ON access_tokens (resource_owner_hash, client_id)"
            )

        conn.execute("""
            INSERT INTO schema_version (version, applied_at)
            VALUES (?, ?)
        """, (self.SCHEMA_VERSION, datetime.now(timezone.utc).isoformat()))

        logger.info(f"OAuth2 schema migration to version {self.SCHEMA_VERSION} completed")

    @contextmanager
    def _get_connection(self):
        """Get database connection with proper error handling."""
        conn = None
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=30,
                isolation_level=None,  # Autocommit mode
                check_same_thread=False
            )
            conn.row_factory = sqlite3.Row
            yield conn
        except OAuth2StorageError:
            raise
        except Exception as e:
            raise OAuth2StorageError(f"Database operation failed: {e}") from e
        finally:
            if conn:
                conn.close()

    def _encrypt_field(self, value: Any) -> str:
        """Encrypt a field value."""
        if value is None:
            return ""

        if isinstance(value, (dict, list)):
            value = json.dumps(value)
        elif not isinstance(value, str):
            value = str(value)

        encrypted = self.cipher.encrypt(value.encode('utf-8'))
        return base64.b64encode(encrypted).decode('ascii')

    def _decrypt_field(self, encrypted_value: str, default: Any = None, as_json: bool = False) -> Any:
        """Decrypt a field value."""
        if not encrypted_value:
            return default

        try:
            encrypted_bytes = base64.b64decode(encrypted_value.encode('ascii'))
            decrypted_str = self.cipher.decrypt(encrypted_bytes).decode('utf-8')
        except Exception as e:
            logger.error(f"Decryption failed: {e}")
            raise OAuth2SecurityError("Field decryption failed") from e

        return json.loads(decrypted_str) if as_json else decrypted_str

    def _compute_integrity_hash(self, *values) -> str:
        """Compute HMAC integrity hash for record integrity verification."""
        hasher = hmac.new(
            self.encryption_key,
            digestmod=hashlib.sha256
        )

        for value in values:
            if value is not None:
                hasher.update(str(value).encode('utf-8'))
            # Field separator so ("ab", "c") and ("a", "bc") differ
            hasher.update(b"\x1f")

        return hasher.hexdigest()

    def _verify_integrity(self, row: sqlite3.Row, *values) -> bool:
        """Verify record integrity using HMAC."""
        computed_hash = self._compute_integrity_hash(*values)
        return hmac.compare_digest(row['integrity_hash'], computed_hash)

    def _hash_owner(self, resource_owner_id: str) -> str:
        """Keyed, non-reversible lookup hash for a resource owner."""
        return hmac.new(self.encryption_key, resource_owner_id.encode('utf-8'), hashlib.sha256).hexdigest()

    def _cleanup_worker(self):
        """Background cleanup worker thread."""
        while not self._shutdown.wait(self.cleanup_interval):
            try:
                self.cleanup_expired_data()
            except OAuth2StorageError as e:
                logger.error(f"Cleanup worker error: {e}")

    def cleanup_expired_data(self) -> int:
        """Delete pending authorization requests older than the TTL."""
        cutoff = _to_iso(time.time() - self.pending_request_ttl)
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "DELETE FROM authorization_requests WHERE created_at < ?", (cutoff,)
                )
                removed = cursor.rowcount

        if removed:
            logger.info(f"Removed {removed} expired authorization requests")
        return removed

    def shutdown(self):
        """Stop the background sweeper."""
        self._shutdown.set()
        if self._cleanup_thread and self._cleanup_thread.is_alive():
            self._cleanup_thread.join(timeout=5)
        logger.info("OAuth2 storage shutdown completed")

    # Client registry

    def register_client(self, client: Client) -> Client:
        """Register (or replace) a client."""
        redirect_uris_encrypted = self._encrypt_field(client.redirect_uris)
        scopes_encrypted = self._encrypt_field(client.scopes)
        implicit = int(client.allowed_implicit_grant)
        skip_consent = int(client.skip_consent)

        integrity_hash = self._compute_integrity_hash(
            client.client_id, client.name, redirect_uris_encrypted,
            scopes_encrypted, implicit, skip_consent
        )

        with self._lock:
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT OR REPLACE INTO oauth2_clients (
                        client_id, client_name, redirect_uris_encrypted, scopes_encrypted,
                        allowed_implicit_grant, skip_consent, integrity_hash
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (
                    client.client_id, client.name, redirect_uris_encrypted, scopes_encrypted,
                    implicit, skip_consent, integrity_hash
                ))

        logger.info(f"OAuth2 client registered: {client.client_id}")
        return client

    def get_client(self, client_id: str) -> Client | None:
        """Get client by ID."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM oauth2_clients WHERE client_id = ?", (client_id,)
            ).fetchone()

        if not row:
            return None

        if not self._verify_integrity(
            row,
            row['client_id'], row['client_name'], row['redirect_uris_encrypted'],
            row['scopes_encrypted'], row['allowed_implicit_grant'], row['skip_consent']
        ):
            logger.error(f"Integrity verification failed for client: {client_id}")
            raise OAuth2SecurityError("Client integrity verification failed")

        return Client(
            client_id=row['client_id'],
            name=row['client_name'],
            redirect_uris=self._decrypt_field(row['redirect_uris_encrypted'], [], as_json=True),
            scopes=self._decrypt_field(row['scopes_encrypted'], [], as_json=True),
            allowed_implicit_grant=bool(row['allowed_implicit_grant']),
            skip_consent=bool(row['skip_consent']),
        )

    # Pending authorization requests

    def save(self, authorization_request: AuthorizationRequest) -> None:
        """Durably record a pending authorization request under its auth state."""
        auth_state = authorization_request.auth_state
        redirect_uri_encrypted = self._encrypt_field(authorization_request.redirect_uri)
        scopes_encrypted = self._encrypt_field(list(authorization_request.requested_scopes))
        state_encrypted = self._encrypt_field(authorization_request.state)
        created_at = _to_iso(authorization_request.created_at)

        integrity_hash = self._compute_integrity_hash(
            auth_state, authorization_request.response_type, authorization_request.client_id,
            redirect_uri_encrypted, scopes_encrypted, state_encrypted, created_at
        )

        try:
            with self._lock:
                with self._get_connection() as conn:
                    conn.execute("""
                        INSERT INTO authorization_requests (
                            auth_state, response_type, client_id, redirect_uri_encrypted,
                            scopes_encrypted, state_encrypted, created_at, integrity_hash
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """, (
                        auth_state, authorization_request.response_type, authorization_request.client_id,
                        redirect_uri_encrypted, scopes_encrypted, state_encrypted, created_at,
                        integrity_hash
                    ))
        except OAuth2StorageError as e:
            logger.error(f"Failed to save authorization request: {e}")
            raise

        logger.debug(f"Authorization request saved: {auth_state}")

    def find_by_auth_state(self, auth_state: str) -> AuthorizationRequest | None:
        """Retrieve a pending authorization request, with its client attached."""
        if not auth_state:
            return None

        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM authorization_requests WHERE auth_state = ?", (auth_state,)
            ).fetchone()

        if not row:
            return None

        if not self._verify_integrity(
            row,
            row['auth_state'], row['response_type'], row['client_id'],
            row['redirect_uri_encrypted'], row['scopes_encrypted'],
            row['state_encrypted'], row['created_at']
        ):
            logger.error(f"Integrity verification failed for authorization request: {auth_state}")
            raise OAuth2SecurityError("Authorization request integrity verification failed")

        client_id = row['client_id']
        return AuthorizationRequest(
            response_type=row['response_type'],
            client_id=client_id,
            redirect_uri=self._decrypt_field(row['redirect_uri_encrypted']),
            requested_scopes=self._decrypt_field(row['scopes_encrypted'], [], as_json=True),
            state=self._decrypt_field(row['state_encrypted']),
            auth_state=row['auth_state'],
            client=self.get_client(client_id) if client_id else None,
            created_at=_from_iso(row['created_at']),
        )

    def delete(self, auth_state: str) -> bool:
        """Consume a pending authorization request."""
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "DELETE FROM authorization_requests WHERE auth_state = ?", (auth_state,)
                )
                deleted = cursor.rowcount > 0

        if deleted:
            logger.debug(f"Authorization request consumed: {auth_state}")
        return deleted

    # Access tokens

    def create_access_token(
        self,
        resource_owner_id: str,
        client_id: str,
        scopes: list[str],
        expires_in: int | None = 3600  # 1 hour
    ) -> AccessToken:
        """Record a granted access token (written by the token issuer)."""
        now = time.time()
        token = AccessToken(
            token_id=f"at_{secrets.token_urlsafe(16)}",
            resource_owner_id=resource_owner_id,
            client_id=client_id,
            scopes=list(scopes),
            created_at=now,
            expires_at=now + expires_in if expires_in else None,
        )

        owner_hash = self._hash_owner(resource_owner_id)
        owner_encrypted = self._encrypt_field(resource_owner_id)
        scopes_encrypted = self._encrypt_field(token.scopes)
        created_at = _to_iso(token.created_at)
        expires_at = _to_iso(token.expires_at)

        integrity_hash = self._compute_integrity_hash(
            token.token_id, owner_hash, owner_encrypted, client_id,
            scopes_encrypted, created_at, expires_at
        )

        with self._lock:
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT INTO access_tokens (
                        token_id, resource_owner_hash, resource_owner_encrypted, client_id,
                        scopes_encrypted, created_at, expires_at, integrity_hash
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    token.token_id, owner_hash, owner_encrypted, client_id,
                    scopes_encrypted, created_at, expires_at, integrity_hash
                ))

        logger.debug(f"Access token recorded: {token.token_id}")
        return token

    def find_by_resource_owner_and_client(self, resource_owner_id: str, client: Client) -> list[AccessToken]:
        """All tokens granted to the client by the resource owner, oldest first."""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM access_tokens
                WHERE resource_owner_hash = ? AND client_id = ?
                ORDER BY id
            """, (self._hash_owner(resource_owner_id), client.client_id)).fetchall()

        tokens = []
        for row in rows:
            if not self._verify_integrity(
                row,
                row['token_id'], row['resource_owner_hash'], row['resource_owner_encrypted'],
                row['client_id'], row['scopes_encrypted'], row['created_at'], row['expires_at']
            ):
                logger.error(f"Integrity verification failed for access token: {row['token_id']}")
                raise OAuth2SecurityError("Access token integrity verification failed")

            tokens.append(AccessToken(
                token_id=row['token_id'],
                resource_owner_id=self._decrypt_field(row['resource_owner_encrypted']),
                client_id=row['client_id'],
                scopes=self._decrypt_field(row['scopes_encrypted'], [], as_json=True),
                created_at=_from_iso(row['created_at']),
                expires_at=_from_iso(row['expires_at']),
            ))

        return tokens


# Global storage instance
_oauth2_storage: OAuth2EncryptedStorage | None = None
_storage_lock = threading.Lock()


def get_oauth2_storage(
    db_path: str | None = None,
    encryption_key: str | None = None,
    pending_request_ttl: int = 600,
    cleanup_interval: int = 3600
) -> OAuth2EncryptedStorage:
    """
    Get global OAuth2 encrypted storage instance (singleton pattern).

    Arguments are only used when the instance is first created.
    """
    global _oauth2_storage

    if _oauth2_storage is None:
        with _storage_lock:
            if _oauth2_storage is None:
                _oauth2_storage = OAuth2EncryptedStorage(
                    db_path=db_path,
                    encryption_key=encryption_key,
                    pending_request_ttl=pending_request_ttl,
                    cleanup_interval=cleanup_interval
                )

    return _oauth2_storage


def shutdown_oauth2_storage():
    """Shutdown global OAuth2 storage instance."""
    global _oauth2_storage

    if _oauth2_storage:
        with _storage_lock:
            if _oauth2_storage:
                _oauth2_storage.shutdown()
                _oauth2_storage = None
