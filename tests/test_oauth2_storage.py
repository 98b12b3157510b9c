#!/usr/bin/env python3
"""
Tests for the encrypted OAuth 2.0 storage

Covers client registration, pending authorization requests, access token
lookup, integrity verification and expiry sweeping.
"""

import sqlite3
import time

import pytest

from authorization.oauth2_models import AuthorizationRequest, Client
from authorization.oauth2_storage import (
    OAuth2EncryptedStorage,
    OAuth2SecurityError,
    OAuth2StorageError,
    get_oauth2_storage,
    shutdown_oauth2_storage,
)


def make_pending(client_id="test-client", **overrides) -> AuthorizationRequest:
    values = dict(
        response_type="code",
        client_id=client_id,
        redirect_uri="https://app.example.com/callback",
        requested_scopes=["read", "write"],
        state="xyz",
    )
    values.update(overrides)
    return AuthorizationRequest(**values)


class TestClientRegistry:
    """Test client registration storage."""

    def test_register_and_get(self, storage, registered_client):
        storage.register_client(registered_client)

        assert storage.get_client("test-client") == registered_client

    def test_flags_round_trip(self, storage):
        client = Client(client_id="trusted", allowed_implicit_grant=True, skip_consent=True)
        storage.register_client(client)

        loaded = storage.get_client("trusted")
        assert loaded.allowed_implicit_grant
        assert loaded.skip_consent
        assert loaded.redirect_uris == []

    def test_unknown_client(self, storage):
        assert storage.get_client("nobody") is None

    def test_register_replaces(self, storage, registered_client):
        storage.register_client(registered_client)
        storage.register_client(Client(client_id="test-client", name="Renamed", scopes=["read"]))

        assert storage.get_client("test-client").name == "Renamed"

    def test_tampered_client_detected(self, storage, registered_client):
        storage.register_client(registered_client)
        with sqlite3.connect(storage.db_path) as conn:
            conn.execute("UPDATE oauth2_clients SET skip_consent = 1 WHERE client_id = 'test-client'")

        with pytest.raises(OAuth2SecurityError):
            storage.get_client("test-client")


class TestAuthorizationRequests:
    """Test pending authorization request storage."""

    def test_save_and_find(self, storage, registered_client):
        storage.register_client(registered_client)
        pending = make_pending()

        storage.save(pending)
        loaded = storage.find_by_auth_state(pending.auth_state)

        assert loaded.auth_state == pending.auth_state
        assert loaded.response_type == "code"
        assert loaded.client_id == "test-client"
        assert loaded.redirect_uri == "https://app.example.com/callback"
        assert loaded.requested_scopes == ["read", "write"]
        assert loaded.state == "xyz"
        assert loaded.client == registered_client
        assert loaded.created_at == pytest.approx(pending.created_at, abs=1e-3)

    def test_missing_state_round_trips_as_none(self, storage):
        pending = make_pending(state=None, requested_scopes=[])

        storage.save(pending)
        loaded = storage.find_by_auth_state(pending.auth_state)

        assert loaded.state is None
        assert loaded.requested_scopes == []
        assert loaded.client is None

    @pytest.mark.parametrize("auth_state", ["", None, "unknown"])
    def test_find_miss(self, storage, auth_state):
        assert storage.find_by_auth_state(auth_state) is None

    def test_duplicate_auth_state_rejected(self, storage):
        pending = make_pending()
        storage.save(pending)

        with pytest.raises(OAuth2StorageError):
            storage.save(pending)

    def test_delete(self, storage):
        pending = make_pending()
        storage.save(pending)

        assert storage.delete(pending.auth_state)
        assert storage.find_by_auth_state(pending.auth_state) is None
        assert not storage.delete(pending.auth_state)

    def test_sensitive_fields_are_encrypted(self, storage):
        pending = make_pending(state="very-secret-state")
        storage.save(pending)

        with sqlite3.connect(storage.db_path) as conn:
            row = conn.execute("SELECT * FROM authorization_requests").fetchone()

        assert not any("very-secret-state" in str(value) for value in row)
        assert not any("app.example.com" in str(value) for value in row)

    def test_tampered_request_detected(self, storage):
        pending = make_pending()
        storage.save(pending)
        with sqlite3.connect(storage.db_path) as conn:
            conn.execute("UPDATE authorization_requests SET client_id = 'other-client'")

        with pytest.raises(OAuth2SecurityError):
            storage.find_by_auth_state(pending.auth_state)

    def test_survives_restart_with_same_key(self, storage):
        pending = make_pending()
        storage.save(pending)

        reopened = OAuth2EncryptedStorage(
            db_path=storage.db_path, encryption_key="test-encryption-secret", cleanup_interval=0
        )

        assert reopened.find_by_auth_state(pending.auth_state).state == "xyz"

    def test_other_key_cannot_read(self, storage):
        pending = make_pending()
        storage.save(pending)

        other = OAuth2EncryptedStorage(db_path=storage.db_path, encryption_key="other-secret", cleanup_interval=0)

        with pytest.raises(OAuth2SecurityError):
            other.find_by_auth_state(pending.auth_state)

    def test_cleanup_removes_expired_requests(self, storage):
        expired = make_pending(created_at=time.time() - storage.pending_request_ttl - 60)
        fresh = make_pending()
        storage.save(expired)
        storage.save(fresh)

        assert storage.cleanup_expired_data() == 1
        assert storage.find_by_auth_state(expired.auth_state) is None
        assert storage.find_by_auth_state(fresh.auth_state) is not None


class TestAccessTokens:
    """Test access token lookup by resource owner and client."""

    def test_tokens_in_creation_order(self, storage, registered_client):
        first = storage.create_access_token("alice", "test-client", ["read", "write"])
        second = storage.create_access_token("alice", "test-client", ["read"])

        tokens = storage.find_by_resource_owner_and_client("alice", registered_client)

        assert [t.token_id for t in tokens] == [first.token_id, second.token_id]
        assert tokens[0].scopes == ["read", "write"]
        assert tokens[0].resource_owner_id == "alice"
        assert tokens[0].expires_at == pytest.approx(first.expires_at, abs=1e-3)

    def test_lookup_is_scoped_to_owner_and_client(self, storage, registered_client):
        storage.create_access_token("bob", "test-client", ["read"])
        storage.create_access_token("alice", "other-client", ["read"])

        assert storage.find_by_resource_owner_and_client("alice", registered_client) == []

    def test_token_without_expiry(self, storage, registered_client):
        storage.create_access_token("alice", "test-client", ["read"], expires_in=None)

        assert storage.find_by_resource_owner_and_client("alice", registered_client)[0].expires_at is None

    def test_resource_owner_not_stored_in_clear(self, storage):
        storage.create_access_token("alice@example.com", "test-client", ["read"])

        with sqlite3.connect(storage.db_path) as conn:
            row = conn.execute("SELECT * FROM access_tokens").fetchone()

        assert not any("alice@example.com" in str(value) for value in row)

    def test_tampered_token_detected(self, storage, registered_client):
        storage.create_access_token("alice", "test-client", ["read"])
        with sqlite3.connect(storage.db_path) as conn:
            conn.execute("UPDATE access_tokens SET expires_at = NULL")

        with pytest.raises(OAuth2SecurityError):
            storage.find_by_resource_owner_and_client("alice", registered_client)


class TestGlobalStorage:
    """Test the process-wide storage instance."""

    def test_singleton_and_shutdown(self, tmp_path):
        try:
            first = get_oauth2_storage(db_path=str(tmp_path / "global.db"), cleanup_interval=0)
            assert get_oauth2_storage() is first
        finally:
            shutdown_oauth2_storage()

        try:
            second = get_oauth2_storage(db_path=str(tmp_path / "global2.db"), cleanup_interval=0)
            assert second is not first
        finally:
            shutdown_oauth2_storage()

    def test_background_sweeper_stops_on_shutdown(self, tmp_path):
        store = OAuth2EncryptedStorage(
            db_path=str(tmp_path / "sweeper.db"), encryption_key="k", cleanup_interval=60
        )
        assert store._cleanup_thread.is_alive()

        store.shutdown()

        assert not store._cleanup_thread.is_alive()
