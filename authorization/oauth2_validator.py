"""
OAuth 2.0 authorization request validation

Checks an inbound AuthorizationRequest against the registration of the client it
names (RFC 6749 section 4.1.1 / 4.2.1):

- client_id must identify a registered client
- response_type must be "code" or "token" (the latter only for implicit clients)
- redirect_uri must be an absolute URI without fragment that matches a
  registered URI; when omitted, the first registered URI is used
- every requested scope must be registered for the client; when none are
  requested, the client's scopes are used

Validation never raises. The outcome is an immutable ValidationResponse; a
failed client lookup is reported as server_error.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol
from urllib.parse import urlparse

from .oauth2_models import AuthorizationRequest, Client
from .oauth2_storage import OAuth2StorageError

logger = logging.getLogger(__name__)

RESPONSE_TYPE_CODE = "code"
RESPONSE_TYPE_TOKEN = "token"


class ValidationError(Enum):
    """Validation failures with their OAuth 2.0 error code and description."""
    UNSUPPORTED_RESPONSE_TYPE = (
        "unsupported_response_type", "The supported response_type values are 'code' and 'token'")
    UNKNOWN_CLIENT_ID = ("unauthorized_client", "The client_id is unknown")
    IMPLICIT_GRANT_NOT_PERMITTED = (
        "unsupported_response_type", "The client has no permission for implicit grant")
    REDIRECT_URI_REQUIRED = (
        "invalid_request", "Client has no registered redirect_uri, must provide run-time redirect_uri")
    REDIRECT_URI_NOT_URI = ("invalid_request", "redirect_uri must be a valid URI")
    REDIRECT_URI_FRAGMENT_COMPONENT = (
        "invalid_request", "The redirect_uri endpoint must not include a fragment component")
    REDIRECT_URI_DIFFERENT = (
        "invalid_request", "redirect_uri must equal one of the registered redirect_uri values")
    SCOPE_NOT_VALID = ("invalid_scope", "The requested scope is invalid, unknown, or malformed")
    SERVER_ERROR = ("server_error", "The client registration could not be read")

    @property
    def code(self) -> str:
        return self.value[0]

    @property
    def description(self) -> str:
        return self.value[1]


@dataclass(frozen=True)
class ValidationResponse:
    """Outcome of validating one authorization request."""
    valid: bool
    error_code: str = ""
    error_description: str = ""

    @classmethod
    def ok(cls) -> "ValidationResponse":
        return cls(valid=True)

    @classmethod
    def from_error(cls, error: ValidationError) -> "ValidationResponse":
        return cls(valid=False, error_code=error.code, error_description=error.description)


class ClientRepository(Protocol):
    """Read-only access to client registrations."""

    def get_client(self, client_id: str) -> Optional[Client]:
        ...


class RequestValidator(Protocol):
    """Anything that can judge an authorization request."""

    def validate(self, authorization_request: AuthorizationRequest) -> ValidationResponse:
        ...


def is_valid_url(url: Optional[str]) -> bool:
    """True for a syntactically valid absolute URL that is safe to redirect to.

    Relative references, whitespace and control characters are rejected so an
    attacker-supplied value can never become an open or split redirect.
    """
    if not url:
        return False
    if any(ch.isspace() or ord(ch) < 0x20 or ord(ch) == 0x7F for ch in url):
        return False
    try:
        parsed = urlparse(url)
        # Accessing port validates it
        parsed.port
    except ValueError:
        return False
    return bool(parsed.scheme) and parsed.scheme.isascii() and parsed.scheme.isalpha() and bool(parsed.netloc)


class _Invalid(Exception):
    """Internal short-circuit carrying the first validation failure."""

    def __init__(self, error: ValidationError):
        self.error = error
        super().__init__(error.description)


class OAuth2Validator:
    """Validates authorization requests against registered clients."""

    def __init__(self, clients: ClientRepository):
        self.clients = clients

    def validate(self, authorization_request: AuthorizationRequest) -> ValidationResponse:
        """Validate the request, filling in client defaults where allowed."""
        try:
            client = self._validate_client(authorization_request)
            self._validate_response_type(authorization_request, client)
            self._validate_redirect_uri(authorization_request, client)
            self._validate_scopes(authorization_request, client)
        except _Invalid as e:
            logger.debug(f"Authorization request {authorization_request.auth_state} invalid: {e.error.name}")
            return ValidationResponse.from_error(e.error)
        return ValidationResponse.ok()

    def _validate_client(self, authorization_request: AuthorizationRequest) -> Client:
        client_id = authorization_request.client_id
        try:
            client = self.clients.get_client(client_id) if client_id and client_id.strip() else None
        except OAuth2StorageError as e:
            logger.error(f"Client lookup failed for {client_id!r}: {e}")
            raise _Invalid(ValidationError.SERVER_ERROR) from e
        if client is None:
            raise _Invalid(ValidationError.UNKNOWN_CLIENT_ID)
        authorization_request.client = client
        return client

    def _validate_response_type(self, authorization_request: AuthorizationRequest, client: Client):
        response_type = authorization_request.response_type
        if response_type not in (RESPONSE_TYPE_CODE, RESPONSE_TYPE_TOKEN):
            raise _Invalid(ValidationError.UNSUPPORTED_RESPONSE_TYPE)
        if response_type == RESPONSE_TYPE_TOKEN and not client.allowed_implicit_grant:
            raise _Invalid(ValidationError.IMPLICIT_GRANT_NOT_PERMITTED)

    def _validate_redirect_uri(self, authorization_request: AuthorizationRequest, client: Client):
        redirect_uri = authorization_request.redirect_uri
        if not redirect_uri or not redirect_uri.strip():
            if not client.redirect_uris:
                raise _Invalid(ValidationError.REDIRECT_URI_REQUIRED)
            authorization_request.redirect_uri = client.redirect_uris[0]
            return

        if not is_valid_url(redirect_uri):
            raise _Invalid(ValidationError.REDIRECT_URI_NOT_URI)
        if "#" in redirect_uri:
            raise _Invalid(ValidationError.REDIRECT_URI_FRAGMENT_COMPONENT)
        if client.redirect_uris and redirect_uri not in client.redirect_uris:
            raise _Invalid(ValidationError.REDIRECT_URI_DIFFERENT)

    def _validate_scopes(self, authorization_request: AuthorizationRequest, client: Client):
        requested = authorization_request.requested_scopes
        if not requested:
            authorization_request.requested_scopes = list(client.scopes)
            return
        if not set(requested).issubset(client.scopes):
            raise _Invalid(ValidationError.SCOPE_NOT_VALID)
