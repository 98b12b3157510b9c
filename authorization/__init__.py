"""
OAuth 2.0 authorization endpoint front door

This package validates inbound authorization requests, hands them to an
authenticator, persists them under a correlation token (the auth state), and
captures or reuses user consent before token issuance.

Components:
- oauth2_validator: request validation against client registrations
- oauth2_storage: encrypted SQLite storage for pending requests, tokens and clients
- authentication: the resume / start / reject gate
- consent: consent reuse, consent form round trip, skip-consent clients
- oauth2_endpoints: FastAPI route chaining the stages
"""

from .authentication import AuthenticationGate, Authenticator, build_error_redirect, error_response
from .consent import (
    ConsentHandler,
    ConsentRenderer,
    ConsentStage,
    FormConsentHandler,
    MissingPendingRequestError,
)
from .oauth2_endpoints import (
    DEFAULT_AUTHORIZE_PATH,
    AuthorizationEndpoint,
    TokenIssuer,
    create_authorization_endpoint,
    create_authorization_router,
    setup_authorization_endpoint,
)
from .oauth2_models import (
    AUTH_STATE,
    GRANTED_SCOPES,
    USER_OAUTH_APPROVAL,
    AccessToken,
    AuthenticatedPrincipal,
    AuthorizationContext,
    AuthorizationRequest,
    Client,
    generate_auth_state,
    parse_scopes,
)
from .oauth2_storage import (
    OAuth2EncryptedStorage,
    OAuth2SecurityError,
    OAuth2StorageError,
    get_oauth2_storage,
    shutdown_oauth2_storage,
)
from .oauth2_validator import OAuth2Validator, ValidationError, ValidationResponse, is_valid_url
from .templates import HTMLConsentRenderer

__all__ = [
    # Models
    "AuthorizationRequest",
    "AuthorizationContext",
    "AuthenticatedPrincipal",
    "AccessToken",
    "Client",
    "AUTH_STATE",
    "GRANTED_SCOPES",
    "USER_OAUTH_APPROVAL",
    "generate_auth_state",
    "parse_scopes",

    # Validation
    "OAuth2Validator",
    "ValidationError",
    "ValidationResponse",
    "is_valid_url",

    # Storage
    "OAuth2EncryptedStorage",
    "OAuth2StorageError",
    "OAuth2SecurityError",
    "get_oauth2_storage",
    "shutdown_oauth2_storage",

    # Gates
    "AuthenticationGate",
    "Authenticator",
    "build_error_redirect",
    "error_response",
    "ConsentStage",
    "ConsentHandler",
    "ConsentRenderer",
    "FormConsentHandler",
    "MissingPendingRequestError",
    "HTMLConsentRenderer",

    # HTTP
    "AuthorizationEndpoint",
    "TokenIssuer",
    "DEFAULT_AUTHORIZE_PATH",
    "create_authorization_endpoint",
    "create_authorization_router",
    "setup_authorization_endpoint",
]
