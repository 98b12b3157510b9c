"""
OAuth 2.0 authorization endpoint data models

Plain dataclasses shared by the authentication gate, the consent gate and the
storage layer:

- AuthorizationRequest: a pending authorization request keyed by its auth state
- Client / AccessToken / AuthenticatedPrincipal: read-only collaborator entities
- AuthorizationContext: the per-request value threaded through every stage
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

from starlette.datastructures import MultiDict
from starlette.requests import Request

# Consent form field names
AUTH_STATE = "AUTH_STATE"
GRANTED_SCOPES = "GRANTED_SCOPES"
USER_OAUTH_APPROVAL = "user_oauth_approval"


def generate_auth_state() -> str:
    """Generate an unpredictable correlation token for a pending request."""
    return str(uuid.uuid4())


def parse_scopes(scope: Optional[str]) -> list[str]:
    """Split a comma-separated scope parameter, preserving order."""
    if not scope or not scope.strip():
        return []
    return scope.split(",")


async def read_parameters(request: Request) -> MultiDict:
    """Merge form and query parameters. ``get`` prefers the query value."""
    form = await request.form()
    # MultiDict.get returns the last value for a key
    return MultiDict([*form.multi_items(), *request.query_params.multi_items()])


@dataclass
class Client:
    """Registered OAuth 2.0 client"""
    client_id: str
    name: str = ""
    redirect_uris: list[str] = field(default_factory=list)
    scopes: list[str] = field(default_factory=list)
    allowed_implicit_grant: bool = False
    skip_consent: bool = False


@dataclass
class AuthorizationRequest:
    """OAuth 2.0 authorization request awaiting authentication and consent"""
    response_type: Optional[str]
    client_id: Optional[str]
    redirect_uri: Optional[str]
    requested_scopes: list[str] = field(default_factory=list)
    state: Optional[str] = None
    auth_state: str = field(default_factory=generate_auth_state)
    client: Optional[Client] = None
    created_at: float = field(default_factory=time.time)

    def __setattr__(self, name, value):
        # auth_state is write-once; the validator may still fill in the other fields
        if name == "auth_state" and "auth_state" in self.__dict__:
            raise AttributeError("auth_state of an authorization request cannot be reassigned")
        super().__setattr__(name, value)

    @classmethod
    def from_parameters(cls, params: MultiDict) -> "AuthorizationRequest":
        """Build a candidate request from inbound parameters (valid or not)."""
        return cls(
            response_type=params.get("response_type"),
            client_id=params.get("client_id"),
            redirect_uri=params.get("redirect_uri"),
            requested_scopes=parse_scopes(params.get("scope")),
            state=params.get("state"),
        )


@dataclass
class AccessToken:
    """Previously granted access token, as seen by the consent gate"""
    token_id: str
    resource_owner_id: str
    client_id: str
    scopes: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    expires_at: Optional[float] = None


@dataclass
class AuthenticatedPrincipal:
    """Resource owner established by an authenticator"""
    name: str
    roles: list[str] = field(default_factory=list)
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass
class AuthorizationContext:
    """Request-scoped values handed from one stage of the flow to the next.

    A new context is created for every inbound call. The authenticator sets
    ``principal`` (and ``auth_state`` when resuming), the consent gate sets
    ``granted_scopes`` and the token issuer reads both.
    """
    auth_state: Optional[str] = None
    return_uri: Optional[str] = None
    principal: Optional[AuthenticatedPrincipal] = None
    requested_scopes: list[str] = field(default_factory=list)
    client: Optional[Client] = None
    action_uri: Optional[str] = None
    granted_scopes: list[str] = field(default_factory=list)
