#!/usr/bin/env python3
"""
OAuth 2.0 Authorization Endpoint HTTP wiring

Chains the stages of the authorize route and exposes them as a FastAPI router.
Each inbound call gets one AuthorizationContext, which is passed by reference
through:

    AuthenticationGate -> (authenticator) -> ConsentStage -> (consent handler) -> TokenIssuer

The route accepts GET (initial request) and POST (consent form submission,
authenticator round trips) on the same path, so the consent form posts back to
where it came from.

Usage:
    from authorization.oauth2_endpoints import setup_authorization_endpoint

    app = FastAPI()
    setup_authorization_endpoint(app, authenticator=my_authenticator, token_issuer=my_issuer)
"""

import logging
from typing import Optional, Protocol

from fastapi import APIRouter, FastAPI, Request
from starlette.responses import Response

from .authentication import AuthenticationGate, Authenticator
from .consent import ConsentHandler, ConsentRenderer, ConsentStage, FormConsentHandler
from .oauth2_models import AuthorizationContext
from .oauth2_storage import OAuth2EncryptedStorage
from .oauth2_validator import OAuth2Validator
from .templates import HTMLConsentRenderer

logger = logging.getLogger(__name__)

DEFAULT_AUTHORIZE_PATH = "/oauth2/authorize"


class TokenIssuer(Protocol):
    """Final stage: mints a token limited to ``context.granted_scopes``."""

    async def issue(self, request: Request, context: AuthorizationContext) -> Response:
        ...


class AuthorizationEndpoint:
    """The authorize route as a chain of explicit stages."""

    def __init__(self, gate: AuthenticationGate, consent: ConsentStage, token_issuer: TokenIssuer):
        self.gate = gate
        self.consent = consent
        self.token_issuer = token_issuer

    async def __call__(self, request: Request) -> Response:
        context = AuthorizationContext()
        return await self.gate.handle(request, context, self._after_authentication)

    async def _after_authentication(self, request: Request, context: AuthorizationContext) -> Response:
        return await self.consent.handle(request, context, self._after_consent)

    async def _after_consent(self, request: Request, context: AuthorizationContext) -> Response:
        logger.debug(
            f"Authorization request {context.auth_state} proceeds to token issuance "
            f"with scopes {context.granted_scopes}"
        )
        return await self.token_issuer.issue(request, context)


def create_authorization_endpoint(
    storage: OAuth2EncryptedStorage,
    authenticator: Authenticator,
    token_issuer: TokenIssuer,
    consent_handler: Optional[ConsentHandler] = None,
    renderer: Optional[ConsentRenderer] = None,
) -> AuthorizationEndpoint:
    """
    Assemble the authorize pipeline over a single storage instance.

    Args:
        storage: Pending requests, access tokens and clients
        authenticator: Establishes the resource owner
        token_issuer: Receives the request once consent is settled
        consent_handler: Defaults to the form-based handler
        renderer: Consent page renderer for the default handler
    """
    gate = AuthenticationGate(
        authenticator=authenticator,
        authorization_requests=storage,
        validator=OAuth2Validator(storage),
    )
    if consent_handler is None:
        consent_handler = FormConsentHandler(
            access_tokens=storage,
            authorization_requests=storage,
            renderer=renderer or HTMLConsentRenderer(),
        )
    consent = ConsentStage(handler=consent_handler, authorization_requests=storage)
    return AuthorizationEndpoint(gate=gate, consent=consent, token_issuer=token_issuer)


def create_authorization_router(
    endpoint: AuthorizationEndpoint, path: str = DEFAULT_AUTHORIZE_PATH
) -> APIRouter:
    """Create the router serving the authorize route."""
    router = APIRouter()

    async def authorize(request: Request) -> Response:
        return await endpoint(request)

    router.add_api_route(path, authorize, methods=["GET", "POST"], include_in_schema=False)
    return router


def setup_authorization_endpoint(
    app: FastAPI,
    storage: OAuth2EncryptedStorage,
    authenticator: Authenticator,
    token_issuer: TokenIssuer,
    path: str = DEFAULT_AUTHORIZE_PATH,
    consent_handler: Optional[ConsentHandler] = None,
    renderer: Optional[ConsentRenderer] = None,
) -> AuthorizationEndpoint:
    """Mount the authorize route on an existing FastAPI app."""
    endpoint = create_authorization_endpoint(
        storage=storage,
        authenticator=authenticator,
        token_issuer=token_issuer,
        consent_handler=consent_handler,
        renderer=renderer,
    )
    app.include_router(create_authorization_router(endpoint, path), tags=["oauth"])
    logger.info(f"Mounted OAuth 2.0 authorization endpoint at {path}")
    return endpoint
