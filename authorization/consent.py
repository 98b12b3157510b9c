"""
User consent for the OAuth 2.0 authorization endpoint

Runs after authentication and before token issuance.

- ConsentStage loads the pending request for the context's auth state, skips
  consent for clients registered with skip_consent, and otherwise hands over
  to a ConsentHandler.
- FormConsentHandler reuses the scopes of an earlier grant to the same
  (resource owner, client) pair, or shows a consent form and consumes its
  submission on the next round trip.

On every successful path the context carries ``auth_state`` and
``granted_scopes`` for the token issuer.
"""

import logging
from typing import Optional, Protocol

from starlette.datastructures import MultiDict
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

from .authentication import NextStage
from .oauth2_models import (
    AUTH_STATE,
    GRANTED_SCOPES,
    USER_OAUTH_APPROVAL,
    AuthorizationContext,
    AuthorizationRequest,
    Client,
    read_parameters,
)
from .oauth2_storage import AccessTokenRepository, AuthorizationRequestRepository, OAuth2StorageError

logger = logging.getLogger(__name__)


class MissingPendingRequestError(Exception):
    """No pending authorization request is stored under the given auth state."""

    def __init__(self, auth_state: Optional[str]):
        self.auth_state = auth_state
        super().__init__(f"No pending authorization request for auth state {auth_state!r}")


class ConsentRenderer(Protocol):
    """Renders the consent prompt and the consent-denied page."""

    def render_consent(self, request: Request, context: AuthorizationContext) -> Response:
        ...

    def render_denied(self, request: Request, context: AuthorizationContext) -> Response:
        ...


class ConsentHandler(Protocol):
    """Decides whether the resource owner consents to the client's request."""

    async def handle_consent(
        self,
        request: Request,
        context: AuthorizationContext,
        call_next: NextStage,
        auth_state: Optional[str],
        return_uri: Optional[str],
        client: Client,
    ) -> Response:
        ...


def find_pending_request(
    authorization_requests: AuthorizationRequestRepository, auth_state: Optional[str]
) -> AuthorizationRequest:
    """Look up a pending request, treating a miss as an error."""
    pending = authorization_requests.find_by_auth_state(auth_state) if auth_state else None
    if pending is None:
        raise MissingPendingRequestError(auth_state)
    return pending


def _missing_pending_response(e: MissingPendingRequestError) -> Response:
    logger.warning(str(e))
    return PlainTextResponse("Unknown or expired authorization request", status_code=400)


def _storage_failure_response() -> Response:
    logger.exception("while reading authorization state")
    return PlainTextResponse("Cannot read authorization state", status_code=500)


class FormConsentHandler:
    """Consent handler backed by an HTML form."""

    def __init__(
        self,
        access_tokens: AccessTokenRepository,
        authorization_requests: AuthorizationRequestRepository,
        renderer: ConsentRenderer,
    ):
        self.access_tokens = access_tokens
        self.authorization_requests = authorization_requests
        self.renderer = renderer

    async def handle_consent(
        self,
        request: Request,
        context: AuthorizationContext,
        call_next: NextStage,
        auth_state: Optional[str],
        return_uri: Optional[str],
        client: Client,
    ) -> Response:
        params = await read_parameters(request)
        if self._is_consent_submission(request, params):
            return await self._process_form(request, context, call_next, params)
        return await self._process_initial(request, context, call_next, auth_state, return_uri, client)

    @staticmethod
    def _is_consent_submission(request: Request, params: MultiDict) -> bool:
        approval = params.get(USER_OAUTH_APPROVAL)
        return request.method == "POST" and bool(approval and approval.strip())

    async def _process_initial(
        self,
        request: Request,
        context: AuthorizationContext,
        call_next: NextStage,
        auth_state: Optional[str],
        return_uri: Optional[str],
        client: Client,
    ) -> Response:
        principal = context.principal
        if principal is None:
            logger.error(f"No authenticated principal for authorization request {auth_state}")
            return PlainTextResponse("Resource owner not authenticated", status_code=500)

        try:
            tokens = self.access_tokens.find_by_resource_owner_and_client(principal.name, client)
        except OAuth2StorageError:
            return _storage_failure_response()

        if tokens:
            # Reuse the scopes of the first earlier grant instead of asking again
            context.granted_scopes = list(tokens[0].scopes)
            context.client = client
            logger.info(
                f"Reusing consent of {principal.name} for client {client.client_id}: {context.granted_scopes}"
            )
            return await call_next(request, context)

        try:
            pending = find_pending_request(self.authorization_requests, auth_state)
        except MissingPendingRequestError as e:
            return _missing_pending_response(e)
        except OAuth2StorageError:
            return _storage_failure_response()

        context.requested_scopes = list(pending.requested_scopes)
        context.client = client
        context.auth_state = auth_state
        context.action_uri = return_uri

        response = self.renderer.render_consent(request, context)
        response.headers["X-Frame-Options"] = "SAMEORIGIN"
        return response

    async def _process_form(
        self,
        request: Request,
        context: AuthorizationContext,
        call_next: NextStage,
        params: MultiDict,
    ) -> Response:
        if params.get(USER_OAUTH_APPROVAL, "").strip().lower() == "true":
            context.auth_state = params.get(AUTH_STATE)
            context.granted_scopes = params.getlist(GRANTED_SCOPES)
            logger.info(f"Consent given for authorization request {context.auth_state}: {context.granted_scopes}")
            return await call_next(request, context)

        logger.info(f"Consent denied for authorization request {params.get(AUTH_STATE)}")
        return self.renderer.render_denied(request, context)


class ConsentStage:
    """Routes authenticated requests through the consent handler."""

    def __init__(self, handler: ConsentHandler, authorization_requests: AuthorizationRequestRepository):
        self.handler = handler
        self.authorization_requests = authorization_requests

    async def handle(self, request: Request, context: AuthorizationContext, call_next: NextStage) -> Response:
        try:
            pending = find_pending_request(self.authorization_requests, context.auth_state)
        except MissingPendingRequestError as e:
            return _missing_pending_response(e)
        except OAuth2StorageError:
            return _storage_failure_response()

        client = pending.client
        if client is None:
            logger.warning(f"Client {pending.client_id} of authorization request {pending.auth_state} is not registered")
            return PlainTextResponse("Unknown client", status_code=400)

        if client.skip_consent:
            context.client = client
            context.granted_scopes = list(pending.requested_scopes)
            return await call_next(request, context)

        return await self.handler.handle_consent(
            request, context, call_next, context.auth_state, context.return_uri, client
        )
