"""
Authentication gate for the OAuth 2.0 authorization endpoint

First stage of every call to the authorize route. It parses the inbound
parameters into a candidate AuthorizationRequest, validates it, and then
picks one of three branches, in this order:

1. Resume: the authenticator says it can commence (it previously stepped out
   of the flow, for instance to an external identity provider). Control goes
   back to it regardless of the validation outcome, since the parameters of a
   resumed call belong to the external step rather than the initial request.
2. Start: the request is valid. It is saved under its auth state, the auth
   state and return URI are put on the context, and the authenticator takes over.
3. Reject: an OAuth 2.0 error is redirected to the client's redirect_uri, or
   answered with 400 when that URI cannot safely be redirected to. A client
   lookup that fails in storage is answered with 500.
"""

import logging
from typing import Awaitable, Callable, Optional, Protocol
from urllib.parse import urlencode

from starlette.requests import Request
from starlette.responses import PlainTextResponse, RedirectResponse, Response

from .oauth2_models import AuthorizationContext, AuthorizationRequest, read_parameters
from .oauth2_storage import AuthorizationRequestRepository, OAuth2StorageError
from .oauth2_validator import RequestValidator, ValidationError, ValidationResponse, is_valid_url

logger = logging.getLogger(__name__)

NextStage = Callable[[Request, AuthorizationContext], Awaitable[Response]]


class Authenticator(Protocol):
    """Establishes the resource owner for a pending authorization request.

    ``authenticate`` either answers the request itself (a login form, a
    redirect to an identity provider) or sets ``context.principal`` and returns
    ``await call_next(request, context)``. When resuming, it is also
    responsible for restoring ``context.auth_state``.
    """

    def can_commence(self, request: Request) -> bool:
        ...

    async def authenticate(
        self,
        request: Request,
        context: AuthorizationContext,
        call_next: NextStage,
        auth_state: Optional[str],
        return_uri: Optional[str],
    ) -> Response:
        ...


def build_error_redirect(
    redirect_uri: str, error_code: str, error_description: str, state: Optional[str] = None
) -> str:
    """Append OAuth 2.0 error parameters to a redirect URI."""
    params = {"error": error_code, "error_description": error_description}
    if state and state.strip():
        params["state"] = state
    separator = "&" if "?" in redirect_uri else "?"
    return f"{redirect_uri}{separator}{urlencode(params)}"


def error_response(authorization_request: AuthorizationRequest, validation: ValidationResponse) -> Response:
    """Redirect with error parameters, or 400 when redirect_uri is unusable.

    A server_error is answered with 500 and never redirected, since the
    redirect_uri could not be checked against the client registration.
    """
    if validation.error_code == ValidationError.SERVER_ERROR.code:
        logger.error(f"Sending error response 'server error': {validation.error_description}")
        return PlainTextResponse("Cannot read client registration", status_code=500)

    redirect_uri = authorization_request.redirect_uri
    if is_valid_url(redirect_uri):
        location = build_error_redirect(
            redirect_uri,
            validation.error_code,
            validation.error_description,
            authorization_request.state,
        )
        logger.info(f"Sending error response, a redirect to: {location}")
        return RedirectResponse(url=location, status_code=302)

    logger.info(f"Sending error response 'bad request': {validation.error_description}")
    return PlainTextResponse(validation.error_description, status_code=400)


class AuthenticationGate:
    """Resume, start or reject an authorization request."""

    def __init__(
        self,
        authenticator: Authenticator,
        authorization_requests: AuthorizationRequestRepository,
        validator: RequestValidator,
    ):
        self.authenticator = authenticator
        self.authorization_requests = authorization_requests
        self.validator = validator

    async def handle(self, request: Request, context: AuthorizationContext, call_next: NextStage) -> Response:
        params = await read_parameters(request)
        authorization_request = AuthorizationRequest.from_parameters(params)
        validation = self.validator.validate(authorization_request)

        if self.authenticator.can_commence(request):
            logger.debug("Authenticator resumes control of the authorization flow")
            return await self.authenticator.authenticate(
                request, context, call_next, context.auth_state, context.return_uri
            )

        if validation.valid:
            try:
                self.authorization_requests.save(authorization_request)
            except OAuth2StorageError:
                logger.exception("while saving authorization request")
                return PlainTextResponse("Cannot save authorization request", status_code=500)

            context.auth_state = authorization_request.auth_state
            context.return_uri = request.url.path
            logger.info(
                f"Authorization request {authorization_request.auth_state} started "
                f"for client {authorization_request.client_id}"
            )
            return await self.authenticator.authenticate(
                request, context, call_next, context.auth_state, context.return_uri
            )

        logger.info(
            f"Will send error response for authorization request of client "
            f"{authorization_request.client_id!r}, validation result: {validation.error_code}"
        )
        return error_response(authorization_request, validation)
