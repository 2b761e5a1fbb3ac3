"""
Authentication routes.

This module implements the request handlers of the AuthService:

- GET  /login/oidc : OIDC authorization response (callback)
- POST /logout     : Token revocation and session teardown
- *    /{path}     : Authentication check for every other request

The catch-all handler answers 200 with identity headers for authenticated
callers, or redirects browsers to the provider to start a login.
"""

import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from pydantic import ValidationError

from ..config import Settings
from ..dependencies import AppState, get_app_state, require_ready
from ..models import Session
from ..policy import Decision
from ..storage import StoreError
from .oidc import ExchangeError, RevocationError, TokenVerificationError
from .state import StateNotFoundError
from .utils import UserIDError, get_bearer_token, logger_for_request, resolve_user_id


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(tags=["authentication"])

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


# =============================================================================
# Helpers
# =============================================================================

def _identity_headers(settings: Settings, user_id: str, token: str) -> Dict[str, str]:
    headers = {settings.USERID_HEADER: settings.USERID_PREFIX + user_id}
    if settings.USERID_TOKEN_HEADER:
        headers[settings.USERID_TOKEN_HEADER] = token
    return headers


def _original_url(request: Request) -> str:
    """Path and query of the request, as sent by the client."""
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path
    query = request.url.query
    return f"{path}?{query}" if query else path


# =============================================================================
# Callback Endpoint
# =============================================================================

@auth_router.get("/login/oidc")
async def callback(
    request: Request,
    code: Optional[str] = Query(None, description="Authorization code from the provider"),
    state: Optional[str] = Query(None, description="State parameter for CSRF protection"),
    app_state: AppState = Depends(require_ready),
):
    """
    Handle the authorization response from the provider.

    This endpoint:
    1. Consumes the pending login state (at most once)
    2. Exchanges the authorization code for tokens
    3. Verifies the ID token and decodes its claims
    4. Creates the user session (best effort)
    5. Redirects to the original destination
    """
    logger = logger_for_request(request)
    settings = app_state.settings

    if not code:
        logger.error("Missing url parameter: code")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing url parameter: code")

    if not state:
        logger.error("Missing url parameter: state")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing url parameter: state")

    # A state that cannot be loaded aborts the login: it is either forged,
    # expired or replayed.
    try:
        login_state = await app_state.states.consume(state)
    except (StateNotFoundError, StoreError) as e:
        logger.error(f"Failed to retrieve state from store: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve state.",
        )

    try:
        token_response = await app_state.oidc.exchange(code)
    except ExchangeError as e:
        logger.error(f"Failed to exchange authorization code with token: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to exchange authorization code with token.",
        )

    raw_id_token = token_response.id_token
    if not raw_id_token:
        logger.error("No id_token field available.")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="No id_token field in OAuth 2.0 token.",
        )

    try:
        claims = await app_state.oidc.verify(raw_id_token)
    except TokenVerificationError as e:
        logger.error(f"Not able to verify ID token: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Unable to verify ID token.",
        )

    try:
        record = Session(
            user_id=resolve_user_id(claims, settings.USERID_CLAIM),
            claims=claims,
            id_token=raw_id_token,
            oauth2_token=token_response.token,
        )
    except (UserIDError, ValidationError) as e:
        logger.error(f"Problem getting userinfo claims: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Not able to fetch userinfo claims.",
        )

    destination = settings.AFTER_LOGIN_URL or login_state.original_url
    response = RedirectResponse(url=destination, status_code=status.HTTP_302_FOUND)

    # The login was verified; a failed session write still lets the user
    # through to the destination (they will be asked to log in again).
    try:
        await app_state.sessions.save(response, record)
    except StoreError as e:
        logger.error(f"Couldn't create user session: {e}")

    logger.info("Login validated with ID token, redirecting.")
    return response


# =============================================================================
# Logout Endpoint
# =============================================================================

@auth_router.post("/logout")
async def logout(request: Request, app_state: AppState = Depends(require_ready)):
    """
    Revoke the user's tokens at the provider and delete the session.

    Without a valid session this is a no-op redirect to the site root.
    A provider 503 during revocation is passed through so the client can
    retry; the local session is removed either way.
    """
    logger = logger_for_request(request)

    try:
        handle = await app_state.sessions.get(request)
    except StoreError as e:
        logger.error(f"Couldn't get user session: {e}")
        return RedirectResponse(url="/", status_code=status.HTTP_303_SEE_OTHER)

    if handle.is_new:
        logger.warning("Request doesn't have a valid session.")
        return RedirectResponse(url="/", status_code=status.HTTP_303_SEE_OTHER)

    revocation_error: Optional[RevocationError] = None
    if app_state.oidc.revocation_endpoint is None:
        logger.warning("Provider has no revocation_endpoint, skipping token revocation")
    else:
        try:
            await app_state.oidc.revoke(handle.record.oauth2_token)
            logger.info("Access/Refresh tokens revoked", extra={"userid": handle.record.user_id})
        except RevocationError as e:
            logger.error(f"Error revoking tokens: {e}", extra={"body": e.body})
            revocation_error = e

    if revocation_error is None:
        response = RedirectResponse(url="/", status_code=status.HTTP_303_SEE_OTHER)
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        if revocation_error.status_code == status.HTTP_503_SERVICE_UNAVAILABLE:
            status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        response = JSONResponse(
            status_code=status_code,
            content={"detail": "Failed to revoke access/refresh tokens, please try again"},
        )

    try:
        await app_state.sessions.expire(response, handle)
    except StoreError as e:
        logger.error(f"Couldn't delete user session: {e}")
    else:
        logger.info("Successful logout.")
    return response


# =============================================================================
# Authentication Endpoint (catch-all)
# =============================================================================

@auth_router.api_route("/{full_path:path}", methods=ALL_METHODS)
async def authenticate(request: Request, app_state: AppState = Depends(get_app_state)):
    """
    Decide whether a request is authenticated.

    In priority order:
    1. Whitelisted path: accepted, even before setup completes
    2. Bearer token: verified on every request, no session involved
    3. Session cookie: trusted for the lifetime of the session
    4. Otherwise: redirect to the provider to start a login
    """
    logger = logger_for_request(request)
    settings = app_state.settings

    decision = app_state.policy.decide(request.url.path, app_state.readiness)
    if decision is Decision.BYPASS:
        logger.info("URI is whitelisted. Accepted without authorization.")
        return PlainTextResponse("OK")
    if decision is Decision.NOT_READY:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="OIDC Setup is not complete yet.",
        )

    bearer = get_bearer_token(request.headers.get(settings.AUTH_HEADER))
    if bearer:
        return await _authenticate_bearer(app_state, bearer, logger)

    try:
        handle = await app_state.sessions.get(request)
    except StoreError as e:
        logger.error(f"Couldn't get user session: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Couldn't get user session.",
        )

    if not handle.is_new:
        record = handle.record
        return PlainTextResponse("OK", headers=_identity_headers(settings, record.user_id, record.id_token))

    # Not logged in: start the Authorization Code flow
    try:
        login_state = await app_state.states.create(_original_url(request))
    except StoreError as e:
        logger.error(f"Failed to save state in store: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save state in store.",
        )

    return RedirectResponse(
        url=app_state.oidc.authorization_url(login_state.id),
        status_code=status.HTTP_302_FOUND,
    )


async def _authenticate_bearer(app_state: AppState, bearer: str, logger: logging.LoggerAdapter):
    settings = app_state.settings

    try:
        claims = await app_state.oidc.verify(bearer)
    except TokenVerificationError as e:
        logger.error(f"Not able to verify ID token: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Unable to verify ID token.",
        )

    if settings.USERID_CLAIM not in claims:
        logger.info("UserID claim was not specified... falling back to sub")

    try:
        user_id = resolve_user_id(claims, settings.USERID_CLAIM)
    except UserIDError as e:
        logger.error(f"Unable to identify user: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Not able to identify user.",
        )

    return PlainTextResponse("OK", headers=_identity_headers(settings, user_id, bearer))
