"""
Federation endpoints: start an upstream sign-in and handle its callback.
"""

import secrets
import time
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from loguru import logger

from sso.config import Settings
from sso.constants import FEDERATION_STATE_COOKIE_NAME, FEDERATION_STATE_EXPIRY_SECONDS
from sso.dependencies import get_federation, get_hmac, get_settings, set_session_cookie
from sso.exceptions import ConnectorNotFoundError, IdPError
from sso.federation.schemas import FederationParams
from sso.federation.service import FederationResolver, callback_url
from sso.idp.router import authorize_url, pick_params
from sso.idp.tokens import HMACStrategy

router = APIRouter()


def login_error(error: str) -> RedirectResponse:
    response = RedirectResponse(url=f"/login?{urlencode({'error': error})}", status_code=302)
    response.delete_cookie(FEDERATION_STATE_COOKIE_NAME, path="/auth")
    return response


@router.get("/federation/{connector_id}")
async def federation_start(
    connector_id: str,
    request: Request,
    settings: Settings = Depends(get_settings),
    hmac_strategy: HMACStrategy = Depends(get_hmac),
    federation: FederationResolver = Depends(get_federation),
):
    """
    Redirect to the upstream provider. The authorization request parameters travel
    in a signed state blob whose nonce is bound to a short-lived cookie.
    """
    params = FederationParams(**pick_params(request.query_params))
    nonce = secrets.token_urlsafe(16)
    state = hmac_strategy.sign_blob(
        {
            "connector_id": connector_id,
            "nonce": nonce,
            "exp": int(time.time()) + FEDERATION_STATE_EXPIRY_SECONDS,
            "params": params.as_params(),
        }
    )
    try:
        url = await federation.begin_upstream(connector_id, state)
    except ConnectorNotFoundError:
        return login_error("connector_not_found")
    except IdPError as exc:
        logger.warning(f"Could not start federation with {connector_id}: {exc}")
        return login_error("federation_failed")

    response = RedirectResponse(url=url, status_code=302)
    response.set_cookie(
        key=FEDERATION_STATE_COOKIE_NAME,
        value=nonce,
        max_age=FEDERATION_STATE_EXPIRY_SECONDS,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/auth",
    )
    return response


@router.get("/callback/{connector_id}")
async def federation_callback(
    connector_id: str,
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    settings: Settings = Depends(get_settings),
    hmac_strategy: HMACStrategy = Depends(get_hmac),
    federation: FederationResolver = Depends(get_federation),
):
    """Complete the upstream sign-in, start a local session and resume authorize."""
    if error:
        logger.info(f"Upstream {connector_id} returned error {error}")
        return login_error("federation_failed")
    if not code or not state:
        return login_error("invalid_callback_params")

    payload = hmac_strategy.verify_blob(state)
    cookie_nonce = request.cookies.get(FEDERATION_STATE_COOKIE_NAME)
    if (
        not payload
        or payload.get("connector_id") != connector_id
        or not cookie_nonce
        or not secrets.compare_digest(str(payload.get("nonce", "")), cookie_nonce)
        or int(payload.get("exp", 0)) < time.time()
    ):
        logger.warning(f"Rejected federation callback for {connector_id} with invalid state")
        return login_error("invalid_state")

    try:
        local_session = await federation.complete_upstream(
            connector_id, code, callback_url(settings.issuer_url, connector_id)
        )
    except IdPError as exc:
        logger.warning(f"Federation with {connector_id} failed: {exc}")
        return login_error("federation_failed")

    params = FederationParams(**payload.get("params", {}))
    target = "/login" if params.is_empty() else authorize_url(params.as_params())
    response = RedirectResponse(url=target, status_code=302)
    response.delete_cookie(FEDERATION_STATE_COOKIE_NAME, path="/auth")
    set_session_cookie(response, local_session.token, settings)
    return response
