"""
OAuth2/OpenID Connect endpoints: discovery, authorize, login, token, userinfo,
revocation and introspection.
"""

import base64
import binascii
from typing import Optional, Tuple
from urllib.parse import unquote, urlencode

from fastapi import APIRouter, Depends, Form, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from loguru import logger

from sso.config import Settings
from sso.constants import SESSION_COOKIE_NAME
from sso.dependencies import (
    clear_session_cookie,
    get_engine,
    get_federation,
    get_login,
    get_registry,
    get_sessions,
    get_settings,
    set_session_cookie,
)
from sso.exceptions import InvalidCredentialsError, NotFoundError, OAuthError
from sso.federation.service import FederationResolver
from sso.idp.discovery import discovery_document
from sso.idp.engine import AuthorizeError, NeedsLogin, ProtocolEngine, TokenError
from sso.idp.registry import ClientRegistry
from sso.idp.response import IntrospectionResponse, TokenErrorResponse, TokenResponse, UserInfoResponse
from sso.idp.schemas import AuthorizeRequest, Subject, TokenRequest
from sso.idp.templater import error_page, logged_in_page, login_page
from sso.session.service import SessionManager

router = APIRouter()

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}

# Authorization request parameters carried through login, registration and federation.
AUTHORIZE_PARAMS = (
    "client_id",
    "redirect_uri",
    "response_type",
    "scope",
    "state",
    "nonce",
    "code_challenge",
    "code_challenge_method",
)


def authorize_url(params: dict) -> str:
    return "/authorize?" + urlencode({k: v for k, v in params.items() if v})


def pick_params(source) -> dict:
    return {k: source.get(k) for k in AUTHORIZE_PARAMS if source.get(k)}


def client_credentials(
    request: Request, client_id: Optional[str], client_secret: Optional[str]
) -> Tuple[Optional[str], Optional[str]]:
    """client_secret_basic takes precedence over client_secret_post."""
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Basic "):
        try:
            decoded = base64.b64decode(auth_header[6:]).decode()
            header_client_id, header_client_secret = decoded.split(":", 1)
            return unquote(header_client_id), unquote(header_client_secret)
        except (binascii.Error, UnicodeDecodeError, ValueError):
            logger.warning("Ignoring malformed Basic authorization header")
    return client_id, client_secret


def oauth_error_response(error: str, description: str = "", status_code: int = 400) -> JSONResponse:
    headers = dict(NO_STORE)
    if status_code == 401:
        headers["WWW-Authenticate"] = 'Basic realm="token"'
    return JSONResponse(
        content=TokenErrorResponse(error=error, error_description=description or None).model_dump(exclude_none=True),
        status_code=status_code,
        headers=headers,
    )


@router.get("/.well-known/openid-configuration")
async def openid_configuration(settings: Settings = Depends(get_settings)):
    return discovery_document(settings.issuer_url)


@router.get("/jwks.json")
async def jwks(engine: ProtocolEngine = Depends(get_engine)):
    return engine.jwks()


@router.get("/authorize")
async def authorize(
    request: Request,
    client_id: Optional[str] = Query(None),
    redirect_uri: Optional[str] = Query(None),
    response_type: Optional[str] = Query(None),
    scope: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    nonce: Optional[str] = Query(None),
    code_challenge: Optional[str] = Query(None),
    code_challenge_method: Optional[str] = Query(None),
    engine: ProtocolEngine = Depends(get_engine),
):
    """
    OAuth2 Authorization Endpoint.
    Redirects to the login page without a live session, otherwise issues a code.
    """
    if not client_id:
        return HTMLResponse(content=error_page("invalid_request", "Missing client_id"), status_code=400)

    login = await get_login(request)
    subject = Subject.from_user(login[0], login[1].auth_time) if login else None
    outcome = await engine.authorize(
        AuthorizeRequest(
            client_id=client_id,
            redirect_uri=redirect_uri,
            response_type=response_type or "",
            scope=scope,
            state=state,
            nonce=nonce,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
        ),
        subject,
    )

    if isinstance(outcome, NeedsLogin):
        return RedirectResponse(url=f"/login?{urlencode(outcome.params)}", status_code=302)
    if isinstance(outcome, AuthorizeError):
        logger.info(f"Authorization request from {client_id} rejected: {outcome.error} {outcome.description}")
        if outcome.location:
            return RedirectResponse(url=outcome.location, status_code=302)
        return HTMLResponse(content=error_page(outcome.error, outcome.description), status_code=400)
    return RedirectResponse(url=outcome.location, status_code=302)


async def _client_name(registry: ClientRegistry, client_id: Optional[str]) -> str:
    if not client_id:
        return ""
    try:
        return (await registry.lookup(client_id)).name
    except NotFoundError:
        return ""


@router.get("/login", response_class=HTMLResponse)
async def login_get(
    request: Request,
    error: Optional[str] = Query(None),
    registry: ClientRegistry = Depends(get_registry),
    federation: FederationResolver = Depends(get_federation),
):
    params = pick_params(request.query_params)
    login = await get_login(request)
    if login and not error:
        if params.get("client_id"):
            return RedirectResponse(url=authorize_url(params), status_code=302)
        return HTMLResponse(content=logged_in_page(login[0].username))
    return HTMLResponse(
        content=login_page(
            params=params,
            connectors=await federation.list_connectors(),
            client_name=await _client_name(registry, params.get("client_id")),
            error=error or "",
        )
    )


@router.post("/login", response_class=HTMLResponse)
async def login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    settings: Settings = Depends(get_settings),
    sessions: SessionManager = Depends(get_sessions),
    registry: ClientRegistry = Depends(get_registry),
    federation: FederationResolver = Depends(get_federation),
):
    """Local password login; resumes the authorization request on success."""
    form = await request.form()
    params = pick_params(form)
    try:
        user = await sessions.validate_credentials(username, password)
    except InvalidCredentialsError:
        logger.info(f"Failed login for {username!r}")
        return HTMLResponse(
            content=login_page(
                params=params,
                connectors=await federation.list_connectors(),
                client_name=await _client_name(registry, params.get("client_id")),
                error="invalid_credentials",
                username=username,
            ),
            status_code=401,
        )

    local_session = await sessions.create_session(user.user_id)
    target = authorize_url(params) if params.get("client_id") else "/login"
    response = RedirectResponse(url=target, status_code=302)
    set_session_cookie(response, local_session.token, settings)
    return response


@router.post("/logout")
async def logout(request: Request, sessions: SessionManager = Depends(get_sessions)):
    await sessions.logout(request.cookies.get(SESSION_COOKIE_NAME))
    response = RedirectResponse(url="/login", status_code=303)
    clear_session_cookie(response)
    return response


@router.post("/token")
async def token_endpoint(
    request: Request,
    grant_type: Optional[str] = Form(None),
    code: Optional[str] = Form(None),
    redirect_uri: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    refresh_token: Optional[str] = Form(None),
    scope: Optional[str] = Form(None),
    code_verifier: Optional[str] = Form(None),
    engine: ProtocolEngine = Depends(get_engine),
):
    """OAuth2 Token Endpoint."""
    if not grant_type:
        return oauth_error_response("invalid_request", "Missing grant_type")
    client_id, client_secret = client_credentials(request, client_id, client_secret)

    outcome = await engine.token(
        TokenRequest(
            grant_type=grant_type,
            code=code,
            redirect_uri=redirect_uri,
            client_id=client_id,
            client_secret=client_secret,
            refresh_token=refresh_token,
            scope=scope,
            code_verifier=code_verifier,
        )
    )
    if isinstance(outcome, TokenError):
        logger.info(f"Token request from {client_id} failed: {outcome.error} ({outcome.cause})")
        return oauth_error_response(outcome.error, outcome.description, outcome.status_code)

    return JSONResponse(
        content=TokenResponse(
            access_token=outcome.access_token,
            expires_in=outcome.expires_in,
            refresh_token=outcome.refresh_token,
            id_token=outcome.id_token,
            scope=outcome.scope,
        ).model_dump(exclude_none=True),
        headers=NO_STORE,
    )


def _bearer(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header[:7].lower() == "bearer ":
        return auth_header[7:].strip()
    return None


@router.api_route("/userinfo", methods=["GET", "POST"])
async def userinfo(request: Request, engine: ProtocolEngine = Depends(get_engine)):
    """OpenID Connect UserInfo Endpoint."""
    result = engine.introspect(_bearer(request))
    if result is None or result.token_type != "access_token":
        return JSONResponse(
            content={"error": "invalid_token"},
            status_code=401,
            headers={"WWW-Authenticate": 'Bearer error="invalid_token"'},
        )
    if "openid" not in result.scopes:
        return JSONResponse(
            content={"error": "insufficient_scope"},
            status_code=401,
            headers={"WWW-Authenticate": 'Bearer error="insufficient_scope", scope="openid"'},
        )
    snapshot = result.snapshot
    claims = UserInfoResponse(sub=snapshot.subject, **snapshot.identity.released(snapshot.granted_scopes))
    return JSONResponse(content=claims.model_dump(exclude_none=True), headers=NO_STORE)


async def _authenticated_client(request: Request, registry: ClientRegistry, client_id, client_secret):
    client_id, client_secret = client_credentials(request, client_id, client_secret)
    return await registry.authenticate(client_id, client_secret)


@router.post("/token/revoke")
async def revoke_token_endpoint(
    request: Request,
    token: str = Form(...),
    token_type_hint: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    engine: ProtocolEngine = Depends(get_engine),
    registry: ClientRegistry = Depends(get_registry),
):
    """OAuth2 Token Revocation Endpoint (RFC 7009)."""
    try:
        client = await _authenticated_client(request, registry, client_id, client_secret)
    except OAuthError as exc:
        return oauth_error_response(exc.error, exc.description, exc.status_code)
    engine.revoke(token, client)
    # Always 200 per RFC 7009, even if the token was unknown
    return JSONResponse(content={}, headers=NO_STORE)


@router.post("/token/introspect")
async def introspect_token(
    request: Request,
    token: str = Form(...),
    token_type_hint: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    engine: ProtocolEngine = Depends(get_engine),
    registry: ClientRegistry = Depends(get_registry),
):
    """
    OAuth2 Token Introspection Endpoint (RFC 7662).

    Returns:
        - active: Whether the token is currently valid
        - exp: Expiration timestamp (Unix epoch)
        - iat: Issued at timestamp
        - scope: Space-separated list of scopes
        - client_id: The client that the token was issued to
        - username: The user's username
        - sub: The user's ID
    """
    try:
        await _authenticated_client(request, registry, client_id, client_secret)
    except OAuthError as exc:
        return oauth_error_response(exc.error, exc.description, exc.status_code)
    result = engine.introspect(token)
    if result is None:
        return IntrospectionResponse(active=False).model_dump(exclude_none=True)
    return IntrospectionResponse(**result.as_response()).model_dump(exclude_none=True)
