"""
Application factory and server entry point.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager, suppress
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from sso.config import Settings, get_settings
from sso.database import Database
from sso.exceptions import IdPError
from sso.federation.repository import ConnectorRepository
from sso.federation.router import router as federation_router
from sso.federation.service import FederationResolver
from sso.federation.upstream import UpstreamClient
from sso.idp.engine import ProtocolEngine
from sso.idp.registry import ClientRegistry, ClientRepository
from sso.idp.router import router as idp_router
from sso.idp.store import GrantStore
from sso.idp.tokens import HMACStrategy, IDTokenSigner
from sso.log import configure_logging
from sso.session.repository import SessionRepository
from sso.session.service import SessionManager
from sso.user.repository import UserRepository
from sso.user.router import router as user_router
from sso.user.service import UserService

PURGE_INTERVAL_SECONDS = 60


async def purge_expired(app: FastAPI):
    """Periodically drop expired grants and sessions."""
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        try:
            app.state.store.purge_expired()
            deleted = await app.state.session_repo.delete_expired()
            if deleted:
                logger.debug(f"Purged {deleted} expired session(s)")
        except Exception as exc:
            logger.error(f"Expired record purge failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    database = Database(settings.database_url)
    await database.create_all()

    user_repo = UserRepository(database.session_factory)
    session_repo = SessionRepository(database.session_factory)
    sessions = SessionManager(session_repo, user_repo)
    hmac_strategy = HMACStrategy(settings.global_secret.get_secret_value())
    registry = ClientRegistry(ClientRepository(database.session_factory))
    store = GrantStore()
    http = httpx.AsyncClient(timeout=settings.upstream_timeout)

    app.state.database = database
    app.state.session_repo = session_repo
    app.state.sessions = sessions
    app.state.users = UserService(user_repo)
    app.state.hmac = hmac_strategy
    app.state.registry = registry
    app.state.store = store
    app.state.engine = ProtocolEngine(
        store=store,
        registry=registry,
        hmac_strategy=hmac_strategy,
        signer=IDTokenSigner.from_settings(settings),
        issuer=settings.issuer_url,
    )
    app.state.federation = FederationResolver(
        connector_repo=ConnectorRepository(database.session_factory),
        upstream=UpstreamClient(http, timeout=settings.upstream_timeout),
        user_repo=user_repo,
        sessions=sessions,
        issuer=settings.issuer_url,
    )
    purge_task = asyncio.create_task(purge_expired(app))
    logger.success(f"Identity provider ready, issuer {settings.issuer_url}")

    yield

    purge_task.cancel()
    with suppress(asyncio.CancelledError):
        await purge_task
    await http.aclose()
    await database.dispose()
    logger.info("Identity provider stopped")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="sso", lifespan=lifespan, docs_url=None, redoc_url=None)
    app.state.settings = settings

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        with logger.contextualize(request_id=request_id):
            response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(IdPError)
    async def idp_error_handler(request: Request, exc: IdPError):
        if exc.status_code >= 500:
            logger.error(f"Unhandled {exc.__class__.__name__} on {request.url.path}: {exc}")
            return JSONResponse(content={"error": exc.error}, status_code=exc.status_code)
        return JSONResponse(
            content={"error": exc.error, "error_description": exc.message},
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    @app.get("/ready")
    async def ready(request: Request):
        if await request.app.state.database.ping():
            return {"status": "ready"}
        return JSONResponse(content={"status": "unavailable"}, status_code=503)

    app.include_router(idp_router, tags=["OIDC"])
    app.include_router(user_router, tags=["Accounts"])
    app.include_router(federation_router, prefix="/auth", tags=["Federation"])
    return app


def run():
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    run()
