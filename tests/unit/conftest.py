"""
Unit test fixtures: in-memory SQLite, a controllable clock and a wired-up engine.
"""

import time

import pytest
import pytest_asyncio

from sso.database import Database
from sso.idp.engine import ProtocolEngine
from sso.idp.registry import ClientRegistry, ClientRepository
from sso.idp.schemas import ClientCreateArgs, RequesterSnapshot
from sso.idp.store import GrantStore
from sso.idp.tokens import HMACStrategy, IDTokenSigner
from sso.session.repository import SessionRepository
from sso.session.service import SessionManager
from sso.user.repository import UserRepository
from sso.user.service import UserService

ISSUER = "http://sso.test"
MEMORY_DB = "sqlite+aiosqlite:///:memory:"
TEST_SECRET = "test-global-secret-0123456789abcdef0123456789"


class FakeClock:
    def __init__(self, now: float = None):
        self.now = int(time.time()) if now is None else now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return GrantStore(clock=clock)


@pytest.fixture
def hmac_strategy():
    return HMACStrategy(TEST_SECRET)


@pytest.fixture(scope="session")
def signer():
    # RSA key generation is slow, share one key across the run.
    return IDTokenSigner.generate("test-key")


@pytest.fixture
def snapshot_factory():
    def make(request_id: str = "req-1", client_id: str = "app", **overrides) -> RequesterSnapshot:
        values = dict(
            request_id=request_id,
            client_id=client_id,
            subject="user-1",
            redirect_uri="https://rp.example/cb",
            requested_scopes=("openid", "offline_access"),
            granted_scopes=("openid", "offline_access"),
            requested_at=1_700_000_000,
            auth_time=1_700_000_000,
        )
        values.update(overrides)
        return RequesterSnapshot(**values)

    return make


@pytest_asyncio.fixture
async def database():
    database = Database(MEMORY_DB)
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
def user_repo(database):
    return UserRepository(database.session_factory)


@pytest.fixture
def session_repo(database):
    return SessionRepository(database.session_factory)


@pytest.fixture
def sessions(session_repo, user_repo):
    return SessionManager(session_repo, user_repo)


@pytest.fixture
def users(user_repo):
    return UserService(user_repo)


@pytest.fixture
def registry(database):
    return ClientRegistry(ClientRepository(database.session_factory))


@pytest_asyncio.fixture
async def app_client(registry):
    """Confidential client allowed every scope."""
    client, _ = await registry.register(
        ClientCreateArgs(
            client_id="app",
            name="Test App",
            redirect_uris=["https://rp.example/cb", "https://rp.example/other"],
            scopes=["openid", "profile", "email", "offline_access"],
        ),
        client_secret="app-secret",
    )
    return client


@pytest_asyncio.fixture
async def demo_client(registry):
    """Client restricted to openid and profile."""
    client, _ = await registry.register(
        ClientCreateArgs(
            client_id="demo",
            name="Demo",
            redirect_uris=["https://demo.example/cb"],
            scopes=["openid", "profile"],
        ),
        client_secret="demo-secret",
    )
    return client


@pytest.fixture
def engine(store, registry, hmac_strategy, signer, clock):
    return ProtocolEngine(
        store=store,
        registry=registry,
        hmac_strategy=hmac_strategy,
        signer=signer,
        issuer=ISSUER,
        clock=clock,
    )
