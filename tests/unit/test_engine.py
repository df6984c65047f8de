"""Unit tests for the protocol engine."""

import base64
import hashlib
from urllib.parse import parse_qs, urlparse

import jwt
import pytest

from sso.constants import AUTH_CODE_EXPIRY_SECONDS, REFRESH_TOKEN_EXPIRY_SECONDS
from sso.idp.engine import AuthorizeError, AuthorizeRedirect, NeedsLogin, TokenError, TokenGrant
from sso.idp.schemas import AuthorizeRequest, ClientCreateArgs, Subject, TokenRequest
from sso.idp.tokens import at_hash

ISSUER = "http://sso.test"

REDIRECT_URI = "https://rp.example/cb"


@pytest.fixture
def subject(clock):
    return Subject(user_id="user-1", username="alice", email="alice@example.com", auth_time=int(clock.now) - 30)


def query_of(location: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(location).query).items()}


async def issue_code(engine, subject, scope="openid profile offline_access", client_id="app", **extra) -> str:
    outcome = await engine.authorize(
        AuthorizeRequest(
            client_id=client_id,
            redirect_uri=extra.pop("redirect_uri", REDIRECT_URI),
            response_type="code",
            scope=scope,
            state="xyz",
            **extra,
        ),
        subject,
    )
    assert isinstance(outcome, AuthorizeRedirect), outcome
    return outcome.code


def code_request(code, client_id="app", client_secret="app-secret", **extra) -> TokenRequest:
    return TokenRequest(
        grant_type="authorization_code",
        code=code,
        redirect_uri=extra.pop("redirect_uri", REDIRECT_URI),
        client_id=client_id,
        client_secret=client_secret,
        **extra,
    )


def refresh_request(refresh_token, scope=None, client_id="app", client_secret="app-secret") -> TokenRequest:
    return TokenRequest(
        grant_type="refresh_token",
        refresh_token=refresh_token,
        scope=scope,
        client_id=client_id,
        client_secret=client_secret,
    )


class TestAuthorize:
    @pytest.mark.asyncio
    async def test_needs_login_keeps_params(self, engine, app_client):
        outcome = await engine.authorize(
            AuthorizeRequest(client_id="app", redirect_uri=REDIRECT_URI, response_type="code", scope="openid", state="s1")
        )
        assert isinstance(outcome, NeedsLogin)
        assert outcome.params == {
            "client_id": "app",
            "redirect_uri": REDIRECT_URI,
            "response_type": "code",
            "scope": "openid",
            "state": "s1",
        }

    @pytest.mark.asyncio
    async def test_unknown_client_is_not_redirected(self, engine, subject):
        outcome = await engine.authorize(
            AuthorizeRequest(client_id="nope", redirect_uri=REDIRECT_URI, response_type="code"), subject
        )
        assert isinstance(outcome, AuthorizeError)
        assert outcome.error == "invalid_client"
        assert outcome.location is None

    @pytest.mark.asyncio
    async def test_redirect_uri_mismatch_never_redirects(self, engine, app_client, subject):
        outcome = await engine.authorize(
            AuthorizeRequest(
                client_id="app",
                redirect_uri="https://rp.example/cb/extra",
                response_type="bogus",
                scope="openid",
                state="s",
            ),
            subject,
        )
        assert isinstance(outcome, AuthorizeError)
        assert outcome.error == "invalid_request"
        assert outcome.location is None

    @pytest.mark.asyncio
    async def test_missing_redirect_uri_with_several_registered(self, engine, app_client, subject):
        outcome = await engine.authorize(AuthorizeRequest(client_id="app", response_type="code"), subject)
        assert isinstance(outcome, AuthorizeError)
        assert outcome.location is None

    @pytest.mark.asyncio
    async def test_missing_redirect_uri_with_single_registered(self, engine, demo_client, subject):
        outcome = await engine.authorize(
            AuthorizeRequest(client_id="demo", response_type="code", scope="openid"), subject
        )
        assert isinstance(outcome, AuthorizeRedirect)
        assert outcome.redirect_uri == "https://demo.example/cb"

    @pytest.mark.asyncio
    async def test_unsupported_response_type_redirects_with_state(self, engine, app_client, subject):
        outcome = await engine.authorize(
            AuthorizeRequest(client_id="app", redirect_uri=REDIRECT_URI, response_type="token", state="s9"),
            subject,
        )
        assert isinstance(outcome, AuthorizeError)
        query = query_of(outcome.location)
        assert query["error"] == "unsupported_response_type"
        assert query["state"] == "s9"

    @pytest.mark.asyncio
    async def test_scope_overreach_rejected(self, engine, demo_client, subject):
        outcome = await engine.authorize(
            AuthorizeRequest(
                client_id="demo",
                redirect_uri="https://demo.example/cb",
                response_type="code",
                scope="openid admin",
                state="s",
            ),
            subject,
        )
        assert isinstance(outcome, AuthorizeError)
        assert outcome.error == "invalid_scope"
        assert query_of(outcome.location)["error"] == "invalid_scope"

    @pytest.mark.asyncio
    async def test_known_scope_outside_client_rejected(self, engine, demo_client, subject):
        outcome = await engine.authorize(
            AuthorizeRequest(
                client_id="demo",
                redirect_uri="https://demo.example/cb",
                response_type="code",
                scope="openid email",
            ),
            subject,
        )
        assert isinstance(outcome, AuthorizeError)
        assert outcome.error == "invalid_scope"

    @pytest.mark.asyncio
    async def test_unsupported_pkce_method(self, engine, app_client, subject):
        outcome = await engine.authorize(
            AuthorizeRequest(
                client_id="app",
                redirect_uri=REDIRECT_URI,
                response_type="code",
                code_challenge="abc",
                code_challenge_method="S512",
            ),
            subject,
        )
        assert isinstance(outcome, AuthorizeError)
        assert outcome.error == "invalid_request"

    @pytest.mark.asyncio
    async def test_success_redirects_with_code_and_state(self, engine, app_client, subject):
        outcome = await engine.authorize(
            AuthorizeRequest(client_id="app", redirect_uri=REDIRECT_URI, response_type="code", scope="openid", state="abc"),
            subject,
        )
        assert isinstance(outcome, AuthorizeRedirect)
        query = query_of(outcome.location)
        assert query["state"] == "abc"
        assert query["code"].startswith("sac_")


class TestCodeExchange:
    @pytest.mark.asyncio
    async def test_exchange_issues_all_tokens(self, engine, app_client, subject, signer, clock):
        code = await issue_code(engine, subject, scope="openid profile offline_access", nonce="n-123")
        grant = await engine.token(code_request(code))
        assert isinstance(grant, TokenGrant)
        assert grant.access_token.startswith("sat_")
        assert grant.refresh_token.startswith("srt_")
        assert set(grant.scope.split()) <= {"openid", "profile", "offline_access"}

        claims = signer.verify(grant.id_token, audience="app", issuer=ISSUER)
        assert claims["sub"] == "user-1"
        assert claims["nonce"] == "n-123"
        assert claims["auth_time"] == subject.auth_time
        assert claims["at_hash"] == at_hash(grant.access_token)
        assert claims["preferred_username"] == "alice"
        assert "email" not in claims

    @pytest.mark.asyncio
    async def test_no_refresh_without_offline_scope(self, engine, app_client, subject):
        code = await issue_code(engine, subject, scope="openid email")
        grant = await engine.token(code_request(code))
        assert grant.refresh_token is None
        assert jwt.decode(grant.id_token, options={"verify_signature": False})["email"] == "alice@example.com"

    @pytest.mark.asyncio
    async def test_no_id_token_without_openid(self, engine, app_client, subject):
        code = await issue_code(engine, subject, scope="profile")
        grant = await engine.token(code_request(code))
        assert grant.id_token is None

    @pytest.mark.asyncio
    async def test_bad_client_secret(self, engine, app_client, subject):
        code = await issue_code(engine, subject)
        outcome = await engine.token(code_request(code, client_secret="wrong"))
        assert isinstance(outcome, TokenError)
        assert outcome.error == "invalid_client"
        assert outcome.status_code == 401

    @pytest.mark.asyncio
    async def test_replay_revokes_first_grant(self, engine, app_client, subject):
        code = await issue_code(engine, subject)
        first = await engine.token(code_request(code))
        assert engine.introspect(first.access_token) is not None

        second = await engine.token(code_request(code))
        assert isinstance(second, TokenError)
        assert second.error == "invalid_grant"
        assert second.cause == "replay"
        assert engine.introspect(first.access_token) is None
        assert engine.introspect(first.refresh_token) is None
        refreshed = await engine.token(refresh_request(first.refresh_token))
        assert isinstance(refreshed, TokenError)

    @pytest.mark.asyncio
    async def test_unknown_code(self, engine, app_client):
        outcome = await engine.token(code_request("sac_nope"))
        assert outcome.error == "invalid_grant"
        assert outcome.cause == "not_found"

    @pytest.mark.asyncio
    async def test_expired_code(self, engine, app_client, subject, clock):
        code = await issue_code(engine, subject)
        clock.advance(AUTH_CODE_EXPIRY_SECONDS + 1)
        outcome = await engine.token(code_request(code))
        assert outcome.error == "invalid_grant"
        assert outcome.cause == "expired"

    @pytest.mark.asyncio
    async def test_redirect_uri_must_match(self, engine, app_client, subject):
        code = await issue_code(engine, subject)
        outcome = await engine.token(code_request(code, redirect_uri="https://rp.example/other"))
        assert outcome.error == "invalid_grant"
        assert outcome.cause == "redirect_mismatch"

    @pytest.mark.asyncio
    async def test_defaulted_redirect_uri_not_required_at_token(self, engine, demo_client, subject):
        code = await issue_code(engine, subject, scope="openid", client_id="demo", redirect_uri=None)
        outcome = await engine.token(
            code_request(code, client_id="demo", client_secret="demo-secret", redirect_uri=None)
        )
        assert isinstance(outcome, TokenGrant), outcome

    @pytest.mark.asyncio
    async def test_defaulted_redirect_uri_still_checked_when_sent(self, engine, demo_client, subject):
        code = await issue_code(engine, subject, scope="openid", client_id="demo", redirect_uri=None)
        outcome = await engine.token(
            code_request(code, client_id="demo", client_secret="demo-secret", redirect_uri="https://demo.example/other")
        )
        assert outcome.error == "invalid_grant"
        assert outcome.cause == "redirect_mismatch"

    @pytest.mark.asyncio
    async def test_supplied_redirect_uri_required_at_token(self, engine, app_client, subject):
        code = await issue_code(engine, subject)
        outcome = await engine.token(code_request(code, redirect_uri=None))
        assert outcome.error == "invalid_grant"
        assert outcome.cause == "redirect_mismatch"

    @pytest.mark.asyncio
    async def test_code_bound_to_client(self, engine, app_client, demo_client, subject):
        code = await issue_code(engine, subject)
        outcome = await engine.token(code_request(code, client_id="demo", client_secret="demo-secret"))
        assert outcome.error == "invalid_grant"
        assert outcome.cause == "client_mismatch"

    @pytest.mark.asyncio
    async def test_pkce_s256(self, engine, app_client, subject):
        verifier = "a-very-long-random-verifier-string-0123456789"
        challenge = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).rstrip(b"=").decode()
        code = await issue_code(engine, subject, code_challenge=challenge, code_challenge_method="S256")
        mismatch = await engine.token(code_request(code, code_verifier="not-the-verifier"))
        assert mismatch.error == "invalid_grant"
        assert mismatch.cause == "pkce_mismatch"
        grant = await engine.token(code_request(code, code_verifier=verifier))
        assert isinstance(grant, TokenGrant)

    @pytest.mark.asyncio
    async def test_pkce_non_ascii_verifier_is_mismatch(self, engine, app_client, subject):
        code = await issue_code(engine, subject, code_challenge="plain-challenge", code_challenge_method="plain")
        outcome = await engine.token(code_request(code, code_verifier="ééé"))
        assert outcome.error == "invalid_grant"
        assert outcome.cause == "pkce_mismatch"

    @pytest.mark.asyncio
    async def test_unsupported_grant_type(self, engine, app_client):
        outcome = await engine.token(
            TokenRequest(grant_type="password", client_id="app", client_secret="app-secret")
        )
        assert outcome.error == "unsupported_grant_type"

    @pytest.mark.asyncio
    async def test_client_without_refresh_grant_gets_no_refresh_token(self, engine, registry, subject):
        await registry.register(
            ClientCreateArgs(
                client_id="codeonly",
                name="Code Only",
                redirect_uris=[REDIRECT_URI],
                grant_types=["authorization_code"],
            ),
            client_secret="codeonly-secret",
        )
        code = await issue_code(engine, subject, client_id="codeonly")
        grant = await engine.token(code_request(code, client_id="codeonly", client_secret="codeonly-secret"))
        assert grant.refresh_token is None


class TestRefresh:
    @pytest.mark.asyncio
    async def test_rotation(self, engine, app_client, subject):
        first = await engine.token(code_request(await issue_code(engine, subject)))
        second = await engine.token(refresh_request(first.refresh_token))
        assert isinstance(second, TokenGrant)
        assert second.refresh_token != first.refresh_token
        assert second.id_token
        assert engine.introspect(first.access_token) is None
        assert engine.introspect(second.access_token).snapshot.request_id == (
            engine.introspect(second.refresh_token).snapshot.request_id
        )

    @pytest.mark.asyncio
    async def test_reuse_is_replay_and_cascades(self, engine, app_client, subject):
        first = await engine.token(code_request(await issue_code(engine, subject)))
        second = await engine.token(refresh_request(first.refresh_token))
        replay = await engine.token(refresh_request(first.refresh_token))
        assert replay.error == "invalid_grant"
        assert replay.cause == "replay"
        assert engine.introspect(second.access_token) is None
        assert engine.introspect(second.refresh_token) is None

    @pytest.mark.asyncio
    async def test_narrowing(self, engine, app_client, subject):
        first = await engine.token(code_request(await issue_code(engine, subject)))
        narrowed = await engine.token(refresh_request(first.refresh_token, scope="openid"))
        assert narrowed.scope == "openid"
        assert narrowed.refresh_token is None

    @pytest.mark.asyncio
    async def test_widening_rejected(self, engine, app_client, subject):
        first = await engine.token(code_request(await issue_code(engine, subject)))
        outcome = await engine.token(refresh_request(first.refresh_token, scope="openid admin"))
        assert outcome.error == "invalid_scope"
        # A rejected request does not consume the token.
        assert isinstance(await engine.token(refresh_request(first.refresh_token)), TokenGrant)

    @pytest.mark.asyncio
    async def test_expired_refresh_token(self, engine, app_client, subject, clock):
        first = await engine.token(code_request(await issue_code(engine, subject)))
        clock.advance(REFRESH_TOKEN_EXPIRY_SECONDS + 1)
        outcome = await engine.token(refresh_request(first.refresh_token))
        assert outcome.cause == "expired"

    @pytest.mark.asyncio
    async def test_refresh_bound_to_client(self, engine, app_client, demo_client, subject):
        first = await engine.token(code_request(await issue_code(engine, subject)))
        outcome = await engine.token(
            refresh_request(first.refresh_token, client_id="demo", client_secret="demo-secret")
        )
        assert outcome.cause == "client_mismatch"


class TestIntrospectAndRevoke:
    @pytest.mark.asyncio
    async def test_introspection_response(self, engine, app_client, subject):
        grant = await engine.token(code_request(await issue_code(engine, subject)))
        result = engine.introspect(grant.access_token)
        body = result.as_response()
        assert body["active"] is True
        assert body["client_id"] == "app"
        assert body["sub"] == "user-1"
        assert body["token_type"] == "access_token"
        assert engine.introspect("sat_unknown") is None
        assert engine.introspect(None) is None

    @pytest.mark.asyncio
    async def test_expired_access_token_inactive(self, engine, app_client, subject, clock):
        grant = await engine.token(code_request(await issue_code(engine, subject)))
        clock.advance(grant.expires_in + 1)
        assert engine.introspect(grant.access_token) is None

    @pytest.mark.asyncio
    async def test_revoke_refresh_kills_access(self, engine, app_client, subject):
        grant = await engine.token(code_request(await issue_code(engine, subject)))
        assert engine.revoke(grant.refresh_token, app_client)
        assert engine.introspect(grant.access_token) is None
        assert engine.introspect(grant.refresh_token) is None

    @pytest.mark.asyncio
    async def test_revoke_other_clients_token_ignored(self, engine, app_client, demo_client, subject):
        grant = await engine.token(code_request(await issue_code(engine, subject)))
        assert not engine.revoke(grant.access_token, demo_client)
        assert engine.introspect(grant.access_token) is not None

    def test_jwks(self, engine):
        keys = engine.jwks()["keys"]
        assert keys[0]["kty"] == "RSA"
        assert keys[0]["use"] == "sig"
