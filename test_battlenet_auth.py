"""Tests for state handling, token exchange and caller credentials."""

import asyncio
import base64
import json
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import jwt as pyjwt
import pytest

from auth_errors import CredentialInvalid, CsrfStateInvalid, ExchangeFailed, VerificationReason
from battlenet_auth import (
    AuthConfig,
    BattleNetAuth,
    Credential,
    InMemoryStore,
    ProviderToken,
    SessionCredentials,
    SignedTokenCredentials,
    StateManager,
    TokenExchanger,
)

SECRET = "test-secret-key-minimum-32-characters-long-here"


def _exchanger(client, auth_method="post"):
    return TokenExchanger(
        client,
        "client-1",
        "secret-1",
        "https://oauth.battle.net/token",
        "https://oauth.battle.net/oauth/userinfo",
        auth_method=auth_method,
    )


def _flip_signature(token: str) -> str:
    header, payload, signature = token.split(".")
    i = len(signature) // 2
    replacement = "A" if signature[i] != "A" else "B"
    return ".".join([header, payload, signature[:i] + replacement + signature[i + 1:]])


# ============================================================================
# Configuration
# ============================================================================

def test_config_valid(test_config):
    auth = BattleNetAuth(test_config)
    assert auth.client_id == test_config["client_id"]
    assert auth.credential_strategy == "signed"
    assert auth.scope == "openid wow.profile"
    assert auth.max_level == 80
    assert isinstance(auth.credentials, SignedTokenCredentials)


def test_config_missing_keys():
    with pytest.raises(ValueError, match="client_secret"):
        BattleNetAuth({"client_id": "x", "app_secret_key": "y" * 40, "redirect_uri": "http://a/cb"})


def test_config_weak_secret_rejected_in_production(test_config):
    test_config["app_secret_key"] = "supersecret"
    test_config["environment"] = "production"
    with pytest.raises(ValueError):
        BattleNetAuth(test_config)


@pytest.mark.parametrize("key,value", [
    ("credential_strategy", "cookie-jar"),
    ("token_auth_method", "jwt"),
    ("max_level", 0),
    ("fanout_concurrency", -1),
    ("token_url", "ftp://oauth.battle.net/token"),
])
def test_config_invalid_values(test_config, key, value):
    test_config[key] = value
    with pytest.raises(ValueError):
        BattleNetAuth(test_config)


def test_config_session_strategy(test_config):
    test_config["credential_strategy"] = "session"
    auth = BattleNetAuth(test_config)
    assert isinstance(auth.credentials, SessionCredentials)
    assert auth.credentials.transport == "cookie"


# ============================================================================
# InMemoryStore
# ============================================================================

def test_store_set_get_delete():
    async def run():
        store = InMemoryStore()
        await store.set("k", {"value": "test"}, 60)
        assert await store.get("k") == {"value": "test"}
        assert await store.exists("k") is True
        await store.delete("k")
        assert await store.get("k") is None
        assert await store.exists("k") is False

    asyncio.run(run())


def test_store_expired_entry_is_gone():
    async def run():
        store = InMemoryStore()
        await store.set("k", {"data": 1}, -1)
        assert await store.get("k") is None
        assert await store.pop("k") is None

    asyncio.run(run())


def test_store_pop_is_single_use():
    async def run():
        store = InMemoryStore()
        await store.set("k", {"data": 1}, 60)
        results = await asyncio.gather(*(store.pop("k") for _ in range(5)))
        assert results.count({"data": 1}) == 1
        assert results.count(None) == 4

    asyncio.run(run())


def test_store_cleanup_task_lifecycle():
    async def run():
        store = InMemoryStore(cleanup_interval=1)
        await store.set("old", {"x": 1}, -1)
        await store.start_cleanup()
        await store._cleanup_expired()
        assert "old" not in store._store
        await store.stop()
        assert store._cleanup_task is None

    asyncio.run(run())


# ============================================================================
# State generator
# ============================================================================

def test_state_is_unpredictable():
    async def run():
        states = StateManager(InMemoryStore())
        first = await states.generate()
        second = await states.generate()
        # token_urlsafe(32) encodes 256 bits in 43 characters
        assert len(first.state) >= 43
        assert first.state != second.state
        assert first.flow_id != second.flow_id

    asyncio.run(run())


def test_state_redeems_once():
    async def run():
        states = StateManager(InMemoryStore())
        request = await states.generate()
        await states.redeem(request.flow_id, request.state)
        with pytest.raises(CsrfStateInvalid):
            await states.redeem(request.flow_id, request.state)

    asyncio.run(run())


def test_state_rejects_different_value():
    async def run():
        states = StateManager(InMemoryStore())
        request = await states.generate()
        with pytest.raises(CsrfStateInvalid):
            await states.redeem(request.flow_id, request.state + "x")
        # A failed attempt also consumes the pending request
        with pytest.raises(CsrfStateInvalid):
            await states.redeem(request.flow_id, request.state)

    asyncio.run(run())


def test_state_rejects_unknown_flow():
    async def run():
        states = StateManager(InMemoryStore())
        with pytest.raises(CsrfStateInvalid):
            await states.redeem("never-issued", "whatever")
        with pytest.raises(CsrfStateInvalid):
            await states.redeem(None, "whatever")

    asyncio.run(run())


def test_state_rejects_expired_request():
    async def run():
        store = InMemoryStore()
        states = StateManager(store, ttl_seconds=600)
        issued = datetime.now(timezone.utc) - timedelta(minutes=11)
        await store.set(
            AuthConfig.FLOW_PREFIX + "flow-1",
            {"state": "s1", "issued_at": issued.isoformat()},
            600,
        )
        with pytest.raises(CsrfStateInvalid, match="expired"):
            await states.redeem("flow-1", "s1")

    asyncio.run(run())


def test_state_validate():
    assert StateManager.validate("abc", "abc") is True
    assert StateManager.validate("abc", "abd") is False
    assert StateManager.validate("abc", None) is False
    assert StateManager.validate(None, "abc") is False
    assert StateManager.validate("", "") is False


# ============================================================================
# Token exchanger
# ============================================================================

def test_exchange_posts_form_credentials(fake_bnet):
    fake_bnet.respond("/token", {"access_token": "tok1", "expires_in": 86399})

    async def run():
        async with fake_bnet.client() as client:
            token = await _exchanger(client).exchange("abc123", "http://localhost:3000/callback")
        assert token.access_token == "tok1"
        assert token.expires_in == 86399

    asyncio.run(run())

    request = fake_bnet.requests[0]
    assert request.method == "POST"
    form = parse_qs(request.content.decode())
    assert form == {
        "grant_type": ["authorization_code"],
        "code": ["abc123"],
        "redirect_uri": ["http://localhost:3000/callback"],
        "client_id": ["client-1"],
        "client_secret": ["secret-1"],
    }


def test_exchange_basic_auth(fake_bnet):
    fake_bnet.respond("/token", {"access_token": "tok1"})

    async def run():
        async with fake_bnet.client() as client:
            await _exchanger(client, auth_method="basic").exchange("abc123", "http://x/cb")

    asyncio.run(run())

    request = fake_bnet.requests[0]
    expected = base64.b64encode(b"client-1:secret-1").decode()
    assert request.headers["Authorization"] == f"Basic {expected}"
    assert "client_secret" not in parse_qs(request.content.decode())


def test_exchange_failure_is_not_retried(fake_bnet):
    fake_bnet.respond("/token", {"error": "invalid_grant", "error_description": "code used"}, status=400)

    async def run():
        async with fake_bnet.client() as client:
            with pytest.raises(ExchangeFailed) as exc_info:
                await _exchanger(client).exchange("abc123", "http://x/cb")
        return exc_info.value

    error = asyncio.run(run())
    assert error.status_code == 400
    assert error.payload["error"] == "invalid_grant"
    assert fake_bnet.paths == ["/token"]


@pytest.mark.parametrize("body", [{}, {"token_type": "bearer"}, ["not", "an", "object"]])
def test_exchange_rejects_body_without_token(fake_bnet, body):
    fake_bnet.respond("/token", body)

    async def run():
        async with fake_bnet.client() as client:
            with pytest.raises(ExchangeFailed):
                await _exchanger(client).exchange("abc123", "http://x/cb")

    asyncio.run(run())


@pytest.mark.parametrize("expires_in", ["soon", [3600], {"s": 1}])
def test_exchange_rejects_non_numeric_expiry(fake_bnet, expires_in):
    fake_bnet.respond("/token", {"access_token": "tok1", "expires_in": expires_in})

    async def run():
        async with fake_bnet.client() as client:
            with pytest.raises(ExchangeFailed) as exc_info:
                await _exchanger(client).exchange("abc123", "http://x/cb")
            return exc_info.value

    error = asyncio.run(run())
    assert "access_token" not in error.payload
    assert "tok1" not in repr(error.payload)


def test_exchange_transport_error(fake_bnet):
    fake_bnet.fail("/token", httpx.ConnectError("boom"))

    async def run():
        async with fake_bnet.client() as client:
            with pytest.raises(ExchangeFailed):
                await _exchanger(client).exchange("abc123", "http://x/cb")

    asyncio.run(run())
    assert len(fake_bnet.requests) == 1


def test_fetch_subject(fake_bnet):
    fake_bnet.respond("/oauth/userinfo", {"id": 777, "battletag": "Foo#1"})

    async def run():
        async with fake_bnet.client() as client:
            return await _exchanger(client).fetch_subject("tok1")

    assert asyncio.run(run()) == "777"
    assert fake_bnet.requests[0].headers["Authorization"] == "Bearer tok1"


def test_fetch_subject_without_id(fake_bnet):
    fake_bnet.respond("/oauth/userinfo", {"battletag": "Foo#1"})

    async def run():
        async with fake_bnet.client() as client:
            with pytest.raises(ExchangeFailed):
                await _exchanger(client).fetch_subject("tok1")

    asyncio.run(run())


def test_provider_token_repr_hides_token():
    assert "tok1" not in repr(ProviderToken("tok1", 10))


# ============================================================================
# Signed credentials
# ============================================================================

def test_signed_round_trip():
    async def run():
        creds = SignedTokenCredentials(SECRET, audience="client-1")
        artifact = await creds.issue("12345", ProviderToken("tok1", 86399))
        return await creds.verify(artifact)

    credential = asyncio.run(run())
    assert credential.subject_id == "12345"
    assert credential.provider_token.access_token == "tok1"
    assert credential.expires_at - credential.issued_at == timedelta(hours=24)
    assert credential.is_valid()


def test_signed_subjects_do_not_mix():
    async def run():
        creds = SignedTokenCredentials(SECRET, audience="client-1")
        a = await creds.issue("A", ProviderToken("tok-a"))
        b = await creds.issue("B", ProviderToken("tok-b"))
        return await creds.verify(a), await creds.verify(b)

    cred_a, cred_b = asyncio.run(run())
    assert (cred_a.subject_id, cred_a.provider_token.access_token) == ("A", "tok-a")
    assert (cred_b.subject_id, cred_b.provider_token.access_token) == ("B", "tok-b")


def test_signed_rejects_flipped_signature():
    async def run():
        creds = SignedTokenCredentials(SECRET, audience="client-1")
        artifact = await creds.issue("A", ProviderToken("tok-a"))
        with pytest.raises(CredentialInvalid) as exc_info:
            await creds.verify(_flip_signature(artifact))
        return exc_info.value.reason

    assert asyncio.run(run()) == VerificationReason.SIGNATURE


def test_signed_rejects_swapped_subject():
    async def run():
        creds = SignedTokenCredentials(SECRET, audience="client-1")
        artifact = await creds.issue("A", ProviderToken("tok-a"))
        header, payload, signature = artifact.split(".")
        claims = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
        claims["sub"] = "B"
        forged = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
        with pytest.raises(CredentialInvalid) as exc_info:
            await creds.verify(".".join([header, forged, signature]))
        return exc_info.value.reason

    assert asyncio.run(run()) == VerificationReason.SIGNATURE


def test_signed_rejects_other_secret():
    async def run():
        other = SignedTokenCredentials("another-secret-key-that-is-long-enough!!", audience="client-1")
        artifact = await other.issue("A", ProviderToken("tok-a"))
        creds = SignedTokenCredentials(SECRET, audience="client-1")
        with pytest.raises(CredentialInvalid) as exc_info:
            await creds.verify(artifact)
        return exc_info.value.reason

    assert asyncio.run(run()) == VerificationReason.SIGNATURE


def test_signed_rejects_expired():
    now = datetime.now(timezone.utc)
    token = pyjwt.encode(
        {
            "sub": "A",
            "pat": "tok-a",
            "iat": int((now - timedelta(hours=25)).timestamp()),
            "exp": int((now - timedelta(hours=1)).timestamp()),
            "iss": AuthConfig.TOKEN_ISSUER,
            "aud": "client-1",
        },
        SECRET,
        algorithm="HS256",
    )

    async def run():
        creds = SignedTokenCredentials(SECRET, audience="client-1")
        with pytest.raises(CredentialInvalid) as exc_info:
            await creds.verify(token)
        return exc_info.value.reason

    assert asyncio.run(run()) == VerificationReason.EXPIRED


@pytest.mark.parametrize("artifact,reason", [
    (None, VerificationReason.MISSING),
    ("", VerificationReason.MISSING),
    ("null", VerificationReason.MALFORMED),
    ("invalid.token.here", VerificationReason.MALFORMED),
])
def test_signed_rejects_missing_and_malformed(artifact, reason):
    async def run():
        creds = SignedTokenCredentials(SECRET, audience="client-1")
        with pytest.raises(CredentialInvalid) as exc_info:
            await creds.verify(artifact)
        return exc_info.value.reason

    assert asyncio.run(run()) == reason


def test_signed_rejects_token_without_provider_token():
    now = datetime.now(timezone.utc)
    token = pyjwt.encode(
        {
            "sub": "A",
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(hours=1)).timestamp()),
            "iss": AuthConfig.TOKEN_ISSUER,
            "aud": "client-1",
        },
        SECRET,
        algorithm="HS256",
    )

    async def run():
        creds = SignedTokenCredentials(SECRET, audience="client-1")
        with pytest.raises(CredentialInvalid) as exc_info:
            await creds.verify(token)
        return exc_info.value.reason

    assert asyncio.run(run()) == VerificationReason.MALFORMED


# ============================================================================
# Session credentials
# ============================================================================

def test_session_round_trip_and_discard():
    async def run():
        creds = SessionCredentials(InMemoryStore())
        session_id = await creds.issue("12345", ProviderToken("tok1", 3600))
        credential = await creds.verify(session_id)
        await creds.discard(session_id)
        with pytest.raises(CredentialInvalid) as exc_info:
            await creds.verify(session_id)
        return credential, exc_info.value.reason

    credential, reason = asyncio.run(run())
    assert credential.subject_id == "12345"
    assert credential.provider_token.access_token == "tok1"
    assert reason == VerificationReason.UNKNOWN_SESSION


def test_session_rejects_mutated_id():
    async def run():
        creds = SessionCredentials(InMemoryStore())
        session_id = await creds.issue("A", ProviderToken("tok-a"))
        mutated = session_id[:-1] + ("x" if session_id[-1] != "x" else "y")
        with pytest.raises(CredentialInvalid) as exc_info:
            await creds.verify(mutated)
        return exc_info.value.reason

    assert asyncio.run(run()) == VerificationReason.UNKNOWN_SESSION


def test_session_rejects_record_without_token():
    async def run():
        store = InMemoryStore()
        now = datetime.now(timezone.utc)
        await store.set(AuthConfig.SESSION_PREFIX + "sid", {
            "subject_id": "A",
            "access_token": "",
            "issued_at": now.isoformat(),
            "expires_at": (now + timedelta(hours=1)).isoformat(),
        }, 3600)
        with pytest.raises(CredentialInvalid) as exc_info:
            await SessionCredentials(store).verify("sid")
        return exc_info.value.reason

    assert asyncio.run(run()) == VerificationReason.MALFORMED


def test_session_rejects_expired_record():
    async def run():
        store = InMemoryStore()
        now = datetime.now(timezone.utc)
        await store.set(AuthConfig.SESSION_PREFIX + "sid", {
            "subject_id": "A",
            "access_token": "tok-a",
            "issued_at": (now - timedelta(hours=25)).isoformat(),
            "expires_at": (now - timedelta(hours=1)).isoformat(),
        }, 3600)
        with pytest.raises(CredentialInvalid) as exc_info:
            await SessionCredentials(store).verify("sid")
        return exc_info.value.reason, await store.get(AuthConfig.SESSION_PREFIX + "sid")

    reason, leftover = asyncio.run(run())
    assert reason == VerificationReason.EXPIRED
    assert leftover is None


def test_session_rejects_record_from_the_future():
    async def run():
        store = InMemoryStore()
        now = datetime.now(timezone.utc)
        await store.set(AuthConfig.SESSION_PREFIX + "sid", {
            "subject_id": "A",
            "access_token": "tok-a",
            "issued_at": (now + timedelta(hours=1)).isoformat(),
            "expires_at": (now + timedelta(hours=25)).isoformat(),
        }, 3600)
        with pytest.raises(CredentialInvalid) as exc_info:
            await SessionCredentials(store).verify("sid")
        return exc_info.value.reason

    assert asyncio.run(run()) == VerificationReason.EXPIRED


def test_credential_validity_window():
    now = datetime.now(timezone.utc)
    credential = Credential("A", ProviderToken("tok"), now - timedelta(minutes=1), now + timedelta(minutes=1))
    assert credential.is_valid(now)
    assert not credential.is_valid(now + timedelta(minutes=2))
    assert not Credential("", ProviderToken("tok"), credential.issued_at, credential.expires_at).is_valid(now)
    assert not Credential("A", ProviderToken(""), credential.issued_at, credential.expires_at).is_valid(now)
    assert credential.is_complete()
    assert not Credential("A", ProviderToken(""), credential.issued_at, credential.expires_at).is_complete()


# ============================================================================
# Login orchestration
# ============================================================================

def test_complete_login_issues_credential(test_config, fake_bnet):
    fake_bnet.standard_account()

    async def run():
        auth = BattleNetAuth(test_config, http_client=fake_bnet.client())
        url, flow_id = await auth.begin_login()
        state = parse_qs(url.split("?", 1)[1])["state"][0]
        result = await auth.complete_login("abc123", state, flow_id)
        credential = await auth.verify(result.artifact)
        metrics = auth.get_metrics()
        await auth.shutdown()
        return url, credential, metrics

    url, credential, metrics = asyncio.run(run())
    assert url.startswith("https://oauth.battle.net/authorize?")
    assert credential.subject_id == "12345"
    assert credential.provider_token.access_token == "tok1"
    assert fake_bnet.paths == ["/token", "/oauth/userinfo"]
    assert metrics["logins_success"] == 1


def test_complete_login_bad_state_makes_no_provider_call(test_config, fake_bnet):
    fake_bnet.standard_account()

    async def run():
        auth = BattleNetAuth(test_config, http_client=fake_bnet.client())
        _, flow_id = await auth.begin_login()
        with pytest.raises(CsrfStateInvalid):
            await auth.complete_login("abc123", "forged-state", flow_id)
        with pytest.raises(CsrfStateInvalid):
            await auth.complete_login(None, "forged-state", flow_id)
        metrics = auth.get_metrics()
        await auth.shutdown()
        return metrics

    metrics = asyncio.run(run())
    assert fake_bnet.requests == []
    assert metrics["logins_failed"] == 2


def test_complete_login_exchange_failure_issues_nothing(test_config, fake_bnet):
    test_config["credential_strategy"] = "session"
    fake_bnet.respond("/token", {"error": "invalid_client"}, status=401)
    store = InMemoryStore()

    async def run():
        auth = BattleNetAuth(test_config, storage=store, http_client=fake_bnet.client())
        url, flow_id = await auth.begin_login()
        state = parse_qs(url.split("?", 1)[1])["state"][0]
        with pytest.raises(ExchangeFailed):
            await auth.complete_login("abc123", state, flow_id)
        await auth.shutdown()

    asyncio.run(run())
    assert not any(k.startswith(AuthConfig.SESSION_PREFIX) for k in store._store)
    assert fake_bnet.paths == ["/token"]


def test_complete_login_bad_expiry_counts_as_failure(test_config, fake_bnet):
    fake_bnet.respond("/token", {"access_token": "tok1", "expires_in": "soon"})

    async def run():
        auth = BattleNetAuth(test_config, http_client=fake_bnet.client())
        url, flow_id = await auth.begin_login()
        state = parse_qs(url.split("?", 1)[1])["state"][0]
        with pytest.raises(ExchangeFailed):
            await auth.complete_login("abc123", state, flow_id)
        metrics = auth.get_metrics()
        await auth.shutdown()
        return metrics

    metrics = asyncio.run(run())
    assert metrics["logins_failed"] == 1
    assert metrics["logins_success"] == 0
    assert fake_bnet.paths == ["/token"]


def test_health_check(test_config):
    async def run():
        auth = BattleNetAuth(test_config)
        await auth.initialize()
        health = await auth.health_check()
        await auth.shutdown()
        return health

    health = asyncio.run(run())
    assert health["status"] == "healthy"
    assert health["storage"] == "ok"
    assert health["credential_strategy"] == "signed"
    assert "metrics" in health
