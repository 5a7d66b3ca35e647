"""
Battle.net OAuth2 authentication and credential management.

This module provides:
- OAuth2 authorization code flow against Battle.net
- Single-use CSRF state bound to the browser through a flow cookie
- Server-to-server token exchange (form or HTTP Basic client auth)
- Two interchangeable caller credentials: signed JWT or server-side session
- Configurable storage backends

Version: 1.0.0
License: MIT
"""

import secrets
import hashlib
import hmac
import uuid
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Protocol
from datetime import datetime, timedelta, timezone
from contextlib import asynccontextmanager
from urllib.parse import urlencode

import httpx
import jwt

from auth_errors import (
    BattleNetAuthError,
    CsrfStateInvalid,
    CredentialInvalid,
    ExchangeFailed,
    PrimaryFetchFailed,
    VerificationReason,
)
from profile_aggregator import ProfileAggregator

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# STORAGE
# ============================================================================

class StorageBackend(Protocol):
    """Key/value store with per-key TTL shared by login flows and sessions."""

    async def set(self, key: str, value: dict, ttl_seconds: int) -> None:
        """Store ``value`` under ``key`` for ``ttl_seconds``."""
        ...

    async def get(self, key: str) -> Optional[dict]:
        """Return the live value for ``key`` or None."""
        ...

    async def pop(self, key: str) -> Optional[dict]:
        """Atomically retrieve and delete a value."""
        ...

    async def delete(self, key: str) -> None:
        """Delete a key."""
        ...

    async def exists(self, key: str) -> bool:
        """True if ``key`` holds a live value."""
        ...


class InMemoryStore:
    """
    In-memory storage with automatic expiration.

    All access goes through one asyncio lock, so a single process may share
    it between concurrent requests. Use Redis when running several workers.
    """

    def __init__(self, cleanup_interval: int = 300):
        """
        Initialize in-memory store.

        Args:
            cleanup_interval: Seconds between cleanup runs
        """
        self._store: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._cleanup_interval = cleanup_interval
        self._running = False

    async def start_cleanup(self):
        """Start background cleanup task."""
        if not self._running:
            self._running = True
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.info("Storage cleanup task started")

    async def stop(self):
        """Stop background cleanup task."""
        self._running = False
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
            logger.info("Storage cleanup task stopped")

    async def _cleanup_loop(self):
        """Sweep expired logins and sessions every ``cleanup_interval`` seconds."""
        while self._running:
            try:
                await asyncio.sleep(self._cleanup_interval)
                await self._cleanup_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Storage cleanup error: {e}", exc_info=True)

    async def _cleanup_expired(self):
        """Drop every entry past its expiry."""
        now = datetime.now(timezone.utc)
        async with self._lock:
            expired = [
                k for k, v in self._store.items()
                if v["expires_at"] < now
            ]
            for key in expired:
                self._store.pop(key, None)
            if expired:
                logger.debug(f"Cleaned {len(expired)} expired entries")

    def _live(self, key: str) -> Optional[Dict[str, Any]]:
        rec = self._store.get(key)
        if not rec:
            return None
        if rec["expires_at"] < datetime.now(timezone.utc):
            self._store.pop(key, None)
            return None
        return rec

    async def set(self, key: str, value: dict, ttl_seconds: int) -> None:
        """Store a value with TTL."""
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        async with self._lock:
            self._store[key] = {"value": value, "expires_at": expires_at}

    async def get(self, key: str) -> Optional[dict]:
        """Return the live value for ``key``."""
        async with self._lock:
            rec = self._live(key)
            return rec["value"] if rec else None

    async def pop(self, key: str) -> Optional[dict]:
        """Get and remove a value in one step."""
        async with self._lock:
            rec = self._live(key)
            self._store.pop(key, None)
            return rec["value"] if rec else None

    async def delete(self, key: str) -> None:
        """Delete a key."""
        async with self._lock:
            self._store.pop(key, None)

    async def exists(self, key: str) -> bool:
        """True if ``key`` is live."""
        value = await self.get(key)
        return value is not None


# ============================================================================
# CONFIGURATION
# ============================================================================

class AuthConfig:
    """Authentication system configuration."""

    # Key prefixes for storage
    FLOW_PREFIX = "bnet:flow:"
    SESSION_PREFIX = "bnet:sess:"

    # Cookie names
    FLOW_COOKIE = "bnet_flow"
    SESSION_COOKIE = "bnet_session"

    # Issuer claim of signed credentials
    TOKEN_ISSUER = "BattleNetAuth"

    # Battle.net endpoints (US region)
    DEFAULT_AUTHORIZE_URL = "https://oauth.battle.net/authorize"
    DEFAULT_TOKEN_URL = "https://oauth.battle.net/token"
    DEFAULT_USERINFO_URL = "https://oauth.battle.net/oauth/userinfo"
    DEFAULT_API_BASE_URL = "https://us.api.blizzard.com"
    DEFAULT_NAMESPACE = "profile-us"
    DEFAULT_LOCALE = "en_US"
    DEFAULT_SCOPE = "openid wow.profile"

    # Default timeouts
    DEFAULT_HTTP_TIMEOUT = 10.0
    DEFAULT_STATE_TTL_SEC = 600
    DEFAULT_CREDENTIAL_EXPIRES_HOURS = 24

    # Profile aggregation
    DEFAULT_MAX_LEVEL = 80
    DEFAULT_FANOUT_CONCURRENCY = 10

    CREDENTIAL_STRATEGIES = ("signed", "session")
    TOKEN_AUTH_METHODS = ("post", "basic")


# ============================================================================
# DATA MODEL
# ============================================================================

@dataclass
class AuthorizationRequest:
    """Pending login, keyed by the flow id held in the browser cookie."""

    flow_id: str
    state: str
    issued_at: datetime


@dataclass
class ProviderToken:
    access_token: str = field(repr=False)
    expires_in: int = 0


@dataclass
class Credential:
    """Identity recovered from a caller artifact."""

    subject_id: str
    provider_token: ProviderToken
    issued_at: datetime
    expires_at: datetime

    def is_complete(self) -> bool:
        return bool(self.subject_id and self.provider_token.access_token)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.is_complete() and self.issued_at <= now < self.expires_at


# ============================================================================
# STATE GENERATOR
# ============================================================================

class StateManager:
    """
    Issues and redeems the OAuth ``state`` parameter.

    Each login gets an opaque flow id (sent to the browser as a cookie) and
    an unguessable state (sent to the provider). The callback must present
    both: the flow id locates the pending request, the state must equal the
    one stored with it. A pending request is removed on the first redemption
    attempt, whether it succeeds or not.
    """

    def __init__(self, store: StorageBackend, ttl_seconds: int = AuthConfig.DEFAULT_STATE_TTL_SEC):
        self._store = store
        self.ttl_seconds = ttl_seconds

    async def generate(self) -> AuthorizationRequest:
        """
        Create and record a new authorization request.

        Returns:
            AuthorizationRequest with a 256-bit random state
        """
        request = AuthorizationRequest(
            flow_id=secrets.token_urlsafe(32),
            state=secrets.token_urlsafe(32),
            issued_at=datetime.now(timezone.utc),
        )
        await self._store.set(
            AuthConfig.FLOW_PREFIX + request.flow_id,
            {"state": request.state, "issued_at": request.issued_at.isoformat()},
            self.ttl_seconds,
        )
        return request

    @staticmethod
    def validate(received_state: Optional[str], expected_state: Optional[str]) -> bool:
        """Constant-time comparison; nothing on record means invalid."""
        if not received_state or not expected_state:
            return False
        return hmac.compare_digest(received_state.encode(), expected_state.encode())

    async def redeem(self, flow_id: Optional[str], received_state: Optional[str]) -> None:
        """
        Consume the pending request for ``flow_id`` and check ``received_state``.

        Raises:
            CsrfStateInvalid: If no request is pending, it expired, or the
                state does not match
        """
        if not flow_id:
            raise CsrfStateInvalid("No pending authorization request")

        record = await self._store.pop(AuthConfig.FLOW_PREFIX + flow_id)
        if not record:
            raise CsrfStateInvalid("No pending authorization request")

        issued_at = datetime.fromisoformat(record["issued_at"])
        if datetime.now(timezone.utc) - issued_at > timedelta(seconds=self.ttl_seconds):
            raise CsrfStateInvalid("Authorization request expired")

        if not self.validate(received_state, record.get("state")):
            raise CsrfStateInvalid("State mismatch")


# ============================================================================
# TOKEN EXCHANGER
# ============================================================================

def _response_payload(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class TokenExchanger:
    """Server-to-server calls to the Battle.net OAuth endpoints."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        client_id: str,
        client_secret: str,
        token_url: str,
        userinfo_url: str,
        auth_method: str = "post",
    ):
        self._http = http_client
        self.client_id = client_id
        self._client_secret = client_secret
        self.token_url = token_url
        self.userinfo_url = userinfo_url
        self.auth_method = auth_method

    async def exchange(self, code: str, redirect_uri: str) -> ProviderToken:
        """
        Trade an authorization code for a provider access token.

        The code is single-use, so a failure is final and never retried.

        Args:
            code: Authorization code from the callback
            redirect_uri: Exactly the redirect URI sent with the login redirect

        Returns:
            ProviderToken

        Raises:
            ExchangeFailed: On transport error, non-2xx status or bad body
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }
        auth = None
        if self.auth_method == "basic":
            auth = httpx.BasicAuth(self.client_id, self._client_secret)
        else:
            data["client_id"] = self.client_id
            data["client_secret"] = self._client_secret

        try:
            response = await self._http.post(self.token_url, data=data, auth=auth)
        except httpx.RequestError as e:
            raise ExchangeFailed(f"Token endpoint unreachable: {e.__class__.__name__}") from e

        if not response.is_success:
            raise ExchangeFailed(
                "Token endpoint rejected the code",
                status_code=response.status_code,
                payload=_response_payload(response),
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ExchangeFailed(
                "Token endpoint returned a non-JSON body",
                status_code=response.status_code,
                payload=response.text,
            ) from e

        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            raise ExchangeFailed(
                "Token endpoint response has no access_token",
                status_code=response.status_code,
                payload={k: v for k, v in body.items() if k != "access_token"}
                if isinstance(body, dict) else body,
            )

        try:
            expires_in = int(body.get("expires_in") or 0)
        except (TypeError, ValueError) as e:
            raise ExchangeFailed(
                "Token endpoint returned a non-numeric expires_in",
                status_code=response.status_code,
                payload={k: v for k, v in body.items() if k != "access_token"},
            ) from e

        return ProviderToken(access_token=access_token, expires_in=expires_in)

    async def fetch_subject(self, access_token: str) -> str:
        """
        Look up the stable account id of the token owner.

        Raises:
            ExchangeFailed: If userinfo cannot be fetched or has no id
        """
        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            response = await self._http.get(self.userinfo_url, headers=headers)
        except httpx.RequestError as e:
            raise ExchangeFailed(f"Userinfo endpoint unreachable: {e.__class__.__name__}") from e

        if not response.is_success:
            raise ExchangeFailed(
                "Userinfo fetch failed",
                status_code=response.status_code,
                payload=_response_payload(response),
            )

        try:
            userinfo = response.json()
        except ValueError as e:
            raise ExchangeFailed("Userinfo returned a non-JSON body", payload=response.text) from e

        subject = None
        if isinstance(userinfo, dict):
            subject = userinfo.get("sub") or userinfo.get("id")
        if subject is None or str(subject) == "":
            raise ExchangeFailed("Userinfo has no subject id", payload=userinfo)
        return str(subject)


# ============================================================================
# CREDENTIAL ISSUER / VERIFIER
# ============================================================================

class CredentialStrategy(Protocol):
    """Caller credential: minted after login, checked on every protected call."""

    transport: str

    async def issue(self, subject_id: str, provider_token: ProviderToken) -> str:
        ...

    async def verify(self, artifact: Optional[str]) -> Credential:
        ...

    async def discard(self, artifact: Optional[str]) -> None:
        ...


class SignedTokenCredentials:
    """
    Stateless credential: an HS256 JWT carrying the provider access token.

    The client presents it as ``Authorization: Bearer <jwt>``.
    """

    transport = "header"

    def __init__(
        self,
        secret_key: str,
        audience: str,
        expires_hours: int = AuthConfig.DEFAULT_CREDENTIAL_EXPIRES_HOURS,
        algorithm: str = "HS256",
    ):
        self._secret_key = secret_key
        self.audience = audience
        self.expires_hours = expires_hours
        self.algorithm = algorithm

    async def issue(self, subject_id: str, provider_token: ProviderToken) -> str:
        now = datetime.now(timezone.utc)
        exp = now + timedelta(hours=self.expires_hours)
        payload = {
            "sub": str(subject_id),
            "pat": provider_token.access_token,
            "pexp": provider_token.expires_in,
            "iat": int(now.timestamp()),
            "exp": int(exp.timestamp()),
            "jti": str(uuid.uuid4()),
            "iss": AuthConfig.TOKEN_ISSUER,
            "aud": self.audience,
        }
        return jwt.encode(payload, self._secret_key, algorithm=self.algorithm)

    async def verify(self, artifact: Optional[str]) -> Credential:
        """
        Verify a signed credential.

        Raises:
            CredentialInvalid: With reason missing, malformed, signature or expired
        """
        if not artifact:
            raise CredentialInvalid(VerificationReason.MISSING)

        try:
            payload = jwt.decode(
                artifact,
                self._secret_key,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=AuthConfig.TOKEN_ISSUER,
                options={"require": ["sub", "exp", "iat"]},
            )
        except jwt.ExpiredSignatureError:
            raise CredentialInvalid(VerificationReason.EXPIRED)
        except jwt.InvalidSignatureError:
            raise CredentialInvalid(VerificationReason.SIGNATURE)
        except jwt.InvalidTokenError:
            raise CredentialInvalid(VerificationReason.MALFORMED)

        try:
            credential = Credential(
                subject_id=str(payload["sub"]),
                provider_token=ProviderToken(
                    access_token=payload.get("pat") or "",
                    expires_in=int(payload.get("pexp") or 0),
                ),
                issued_at=datetime.fromtimestamp(payload["iat"], timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], timezone.utc),
            )
        except (TypeError, ValueError):
            raise CredentialInvalid(VerificationReason.MALFORMED)

        if not credential.is_complete():
            raise CredentialInvalid(VerificationReason.MALFORMED)
        if not credential.is_valid():
            raise CredentialInvalid(VerificationReason.EXPIRED)
        return credential

    async def discard(self, artifact: Optional[str]) -> None:
        # Nothing is held server-side; the client drops the token.
        return None


class SessionCredentials:
    """
    Server-side credential: an opaque session id sent as an HttpOnly cookie.
    """

    transport = "cookie"

    def __init__(
        self,
        store: StorageBackend,
        expires_hours: int = AuthConfig.DEFAULT_CREDENTIAL_EXPIRES_HOURS,
    ):
        self._store = store
        self.expires_hours = expires_hours

    @property
    def ttl_seconds(self) -> int:
        return int(timedelta(hours=self.expires_hours).total_seconds())

    async def issue(self, subject_id: str, provider_token: ProviderToken) -> str:
        now = datetime.now(timezone.utc)
        session_id = secrets.token_urlsafe(32)
        await self._store.set(
            AuthConfig.SESSION_PREFIX + session_id,
            {
                "subject_id": str(subject_id),
                "access_token": provider_token.access_token,
                "expires_in": provider_token.expires_in,
                "issued_at": now.isoformat(),
                "expires_at": (now + timedelta(hours=self.expires_hours)).isoformat(),
            },
            self.ttl_seconds,
        )
        return session_id

    async def verify(self, artifact: Optional[str]) -> Credential:
        if not artifact:
            raise CredentialInvalid(VerificationReason.MISSING)

        record = await self._store.get(AuthConfig.SESSION_PREFIX + artifact)
        if not record:
            raise CredentialInvalid(VerificationReason.UNKNOWN_SESSION)

        try:
            credential = Credential(
                subject_id=record["subject_id"],
                provider_token=ProviderToken(
                    access_token=record.get("access_token") or "",
                    expires_in=int(record.get("expires_in") or 0),
                ),
                issued_at=datetime.fromisoformat(record["issued_at"]),
                expires_at=datetime.fromisoformat(record["expires_at"]),
            )
        except (KeyError, TypeError, ValueError):
            raise CredentialInvalid(VerificationReason.MALFORMED)

        if not credential.is_complete():
            raise CredentialInvalid(VerificationReason.MALFORMED)
        if not credential.is_valid():
            await self._store.delete(AuthConfig.SESSION_PREFIX + artifact)
            raise CredentialInvalid(VerificationReason.EXPIRED)
        return credential

    async def discard(self, artifact: Optional[str]) -> None:
        if artifact:
            await self._store.delete(AuthConfig.SESSION_PREFIX + artifact)


# ============================================================================
# AUTH SYSTEM
# ============================================================================

@dataclass
class LoginResult:
    subject_id: str
    artifact: str = field(repr=False)


class BattleNetAuth:
    """
    Battle.net login and profile service.

    Wires the state manager, token exchanger, the configured credential
    strategy and the profile aggregator around one storage backend and one
    shared HTTP client.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        storage: Optional[StorageBackend] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize authentication system.

        Args:
            config: Configuration dictionary
            storage: Optional storage backend (defaults to in-memory)
            http_client: Optional pre-built HTTP client for provider calls

        Raises:
            ValueError: If configuration is invalid
        """
        self._validate_required_config(config)
        self._validate_config_values(config)

        # Core OAuth2 settings
        self.client_id = config["client_id"]
        self.client_secret = config["client_secret"]
        self.app_secret_key = config["app_secret_key"]
        self.redirect_uri = config["redirect_uri"]
        self.authorize_url = config.get("authorize_url", AuthConfig.DEFAULT_AUTHORIZE_URL)
        self.token_url = config.get("token_url", AuthConfig.DEFAULT_TOKEN_URL)
        self.userinfo_url = config.get("userinfo_url", AuthConfig.DEFAULT_USERINFO_URL)
        self.api_base_url = config.get("api_base_url", AuthConfig.DEFAULT_API_BASE_URL)
        self.namespace = config.get("namespace", AuthConfig.DEFAULT_NAMESPACE)
        self.locale = config.get("locale", AuthConfig.DEFAULT_LOCALE)
        self.scope = config.get("scope", AuthConfig.DEFAULT_SCOPE)
        self.token_auth_method = config.get("token_auth_method", "post")

        # Credential settings
        self.credential_strategy = config.get("credential_strategy", "signed")
        self.credential_expires_hours = int(
            config.get("credential_expires_hours", AuthConfig.DEFAULT_CREDENTIAL_EXPIRES_HOURS)
        )
        self.state_ttl_sec = int(config.get("state_ttl_sec", AuthConfig.DEFAULT_STATE_TTL_SEC))
        self.jwt_algorithm = config.get("jwt_algorithm", "HS256")

        # Browser-facing settings
        self.post_login_url = config.get("post_login_url", "/#login")
        self.home_url = config.get("home_url", "/")
        self.cookie_secure = bool(config.get("cookie_secure", True))
        self.cookie_samesite = config.get("cookie_samesite", "lax")

        # Aggregation settings
        self.http_timeout = float(config.get("http_timeout", AuthConfig.DEFAULT_HTTP_TIMEOUT))
        self.max_level = int(config.get("max_level", AuthConfig.DEFAULT_MAX_LEVEL))
        self.fanout_concurrency = int(
            config.get("fanout_concurrency", AuthConfig.DEFAULT_FANOUT_CONCURRENCY)
        )

        # Storage backend and HTTP client
        self._store = storage or InMemoryStore()
        self._http_client: Optional[httpx.AsyncClient] = http_client

        self.states = StateManager(self._store, self.state_ttl_sec)
        if self.credential_strategy == "session":
            self.credentials: CredentialStrategy = SessionCredentials(
                self._store, self.credential_expires_hours
            )
        else:
            self.credentials = SignedTokenCredentials(
                self.app_secret_key,
                audience=self.client_id,
                expires_hours=self.credential_expires_hours,
                algorithm=self.jwt_algorithm,
            )

        # Metrics tracking
        self._metrics = {
            "logins_total": 0,
            "logins_success": 0,
            "logins_failed": 0,
            "profile_requests": 0,
            "profile_failures": 0,
            "fallbacks_applied": 0,
        }

        self._initialized = False

        logger.info(f"Authentication system initialized (credential strategy: {self.credential_strategy})")

    def _validate_required_config(self, config: Dict[str, Any]):
        """Validate that all required configuration keys are present."""
        required = ("client_id", "client_secret", "app_secret_key", "redirect_uri")
        missing = [k for k in required if not config.get(k)]
        if missing:
            raise ValueError(f"Missing required config keys: {', '.join(missing)}")

    def _validate_config_values(self, config: Dict[str, Any]):
        """Validate configuration values for security and correctness."""
        # Validate secret key strength
        secret_key = config.get("app_secret_key", "")
        weak_keys = ("changeme", "secret", "supersecret", "password", "test")

        if secret_key.lower() in weak_keys or len(secret_key) < 32:
            if config.get("environment") == "production":
                raise ValueError(
                    "Weak app_secret_key not allowed in production. "
                    "Use at least 32 random characters."
                )
            logger.warning("Weak app_secret_key detected - use strong random key in production")

        # Validate positive integers
        for key in [
            "credential_expires_hours", "state_ttl_sec",
            "max_level", "fanout_concurrency",
        ]:
            if key in config:
                value = int(config[key])
                if value <= 0:
                    raise ValueError(f"{key} must be positive, got {value}")

        strategy = config.get("credential_strategy", "signed")
        if strategy not in AuthConfig.CREDENTIAL_STRATEGIES:
            raise ValueError(f"credential_strategy must be one of {AuthConfig.CREDENTIAL_STRATEGIES}, got: {strategy}")

        method = config.get("token_auth_method", "post")
        if method not in AuthConfig.TOKEN_AUTH_METHODS:
            raise ValueError(f"token_auth_method must be one of {AuthConfig.TOKEN_AUTH_METHODS}, got: {method}")

        # Validate URLs
        for key in ["redirect_uri", "authorize_url", "token_url", "userinfo_url", "api_base_url"]:
            if key in config:
                url = config[key]
                if not url.startswith(("http://", "https://")):
                    raise ValueError(f"{key} must be a valid URL, got: {url}")

                if config.get("environment") == "production" and url.startswith("http://"):
                    logger.warning(f"{key} uses HTTP in production - use HTTPS for security")

    async def initialize(self):
        """
        Initialize async components.

        Must be called after creating the instance, typically in application startup.
        """
        if not self._initialized:
            start_cleanup = getattr(self._store, "start_cleanup", None)
            if start_cleanup:
                await start_cleanup()
            self._initialized = True
            logger.info("Authentication system async initialization complete")

    @asynccontextmanager
    async def _http(self):
        """Get or create HTTP client with proper lifecycle management."""
        if not self._http_client:
            self._http_client = httpx.AsyncClient(
                timeout=self.http_timeout,
                limits=httpx.Limits(
                    max_keepalive_connections=self.fanout_concurrency,
                    max_connections=self.fanout_concurrency * 2,
                ),
            )
        yield self._http_client

    def _on_fallback(self, field_name: str) -> None:
        self._metrics["fallbacks_applied"] += 1

    # ------------------------------------------------------------------
    # Login flow
    # ------------------------------------------------------------------

    async def begin_login(self) -> tuple:
        """
        Start a login.

        Returns:
            Tuple of (authorization URL, flow id for the browser cookie)
        """
        if not self._initialized:
            await self.initialize()

        request = await self.states.generate()
        logger.debug(f"Issued login state {hashlib.sha256(request.state.encode()).hexdigest()[:12]}")
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": request.state,
        }
        return f"{self.authorize_url}?{urlencode(params)}", request.flow_id

    async def complete_login(
        self,
        code: Optional[str],
        state: Optional[str],
        flow_id: Optional[str],
    ) -> LoginResult:
        """
        Finish a login from the callback parameters.

        The state is checked before any provider call is made.

        Raises:
            CsrfStateInvalid: Missing code/state or state not redeemable
            ExchangeFailed: Provider rejected the code or userinfo failed
        """
        if not self._initialized:
            await self.initialize()

        self._metrics["logins_total"] += 1
        try:
            if not code or not state:
                raise CsrfStateInvalid("Missing code or state")
            await self.states.redeem(flow_id, state)

            async with self._http() as client:
                exchanger = TokenExchanger(
                    client,
                    self.client_id,
                    self.client_secret,
                    self.token_url,
                    self.userinfo_url,
                    auth_method=self.token_auth_method,
                )
                provider_token = await exchanger.exchange(code, self.redirect_uri)
                subject_id = await exchanger.fetch_subject(provider_token.access_token)
        except BattleNetAuthError:
            self._metrics["logins_failed"] += 1
            raise

        artifact = await self.credentials.issue(subject_id, provider_token)
        self._metrics["logins_success"] += 1
        logger.info(f"User authenticated: {subject_id}")
        return LoginResult(subject_id=subject_id, artifact=artifact)

    async def verify(self, artifact: Optional[str]) -> Credential:
        """Verify a caller artifact with the configured strategy."""
        return await self.credentials.verify(artifact)

    async def logout(self, artifact: Optional[str]) -> None:
        await self.credentials.discard(artifact)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    async def profile(self, credential: Credential) -> Dict[str, Any]:
        """
        Build the aggregated profile for a verified credential.

        Raises:
            PrimaryFetchFailed: If the account profile itself is unavailable
        """
        self._metrics["profile_requests"] += 1
        async with self._http() as client:
            aggregator = ProfileAggregator(
                client,
                api_base_url=self.api_base_url,
                namespace=self.namespace,
                locale=self.locale,
                max_level=self.max_level,
                concurrency=self.fanout_concurrency,
                on_fallback=self._on_fallback,
            )
            try:
                return await aggregator.aggregate(credential.provider_token.access_token)
            except PrimaryFetchFailed:
                self._metrics["profile_failures"] += 1
                raise

    # ------------------------------------------------------------------
    # Monitoring and lifecycle
    # ------------------------------------------------------------------

    async def health_check(self) -> dict:
        """
        Health check for monitoring.

        Returns:
            Health status dictionary
        """
        storage_ok = True
        try:
            test_key = "health:check:" + str(uuid.uuid4())
            await self._store.set(test_key, {"test": True}, 10)
            result = await self._store.get(test_key)
            await self._store.delete(test_key)
            storage_ok = result is not None
        except Exception as e:
            logger.error(f"Storage health check failed: {e}")
            storage_ok = False

        return {
            "status": "healthy" if storage_ok else "degraded",
            "storage": "ok" if storage_ok else "error",
            "credential_strategy": self.credential_strategy,
            "http_client": "ok" if self._http_client else "not_initialized",
            "metrics": self.get_metrics(),
        }

    def get_metrics(self) -> dict:
        """Get authentication metrics."""
        return self._metrics.copy()

    async def shutdown(self):
        """Clean shutdown of async components."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

        stop = getattr(self._store, "stop", None)
        if stop:
            await stop()

        self._initialized = False
        logger.info("Authentication system shutdown complete")

