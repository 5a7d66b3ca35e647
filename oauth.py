"""
Battle.net Login + Profile Web Layer
====================================

FastAPI wiring for the Battle.net login flow:
- Redis storage backend support
- Login redirect / callback / logout routes
- Credential dependency for protected routes
- Aggregated character profile endpoint
- Group listing endpoint
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
from urllib.parse import urldefrag

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, RedirectResponse

from battlenet_auth import AuthConfig, BattleNetAuth, Credential, StorageBackend
from auth_errors import CredentialInvalid, CsrfStateInvalid, ExchangeFailed, PrimaryFetchFailed
from groups import GroupValidationError, InMemoryRecordStore, RecordStore, create_group

logger = logging.getLogger(__name__)


# ============================================================================
# REDIS STORAGE BACKEND
# ============================================================================

class RedisStorage(StorageBackend):
    """
    Redis storage backend for production use.

    Expiry is left to Redis TTLs; ``pop`` uses GETDEL so a pending login
    can be redeemed only once even across workers.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379/0"):
        """
        Initialize Redis storage.

        Args:
            redis_url: Redis connection URL
        """
        import redis.asyncio as aioredis
        self._redis_module = aioredis

        self.redis_url = redis_url
        self._client: Optional[aioredis.Redis] = None
        logger.info("Redis storage initialized")

    async def _get_client(self):
        """Get or create Redis client."""
        if not self._client:
            self._client = self._redis_module.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
            # Test connection
            await self._client.ping()
            logger.info("Redis connection established")
        return self._client

    async def set(self, key: str, value: dict, ttl_seconds: int) -> None:
        """Store a value with TTL in Redis."""
        client = await self._get_client()
        await client.setex(key, ttl_seconds, json.dumps(value))

    async def get(self, key: str) -> Optional[dict]:
        """Retrieve a value from Redis."""
        client = await self._get_client()
        value = await client.get(key)
        if value:
            return json.loads(value)
        return None

    async def pop(self, key: str) -> Optional[dict]:
        """Retrieve and delete a value atomically."""
        client = await self._get_client()
        value = await client.getdel(key)
        if value:
            return json.loads(value)
        return None

    async def delete(self, key: str) -> None:
        """Delete a key from Redis."""
        client = await self._get_client()
        await client.delete(key)

    async def exists(self, key: str) -> bool:
        """Check if a key exists in Redis."""
        client = await self._get_client()
        result = await client.exists(key)
        return bool(result)

    async def stop(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Redis connection closed")


# ============================================================================
# SETUP
# ============================================================================

def setup_battlenet_auth(
    config: Dict[str, Any],
    use_redis: bool = False,
    redis_url: str = "redis://localhost:6379/0",
    http_client=None,
) -> BattleNetAuth:
    """
    Build the Battle.net auth service with optional Redis support.

    Usage:
        # In-memory (single process)
        auth = setup_battlenet_auth({
            "client_id": "your-id",
            "client_secret": "your-secret",
            "app_secret_key": "your-jwt-secret",
            "redirect_uri": "http://localhost:3000/callback",
        })

        # Redis, server-side sessions
        auth = setup_battlenet_auth(
            config={..., "credential_strategy": "session"},
            use_redis=True,
            redis_url="redis://localhost:6379/0"
        )

    Args:
        config: OAuth configuration dictionary
        use_redis: Enable Redis storage backend (default: False)
        redis_url: Redis connection URL (default: redis://localhost:6379/0)
        http_client: Optional httpx.AsyncClient for provider calls

    Returns:
        Initialized BattleNetAuth instance
    """
    storage = None
    if use_redis:
        logger.info("Initializing with Redis storage backend")
        storage = RedisStorage(redis_url)
    else:
        logger.warning("Using in-memory storage - logins and sessions are lost on restart")

    return BattleNetAuth(config, storage=storage, http_client=http_client)


def _get_auth(request: Request) -> BattleNetAuth:
    auth = getattr(request.app.state, "auth", None)
    if auth is None:
        raise HTTPException(500, "Auth not initialized")
    return auth


def _credential_artifact(request: Request, auth: BattleNetAuth) -> Optional[str]:
    """Read the caller credential from where the configured strategy puts it."""
    if auth.credentials.transport == "cookie":
        return request.cookies.get(AuthConfig.SESSION_COOKIE)

    header = request.headers.get("Authorization")
    if header and header.lower().startswith("bearer "):
        return header.split(None, 1)[1].strip()
    return None


def _cookie_kwargs(auth: BattleNetAuth) -> Dict[str, Any]:
    return dict(
        httponly=True,
        secure=auth.cookie_secure,
        samesite=auth.cookie_samesite,
        path="/",
    )


# ============================================================================
# CREDENTIAL DEPENDENCY
# ============================================================================

def battlenet_user():
    """
    Require a verified caller credential.

    Usage:
        @app.get("/me")
        async def me(credential = battlenet_user()):
            return {"id": credential.subject_id}

    Every verification failure answers 401 with the same message.
    """

    async def dependency(request: Request) -> Credential:
        auth = _get_auth(request)
        try:
            return await auth.verify(_credential_artifact(request, auth))
        except CredentialInvalid as e:
            logger.info(f"Credential rejected: {e.reason.value}")
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Unauthorized")

    return Depends(dependency)


# ============================================================================
# ROUTES
# ============================================================================

router = APIRouter()


@router.get("/auth/login")
async def login_redirect(request: Request) -> RedirectResponse:
    """Redirect to the Battle.net login page."""
    auth = _get_auth(request)
    url, flow_id = await auth.begin_login()

    response = RedirectResponse(url)
    response.set_cookie(
        AuthConfig.FLOW_COOKIE,
        flow_id,
        max_age=auth.state_ttl_sec,
        **_cookie_kwargs(auth),
    )
    return response


@router.get("/callback")
async def handle_callback(request: Request) -> RedirectResponse:
    """
    Finish the login and hand the credential to the browser.

    Signed credentials are appended to the post-login URL as ``#token=``;
    session credentials travel only in the HttpOnly session cookie.
    """
    auth = _get_auth(request)

    error = request.query_params.get("error")
    if error:
        logger.error(f"OAuth provider error: {error}")
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Authentication failed")

    try:
        result = await auth.complete_login(
            request.query_params.get("code"),
            request.query_params.get("state"),
            request.cookies.get(AuthConfig.FLOW_COOKIE),
        )
    except CsrfStateInvalid as e:
        logger.warning(f"Callback rejected: {e}")
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid state parameter")
    except ExchangeFailed as e:
        logger.error(f"Login failed: {e} (status={e.status_code}, payload={e.payload})")
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, "Authentication failed")

    if auth.credentials.transport == "header":
        target = f"{urldefrag(auth.post_login_url).url}#token={result.artifact}"
    else:
        target = auth.post_login_url

    response = RedirectResponse(target)
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
    response.headers["Pragma"] = "no-cache"
    response.delete_cookie(AuthConfig.FLOW_COOKIE, path="/")

    if auth.credentials.transport == "cookie":
        previous = request.cookies.get(AuthConfig.SESSION_COOKIE)
        if previous:
            await auth.logout(previous)
        response.set_cookie(
            AuthConfig.SESSION_COOKIE,
            result.artifact,
            max_age=auth.credentials.ttl_seconds,
            **_cookie_kwargs(auth),
        )
    return response


@router.get("/api/profile")
async def profile(request: Request, credential: Credential = battlenet_user()) -> Dict[str, Any]:
    """Aggregated WoW profile of the logged-in user."""
    auth = _get_auth(request)
    try:
        return await auth.profile(credential)
    except PrimaryFetchFailed as e:
        logger.error(f"Profile fetch failed: {e} (status={e.status_code}, payload={e.payload})")
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to fetch profile")


@router.get("/auth/logout")
async def logout(request: Request) -> RedirectResponse:
    """Drop the credential and go home. Always redirects."""
    auth = _get_auth(request)
    if auth.credentials.transport == "cookie":
        try:
            await auth.logout(request.cookies.get(AuthConfig.SESSION_COOKIE))
        except Exception as e:
            logger.error(f"Logout error: {e}")

    response = RedirectResponse(auth.home_url)
    response.delete_cookie(AuthConfig.SESSION_COOKIE, path="/")
    response.delete_cookie(AuthConfig.FLOW_COOKIE, path="/")
    return response


@router.post("/api/groups", status_code=status.HTTP_201_CREATED)
async def create_group_route(request: Request):
    """Create a group listing."""
    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        return JSONResponse({"error": "Missing required fields"}, status_code=400)

    try:
        group_id = await create_group(request.app.state.records, body)
    except GroupValidationError as e:
        logger.info(f"Group rejected: {e}")
        return JSONResponse({"error": "Missing required fields"}, status_code=400)
    except Exception as e:
        logger.error(f"Error saving group: {e}", exc_info=True)
        return JSONResponse({"error": "Failed to create group"}, status_code=500)

    return {"message": "Group created", "id": group_id}


@router.get("/auth/health")
async def health_check(request: Request) -> Dict[str, Any]:
    """Check auth system health."""
    return await _get_auth(request).health_check()


# ============================================================================
# APPLICATION
# ============================================================================

def create_app(auth: BattleNetAuth, records: Optional[RecordStore] = None) -> FastAPI:
    """
    Build the FastAPI application around an auth service.

    Usage:
        auth = setup_battlenet_auth(config)
        app = create_app(auth)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await auth.initialize()
        try:
            yield
        finally:
            await auth.shutdown()

    app = FastAPI(title="Battle.net Profile", lifespan=lifespan)
    app.state.auth = auth
    app.state.records = records or InMemoryRecordStore()
    app.include_router(router)
    return app


def create_app_from_env() -> FastAPI:
    """
    Application factory reading settings from the environment.

    Usage:
        uvicorn oauth:create_app_from_env --factory
    """
    from auth_settings import Settings

    settings = Settings()
    auth = setup_battlenet_auth(
        settings.to_auth_config(),
        use_redis=settings.use_redis,
        redis_url=settings.redis_url,
    )
    return create_app(auth)


__all__ = [
    "RedisStorage",
    "setup_battlenet_auth",
    "battlenet_user",
    "router",
    "create_app",
    "create_app_from_env",
]
