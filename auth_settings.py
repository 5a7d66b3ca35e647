"""Environment-backed settings for the Battle.net profile service."""

from typing import Any, Dict

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables (and ``.env``)."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Battle.net application credentials
    blizzard_client_id: str = ""
    blizzard_client_secret: str = ""
    redirect_uri: str = "http://localhost:3000/callback"
    region: str = "us"
    locale: str = "en_US"

    # Caller credential
    app_secret_key: str = ""
    credential_strategy: str = Field(default="signed", pattern="^(signed|session)$")
    credential_expires_hours: int = 24
    token_auth_method: str = Field(default="post", pattern="^(post|basic)$")

    # Browser
    post_login_url: str = "/#login"
    home_url: str = "/"
    cookie_secure: bool = True
    cookie_samesite: str = "lax"

    # Storage
    use_redis: bool = False
    redis_url: str = "redis://localhost:6379/0"

    # Profile aggregation
    max_level: int = 80
    fanout_concurrency: int = 10
    http_timeout: float = 10.0

    environment: str = "development"

    @property
    def api_base_url(self) -> str:
        return f"https://{self.region}.api.blizzard.com"

    @property
    def namespace(self) -> str:
        return f"profile-{self.region}"

    def to_auth_config(self) -> Dict[str, Any]:
        """Render the dictionary accepted by ``BattleNetAuth``."""
        return {
            "client_id": self.blizzard_client_id,
            "client_secret": self.blizzard_client_secret,
            "app_secret_key": self.app_secret_key,
            "redirect_uri": self.redirect_uri,
            "api_base_url": self.api_base_url,
            "namespace": self.namespace,
            "locale": self.locale,
            "credential_strategy": self.credential_strategy,
            "credential_expires_hours": self.credential_expires_hours,
            "token_auth_method": self.token_auth_method,
            "post_login_url": self.post_login_url,
            "home_url": self.home_url,
            "cookie_secure": self.cookie_secure,
            "cookie_samesite": self.cookie_samesite,
            "max_level": self.max_level,
            "fanout_concurrency": self.fanout_concurrency,
            "http_timeout": self.http_timeout,
            "environment": self.environment,
        }
