"""
World of Warcraft profile aggregation.

Fetches the account profile for a Battle.net access token and enriches every
max-level character with media, Mythic+ rating and summary data. Each
enrichment call is independent: when one fails, only its own fields fall back
to defaults and the rest of the snapshot is still returned.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import httpx

from auth_errors import PrimaryFetchFailed

logger = logging.getLogger(__name__)


CLASS_COLORS = {
    "Warrior": "#C79C6E",
    "Paladin": "#F58CBA",
    "Hunter": "#ABD473",
    "Rogue": "#FFF569",
    "Priest": "#FFFFFF",
    "Death Knight": "#C41F3B",
    "Shaman": "#0070DE",
    "Mage": "#69CCF0",
    "Warlock": "#9482C9",
    "Monk": "#00FF96",
    "Druid": "#FF7D0A",
    "Demon Hunter": "#A330C9",
    "Evoker": "#33937F",
}
DEFAULT_CLASS_COLOR = "#FFFFFF"

# Preferred asset keys for the character portrait, best first
MEDIA_KEY_PREFERENCE = ("avatar", "render", "main")

DEFAULT_AVATAR_URL = ""
DEFAULT_MYTHIC_SCORE = "N/A"
DEFAULT_CLASS = "Unknown"
DEFAULT_ITEM_LEVEL = "N/A"

# Failures a single enrichment call may hit; any of them means "use the default"
FALLBACK_ERRORS = (
    httpx.HTTPError,
    httpx.InvalidURL,
    ValueError,
    KeyError,
    IndexError,
    TypeError,
    AttributeError,
)


def class_color(class_name: Optional[str]) -> str:
    """Display colour for a class name; unknown classes get the default."""
    return CLASS_COLORS.get(class_name or "", DEFAULT_CLASS_COLOR)


def select_avatar(assets: Any) -> str:
    """
    Pick the portrait URL from a character-media ``assets`` list.

    Prefers ``avatar``, then ``render``, then ``main``, then whatever comes
    first. Returns an empty string when there is nothing to pick.
    """
    if not assets:
        return DEFAULT_AVATAR_URL
    by_key = {}
    for asset in assets:
        by_key.setdefault(asset.get("key"), asset)
    for key in MEDIA_KEY_PREFERENCE:
        if key in by_key:
            return by_key[key].get("value") or DEFAULT_AVATAR_URL
    return assets[0].get("value") or DEFAULT_AVATAR_URL


def _extract_mythic_score(data: Dict[str, Any]) -> Any:
    rating = data["current_mythic_rating"]["rating"]
    if rating is None:
        raise KeyError("rating")
    return rating


def _extract_summary(data: Dict[str, Any]) -> Dict[str, Any]:
    character_class = (data.get("character_class") or {}).get("name")
    item_level = data.get("equipped_item_level")
    return {
        "class": character_class or DEFAULT_CLASS,
        "itemLevel": item_level if item_level is not None else DEFAULT_ITEM_LEVEL,
    }


def _extract_media(data: Dict[str, Any]) -> str:
    return select_avatar(data.get("assets") or [])


class ProfileAggregator:
    """
    Builds the aggregated profile snapshot for one access token.

    Args:
        http_client: Shared async HTTP client
        api_base_url: Game data API host, e.g. ``https://us.api.blizzard.com``
        namespace: Profile namespace, e.g. ``profile-us``
        locale: Response locale
        max_level: Only characters at exactly this level are kept
        concurrency: Upper bound on in-flight enrichment requests per call
        on_fallback: Optional hook called with the field name on every fallback
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_base_url: str,
        namespace: str = "profile-us",
        locale: str = "en_US",
        max_level: int = 80,
        concurrency: int = 10,
        on_fallback: Optional[Callable[[str], None]] = None,
    ):
        self._http = http_client
        self.api_base_url = api_base_url.rstrip("/")
        self.namespace = namespace
        self.locale = locale
        self.max_level = max_level
        self.concurrency = concurrency
        self._on_fallback = on_fallback

    def _request_kwargs(self, access_token: str) -> Dict[str, Any]:
        return {
            "headers": {"Authorization": f"Bearer {access_token}"},
            "params": {"namespace": self.namespace, "locale": self.locale},
        }

    def is_eligible(self, character: Dict[str, Any]) -> bool:
        return isinstance(character, dict) and character.get("level") == self.max_level

    @staticmethod
    def character_path(character: Dict[str, Any]) -> str:
        """``/profile/wow/character/<escaped realm slug>/<lower-cased escaped name>``"""
        realm_slug = quote(character["realm"]["slug"], safe="")
        name = quote(character["name"].lower(), safe="")
        return f"/profile/wow/character/{realm_slug}/{name}"

    async def aggregate(self, access_token: str) -> Dict[str, Any]:
        """
        Fetch and enrich the account profile.

        Account and character order follow the provider response. The
        provider document passed in is not modified.

        Raises:
            PrimaryFetchFailed: If the account profile cannot be fetched
        """
        profile = await self._fetch_primary(access_token)

        accounts = profile.get("wow_accounts")
        if not accounts or not isinstance(accounts, list):
            return profile

        semaphore = asyncio.Semaphore(self.concurrency)
        enriched = await asyncio.gather(
            *(self._enrich_account(account, access_token, semaphore) for account in accounts)
        )

        snapshot = dict(profile)
        snapshot["wow_accounts"] = list(enriched)
        return snapshot

    async def _fetch_primary(self, access_token: str) -> Dict[str, Any]:
        url = f"{self.api_base_url}/profile/user/wow"
        try:
            response = await self._http.get(url, **self._request_kwargs(access_token))
        except httpx.RequestError as e:
            raise PrimaryFetchFailed(f"Profile endpoint unreachable: {e.__class__.__name__}") from e

        if not response.is_success:
            try:
                payload = response.json()
            except ValueError:
                payload = response.text
            raise PrimaryFetchFailed(
                "Profile fetch failed",
                status_code=response.status_code,
                payload=payload,
            )

        try:
            profile = response.json()
        except ValueError as e:
            raise PrimaryFetchFailed("Profile returned a non-JSON body", payload=response.text) from e
        if not isinstance(profile, dict):
            raise PrimaryFetchFailed("Profile body is not an object", payload=profile)
        return profile

    async def _enrich_account(
        self,
        account: Dict[str, Any],
        access_token: str,
        semaphore: asyncio.Semaphore,
    ) -> Dict[str, Any]:
        if not isinstance(account, dict):
            return account

        characters = account.get("characters")
        if not characters or not isinstance(characters, list):
            return account

        eligible = [c for c in characters if self.is_eligible(c)]
        enriched = await asyncio.gather(
            *(self._enrich_character(c, access_token, semaphore) for c in eligible)
        )

        result = dict(account)
        result["characters"] = list(enriched)
        return result

    async def _enrich_character(
        self,
        character: Dict[str, Any],
        access_token: str,
        semaphore: asyncio.Semaphore,
    ) -> Dict[str, Any]:
        enriched = dict(character)
        label = character.get("name", "?")

        try:
            path = self.character_path(character)
        except (KeyError, TypeError, AttributeError):
            logger.warning(f"Character {label} has no realm/name key, using defaults")
            path = None

        if path is None:
            avatar_url = DEFAULT_AVATAR_URL
            mythic_score = DEFAULT_MYTHIC_SCORE
            summary = {"class": DEFAULT_CLASS, "itemLevel": DEFAULT_ITEM_LEVEL}
        else:
            avatar_url, mythic_score, summary = await asyncio.gather(
                self._fetch_with_fallback(
                    f"{path}/character-media", access_token, semaphore,
                    extract=_extract_media, default=DEFAULT_AVATAR_URL,
                    field_name="media", label=label,
                ),
                self._fetch_with_fallback(
                    f"{path}/mythic-keystone-profile", access_token, semaphore,
                    extract=_extract_mythic_score, default=DEFAULT_MYTHIC_SCORE,
                    field_name="mythic_plus_score", label=label,
                ),
                self._fetch_with_fallback(
                    path, access_token, semaphore,
                    extract=_extract_summary,
                    default={"class": DEFAULT_CLASS, "itemLevel": DEFAULT_ITEM_LEVEL},
                    field_name="summary", label=label,
                ),
            )

        enriched["media"] = {"avatar_url": avatar_url}
        enriched["mythic_plus_score"] = mythic_score
        enriched["class"] = summary["class"]
        enriched["itemLevel"] = summary["itemLevel"]
        enriched["classColor"] = class_color(summary["class"])
        return enriched

    async def _fetch_with_fallback(
        self,
        path: str,
        access_token: str,
        semaphore: asyncio.Semaphore,
        extract: Callable[[Any], Any],
        default: Any,
        field_name: str,
        label: str,
    ) -> Any:
        """
        GET one enrichment resource and extract a value from it.

        Transport errors, non-2xx responses, bad JSON and missing fields all
        resolve to ``default``. Cancellation is not caught.
        """
        url = f"{self.api_base_url}{path}"
        async with semaphore:
            try:
                response = await self._http.get(url, **self._request_kwargs(access_token))
                response.raise_for_status()
                return extract(response.json())
            except FALLBACK_ERRORS as e:
                if isinstance(e, httpx.HTTPStatusError):
                    detail = f"HTTP {e.response.status_code}"
                else:
                    detail = e.__class__.__name__
                logger.warning(f"Failed to fetch {field_name} for {label}: {detail}")
                if self._on_fallback:
                    self._on_fallback(field_name)
                return default

