"""Shared fixtures: test configuration and a fake Battle.net."""

import httpx
import pytest

TEST_CONFIG = {
    "client_id": "test-client-id-12345",
    "client_secret": "test-client-secret-67890",
    "app_secret_key": "test-secret-key-minimum-32-characters-long-here",
    "redirect_uri": "http://localhost:3000/callback",
    "authorize_url": "https://oauth.battle.net/authorize",
    "token_url": "https://oauth.battle.net/token",
    "userinfo_url": "https://oauth.battle.net/oauth/userinfo",
    "api_base_url": "https://us.api.blizzard.com",
    "cookie_secure": False,
    "environment": "test",
}

FOO = "/profile/wow/character/area-52/foo"


class FakeBattleNet:
    """
    Stand-in for the Battle.net OAuth and profile APIs.

    Responses are keyed by URL path. A registered exception is raised from
    the transport instead of returning a response.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []

    def respond(self, path, json=None, status=200):
        self.routes[path] = (status, json)

    def fail(self, path, exc):
        self.routes[path] = (None, exc)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path not in self.routes:
            return httpx.Response(404, json={"code": 404, "detail": "Not Found"})
        status_code, body = self.routes[request.url.path]
        if isinstance(body, Exception):
            raise body
        return httpx.Response(status_code, json=body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    @property
    def paths(self):
        return [r.url.path for r in self.requests]

    def standard_account(self):
        """Token ``tok1`` for code ``abc123`` and one level 80 Mage called Foo."""
        self.respond("/token", {"access_token": "tok1", "token_type": "bearer", "expires_in": 86399})
        self.respond("/oauth/userinfo", {"sub": "12345", "id": 12345, "battletag": "Foo#1234"})
        self.respond("/profile/user/wow", {
            "id": 12345,
            "wow_accounts": [
                {"id": 1, "characters": [
                    {"name": "Foo", "level": 80, "realm": {"slug": "area-52"}},
                ]},
            ],
        })
        self.respond(f"{FOO}/character-media", {"assets": [{"key": "avatar", "value": "http://img"}]})
        self.respond(f"{FOO}/mythic-keystone-profile", {"current_mythic_rating": {"rating": 1500}})
        self.respond(FOO, {"character_class": {"name": "Mage"}, "equipped_item_level": 450})


@pytest.fixture
def test_config():
    return dict(TEST_CONFIG)


@pytest.fixture
def fake_bnet():
    return FakeBattleNet()
