import asyncio

import pytest
import requests

from core_engine import AuthError, TokenProvider


class _FakeTokenResponse:
    def __init__(self, payload=None, *, status_code: int = 200, text: str = "") -> None:
        self._payload = payload
        self.status_code = status_code
        self.text = text

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def make_provider(**kwargs) -> TokenProvider:
    options = {
        "client_id": "client-id",
        "client_secret": "s3cret",
        "scopes": ["data:read", "account:read"],
        "token_url": "https://aps.example.com/authentication/v2/token",
    }
    options.update(kwargs)
    return TokenProvider(**options)


def test_payload_joins_scopes_with_literal_percent_20():
    provider = make_provider()

    payload = provider.build_payload()

    assert payload == (
        "client_id=client-id&client_secret=s3cret"
        "&grant_type=client_credentials&scope=data:read%20account:read"
    )


def test_token_is_fetched_once_and_cached(monkeypatch: pytest.MonkeyPatch):
    captured = []

    def fake_post(url, *, data, headers, timeout):
        captured.append({"url": url, "data": data, "headers": headers})
        return _FakeTokenResponse({"access_token": "abc123", "expires_in": 3599})

    monkeypatch.setattr("core_engine.requests.post", fake_post)
    provider = make_provider()

    async def get_twice():
        return await provider.get_token(), await provider.get_token()

    assert asyncio.run(get_twice()) == ("abc123", "abc123")
    assert len(captured) == 1
    assert captured[0]["url"] == "https://aps.example.com/authentication/v2/token"
    assert captured[0]["headers"]["Content-Type"] == "application/x-www-form-urlencoded"
    assert provider.has_token


def test_non_2xx_response_raises_auth_error(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(
        "core_engine.requests.post",
        lambda url, **kwargs: _FakeTokenResponse(status_code=401, text='{"developerMessage": "bad client"}'),
    )

    with pytest.raises(AuthError, match="401"):
        asyncio.run(make_provider().get_token())


def test_malformed_body_raises_auth_error(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(
        "core_engine.requests.post",
        lambda url, **kwargs: _FakeTokenResponse(ValueError("not json")),
    )

    with pytest.raises(AuthError):
        asyncio.run(make_provider().get_token())


def test_body_without_access_token_raises_auth_error(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(
        "core_engine.requests.post",
        lambda url, **kwargs: _FakeTokenResponse({"token_type": "Bearer"}),
    )
    provider = make_provider()

    with pytest.raises(AuthError):
        asyncio.run(provider.get_token())
    assert not provider.has_token


def test_network_failure_raises_auth_error(monkeypatch: pytest.MonkeyPatch):
    def fake_post(url, **kwargs):
        raise requests.ConnectionError("dns failure")

    monkeypatch.setattr("core_engine.requests.post", fake_post)

    with pytest.raises(AuthError, match="ConnectionError"):
        asyncio.run(make_provider().get_token())


def test_missing_credentials_fail_before_any_request(monkeypatch: pytest.MonkeyPatch):
    def fake_post(url, **kwargs):
        raise AssertionError("token endpoint must not be called")

    monkeypatch.setattr("core_engine.requests.post", fake_post)

    with pytest.raises(AuthError, match="APS_CLIENT_ID"):
        asyncio.run(make_provider(client_secret="").get_token())
