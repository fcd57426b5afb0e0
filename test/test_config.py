import pytest
from pydantic import ValidationError

from config import Settings


def test_defaults(monkeypatch: pytest.MonkeyPatch):
    for name in ("APS_CLIENT_ID", "APS_SCOPES", "APS_BASE_URL", "CHUNK_SIZE", "MAX_RATE_LIMIT_RETRIES", "ENVIRONMENT"):
        monkeypatch.delenv(name, raising=False)

    config = Settings(_env_file=None)

    assert config.APS_BASE_URL == "https://developer.api.autodesk.com"
    assert config.token_url == "https://developer.api.autodesk.com/authentication/v2/token"
    assert config.CHUNK_SIZE == 50
    assert config.MAX_RATE_LIMIT_RETRIES is None
    assert config.APS_SCOPES == ["data:read"]
    assert not config.is_production


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("APS_CLIENT_ID", "abc")
    monkeypatch.setenv("APS_SCOPES", '["data:read", "account:read"]')
    monkeypatch.setenv("CHUNK_SIZE", "25")
    monkeypatch.setenv("MAX_RATE_LIMIT_RETRIES", "10")
    monkeypatch.setenv("ENVIRONMENT", "Production")

    config = Settings(_env_file=None)

    assert config.APS_CLIENT_ID == "abc"
    assert config.APS_SCOPES == ["data:read", "account:read"]
    assert config.CHUNK_SIZE == 25
    assert config.MAX_RATE_LIMIT_RETRIES == 10
    assert config.is_production


def test_chunk_size_must_be_positive(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("CHUNK_SIZE", "0")

    with pytest.raises(ValidationError):
        Settings(_env_file=None)
