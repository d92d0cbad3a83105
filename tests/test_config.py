from __future__ import annotations

import pytest
from pydantic import ValidationError

from impersonation_guard.core.config import Settings
from impersonation_guard.core.security import (
    create_super_admin_token,
    decode_access_token,
    token_covers_tenant,
)


def test_defaults_match_documented_limits():
    settings = Settings(_env_file=None)
    config = settings.rate_limit_config()

    assert config.max_impersonations_per_hour == 10
    assert config.max_concurrent_sessions == 5
    assert config.max_session_duration_minutes == 30
    assert config.window_minutes == 60
    assert config.enabled is True


def test_limits_are_read_from_environment(monkeypatch):
    monkeypatch.setenv("MAX_IMPERSONATIONS_PER_HOUR", "3")
    monkeypatch.setenv("MAX_CONCURRENT_SESSIONS", "2")
    monkeypatch.setenv("CLEANUP_TENANT_IDS", '["t1", "t2"]')

    settings = Settings(_env_file=None)

    assert settings.rate_limit_config().max_impersonations_per_hour == 3
    assert settings.rate_limit_config().max_concurrent_sessions == 2
    assert settings.cleanup_tenant_ids == ["t1", "t2"]


def test_non_positive_limits_are_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, max_concurrent_sessions=0)


def test_rate_limit_config_is_immutable():
    config = Settings(_env_file=None).rate_limit_config()

    with pytest.raises(ValidationError):
        config.max_concurrent_sessions = 50


def test_super_admin_token_round_trip():
    token = create_super_admin_token("admin-1", ["t1"])
    payload = decode_access_token(token)

    assert payload["sub"] == "admin-1"
    assert payload["role"] == "super_admin"
    assert token_covers_tenant(payload, "t1")
    assert not token_covers_tenant(payload, "t2")


def test_wildcard_covers_every_tenant():
    assert token_covers_tenant({"tenants": ["*"]}, "anything")
    assert token_covers_tenant({"tenants": "t1"}, "t1")
    assert not token_covers_tenant({}, "t1")
