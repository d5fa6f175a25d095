from datetime import timedelta

import pytest
from fastapi import HTTPException

from api.deps import get_tenant_id
from core import config as config_module
from core import security as security_module
from fulfillment.defaults import _load_sla_overrides
from fulfillment.states import StationType


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    config_module.get_settings.cache_clear()
    yield
    config_module.get_settings.cache_clear()


def test_non_local_debug_mode_is_blocked(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("DEBUG", "true")
    monkeypatch.setenv("JWT_SECRET", "real-secret")

    with pytest.raises(ValueError, match="debug=true"):
        config_module.get_settings()


def test_non_local_default_secrets_are_blocked(monkeypatch):
    monkeypatch.setenv("APP_ENV", "staging")
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.setenv("JWT_SECRET", config_module.DEFAULT_JWT_SECRET)

    with pytest.raises(ValueError, match="default JWT secret"):
        config_module.get_settings()


def test_local_allows_dev_defaults(monkeypatch):
    monkeypatch.setenv("APP_ENV", "local")
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.setenv("JWT_SECRET", config_module.DEFAULT_JWT_SECRET)

    settings = config_module.get_settings()
    assert settings.app_env == "local"
    assert settings.state_graph_mode == "strict"


def test_unknown_state_graph_mode_is_rejected(monkeypatch):
    monkeypatch.setenv("APP_ENV", "local")
    monkeypatch.setenv("STATE_GRAPH_MODE", "anything-goes")

    with pytest.raises(ValueError, match="state_graph_mode"):
        config_module.get_settings()


def test_access_token_round_trip_keeps_tenant_claim(monkeypatch):
    monkeypatch.setenv("APP_ENV", "local")
    monkeypatch.setenv("JWT_SECRET", "unit-test-secret")

    token = security_module.create_access_token({"sub": "agent-1", "tenant_id": "00000000-0000-0000-0000-000000000001"})
    payload = security_module.decode_access_token(token)

    assert payload["sub"] == "agent-1"
    assert payload["tenant_id"] == "00000000-0000-0000-0000-000000000001"


def test_expired_or_tenantless_tokens_are_rejected(monkeypatch):
    monkeypatch.setenv("APP_ENV", "local")
    monkeypatch.setenv("JWT_SECRET", "unit-test-secret")

    expired = security_module.create_access_token(
        {"sub": "agent-1", "tenant_id": "00000000-0000-0000-0000-000000000001"},
        expires_delta=timedelta(minutes=-5),
    )
    tenantless = security_module.create_access_token({"sub": "agent-1"})

    assert security_module.decode_access_token(expired) is None
    assert security_module.decode_access_token(tenantless) is None
    assert security_module.decode_access_token("not-a-jwt") is None


def test_tenant_claim_must_be_a_uuid():
    with pytest.raises(HTTPException) as missing:
        get_tenant_id({"sub": "agent-1"})
    assert missing.value.status_code == 403

    with pytest.raises(HTTPException) as malformed:
        get_tenant_id({"sub": "agent-1", "tenant_id": "tenant-one"})
    assert malformed.value.detail == "Malformed tenant context"


def test_sla_override_payload_parsing():
    assert _load_sla_overrides("") == {}
    assert _load_sla_overrides("{not json") == {}
    assert _load_sla_overrides('["call_center"]') == {}
    assert _load_sla_overrides('{"call_center": 30, "finance": "720", "warehouse": 10, "returns": 0}') == {
        StationType.CALL_CENTER: 30,
        StationType.FINANCE: 720,
    }
