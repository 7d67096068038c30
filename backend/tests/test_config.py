# ruff: noqa: INP001, S101
"""Settings validation and derived-value tests."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from agent_pool.core.config import Settings


def test_production_requires_pool_api_key() -> None:
    with pytest.raises(ValidationError, match="POOL_API_KEY must be set"):
        Settings(_env_file=None, environment="production", pool_api_key="")


def test_production_rejects_placeholder_pool_api_key() -> None:
    with pytest.raises(ValidationError, match="POOL_API_KEY must be set"):
        Settings(_env_file=None, environment="production", pool_api_key="Change-Me")


def test_production_accepts_real_pool_api_key() -> None:
    settings = Settings(_env_file=None, environment="production", pool_api_key="k" * 32)

    assert settings.pool_api_key == "k" * 32


def test_runtime_image_defaults_to_pool_environment_tag() -> None:
    settings = Settings(_env_file=None, pool_environment="production", railway_runtime_image="")

    assert settings.railway_runtime_image == "ghcr.io/xmtplabs/convos-runtime:production"


def test_explicit_runtime_image_is_kept() -> None:
    settings = Settings(_env_file=None, railway_runtime_image="registry.local/runtime:v2")

    assert settings.railway_runtime_image == "registry.local/runtime:v2"


def test_dev_enables_auto_migrate_unless_set() -> None:
    assert Settings(_env_file=None, environment="dev").db_auto_migrate is True
    explicit = Settings(_env_file=None, environment="dev", db_auto_migrate=False)
    assert explicit.db_auto_migrate is False
    assert Settings(_env_file=None, environment="test").db_auto_migrate is False


def test_timeouts_are_exposed_in_milliseconds() -> None:
    settings = Settings(
        _env_file=None,
        pool_stuck_timeout_seconds=900,
        pool_claimed_unreachable_timeout_seconds=60,
    )

    assert settings.stuck_timeout_ms == 900_000
    assert settings.claimed_unreachable_timeout_ms == 60_000
    assert Settings(_env_file=None).claimed_unreachable_timeout_ms is None


def test_settings_are_frozen() -> None:
    settings = Settings(_env_file=None)

    with pytest.raises(ValidationError):
        settings.pool_min_idle = 10  # type: ignore[misc]
