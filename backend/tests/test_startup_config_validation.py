from __future__ import annotations

import logging

import pytest

from myhometech.core.config import get_settings


@pytest.mark.asyncio
async def test_startup_fails_fast_on_config_errors_in_production(monkeypatch):
    from myhometech import main as app_main

    monkeypatch.setenv("ENVIRONMENT", "production")
    get_settings.cache_clear()
    monkeypatch.setattr(type(app_main.settings), "validate_required_config", lambda _self: ["missing secret"])

    with pytest.raises(RuntimeError, match="Configuration validation failed in production environment"):
        await app_main._startup_jobs()


@pytest.mark.asyncio
async def test_startup_logs_warning_only_on_config_errors_in_test(monkeypatch, caplog):
    from myhometech import main as app_main

    monkeypatch.setenv("ENVIRONMENT", "test")
    get_settings.cache_clear()
    monkeypatch.setattr(type(app_main.settings), "validate_required_config", lambda _self: ["missing secret"])

    with caplog.at_level(logging.WARNING, logger="myhometech.main"):
        await app_main._startup_jobs()
    assert "missing secret" in caplog.text
