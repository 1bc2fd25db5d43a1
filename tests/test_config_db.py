from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from gvoice_bridge.config import clear_settings_cache, get_settings
from gvoice_bridge.db import ensure_schema, retry_on_db_lock
from gvoice_bridge.errors import BridgeError, ConversationNotFound, ExtractionContainerTimeout, NavigationTimeout


def test_settings_defaults(monkeypatch):
    for name in [
        "VOICE_BASE_URL",
        "SYNC_ACCOUNT_COUNT",
        "SYNC_INTERVAL_SECONDS",
        "SYNC_RUN_ON_STARTUP",
        "BROWSER_WAIT_UNTIL",
        "BACKEND_ID",
        "HTTP_PORT",
    ]:
        monkeypatch.delenv(name, raising=False)
    clear_settings_cache()
    settings = get_settings()

    assert settings.browser.base_url == "https://voice.google.com"
    assert settings.browser.wait_until == "domcontentloaded"
    assert settings.sync.account_count == 10
    assert settings.sync.interval_seconds == 600
    assert settings.sync.run_on_startup is False
    assert settings.backend_id == "default"
    assert settings.http.port == 3000


def test_settings_parse_and_clamp(monkeypatch):
    monkeypatch.setenv("VOICE_BASE_URL", "https://voice.example/")
    monkeypatch.setenv("SYNC_ACCOUNT_COUNT", "0")
    monkeypatch.setenv("SYNC_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("BROWSER_WAIT_UNTIL", "whenever")
    monkeypatch.setenv("BROWSER_HEADLESS", "yes")
    monkeypatch.setenv("BROWSER_ARGS", "--start-maximized, --lang=en-US")
    monkeypatch.setenv("SEND_SETTLE_MS", "-5")
    monkeypatch.setenv("BROWSER_CHANNEL", "  ")
    clear_settings_cache()
    settings = get_settings()

    assert settings.browser.base_url == "https://voice.example"
    assert settings.sync.account_count == 10
    assert settings.sync.interval_seconds == 1
    assert settings.browser.wait_until == "domcontentloaded"
    assert settings.browser.headless is True
    assert settings.browser.args == ["--start-maximized", "--lang=en-US"]
    assert settings.browser.send_settle_ms == 2000
    assert settings.browser.channel is None


def test_error_taxonomy():
    exc = ExtractionContainerTimeout("list missing", data={"view": "inbox"})
    assert isinstance(exc, NavigationTimeout)
    assert isinstance(exc, BridgeError)
    assert exc.error_type == "EXTRACTION_CONTAINER_TIMEOUT"
    assert exc.data == {"view": "inbox"}
    assert exc.status_code == 500
    assert ConversationNotFound("x").status_code == 404
    assert ConversationNotFound("(555) 123-4567").label == "(555) 123-4567"


@pytest.mark.asyncio
async def test_ensure_schema_creates_database_file(isolated_env, tmp_path):
    await ensure_schema()
    await ensure_schema()
    assert (tmp_path / "test.sqlite3").exists()


@pytest.mark.asyncio
async def test_retry_on_db_lock_retries_lock_errors():
    attempts = {"n": 0}

    @retry_on_db_lock(max_retries=3, base_delay=0.001, max_delay=0.002)
    async def flaky() -> str:
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise OperationalError("UPDATE", {}, Exception("database is locked"))
        return "ok"

    assert await flaky() == "ok"
    assert attempts["n"] == 3


@pytest.mark.asyncio
async def test_retry_on_db_lock_does_not_retry_other_errors():
    attempts = {"n": 0}

    @retry_on_db_lock(max_retries=3, base_delay=0.001)
    async def broken() -> None:
        attempts["n"] += 1
        raise OperationalError("SELECT", {}, Exception("no such table: inboxes"))

    with pytest.raises(OperationalError):
        await broken()
    assert attempts["n"] == 1
