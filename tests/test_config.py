import logging
from pathlib import Path

from prbuilder.config import Settings


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("WATCH_CONFIG", "/etc/prbuilder/watch.yml")
    monkeypatch.setenv("OVERRIDE_LOGGING", "DEBUG")
    monkeypatch.setenv("DRY_RUN", "yes")
    monkeypatch.setenv("SHUTDOWN_GRACE", "2.5")
    monkeypatch.delenv("STATE_DIR", raising=False)

    settings = Settings.from_env()

    assert settings.WATCH_CONFIG == Path("/etc/prbuilder/watch.yml")
    assert settings.OVERRIDE_LOGGING == logging.DEBUG
    assert settings.DRY_RUN
    assert settings.SHUTDOWN_GRACE == 2.5
    assert settings.STATE_DIR is None


def test_settings_defaults(monkeypatch):
    for name in ("WATCH_CONFIG", "DRY_RUN", "HTTP_PORT", "OVERRIDE_LOGGING"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.WATCH_CONFIG is None
    assert not settings.DRY_RUN
    assert settings.HTTP_PORT == 8000
    assert settings.OVERRIDE_LOGGING == logging.INFO
