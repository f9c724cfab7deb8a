import pytest

from services.forward_proxy.app.config.settings import get_settings

SETTINGS_ENV = (
    "LISTEN",
    "PROXY_TO",
    "VIA_PROXY",
    "VIA_PROXY_STRICT",
    "PRESERVE_HOST",
    "PROXY_TIMEOUT",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_settings(monkeypatch):
    """
    Keep the host environment and the cached settings out of every test.
    """
    for name in SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
