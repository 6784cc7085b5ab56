import pytest
from loguru import logger

from codepage_sandbox.config import Settings, get_settings
from codepage_sandbox.logging_config import configure_logging


def test_defaults():
    settings = Settings()

    assert settings.timeout_ms == 30000
    assert settings.memory_limit_bytes == 128 * 1024 * 1024
    assert settings.api_call_limit == 100
    assert settings.environment == "development"
    assert settings.metrics_buffer_size == 1000
    assert settings.report_history_size == 100


def test_env_var_overrides(monkeypatch):
    """Verify that CODEPAGE_SANDBOX__ variables override the defaults."""
    monkeypatch.setenv("CODEPAGE_SANDBOX__TIMEOUT_MS", "5000")
    monkeypatch.setenv("CODEPAGE_SANDBOX__API_CALL_LIMIT", "7")
    monkeypatch.setenv("CODEPAGE_SANDBOX__INSTALL_DEFAULT_RULES", "false")

    settings = get_settings()

    assert settings.timeout_ms == 5000
    assert settings.api_call_limit == 7
    assert settings.install_default_rules is False


def test_invalid_env_value_rejected(monkeypatch):
    monkeypatch.setenv("CODEPAGE_SANDBOX__TIMEOUT_MS", "0")
    with pytest.raises(ValueError):
        get_settings()


def test_configure_logging_respects_level(tmp_path):
    log_file = tmp_path / "sandbox.log"
    settings = Settings(log_level="warning", log_file=str(log_file))

    configure_logging(settings)
    try:
        logger.info("hidden")
        logger.warning("visible")
        logger.complete()
    finally:
        logger.remove()

    content = log_file.read_text()
    assert "visible" in content
    assert "hidden" not in content
