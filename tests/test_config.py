"""
Test configuration system
"""
import logging

from clinex.core.unified_config import Environment, UnifiedConfig, get_config, reload_config
from clinex.logging_config import get_logger, setup_logging


class TestUnifiedConfig:
    """Test configuration loading and environment detection"""

    def test_testing_environment_is_active(self):
        config = get_config()
        assert config.environment == Environment.TESTING
        assert config.database_url == "sqlite://"
        assert config.generation_timeout == 5.0

    def test_extraction_defaults(self):
        config = get_config()
        assert config.supported_languages == ["en", "fr", "de"]
        assert 0 <= config.confidence_threshold <= 1
        assert config.date_window_days == 365
        assert config.enable_domain_prefilter is True

    def test_watchdog_config(self):
        """Watchdog settings carry the timeout, retry budget and detector sizes"""
        settings = get_config().get_watchdog_config()
        assert settings["timeout"] == 5.0
        assert settings["max_retries"] == 1
        assert settings["max_total_tokens"] == get_config().llm_max_tokens
        for key in ("sequence_length", "max_sequence_repeats", "max_consecutive_identical", "block_size"):
            assert key in settings

    def test_llm_config(self):
        llm_config = get_config().get_llm_config()
        assert llm_config["backend"] == "ollama"
        assert llm_config["temperature"] <= 0.2
        assert "base_url" in llm_config and "model_path" in llm_config

    def test_api_config(self):
        api_config = get_config().get_api_config()
        assert "host" in api_config
        assert isinstance(api_config["port"], int)

    def test_development_reads_environment(self, monkeypatch):
        monkeypatch.setenv("CLINEX_ENV", "development")
        monkeypatch.setenv("LLM_BACKEND", "llama_cpp")
        monkeypatch.setenv("SUPPORTED_LANGUAGES", "en, fr")
        monkeypatch.setenv("GENERATION_TIMEOUT", "0.2")
        monkeypatch.setenv("MAX_ITEMS_PER_DOMAIN", "not-a-number")
        config = UnifiedConfig.from_environment()
        assert config.environment == Environment.DEVELOPMENT
        assert config.llm_backend == "llama_cpp"
        assert config.supported_languages == ["en", "fr"]
        # clamped to the lower bound
        assert config.generation_timeout == 1.0
        assert config.max_items_per_domain == UnifiedConfig.max_items_per_domain

    def test_unknown_environment_falls_back_to_development(self, monkeypatch):
        monkeypatch.setenv("CLINEX_ENV", "staging")
        assert UnifiedConfig.from_environment().environment == Environment.DEVELOPMENT

    def test_production_cors_from_environment(self, monkeypatch):
        monkeypatch.setenv("CLINEX_ENV", "production")
        monkeypatch.setenv("CORS_ORIGINS", "https://review.example.org")
        config = UnifiedConfig.from_environment()
        assert config.is_production()
        assert config.cors_origins == ["https://review.example.org"]

    def test_reload_config_replaces_instance(self):
        first = get_config()
        second = reload_config()
        assert first is not second
        assert get_config() is second


def test_setup_logging_is_idempotent():
    setup_logging("DEBUG")
    setup_logging("WARNING")
    root = logging.getLogger("clinex")
    assert len(root.handlers) == 1
    assert root.level == logging.WARNING
    assert get_logger("clinex.tests").getEffectiveLevel() == logging.WARNING
