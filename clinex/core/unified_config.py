"""
Unified configuration for the clinical extraction pipeline (clinex)
"""

import os
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field
from enum import Enum

try:
    from dotenv import load_dotenv
except ImportError:  # pragma: no cover - fallback if dependency missing at runtime
    load_dotenv = None

if load_dotenv:
    load_dotenv()

# Environment-based configuration
class Environment(Enum):
    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"


def _get_env_value(*keys: str, default: Optional[str] = None) -> Optional[str]:
    """Return the first non-empty environment variable value from the provided keys."""
    for key in keys:
        value = os.getenv(key)
        if value is not None:
            return value
    return default


def _env_int(*keys: str, default: int, min_value: Optional[int] = None) -> int:
    """Fetch an int from env with optional lower bound."""
    raw = _get_env_value(*keys)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    if min_value is not None and value < min_value:
        return min_value
    return value


def _env_float(
    *keys: str,
    default: float,
    min_value: Optional[float] = None,
    max_value: Optional[float] = None
) -> float:
    """Fetch a float from env with optional bounds."""
    raw = _get_env_value(*keys)
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    if min_value is not None and value < min_value:
        value = min_value
    if max_value is not None and value > max_value:
        value = max_value
    return value


def _env_bool(*keys: str, default: bool = False) -> bool:
    """Fetch a boolean flag from env."""
    raw = _get_env_value(*keys)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(*keys: str, default: List[str]) -> List[str]:
    raw = _get_env_value(*keys)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class UnifiedConfig:
    """
    Single source of settings for the extraction pipeline, the review queue
    and the API. Values come from environment variables with per-environment
    defaults.
    """

    # Environment
    environment: Environment = Environment.DEVELOPMENT

    # Application
    app_name: str = "Clinical Extraction Pipeline (clinex)"
    app_version: str = "1.0"
    debug: bool = True
    log_level: str = "INFO"

    # LLM backend selection: "ollama", "llama_cpp" or "transformers"
    llm_backend: str = "ollama"
    llm_base_url: str = "http://localhost:11434"
    llm_model_name: str = "medgemma:4b"
    llm_request_timeout: int = 30

    # llama.cpp
    llm_model_path: str = "models/llm/medgemma-4b-it-Q4_K_M.gguf"
    llm_n_gpu_layers: int = -1
    llm_n_ctx: int = 8192
    llm_n_threads: int = 4

    # Hugging Face transformers
    llm_model_id: str = "google/medgemma-4b-it"

    # Decoding, fixed low-entropy for reproducibility
    llm_max_tokens: int = 4096
    llm_temperature: float = 0.1
    llm_top_p: float = 0.9
    llm_top_k: int = 40
    llm_repeat_penalty: float = 1.1

    # Generation watchdog
    generation_timeout: float = 120.0
    generation_max_retries: int = 1
    generation_stop_grace: float = 2.0
    watchdog_sequence_length: int = 10
    watchdog_max_sequence_repeats: int = 5
    watchdog_max_consecutive_identical: int = 20
    watchdog_block_size: int = 64
    watchdog_block_history: int = 512
    watchdog_block_repeat_threshold: int = 3

    # Extraction
    supported_languages: List[str] = field(default_factory=lambda: ["en", "fr", "de"])
    enable_domain_prefilter: bool = True
    confidence_threshold: float = 0.7
    max_items_per_domain: int = 20
    date_window_days: int = 365
    symptom_recency_days: int = 14

    # Performance
    max_workers: int = 4

    # Review store
    database_url: str = "sqlite:///clinex_review.db"
    database_echo: bool = False

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: List[str] = field(default_factory=lambda: [
        "http://localhost:5173",
        "http://127.0.0.1:5173"
    ])

    @classmethod
    def from_environment(cls) -> 'UnifiedConfig':
        """Load configuration from environment variables"""

        env_name = _get_env_value(
            'CLINEX_ENV', 'ENVIRONMENT', default='development'
        ).lower()
        try:
            environment = Environment(env_name)
        except ValueError:
            environment = Environment.DEVELOPMENT

        if environment == Environment.PRODUCTION:
            return cls._production_config()
        elif environment == Environment.TESTING:
            return cls._testing_config()
        else:
            return cls._development_config()

    @classmethod
    def _model_settings(cls) -> Dict[str, Any]:
        """Model and watchdog settings shared by development and production."""
        return dict(
            llm_backend=_get_env_value('LLM_BACKEND', default=cls.llm_backend),
            llm_base_url=_get_env_value('LLM_BASE_URL', 'OLLAMA_HOST', default=cls.llm_base_url),
            llm_model_name=_get_env_value('LLM_MODEL_NAME', default=cls.llm_model_name),
            llm_request_timeout=_env_int('LLM_REQUEST_TIMEOUT', default=cls.llm_request_timeout, min_value=1),
            llm_model_path=_get_env_value('LLM_MODEL_PATH', default=cls.llm_model_path),
            llm_model_id=_get_env_value('LLM_MODEL_ID', default=cls.llm_model_id),
            llm_n_gpu_layers=_env_int('LLM_GPU_LAYERS', default=cls.llm_n_gpu_layers),
            llm_n_ctx=_env_int('LLM_N_CTX', default=cls.llm_n_ctx),
            llm_n_threads=_env_int('LLM_N_THREADS', default=cls.llm_n_threads, min_value=1),
            llm_max_tokens=_env_int('LLM_MAX_TOKENS', default=cls.llm_max_tokens, min_value=64),
            llm_temperature=_env_float('LLM_TEMPERATURE', default=cls.llm_temperature, min_value=0.0),
            llm_top_p=_env_float('LLM_TOP_P', default=cls.llm_top_p, min_value=0.0, max_value=1.0),
            llm_top_k=_env_int('LLM_TOP_K', default=cls.llm_top_k, min_value=1),
            llm_repeat_penalty=_env_float('LLM_REPEAT_PENALTY', default=cls.llm_repeat_penalty),
            generation_timeout=_env_float('GENERATION_TIMEOUT', default=cls.generation_timeout, min_value=1.0),
            generation_max_retries=_env_int('GENERATION_MAX_RETRIES', default=cls.generation_max_retries, min_value=0),
            generation_stop_grace=_env_float('GENERATION_STOP_GRACE', default=cls.generation_stop_grace, min_value=0.0),
            watchdog_block_size=_env_int('WATCHDOG_BLOCK_SIZE', default=cls.watchdog_block_size, min_value=8),
            watchdog_block_repeat_threshold=_env_int(
                'WATCHDOG_BLOCK_REPEATS', default=cls.watchdog_block_repeat_threshold, min_value=2
            ),
            enable_domain_prefilter=_env_bool('ENABLE_DOMAIN_PREFILTER', default=cls.enable_domain_prefilter),
            supported_languages=_env_list('SUPPORTED_LANGUAGES', default=["en", "fr", "de"]),
            max_items_per_domain=_env_int('MAX_ITEMS_PER_DOMAIN', default=cls.max_items_per_domain, min_value=1),
            symptom_recency_days=_env_int('SYMPTOM_RECENCY_DAYS', default=cls.symptom_recency_days, min_value=0),
            max_workers=_env_int('MAX_WORKERS', default=cls.max_workers, min_value=1),
        )

    @classmethod
    def _development_config(cls) -> 'UnifiedConfig':
        """Development environment configuration"""
        return cls(
            environment=Environment.DEVELOPMENT,
            debug=True,
            log_level=_get_env_value('LOG_LEVEL', default='INFO'),
            confidence_threshold=_env_float('CONFIDENCE_THRESHOLD', default=0.7, min_value=0.0, max_value=1.0),
            database_url=_get_env_value('DATABASE_URL', default=cls.database_url),
            database_echo=_env_bool('DATABASE_ECHO', default=False),
            api_host=_get_env_value('API_HOST', default='127.0.0.1'),
            **cls._model_settings(),
        )

    @classmethod
    def _testing_config(cls) -> 'UnifiedConfig':
        """Testing environment configuration"""
        return cls(
            environment=Environment.TESTING,
            debug=False,
            log_level="WARNING",
            llm_backend="ollama",
            generation_timeout=_env_float('TEST_GENERATION_TIMEOUT', default=5.0, min_value=0.1),
            confidence_threshold=0.7,
            database_url="sqlite://",
            max_workers=2,
        )

    @classmethod
    def _production_config(cls) -> 'UnifiedConfig':
        """Production environment configuration"""
        return cls(
            environment=Environment.PRODUCTION,
            debug=False,
            log_level=_get_env_value('LOG_LEVEL', default='INFO'),
            confidence_threshold=_env_float('CONFIDENCE_THRESHOLD', default=0.7, min_value=0.0, max_value=1.0),
            database_url=_get_env_value('DATABASE_URL', default=cls.database_url),
            api_host=_get_env_value('API_HOST', default='0.0.0.0'),
            cors_origins=_env_list('CORS_ORIGINS', default=[]),
            **cls._model_settings(),
        )

    # Utility methods
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    def get_llm_config(self) -> Dict[str, Any]:
        """Get all LLM-related configuration."""
        return {
            # Common
            'backend': self.llm_backend,
            'max_tokens': self.llm_max_tokens,
            'temperature': self.llm_temperature,
            'top_p': self.llm_top_p,
            'top_k': self.llm_top_k,
            'repeat_penalty': self.llm_repeat_penalty,
            'verbose': False,

            # HTTP chat server
            'base_url': self.llm_base_url,
            'model_name': self.llm_model_name,
            'request_timeout': self.llm_request_timeout,

            # Llama.cpp specific
            'model_path': self.llm_model_path,
            'n_ctx': self.llm_n_ctx,
            'n_threads': self.llm_n_threads,
            'n_gpu_layers': self.llm_n_gpu_layers,

            # Transformers specific
            'model_id': self.llm_model_id,
        }

    def get_watchdog_config(self) -> Dict[str, Any]:
        """Settings consumed by the generation watchdog."""
        return {
            'timeout': self.generation_timeout,
            'max_retries': self.generation_max_retries,
            'stop_grace': self.generation_stop_grace,
            'max_total_tokens': self.llm_max_tokens,
            'sequence_length': self.watchdog_sequence_length,
            'max_sequence_repeats': self.watchdog_max_sequence_repeats,
            'max_consecutive_identical': self.watchdog_max_consecutive_identical,
            'block_size': self.watchdog_block_size,
            'block_history': self.watchdog_block_history,
            'block_repeat_threshold': self.watchdog_block_repeat_threshold,
        }

    def get_api_config(self) -> Dict[str, Any]:
        """Get API configuration"""
        return {
            'host': self.api_host,
            'port': self.api_port,
            'cors_origins': self.cors_origins,
            'debug': self.debug
        }


# Global configuration instance
_config_instance: Optional[UnifiedConfig] = None


def get_config() -> UnifiedConfig:
    """Get the global configuration instance"""
    global _config_instance
    if _config_instance is None:
        _config_instance = UnifiedConfig.from_environment()
    return _config_instance


def reload_config() -> UnifiedConfig:
    """Reload configuration from environment"""
    global _config_instance
    _config_instance = UnifiedConfig.from_environment()
    return _config_instance


# Export the unified config as the main interface
__all__ = [
    'UnifiedConfig',
    'get_config',
    'reload_config',
    'Environment'
]
