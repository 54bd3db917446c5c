#!/usr/bin/env python3
"""
Clinical Extraction Pipeline (clinex) - API Server

Serves the review queue and the extraction endpoint in front of a locally
hosted language model.
"""

import sys

import requests
import uvicorn

from clinex.core.unified_config import UnifiedConfig, get_config
from clinex.logging_config import setup_logging


def check_model_server(config: UnifiedConfig) -> bool:
    """Check that an Ollama-style model server answers, when that backend is used."""
    if config.llm_backend != "ollama":
        return True
    try:
        response = requests.get(f"{config.llm_base_url.rstrip('/')}/api/tags", timeout=5)
    except requests.RequestException as exc:
        print(f"WARNING: Model server not reachable at {config.llm_base_url}: {exc}")
        return False
    if response.status_code != 200:
        print(f"WARNING: Model server at {config.llm_base_url} returned HTTP {response.status_code}")
        return False
    models = [model.get("name") for model in response.json().get("models", [])]
    if config.llm_model_name not in models:
        print(f"WARNING: Model {config.llm_model_name} is not pulled on {config.llm_base_url}")
        return False
    print(f"SUCCESS: Model {config.llm_model_name} available at {config.llm_base_url}")
    return True


def log_runtime_settings(config: UnifiedConfig):
    print("\nRuntime configuration:")
    print(f"   LLM backend: {config.llm_backend}")
    print(f"   Model: {config.llm_model_name if config.llm_backend == 'ollama' else config.llm_model_path}")
    print(f"   Generation timeout: {config.generation_timeout}s (+{config.generation_max_retries} retry)")
    print(f"   Languages: {', '.join(config.supported_languages)}")
    print(f"   Acceptance threshold: {config.confidence_threshold}")
    print(f"   Review database: {config.database_url}")


def main():
    """Run the clinex API server"""
    print("=" * 60)
    print("Clinical Extraction Pipeline (clinex) - API")
    print("=" * 60)

    config = get_config()
    setup_logging(config.log_level)
    # extraction requests fail per domain without a model; review endpoints still work
    check_model_server(config)
    log_runtime_settings(config)

    print(f"\nAPI available at: http://{config.api_host}:{config.api_port}")
    print(f"Documentation: http://{config.api_host}:{config.api_port}/docs")

    from clinex.api.app import app

    try:
        uvicorn.run(
            app,
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower(),
            reload=False,
        )
        return 0
    except KeyboardInterrupt:
        print("\nServer stopped by user")
        return 0


if __name__ == "__main__":
    sys.exit(main())
