"""Streaming chat backends: Ollama-style HTTP server, llama.cpp and transformers."""

from __future__ import annotations

import json
import threading
from typing import Any, Dict, Iterator, List, Optional

import requests

from clinex.ai.prompting.base import StopSignal
from clinex.exceptions import AIError, ConfigurationError
from clinex.logging_config import get_logger

_BACKEND_ALIASES = {
    "llama.cpp": "llama_cpp",
    "llama-cpp": "llama_cpp",
    "http": "ollama",
}


def normalize_backend_name(name: str) -> str:
    return _BACKEND_ALIASES.get(name, name)

logger = get_logger(__name__)

try:
    from llama_cpp import Llama
    LLAMA_CPP_AVAILABLE = True
except ImportError:  # pragma: no cover
    LLAMA_CPP_AVAILABLE = False
    Llama = None

try:
    import torch
    from transformers import (
        AutoModelForCausalLM,
        AutoTokenizer,
        StoppingCriteria,
        StoppingCriteriaList,
        TextIteratorStreamer,
    )
    TRANSFORMERS_AVAILABLE = True
except ImportError:  # pragma: no cover
    torch = None
    AutoModelForCausalLM = AutoTokenizer = StoppingCriteriaList = TextIteratorStreamer = None
    StoppingCriteria = object
    TRANSFORMERS_AVAILABLE = False

Messages = List[Dict[str, str]]


class LLMBackendBase:
    """Streaming chat backend. Subclasses yield text chunks as they arrive."""

    name = "base"

    def __init__(self, config):
        self.config = config
        llm_config = config.get_llm_config()
        self.default_options: Dict[str, Any] = {
            "max_tokens": llm_config["max_tokens"],
            "temperature": llm_config["temperature"],
            "top_p": llm_config["top_p"],
            "top_k": llm_config["top_k"],
            "repeat_penalty": llm_config["repeat_penalty"],
        }

    def _options(self, options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        merged = dict(self.default_options)
        merged.update(options or {})
        return merged

    def stream_chat(
        self,
        messages: Messages,
        *,
        options: Optional[Dict[str, Any]] = None,
        stop: Optional[StopSignal] = None,
    ) -> Iterator[str]:
        raise NotImplementedError


class OllamaChatBackend(LLMBackendBase):
    """Chat completion against an Ollama-compatible ``/api/chat`` endpoint."""

    name = "ollama"

    def __init__(self, config, session: Optional[requests.Session] = None):
        super().__init__(config)
        llm_config = config.get_llm_config()
        self.base_url = llm_config["base_url"].rstrip("/")
        self.model_name = llm_config["model_name"]
        self.request_timeout = llm_config["request_timeout"]
        self.session = session or requests.Session()

    def _payload(self, messages: Messages, options: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "model": self.model_name,
            "messages": messages,
            "stream": True,
            "options": {
                "temperature": options["temperature"],
                "top_p": options["top_p"],
                "top_k": options["top_k"],
                "repeat_penalty": options["repeat_penalty"],
                "num_predict": options["max_tokens"],
            },
        }

    def stream_chat(
        self,
        messages: Messages,
        *,
        options: Optional[Dict[str, Any]] = None,
        stop: Optional[StopSignal] = None,
    ) -> Iterator[str]:
        payload = self._payload(messages, self._options(options))
        url = f"{self.base_url}/api/chat"
        try:
            response = self.session.post(
                url,
                json=payload,
                stream=True,
                # (connect, read): a stalled socket read cannot outlive the watchdog for long
                timeout=(5, self.request_timeout),
            )
        except requests.RequestException as exc:
            raise AIError(
                f"Could not reach model server at {self.base_url}",
                model_name=self.model_name,
                ai_operation="chat",
            ) from exc
        if stop is not None:
            # unblocks a read waiting on a stalled server
            stop.add_callback(response.close)

        try:
            if response.status_code != 200:
                raise AIError(
                    f"Model server returned HTTP {response.status_code}",
                    model_name=self.model_name,
                    ai_operation="chat",
                    details={"body": response.text[:200]},
                )
            for line in response.iter_lines(decode_unicode=True):
                if not line:
                    continue
                try:
                    chunk = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed stream line: %.80s", line)
                    continue
                if chunk.get("error"):
                    raise AIError(str(chunk["error"]), model_name=self.model_name, ai_operation="chat")
                content = (chunk.get("message") or {}).get("content")
                if content:
                    yield content
                if chunk.get("done"):
                    break
        except requests.RequestException as exc:
            if stop is not None and stop.is_set():
                return
            raise AIError("Model stream interrupted", model_name=self.model_name, ai_operation="chat") from exc
        finally:
            response.close()


class LlamaCppBackend(LLMBackendBase):
    """llama-cpp-python backend."""

    name = "llama_cpp"

    def __init__(self, config):
        super().__init__(config)
        if not LLAMA_CPP_AVAILABLE:
            raise ConfigurationError("llama-cpp-python is not installed.", config_key="llm_backend")
        llm_config = config.get_llm_config()
        params = {
            "model_path": llm_config["model_path"],
            "n_ctx": llm_config["n_ctx"],
            "n_threads": llm_config["n_threads"],
            "n_gpu_layers": llm_config["n_gpu_layers"],
            "verbose": llm_config["verbose"],
        }
        self.model_path = params["model_path"]
        self._model = Llama(**params)
        logger.info("Loaded llama.cpp backend with model %s", params["model_path"])

    def stream_chat(
        self,
        messages: Messages,
        *,
        options: Optional[Dict[str, Any]] = None,
        stop: Optional[StopSignal] = None,
    ) -> Iterator[str]:
        opts = self._options(options)
        stream = None
        try:
            stream = self._model.create_chat_completion(
                messages=messages,
                stream=True,
                max_tokens=opts["max_tokens"],
                temperature=opts["temperature"],
                top_p=opts["top_p"],
                top_k=opts["top_k"],
                repeat_penalty=opts["repeat_penalty"],
            )
            for chunk in stream:
                if stop is not None and stop.is_set():
                    break
                delta = chunk["choices"][0].get("delta") or {}
                content = delta.get("content")
                if content:
                    yield content
        except (RuntimeError, ValueError) as exc:
            # context overflow and decode failures
            raise AIError(
                f"llama.cpp generation failed: {exc}", model_name=self.model_path, ai_operation="chat"
            ) from exc
        finally:
            # closing the completion generator ends decoding
            close = getattr(stream, "close", None)
            if close is not None:
                close()


class _StopOnSignal(StoppingCriteria):
    """Ends ``model.generate`` once the stream has been asked to stop."""

    def __init__(self, halted: threading.Event, stop: Optional[StopSignal]):
        self.halted = halted
        self.stop = stop

    def __call__(self, input_ids, scores, **kwargs):
        done = self.halted.is_set() or (self.stop is not None and self.stop.is_set())
        return torch.full((input_ids.shape[0],), done, dtype=torch.bool, device=input_ids.device)


class TransformersBackend(LLMBackendBase):
    """Hugging Face transformers backend streaming through ``TextIteratorStreamer``."""

    name = "transformers"

    def __init__(self, config):
        super().__init__(config)
        if not TRANSFORMERS_AVAILABLE:
            raise ConfigurationError("transformers is not installed.", config_key="llm_backend")

        llm_config = config.get_llm_config()
        self.model_id = llm_config["model_id"]
        self.device = self._resolve_device()
        self.tokenizer = AutoTokenizer.from_pretrained(self.model_id, use_fast=True)
        self.model = AutoModelForCausalLM.from_pretrained(self.model_id, low_cpu_mem_usage=True)
        self.model.to(self.device)
        self.model.eval()
        logger.info("Loaded transformers backend: %s on %s", self.model_id, self.device)

    def _resolve_device(self) -> str:
        if torch is None:
            return "cpu"
        if torch.cuda.is_available():
            return "cuda"
        if getattr(torch.backends, "mps", None) and torch.backends.mps.is_available():
            return "mps"
        return "cpu"

    def stream_chat(
        self,
        messages: Messages,
        *,
        options: Optional[Dict[str, Any]] = None,
        stop: Optional[StopSignal] = None,
    ) -> Iterator[str]:
        opts = self._options(options)
        try:
            inputs = self.tokenizer.apply_chat_template(
                messages, add_generation_prompt=True, return_tensors="pt", return_dict=True
            ).to(self.model.device)
        except (RuntimeError, ValueError) as exc:
            raise AIError(f"Could not build prompt: {exc}", model_name=self.model_id, ai_operation="chat") from exc

        halted = threading.Event()
        streamer = TextIteratorStreamer(self.tokenizer, skip_prompt=True, skip_special_tokens=False)
        generation_kwargs = dict(
            **inputs,
            streamer=streamer,
            max_new_tokens=opts["max_tokens"],
            temperature=opts["temperature"],
            top_p=opts["top_p"],
            top_k=opts["top_k"],
            repetition_penalty=opts["repeat_penalty"],
            do_sample=opts["temperature"] > 0,
            stopping_criteria=StoppingCriteriaList([_StopOnSignal(halted, stop)]),
        )
        errors: List[Exception] = []

        def generate() -> None:
            try:
                self.model.generate(**generation_kwargs)
            except Exception as exc:  # re-raised on the streaming side
                errors.append(exc)
                streamer.end()

        worker = threading.Thread(target=generate, name="transformers-generate", daemon=True)
        worker.start()
        try:
            for text in streamer:
                if text:
                    yield text
        finally:
            halted.set()
        if errors:
            raise AIError(
                f"transformers generation failed: {errors[0]}", model_name=self.model_id, ai_operation="chat"
            ) from errors[0]


def build_backend(config, backend_name: Optional[str] = None) -> LLMBackendBase:
    backend = normalize_backend_name((backend_name or config.llm_backend).lower())
    if backend == "ollama":
        return OllamaChatBackend(config)
    if backend == "llama_cpp":
        return LlamaCppBackend(config)
    if backend == "transformers":
        return TransformersBackend(config)
    raise ConfigurationError(f"Unsupported backend '{backend}'", config_key="llm_backend")


__all__ = [
    "LlamaCppBackend",
    "LLMBackendBase",
    "OllamaChatBackend",
    "TransformersBackend",
    "build_backend",
    "normalize_backend_name",
]
