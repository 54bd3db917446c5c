import json

import pytest
import requests

from clinex.ai.llm_backends import (
    LlamaCppBackend,
    LLMBackendBase,
    OllamaChatBackend,
    build_backend,
    normalize_backend_name,
)
from clinex.ai.prompting.base import StopSignal
from clinex.exceptions import AIError, ConfigurationError


class FakeResponse:
    def __init__(self, lines, status_code=200, fail_after=None):
        self.lines = lines
        self.status_code = status_code
        self.text = "server error"
        self.fail_after = fail_after
        self.closed = False

    def iter_lines(self, decode_unicode=False):
        for position, line in enumerate(self.lines):
            if self.fail_after is not None and position == self.fail_after:
                raise requests.ConnectionError("connection reset")
            yield line

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def post(self, url, **kwargs):
        self.requests.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


def _chunk(content, done=False):
    return json.dumps({"message": {"role": "assistant", "content": content}, "done": done})


def test_normalize_backend_name():
    assert normalize_backend_name("llama.cpp") == "llama_cpp"
    assert normalize_backend_name("llama-cpp") == "llama_cpp"
    assert normalize_backend_name("llama_cpp") == "llama_cpp"
    assert normalize_backend_name("http") == "ollama"
    assert normalize_backend_name("transformers") == "transformers"


def test_build_backend_rejects_unknown(test_config):
    with pytest.raises(ConfigurationError):
        build_backend(test_config, "gpt-remote")


def test_build_backend_ollama(test_config):
    backend = build_backend(test_config)
    assert isinstance(backend, OllamaChatBackend)
    assert backend.base_url == test_config.llm_base_url.rstrip("/")


def test_ollama_streams_message_content(test_config):
    response = FakeResponse(["", _chunk("- Ibu"), "not json", _chunk("profen"), _chunk("", done=True), _chunk("ignored")])
    session = FakeSession(response)
    backend = OllamaChatBackend(test_config, session=session)

    chunks = list(backend.stream_chat([{"role": "user", "content": "hi"}], options={"max_tokens": 128}))

    assert chunks == ["- Ibu", "profen"]
    assert response.closed
    url, kwargs = session.requests[0]
    assert url.endswith("/api/chat")
    assert kwargs["stream"] is True
    assert kwargs["json"]["stream"] is True
    assert kwargs["json"]["options"]["num_predict"] == 128
    assert kwargs["json"]["options"]["temperature"] == test_config.llm_temperature


def test_ollama_http_error(test_config):
    backend = OllamaChatBackend(test_config, session=FakeSession(FakeResponse([], status_code=500)))
    with pytest.raises(AIError):
        list(backend.stream_chat([{"role": "user", "content": "hi"}]))


def test_ollama_unreachable(test_config):
    backend = OllamaChatBackend(test_config, session=FakeSession(error=requests.ConnectionError("refused")))
    with pytest.raises(AIError):
        list(backend.stream_chat([{"role": "user", "content": "hi"}]))


def test_ollama_stream_error_payload(test_config):
    response = FakeResponse([_chunk("- a"), json.dumps({"error": "model not found"})])
    backend = OllamaChatBackend(test_config, session=FakeSession(response))
    with pytest.raises(AIError, match="model not found"):
        list(backend.stream_chat([{"role": "user", "content": "hi"}]))


def test_ollama_interrupted_stream(test_config):
    response = FakeResponse([_chunk("- a"), _chunk("b")], fail_after=1)
    backend = OllamaChatBackend(test_config, session=FakeSession(response))
    with pytest.raises(AIError):
        list(backend.stream_chat([{"role": "user", "content": "hi"}]))
    assert response.closed


class ClosableResponse(FakeResponse):
    """Fails the next read once closed, like a socket shut under a blocked reader."""

    def iter_lines(self, decode_unicode=False):
        for line in self.lines:
            if self.closed:
                raise requests.ConnectionError("connection closed")
            yield line


def test_ollama_stop_closes_the_response(test_config):
    response = ClosableResponse([_chunk("- Ibu"), _chunk("profen"), _chunk("", done=True)])
    backend = OllamaChatBackend(test_config, session=FakeSession(response))
    stop = StopSignal()
    stream = backend.stream_chat([{"role": "user", "content": "hi"}], stop=stop)

    assert next(stream) == "- Ibu"
    stop.set()
    assert response.closed
    # a stream ended on request is not a transport failure
    assert list(stream) == []


class FakeLlama:
    def __init__(self, error=None, chunks=()):
        self.error = error
        self.chunks = chunks

    def create_chat_completion(self, **kwargs):
        if self.error is not None:
            raise self.error
        return iter(self.chunks)


def _llama_backend(test_config, model):
    backend = LlamaCppBackend.__new__(LlamaCppBackend)
    LLMBackendBase.__init__(backend, test_config)
    backend.model_path = "model.gguf"
    backend._model = model
    return backend


def test_llama_cpp_context_overflow_is_an_ai_error(test_config):
    backend = _llama_backend(test_config, FakeLlama(ValueError("Requested tokens exceed context window")))
    with pytest.raises(AIError, match="context window"):
        list(backend.stream_chat([{"role": "user", "content": "hi"}]))


def test_llama_cpp_stops_between_chunks(test_config):
    chunks = [{"choices": [{"delta": {"content": text}}]} for text in ("- Ibu", "profen", ", 400mg")]
    backend = _llama_backend(test_config, FakeLlama(chunks=chunks))
    stop = StopSignal()
    stream = backend.stream_chat([{"role": "user", "content": "hi"}], stop=stop)
    assert next(stream) == "- Ibu"
    stop.set()
    assert list(stream) == []
