"""
Test-wide fixtures and configuration.

Ensures the suite runs in CLINEX_ENV=testing so that the review store is an
in-memory SQLite database and no model server is contacted. Model output is
scripted through :class:`ScriptedBackend`.
"""
import os
import re
import threading
import time
from datetime import date

import pytest

os.environ.setdefault("CLINEX_ENV", "testing")

from clinex.ai.prompting.templates import QUESTION_TEMPLATES  # noqa: E402
from clinex.ai.types import Domain, SourceUnit  # noqa: E402
from clinex.ai.watchdog import GenerationWatchdog  # noqa: E402
from clinex.core import unified_config  # noqa: E402
from clinex.pipelines.extraction import ExtractionPipeline  # noqa: E402
from clinex.review.queue import ReviewQueue  # noqa: E402
from clinex.review.store import ReviewStore  # noqa: E402

ANCHOR = date(2026, 2, 26)


def pytest_configure(config: pytest.Config) -> None:  # noqa: D401
    os.environ.setdefault("CLINEX_ENV", "testing")
    unified_config.reload_config()


def tokenize(text: str):
    """Split text into word-sized chunks the way a streaming server sends them."""
    return re.findall(r"\s*\S+", text) or [text]


def degenerate_block(size: int = 80, repeats: int = 6):
    """A long answer that loops: the same ``size``-token block over and over."""
    return [f"w{index} " for index in range(size)] * repeats


class ScriptedBackend:
    """Streaming backend returning canned answers.

    ``answers`` maps a domain to one script, or to :class:`Attempts` holding
    one script per attempt (the last one repeats). A script is a string, a
    list of raw chunks, or an exception to raise. Questions for other domains
    get ``default``; questions matching no template too.
    """

    def __init__(self, answers=None, default="None mentioned", delay: float = 0.0):
        self.answers = dict(answers or {})
        self.default = default
        self.delay = delay
        self.calls = []
        self.domains = []
        self._served = {}
        self._lock = threading.Lock()

    @staticmethod
    def _domain_of(content: str):
        for templates in QUESTION_TEMPLATES.values():
            for domain, text in templates.items():
                if text in content:
                    return domain
        return None

    def _script_for(self, messages):
        domain = self._domain_of(messages[-1]["content"])
        self.domains.append(domain)
        script = self.answers.get(domain, self.default)
        if isinstance(script, Attempts):
            attempt = self._served.get(domain, 0)
            self._served[domain] = attempt + 1
            return script[min(attempt, len(script) - 1)]
        return script

    def stream_chat(self, messages, *, options=None, stop=None):
        with self._lock:
            self.calls.append(messages)
            script = self._script_for(messages)
        if isinstance(script, Exception):
            raise script
        chunks = script if isinstance(script, list) else tokenize(script)
        for chunk in chunks:
            if self.delay:
                if stop is None:
                    time.sleep(self.delay)
                elif stop.wait(self.delay):
                    return
            yield chunk


class Attempts(list):
    """Per-attempt scripts for one domain, consumed in order."""


@pytest.fixture
def anchor():
    return ANCHOR


@pytest.fixture
def test_config():
    return unified_config.UnifiedConfig.from_environment()


@pytest.fixture
def review_store():
    return ReviewStore("sqlite://")


@pytest.fixture
def review_queue(review_store):
    return ReviewQueue(review_store, recency_days=14)


@pytest.fixture
def conversation():
    def build(*messages, unit_id="conv-1", language="en", anchor_date=ANCHOR):
        return SourceUnit.conversation(unit_id, list(messages), language=language, anchor_date=anchor_date)
    return build


@pytest.fixture
def document():
    def build(text, type_label="clinical_note", unit_id="doc-1", language="en", anchor_date=ANCHOR):
        return SourceUnit.document(unit_id, text, type_label=type_label, language=language, anchor_date=anchor_date)
    return build


@pytest.fixture
def make_pipeline(test_config, review_queue):
    created = []

    def factory(backend, **watchdog_options):
        watchdog = GenerationWatchdog.from_config(backend, test_config)
        for name, value in watchdog_options.items():
            setattr(watchdog, name, value)
        pipeline = ExtractionPipeline(test_config, watchdog=watchdog, review_queue=review_queue)
        created.append(pipeline)
        return pipeline

    yield factory
    for pipeline in created:
        pipeline.shutdown(wait=True)


__all__ = ["ANCHOR", "Attempts", "Domain", "ScriptedBackend", "degenerate_block", "tokenize"]
