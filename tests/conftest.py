from typing import Any

import pytest

from helpers import Collector, make_settings
from sentinel.callback import NotificationDispatcher
from sentinel.engine import Engine
from sentinel.hardening import CircuitBreaker
from sentinel.store import SessionStore


@pytest.fixture()
def collector() -> Collector:
    return Collector()


@pytest.fixture()
def make_engine(collector: Collector):
    def _build(classifier: Any, breaker: CircuitBreaker | None = None, **overrides: Any) -> Engine:
        settings = make_settings(**overrides)
        return Engine(
            settings=settings,
            store=SessionStore(),
            classifier=classifier,
            dispatcher=NotificationDispatcher(settings.callback_url, timeout_s=1, transport=collector.transport()),
            breaker=breaker,
        )

    return _build
