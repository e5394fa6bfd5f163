import random

import pytest

from webapp import (
    CooldownRegistry,
    MemoryCacheBackend,
    ResilientCaller,
    RetryPolicy,
    SearchAggregator,
    SearchCache,
    SearchQuery,
    SearchService,
    SyntheticFallbackAdapter,
)

from tests.helpers import FakeClock, SleepRecorder


@pytest.fixture
def query():
    return SearchQuery(piece="bomba de agua", model="Toyota Corolla 2015")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def caller(sleep_recorder):
    return ResilientCaller(RetryPolicy(max_attempts=3, base_delay=2.0, multiplier=3.0), sleep=sleep_recorder)


@pytest.fixture
def build_service(clock, caller):
    """Arma un SearchService con fuentes falsas, reloj controlado y sin esperas reales."""

    def _build(sources, synthetic=True, cooldown_seconds=30, serve_fallback_on_saturation=False):
        fallback = SyntheticFallbackAdapter(count=5, rng=random.Random(7)) if synthetic else None
        aggregator = SearchAggregator(sources, caller, fallback=fallback)
        cache = SearchCache(MemoryCacheBackend(), ttl_seconds=3600, clock=clock)
        cooldown = CooldownRegistry(cooldown_seconds, clock=clock)
        return SearchService(aggregator, cache, cooldown, serve_fallback_on_saturation=serve_fallback_on_saturation)

    return _build
