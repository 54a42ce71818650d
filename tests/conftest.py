"""
Shared pytest fixtures for capture tests.

Provides mock providers that count their calls, so tests never touch
the network or a language model.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from capture.config import HomeConfig, Policy
from capture.enrichment import Providers
from capture.pipeline import Pipeline
from capture.providers.base import Coordinate
from capture.store import CaptureStore
from capture.types import (
    ActivityContext,
    ItemDescriptor,
    LinkResult,
    PlaceContext,
    ReasoningAnalysis,
    SearchResult,
    Statement,
    WeatherContext,
    format_utc,
)


def hours_ago(hours: float) -> str:
    """UTC timestamp `hours` in the past."""
    return format_utc(datetime.now(timezone.utc) - timedelta(hours=hours))


class MockLinks:
    """Link provider returning canned metadata per URL."""

    def __init__(self, results: Optional[dict] = None, default: Optional[LinkResult] = None):
        self.results = results or {}
        self.default = default
        self.calls: list[str] = []

    async def fetch(self, url: str) -> Optional[LinkResult]:
        self.calls.append(url)
        return self.results.get(url, self.default)


class MockPlaces:
    """Place lookup with a canned answer per lookup style."""

    def __init__(
        self,
        by_id: Optional[dict] = None,
        nearby: Optional[PlaceContext] = None,
        by_query: Optional[PlaceContext] = None,
        reverse: Optional[PlaceContext] = None,
    ):
        self._by_id = by_id or {}
        self._nearby = nearby
        self._by_query = by_query
        self._reverse = reverse
        self.calls: list[tuple] = []

    async def by_id(self, place_id: str) -> Optional[PlaceContext]:
        self.calls.append(("by_id", place_id))
        return self._by_id.get(place_id)

    async def nearby(self, coordinate: Coordinate, limit: int = 1) -> Optional[PlaceContext]:
        self.calls.append(("nearby", coordinate))
        return self._nearby

    async def by_query(self, text: str, coordinate: Optional[Coordinate] = None) -> Optional[PlaceContext]:
        self.calls.append(("by_query", text))
        return self._by_query

    async def reverse_geocode(self, coordinate: Coordinate) -> Optional[PlaceContext]:
        self.calls.append(("reverse", coordinate))
        return self._reverse

    def count(self, kind: str) -> int:
        return sum(1 for c in self.calls if c[0] == kind)


class MockSearch:
    def __init__(self, result: Optional[SearchResult] = None, events: Optional[SearchResult] = None):
        self.result = result
        self.events = events
        self.queries: list[str] = []

    async def search(self, query: str, coordinate: Optional[Coordinate] = None) -> Optional[SearchResult]:
        self.queries.append(query)
        if " events " in query:
            return self.events
        return self.result


class MockWeather:
    def __init__(self, weather: Optional[WeatherContext] = None):
        self.weather = weather or WeatherContext(condition="Sunny", temperature_c=21.0)
        self.calls = 0

    async def current(self, coordinate: Coordinate) -> Optional[WeatherContext]:
        self.calls += 1
        return self.weather


class MockActivity:
    def __init__(self, activity: Optional[ActivityContext] = None):
        self.activity = activity or ActivityContext(type="walking", confidence="high")
        self.calls = 0

    async def current(self) -> Optional[ActivityContext]:
        self.calls += 1
        return self.activity


class MockLocation:
    """Device location provider."""

    def __init__(self, coordinate: Optional[Coordinate] = None):
        self.coordinate = coordinate or Coordinate(47.6097, -122.3331)
        self.calls = 0

    async def current_location(self) -> Optional[Coordinate]:
        self.calls += 1
        return self.coordinate


class SlowProvider:
    """Weather provider that never answers within a timeout."""

    def __init__(self):
        self.calls = 0

    async def current(self, coordinate: Coordinate):
        self.calls += 1
        await asyncio.sleep(3600)


class FailingProvider:
    """Activity provider that raises."""

    def __init__(self):
        self.calls = 0

    async def current(self):
        self.calls += 1
        raise ConnectionError("provider offline")


class MockReasoning:
    """
    Reasoning service with a canned analysis.

    `fail` makes analyze() raise on every call.
    """

    def __init__(self, analysis: Optional[ReasoningAnalysis] = None, fail: bool = False):
        self.analysis = analysis or ReasoningAnalysis(
            summary="A refined summary.",
            statements=(Statement("Saving a place to visit", "visual"),),
            purpose="Remember this",
            tags=("saved",),
        )
        self.fail = fail
        self.analyze_calls: list[str] = []
        self.summarize_calls: list[str] = []

    async def analyze(self, context: str) -> ReasoningAnalysis:
        self.analyze_calls.append(context)
        if self.fail:
            raise RuntimeError("model unavailable")
        return self.analysis

    async def summarize(self, text: str) -> str:
        self.summarize_calls.append(text)
        return f"summary of {len(text)} chars"

    async def suggest_purposes(self, context: str) -> list[str]:
        return ["Remember this"]


class MockKnowledgeGraph:
    def __init__(self):
        self.indexed: list[ItemDescriptor] = []

    async def index(self, descriptor: ItemDescriptor) -> None:
        self.indexed.append(descriptor)


@pytest.fixture
def policy():
    return Policy()


@pytest.fixture
def store(tmp_path):
    s = CaptureStore(tmp_path / "capture.db")
    yield s
    s.close()


@pytest.fixture
def make_pipeline(store, policy, tmp_path):
    """Factory for pipelines over the shared test store."""
    created = []

    def factory(home: Optional[HomeConfig] = None, thumbnails: bool = False, **providers) -> Pipeline:
        pipeline = Pipeline(
            store,
            Providers(**providers),
            policy,
            home=home,
            thumbnails_dir=tmp_path / "thumbnails" if thumbnails else None,
        )
        created.append(pipeline)
        return pipeline

    return factory
