"""
Enrichment orchestrator.

Fans a capture out to every applicable provider concurrently. Each
provider call carries its own timeout; a slow or failing provider just
contributes nothing. Results are collected as they arrive and handed
back for merging, together with the context lines the reasoning pass
reads.

Tasks:
- link metadata (http/https URLs only)
- place chain: by id, home heuristic, by name, nearby, reverse geocode;
  then web search and live events keyed by the place name
- weather at the resolved coordinate
- current activity
- cover image saved under thumbnails/
- product lookup (product captures only)
"""

import asyncio
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Optional, TypeVar
from urllib.parse import urlparse

import httpx

from .config import Policy
from .location import HomeLocator, ResolvedLocation
from .merge import describe_result, is_home_place
from .providers.base import (
    ActivityProvider,
    KnowledgeGraphIndex,
    LinkMetadataProvider,
    LocationProvider,
    MediaMetadataReader,
    PlaceLookupProvider,
    QRDecoder,
    ReasoningService,
    WeatherProvider,
    WebSearchProvider,
)
from .types import (
    ActivityResult,
    CaptureInput,
    CoverImageResult,
    EnrichmentResult,
    EventsResult,
    InputType,
    ItemDescriptor,
    LinkResult,
    PlaceContext,
    PlaceResult,
    ProcessedItem,
    ProductResult,
    WeatherResult,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

COVER_MAX_SIZE = (1024, 1024)


@dataclass
class Providers:
    """The capability set a pipeline runs with. Any provider may be absent."""
    links: Optional[LinkMetadataProvider] = None
    places: Optional[PlaceLookupProvider] = None
    search: Optional[WebSearchProvider] = None
    weather: Optional[WeatherProvider] = None
    activity: Optional[ActivityProvider] = None
    reasoning: Optional[ReasoningService] = None
    knowledge_graph: Optional[KnowledgeGraphIndex] = None
    live_location: Optional[LocationProvider] = None
    media: Optional[MediaMetadataReader] = None
    qr: Optional[QRDecoder] = None


@dataclass
class EnrichmentOutcome:
    """Results of one fan-out, in arrival order."""
    results: list[EnrichmentResult] = field(default_factory=list)
    context_lines: list[str] = field(default_factory=list)

    def add(self, result: EnrichmentResult) -> None:
        self.results.append(result)
        line = describe_result(result)
        if line:
            self.context_lines.append(line)

    @property
    def context(self) -> str:
        return "\n".join(self.context_lines)


def is_fetchable_url(url: Optional[str]) -> bool:
    """True for URLs a link provider can fetch (not internal asset links)."""
    if not url:
        return False
    return urlparse(url).scheme.lower() in ("http", "https")


def write_cover_image(data: bytes, path: Path) -> None:
    """Normalize an image to a bounded RGB JPEG at `path`."""
    from PIL import Image

    path.parent.mkdir(parents=True, exist_ok=True)
    with Image.open(io.BytesIO(data)) as img:
        img = img.convert("RGB")
        img.thumbnail(COVER_MAX_SIZE)
        img.save(path, "JPEG", quality=85)


class EnrichmentOrchestrator:
    """Runs provider tasks concurrently for one item."""

    def __init__(
        self,
        providers: Providers,
        policy: Policy,
        home: HomeLocator,
        thumbnails_dir: Optional[Path] = None,
    ):
        self.providers = providers
        self.policy = policy
        self.home = home
        self.thumbnails_dir = thumbnails_dir

    async def _call(self, name: str, awaitable: Awaitable[T], timeout: float) -> Optional[T]:
        """Await one provider call; timeouts and errors become None."""
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            logger.info("Provider %s timed out after %.0fs", name, timeout)
        except Exception as e:
            logger.warning("Provider %s failed: %s", name, e)
        return None

    async def fetch_link(self, url: str) -> Optional[LinkResult]:
        if self.providers.links is None or not is_fetchable_url(url):
            return None
        return await self._call("links", self.providers.links.fetch(url), self.policy.timeouts.link)

    async def run(
        self,
        item: ProcessedItem,
        capture: CaptureInput,
        location: ResolvedLocation,
        descriptor: Optional[ItemDescriptor] = None,
        skip_link: bool = False,
    ) -> EnrichmentOutcome:
        """
        Run every applicable task and collect what arrives.

        Args:
            item: Snapshot of the record; not mutated
            capture: The raw capture
            location: Output of the location chain
            descriptor: Caller hints
            skip_link: Link metadata was already fetched this pass

        Returns:
            EnrichmentOutcome with results in arrival order
        """
        tasks = []
        url = capture.url or item.url
        if not skip_link and is_fetchable_url(url):
            tasks.append(self._link_task(url))
        tasks.append(self._place_task(item, location, descriptor))
        if location.coordinate is not None and self.providers.weather is not None:
            tasks.append(self._weather_task(location))
        if self.providers.activity is not None:
            tasks.append(self._activity_task())
        if self.thumbnails_dir is not None:
            tasks.append(self._cover_task(item, capture, descriptor))
        if capture.input_type == InputType.PRODUCT and self.providers.search is not None:
            tasks.append(self._product_task(item, capture, descriptor))

        outcome = EnrichmentOutcome()
        for next_done in asyncio.as_completed([self._guard(t) for t in tasks]):
            for result in await next_done:
                outcome.add(result)
        logger.info("Enriched %s: %d results from %d tasks", item.id, len(outcome.results), len(tasks))
        return outcome

    @staticmethod
    async def _guard(task: Awaitable[list[EnrichmentResult]]) -> list[EnrichmentResult]:
        try:
            return await task
        except Exception as e:
            logger.warning("Enrichment task failed: %s", e)
            return []

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    async def _link_task(self, url: str) -> list[EnrichmentResult]:
        result = await self.fetch_link(url)
        return [result] if result is not None else []

    async def _place_task(
        self,
        item: ProcessedItem,
        location: ResolvedLocation,
        descriptor: Optional[ItemDescriptor],
    ) -> list[EnrichmentResult]:
        place = await self._resolve_place(item, location, descriptor)
        if place is None:
            return []
        results: list[EnrichmentResult] = [PlaceResult(place)]
        if is_home_place(place) or not place.name or self.providers.search is None:
            return results

        t = self.policy.timeouts
        hit = await self._call("search", self.providers.search.search(place.name, location.coordinate), t.search)
        if hit is not None:
            results.append(hit)

        today = datetime.now(timezone.utc).strftime("%B %d, %Y")
        events = await self._call(
            "events",
            self.providers.search.search(f"{place.name} events {today}", location.coordinate),
            t.events,
        )
        if events is not None and events.description and \
                len(events.description) > self.policy.events_min_description:
            results.append(EventsResult(place_name=place.name, date=today, description=events.description))
        return results

    async def _resolve_place(
        self,
        item: ProcessedItem,
        location: ResolvedLocation,
        descriptor: Optional[ItemDescriptor],
    ) -> Optional[PlaceContext]:
        places = self.providers.places
        t = self.policy.timeouts
        coord = location.coordinate

        place_id = descriptor.place_id if descriptor else None
        if not place_id and item.place is not None and not is_home_place(item.place):
            place_id = item.place.place_id
        if places is not None and place_id and place_id != "home-location":
            place = await self._call("places:id", places.by_id(place_id), t.place)
            if place is not None:
                return place

        if coord is not None and not location.is_user_override and not location.place_name \
                and self.home.is_home(coord):
            return self.home.home_place(coord)

        if places is None:
            return None
        if location.place_name:
            place = await self._call("places:query", places.by_query(location.place_name, coord), t.place)
            if place is not None:
                return place
        if coord is None:
            return None
        place = await self._call("places:nearby", places.nearby(coord, limit=1), t.place)
        if place is not None:
            return place
        return await self._call("places:reverse", places.reverse_geocode(coord), t.place)

    async def _weather_task(self, location: ResolvedLocation) -> list[EnrichmentResult]:
        weather = await self._call(
            "weather", self.providers.weather.current(location.coordinate), self.policy.timeouts.weather
        )
        return [WeatherResult(weather)] if weather is not None else []

    async def _activity_task(self) -> list[EnrichmentResult]:
        activity = await self._call(
            "activity", self.providers.activity.current(), self.policy.timeouts.activity
        )
        return [ActivityResult(activity)] if activity is not None else []

    async def _cover_task(
        self,
        item: ProcessedItem,
        capture: CaptureInput,
        descriptor: Optional[ItemDescriptor],
    ) -> list[EnrichmentResult]:
        data = None
        if descriptor is not None and descriptor.cover_image_url:
            data = await self._call(
                "cover", self._download(descriptor.cover_image_url), self.policy.timeouts.cover
            )
        elif capture.payload and capture.input_type == InputType.IMAGE:
            data = capture.payload
        if not data:
            return []
        path = self.thumbnails_dir / f"{item.id}-cover.jpg"
        try:
            await asyncio.to_thread(write_cover_image, data, path)
        except OSError as e:
            logger.warning("Could not write cover image for %s: %s", item.id, e)
            return []
        return [CoverImageResult(str(path))]

    @staticmethod
    async def _download(url: str) -> bytes:
        parsed = urlparse(url)
        if parsed.scheme == "file":
            return await asyncio.to_thread(Path(parsed.path).read_bytes)
        async with httpx.AsyncClient(follow_redirects=True) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            return resp.content

    async def _product_task(
        self,
        item: ProcessedItem,
        capture: CaptureInput,
        descriptor: Optional[ItemDescriptor],
    ) -> list[EnrichmentResult]:
        query = item.title or (descriptor.title if descriptor else None) or capture.text
        if not query:
            return []
        hit = await self._call("product", self.providers.search.search(query), self.policy.timeouts.product)
        if hit is None:
            return []
        return [ProductResult(title=hit.title, description=hit.description, tags=hit.tags)]
