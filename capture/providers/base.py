"""
Base provider protocols.

These define the capability interfaces the pipeline consumes. Every
method is async and may fail independently; the orchestrator treats a
failure or timeout as "no result".

Using Protocol for structural subtyping - no explicit inheritance required.
"""

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

from ..types import (
    ActivityContext,
    ItemDescriptor,
    LinkResult,
    PlaceContext,
    ReasoningAnalysis,
    SearchResult,
    WeatherContext,
)


@dataclass(frozen=True)
class Coordinate:
    """A WGS84 position in decimal degrees."""
    latitude: float
    longitude: float

    def __str__(self) -> str:
        return f"{self.latitude:.6f},{self.longitude:.6f}"


# -----------------------------------------------------------------------------
# Link Metadata
# -----------------------------------------------------------------------------

@runtime_checkable
class LinkMetadataProvider(Protocol):
    """
    Extracts title, description and page context from a URL.

    Example implementation:
        class StaticLinks:
            async def fetch(self, url: str) -> LinkResult | None:
                return LinkResult(title="Example Domain")
    """

    async def fetch(self, url: str) -> Optional[LinkResult]:
        """
        Fetch metadata for a URL.

        Args:
            url: An http(s) URL

        Returns:
            LinkResult, or None if nothing useful was found

        Raises:
            IOError: If the URL cannot be fetched
        """
        ...


# -----------------------------------------------------------------------------
# Places and Search
# -----------------------------------------------------------------------------

@runtime_checkable
class PlaceLookupProvider(Protocol):
    """
    Resolves a place identity from an id, a coordinate, or a text query.

    `reverse_geocode` is the last resort in the place chain and may
    return a place with only an address.
    """

    async def by_id(self, place_id: str) -> Optional[PlaceContext]:
        ...

    async def nearby(self, coordinate: Coordinate, limit: int = 1) -> Optional[PlaceContext]:
        ...

    async def by_query(self, text: str, coordinate: Optional[Coordinate] = None) -> Optional[PlaceContext]:
        ...

    async def reverse_geocode(self, coordinate: Coordinate) -> Optional[PlaceContext]:
        ...


@runtime_checkable
class WebSearchProvider(Protocol):
    """General web search returning the best single hit."""

    async def search(self, query: str, coordinate: Optional[Coordinate] = None) -> Optional[SearchResult]:
        ...


# -----------------------------------------------------------------------------
# Ambient Context
# -----------------------------------------------------------------------------

@runtime_checkable
class WeatherProvider(Protocol):
    async def current(self, coordinate: Coordinate) -> Optional[WeatherContext]:
        ...


@runtime_checkable
class ActivityProvider(Protocol):
    """Current physical activity of the user (walking, driving, ...)."""

    async def current(self) -> Optional[ActivityContext]:
        ...


@runtime_checkable
class LocationProvider(Protocol):
    """Live device location. Only consulted for fresh captures."""

    async def current_location(self) -> Optional[Coordinate]:
        ...


# -----------------------------------------------------------------------------
# Media
# -----------------------------------------------------------------------------

@runtime_checkable
class MediaMetadataReader(Protocol):
    """
    Reads embedded location metadata from capture payloads.

    Example implementation:
        class NoMedia:
            def image_gps(self, payload: bytes) -> Coordinate | None:
                return None

            def video_gps(self, payload: bytes) -> Coordinate | None:
                return None
    """

    def image_gps(self, payload: bytes) -> Optional[Coordinate]:
        """GPS position from image EXIF tags, if present."""
        ...

    def video_gps(self, payload: bytes) -> Optional[Coordinate]:
        """GPS position from video metadata tracks, if present."""
        ...


@runtime_checkable
class QRDecoder(Protocol):
    """Decodes a QR code from an image payload."""

    async def decode(self, payload: bytes) -> Optional[str]:
        ...


# -----------------------------------------------------------------------------
# Reasoning and Indexing
# -----------------------------------------------------------------------------

@runtime_checkable
class ReasoningService(Protocol):
    """
    LLM-like text analysis.

    `analyze` receives the full context blob built by the reasoning pass
    and returns summary, intent statements, purpose and tags.
    """

    async def analyze(self, context: str) -> ReasoningAnalysis:
        """
        Analyze a capture's context.

        Raises:
            Exception: Any failure; the caller records it against the item
        """
        ...

    async def summarize(self, text: str) -> str:
        ...

    async def suggest_purposes(self, context: str) -> list[str]:
        ...


@runtime_checkable
class KnowledgeGraphIndex(Protocol):
    async def index(self, descriptor: ItemDescriptor) -> None:
        ...


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

PROVIDER_KINDS = (
    "links", "reasoning", "places", "search", "weather",
    "activity", "location", "media", "qr", "knowledge_graph",
)


class ProviderRegistry:
    """
    Registry for discovering and instantiating providers.

    Providers are registered by kind and name and can be instantiated from
    configuration, so the store's TOML can name providers without code
    changes.

    Example:
        registry = ProviderRegistry()
        registry.register("reasoning", "anthropic", AnthropicReasoning)

        # Later, from config:
        service = registry.create("reasoning", "anthropic", {"model": "claude-haiku-4-5"})
    """

    def __init__(self):
        self._providers: dict[str, dict[str, type]] = {kind: {} for kind in PROVIDER_KINDS}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Import the bundled provider modules so they register themselves."""
        if self._lazy_loaded:
            return
        self._lazy_loaded = True
        from . import links, media, reasoning  # noqa: F401

    def register(self, kind: str, name: str, provider_class: type) -> None:
        """Register a provider class under a kind and name."""
        if kind not in self._providers:
            raise ValueError(f"Unknown provider kind: '{kind}'")
        self._providers[kind][name] = provider_class

    def create(self, kind: str, name: str, params: Optional[dict] = None):
        """Instantiate a registered provider."""
        self._ensure_providers_loaded()
        providers = self._providers.get(kind)
        if providers is None:
            raise ValueError(f"Unknown provider kind: '{kind}'")
        if name not in providers:
            available = ", ".join(providers.keys()) or "none"
            raise ValueError(
                f"Unknown {kind} provider: '{name}'. "
                f"Available providers: {available}."
            )
        try:
            return providers[name](**(params or {}))
        except ImportError as e:
            raise RuntimeError(
                f"Failed to create {kind} provider '{name}': {e}\n"
                f"Install required dependencies."
            ) from e
        except Exception as e:
            raise RuntimeError(
                f"Failed to create {kind} provider '{name}': {e}"
            ) from e

    def list(self, kind: str) -> list[str]:
        """List registered provider names for a kind."""
        self._ensure_providers_loaded()
        return list(self._providers.get(kind, {}).keys())


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry
