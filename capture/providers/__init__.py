"""Capability providers consumed by the capture pipeline."""

from .base import (
    ActivityProvider,
    Coordinate,
    KnowledgeGraphIndex,
    LinkMetadataProvider,
    LocationProvider,
    MediaMetadataReader,
    PlaceLookupProvider,
    ProviderRegistry,
    QRDecoder,
    ReasoningService,
    WeatherProvider,
    WebSearchProvider,
    get_registry,
)

__all__ = [
    "ActivityProvider",
    "Coordinate",
    "KnowledgeGraphIndex",
    "LinkMetadataProvider",
    "LocationProvider",
    "MediaMetadataReader",
    "PlaceLookupProvider",
    "ProviderRegistry",
    "QRDecoder",
    "ReasoningService",
    "WeatherProvider",
    "WebSearchProvider",
    "get_registry",
]
