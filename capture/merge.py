"""
Merge engine: combines provider results into a ProcessedItem.

Each field has a quality gate deciding whether a new value may replace
the current one. Fields only ever get stronger:

- Title: replaced only when the current title is weak (empty, a
  placeholder, a bare URL or host, an address) or when the caller asks
  for an override. An address-shaped candidate never replaces a good
  title.
- Summary: filled only when empty.
- Tags, categories, purposes: set union.
- Place: replaced wholesale, unless identity is preserved (a pinned
  place), in which case only non-identity fields are filled in.
- WebContext: field-wise; missing fields are backfilled from the old value.
- Price, rating: filled only when absent or zero.

`apply_results` applies results in a fixed precedence order, so the
final record does not depend on the order providers finished in.
"""

import dataclasses
import re
from typing import Iterable, Optional

from .types import (
    ActivityResult,
    CoverImageResult,
    EnrichmentResult,
    EventsResult,
    ItemDescriptor,
    LinkResult,
    PlaceContext,
    PlaceResult,
    ProcessedItem,
    ProductResult,
    ReasoningAnalysis,
    SearchResult,
    WeatherResult,
    WebContext,
    url_host,
)

HOME_PLACE_NAME = "Home"

WEAK_TITLES = frozenset({"untitled", "visual capture", "web link"})

_STREET_SUFFIXES = (
    r"st|street|ave|avenue|rd|road|blvd|boulevard|dr|drive|ln|lane|way|ct|court|"
    r"pl|place|sq|square|hwy|highway|pkwy|parkway|ter|terrace|cir|circle|trl|trail"
)
# "123 Main St", "1600 Amphitheatre Pkwy, Mountain View"
_ADDRESS_PATTERN = re.compile(
    rf"^\s*\d+[a-z]?(?:-\d+)?\s+(?:[\w.'-]+\s+){{0,4}}(?:{_STREET_SUFFIXES})\b\.?",
    re.IGNORECASE,
)
# "42 Something, Town" and "Town, ST 12345" shapes
_NUMBERED_COMMA_PATTERN = re.compile(r"^\s*\d+\s+[^,]+,\s*\S+")
_POSTCODE_PATTERN = re.compile(r",\s*[A-Z]{2}\s+\d{5}(?:-\d{4})?\b")


def looks_like_address(text: Optional[str]) -> bool:
    """True if the text reads like a street address rather than a name."""
    if not text:
        return False
    return bool(
        _ADDRESS_PATTERN.match(text)
        or _NUMBERED_COMMA_PATTERN.match(text)
        or _POSTCODE_PATTERN.search(text)
    )


def is_weak_title(title: Optional[str], url: Optional[str] = None) -> bool:
    """True if a title is a placeholder that any real candidate should replace."""
    if not title or not title.strip():
        return True
    stripped = title.strip()
    lowered = stripped.lower()
    if lowered in WEAK_TITLES or lowered.startswith("visual capture"):
        return True
    if "://" in stripped or lowered.startswith("www."):
        return True
    if url and lowered in (url_host(url), url.lower()):
        return True
    return looks_like_address(stripped)


def union_sorted(existing: Iterable[str], new: Iterable[str]) -> list[str]:
    """Sorted set union, ignoring blanks."""
    return sorted({v for v in existing if v} | {v.strip() for v in new if v and v.strip()})


def merge_title(item: ProcessedItem, candidate: Optional[str], *, override: bool = False) -> bool:
    """Apply the title gate. Returns True if the title changed."""
    if not candidate or not candidate.strip():
        return False
    candidate = candidate.strip()
    if candidate == item.title:
        return False
    if is_weak_title(item.title, item.url):
        item.title = candidate
        return True
    if override and not looks_like_address(candidate):
        item.title = candidate
        return True
    return False


def merge_summary(item: ProcessedItem, candidate: Optional[str]) -> bool:
    if item.summary or not candidate or not candidate.strip():
        return False
    item.summary = candidate.strip()
    return True


def _fill_number(current: Optional[float], candidate: Optional[float]) -> Optional[float]:
    if current:
        return current
    return candidate if candidate else current


def merge_web(existing: Optional[WebContext], new: Optional[WebContext]) -> Optional[WebContext]:
    """Field-wise merge: fields missing from `new` are backfilled from `existing`."""
    if new is None:
        return existing
    if existing is None:
        return new
    merged = {}
    for f in dataclasses.fields(WebContext):
        value = getattr(new, f.name)
        merged[f.name] = value if value is not None else getattr(existing, f.name)
    return WebContext(**merged)


_PLACE_IDENTITY_FIELDS = ("name", "place_id", "address", "latitude", "longitude")


def merge_place(
    existing: Optional[PlaceContext],
    new: PlaceContext,
    *,
    preserve_identity: bool = False,
) -> PlaceContext:
    """Replace a place, or fill only non-identity fields when preserving."""
    if existing is None or not preserve_identity:
        return dataclasses.replace(new, categories=list(new.categories))
    merged = dataclasses.replace(existing, categories=union_sorted(existing.categories, new.categories))
    for f in dataclasses.fields(PlaceContext):
        if f.name in _PLACE_IDENTITY_FIELDS or f.name == "categories":
            continue
        if getattr(merged, f.name) is None:
            setattr(merged, f.name, getattr(new, f.name))
    return merged


def is_home_place(place: Optional[PlaceContext]) -> bool:
    return place is not None and (place.name or "").strip().lower() == HOME_PLACE_NAME.lower()


def _apply_place(item: ProcessedItem, place: PlaceContext, preserve_identity: bool) -> None:
    # A pinned place is only pinned if there is one to keep
    preserve = preserve_identity and item.place is not None
    item.place = merge_place(item.place, place, preserve_identity=preserve)
    item.categories = union_sorted(item.categories, place.categories)
    if not preserve:
        if place.has_coordinate:
            item.latitude, item.longitude = place.latitude, place.longitude
        if not is_home_place(place):
            merge_title(item, place.name)
    if not item.location:
        item.location = place.name or place.address
    item.rating = _fill_number(item.rating, place.rating)


def apply_result(
    item: ProcessedItem,
    result: EnrichmentResult,
    *,
    preserve_identity: bool = False,
) -> None:
    """Merge one provider result into the item in place."""
    if isinstance(result, LinkResult):
        merge_title(item, result.title)
        merge_summary(item, result.description)
        item.tags = union_sorted(item.tags, result.tags)
        item.web = merge_web(item.web, result.web)
    elif isinstance(result, PlaceResult):
        _apply_place(item, result.place, preserve_identity)
    elif isinstance(result, SearchResult):
        # Search is keyed by the confirmed place name, so it may override
        merge_title(item, result.title, override=True)
        merge_summary(item, result.description)
        item.tags = union_sorted(item.tags, result.tags)
    elif isinstance(result, EventsResult):
        pass  # Contributes reasoning context only
    elif isinstance(result, WeatherResult):
        item.weather = result.weather
    elif isinstance(result, ActivityResult):
        item.activity = result.activity
    elif isinstance(result, CoverImageResult):
        item.web = merge_web(item.web, WebContext(snapshot_url=result.path))
    elif isinstance(result, ProductResult):
        merge_title(item, result.title)
        merge_summary(item, result.description)
        item.tags = union_sorted(item.tags, result.tags)
        item.price = _fill_number(item.price, result.price)
    else:
        raise TypeError(f"Unhandled enrichment result: {type(result).__name__}")


# Fixed application order; earlier kinds win contested weak-title fills
RESULT_PRECEDENCE = (
    LinkResult,
    ProductResult,
    PlaceResult,
    SearchResult,
    EventsResult,
    WeatherResult,
    ActivityResult,
    CoverImageResult,
)


def _precedence(result: EnrichmentResult) -> int:
    for rank, cls in enumerate(RESULT_PRECEDENCE):
        if isinstance(result, cls):
            return rank
    raise TypeError(f"Unhandled enrichment result: {type(result).__name__}")


def apply_results(
    item: ProcessedItem,
    results: Iterable[EnrichmentResult],
    *,
    preserve_identity: bool = False,
) -> None:
    """Merge a batch of results in precedence order."""
    for result in sorted(results, key=_precedence):
        apply_result(item, result, preserve_identity=preserve_identity)


def describe_result(result: EnrichmentResult) -> Optional[str]:
    """One line of reasoning context for a result, or None."""
    if isinstance(result, LinkResult):
        text = result.description or result.title
        return f"Link Summary: {text}" if text else None
    if isinstance(result, PlaceResult):
        place = result.place
        if not place.name:
            return f"Nearby Context: {place.address}" if place.address else None
        line = f"Nearby Context: {place.name}"
        if place.categories:
            line += f", Categories: {', '.join(place.categories)}"
        return line
    if isinstance(result, SearchResult):
        if not (result.title or result.description):
            return None
        return f"Web Search: {result.title or ''} - {result.description or ''}".strip(" -")
    if isinstance(result, EventsResult):
        return f"LIVE EVENTS: Events at {result.place_name} on {result.date}: {result.description}"
    if isinstance(result, WeatherResult):
        return f"Weather: {result.weather.condition}, {result.weather.temperature_c:.0f}°C"
    if isinstance(result, ActivityResult):
        return f"Activity: {result.activity.type} ({result.activity.confidence})"
    if isinstance(result, ProductResult):
        text = " - ".join(t for t in (result.title, result.description) if t)
        return f"Product: {text}" if text else None
    if isinstance(result, CoverImageResult):
        return None
    raise TypeError(f"Unhandled enrichment result: {type(result).__name__}")


def seed_from_descriptor(item: ProcessedItem, descriptor: Optional[ItemDescriptor]) -> None:
    """
    Copy caller hints onto the item, filling only empty fields.

    Used both for new records and for refreshes; descriptor values never
    overwrite data that enrichment already established.
    """
    if descriptor is None:
        return
    merge_title(item, descriptor.title)
    merge_summary(item, descriptor.description)
    item.tags = union_sorted(item.tags, descriptor.style_tags)
    item.categories = union_sorted(item.categories, descriptor.categories)
    item.purposes = union_sorted(item.purposes, descriptor.purposes)
    if not item.url and descriptor.url:
        item.url = descriptor.url
    if not item.location and descriptor.location:
        item.location = descriptor.location
    item.price = _fill_number(item.price, descriptor.price)
    if not item.has_coordinate and descriptor.latitude is not None and descriptor.longitude is not None:
        item.latitude, item.longitude = descriptor.latitude, descriptor.longitude
    if descriptor.place_id and item.place is None:
        item.place = PlaceContext(
            name=descriptor.location,
            place_id=descriptor.place_id,
            latitude=descriptor.latitude,
            longitude=descriptor.longitude,
        )
        # A caller naming a specific place is a user override
        if not is_home_place(item.place):
            item.place_pinned = True
    for attr in ("session_id", "attribution_id", "master_capture_id"):
        if getattr(item, attr) is None and getattr(descriptor, attr):
            setattr(item, attr, getattr(descriptor, attr))


def apply_analysis(item: ProcessedItem, analysis: ReasoningAnalysis) -> None:
    """
    Merge a reasoning result into the item.

    The refined summary replaces the provisional one (it was derived from
    it). Statements become the item's questions, visual evidence first.
    Purpose and tags are unioned.
    """
    if analysis.summary and analysis.summary.strip():
        item.summary = analysis.summary.strip()
    statements = analysis.ordered_statements()
    if statements:
        item.questions = statements
    if analysis.purpose:
        item.purposes = union_sorted(item.purposes, [analysis.purpose])
    item.tags = union_sorted(item.tags, analysis.tags)


def _is_placeholder_title(item: ProcessedItem) -> bool:
    title = (item.title or "").strip()
    if title == item.id:
        return True
    # An address title is weak for merging but still better than a fallback
    return is_weak_title(title, item.url) and not looks_like_address(title)


def _prefix(text: str, limit: int = 50) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[:limit] + "..."


def finalize_title(item: ProcessedItem) -> None:
    """
    Give a placeholder-titled item the best title its data supports.

    Fallbacks in order: first theme or tag, a transcription or summary
    prefix, "At: <location>", "Visual Capture <timestamp>".
    """
    if not _is_placeholder_title(item):
        return
    for candidate in list(item.themes) + list(item.tags):
        if candidate and candidate.strip():
            candidate = candidate.strip()
            item.title = candidate[0].upper() + candidate[1:]
            return
    text = item.transcription or item.summary
    if text and text.strip():
        item.title = _prefix(text)
        return
    location = item.location or (item.place.name if item.place else None)
    if location:
        item.title = f"At: {location}"
        return
    item.title = f"Visual Capture {item.created_at.replace('T', ' ')}"
