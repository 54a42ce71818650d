"""
Location resolution chain.

Decides the single authoritative coordinate for a processing pass.
Sources are tried in strict priority; the first that yields a
coordinate wins:

1. An explicit place on the record (unless it is the generic "Home")
2. A "lat,lon" location string on the record (same Home exception)
3. Live device location, only for captures younger than five minutes
4. EXIF GPS from an image payload
5. ISO 6709 GPS from a video payload
6. The owning session's coordinate, only without a user override

QR decoding runs alongside: a capture with no URL whose image holds a
QR code gets the decoded URL promoted onto it.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Optional

from .config import HomeConfig, Policy
from .merge import HOME_PLACE_NAME, is_home_place
from .providers.base import Coordinate, LocationProvider, MediaMetadataReader, QRDecoder
from .types import (
    CaptureInput,
    InputType,
    ItemDescriptor,
    PlaceContext,
    ProcessedItem,
    QRCodeContext,
    Session,
    age_seconds,
)

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6_371_000.0

_LAT_LON_PATTERN = re.compile(r"^\s*(-?\d{1,2}(?:\.\d+)?)\s*,\s*(-?\d{1,3}(?:\.\d+)?)\s*$")


def haversine_meters(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance between two coordinates."""
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(math.sqrt(h))


def parse_coordinate(text: Optional[str]) -> Optional[Coordinate]:
    """Parse a "lat,lon" string. None if it isn't one."""
    if not text:
        return None
    match = _LAT_LON_PATTERN.match(text)
    if not match:
        return None
    lat, lon = float(match.group(1)), float(match.group(2))
    if not (-90 <= lat <= 90 and -180 <= lon <= 180):
        return None
    return Coordinate(lat, lon)


def is_url(text: Optional[str]) -> bool:
    return bool(text) and text.strip().lower().startswith(("http://", "https://"))


@dataclass
class ResolvedLocation:
    """Outcome of one pass through the chain."""
    coordinate: Optional[Coordinate] = None
    source: str = "none"
    is_user_override: bool = False
    place_name: Optional[str] = None
    promoted_url: Optional[str] = None


class HomeLocator:
    """
    Knows where "home" is and whether a coordinate is there.

    Owned by the pipeline instance; `invalidate` clears the cached
    position when the configured home changes.
    """

    def __init__(self, home: HomeConfig, radius_meters: float = 100.0):
        self._home = home
        self.radius_meters = radius_meters
        self._cached: Optional[Coordinate] = None

    @property
    def coordinate(self) -> Optional[Coordinate]:
        if self._cached is None and self._home.is_set:
            self._cached = Coordinate(self._home.latitude, self._home.longitude)
        return self._cached

    def invalidate(self, home: Optional[HomeConfig] = None) -> None:
        if home is not None:
            self._home = home
        self._cached = None

    def is_home(self, coordinate: Coordinate) -> bool:
        home = self.coordinate
        return home is not None and haversine_meters(home, coordinate) <= self.radius_meters

    def home_place(self, coordinate: Coordinate) -> PlaceContext:
        return PlaceContext(
            name=HOME_PLACE_NAME,
            categories=["Home", "Personal"],
            place_id="home-location",
            latitude=coordinate.latitude,
            longitude=coordinate.longitude,
        )


class LocationResolver:
    """Runs the priority chain for one item."""

    def __init__(
        self,
        policy: Policy,
        live_location: Optional[LocationProvider] = None,
        media: Optional[MediaMetadataReader] = None,
        qr: Optional[QRDecoder] = None,
    ):
        self.policy = policy
        self.live_location = live_location
        self.media = media
        self.qr = qr

    async def resolve(
        self,
        item: ProcessedItem,
        capture: CaptureInput,
        session: Optional[Session] = None,
        descriptor: Optional[ItemDescriptor] = None,
    ) -> ResolvedLocation:
        resolved = self._from_record(item) or await self._from_capture(capture)

        if not capture.url and not item.url:
            resolved_url = await self._decode_qr(capture, item)
            if resolved is None:
                resolved = ResolvedLocation()
            resolved.promoted_url = resolved_url

        if resolved is None or resolved.coordinate is None:
            from_session = self._from_session(item, session)
            if from_session is not None:
                from_session.promoted_url = resolved.promoted_url if resolved else None
                resolved = from_session

        resolved = resolved or ResolvedLocation()
        if resolved.place_name is None:
            resolved.place_name = self._explicit_place_name(item, descriptor)
        if item.place_pinned:
            resolved.is_user_override = True
        logger.debug("Location for %s: %s (%s, override=%s)",
                     item.id, resolved.coordinate, resolved.source, resolved.is_user_override)
        return resolved

    @staticmethod
    def _explicit_place_name(item: ProcessedItem, descriptor: Optional[ItemDescriptor]) -> Optional[str]:
        name = descriptor.location if descriptor else None
        name = name or (item.place.name if item.place and not is_home_place(item.place) else None)
        if name and name.strip().lower() != HOME_PLACE_NAME.lower() and parse_coordinate(name) is None:
            return name.strip()
        return None

    def _from_record(self, item: ProcessedItem) -> Optional[ResolvedLocation]:
        place = item.place
        if place is not None and place.has_coordinate and not is_home_place(place):
            return ResolvedLocation(
                coordinate=Coordinate(place.latitude, place.longitude),
                source="place",
                is_user_override=item.place_pinned,
                place_name=place.name,
            )
        if item.location and item.location.strip().lower() != HOME_PLACE_NAME.lower():
            coord = parse_coordinate(item.location)
            if coord is not None:
                return ResolvedLocation(coordinate=coord, source="record",
                                        is_user_override=item.place_pinned)
        return None

    async def _from_capture(self, capture: CaptureInput) -> Optional[ResolvedLocation]:
        if self.live_location is not None:
            if age_seconds(capture.created_at) <= self.policy.live_location_max_age_seconds:
                coord = await self.live_location.current_location()
                if coord is not None:
                    return ResolvedLocation(coordinate=coord, source="live")
            else:
                logger.debug("Capture %s too old for live location", capture.id)

        if capture.payload and self.media is not None:
            if capture.input_type == InputType.IMAGE:
                coord = self.media.image_gps(capture.payload)
                if coord is not None:
                    return ResolvedLocation(coordinate=coord, source="exif")
            elif capture.input_type == InputType.MEDIA:
                coord = self.media.video_gps(capture.payload)
                if coord is not None:
                    return ResolvedLocation(coordinate=coord, source="video")
        return None

    async def _decode_qr(self, capture: CaptureInput, item: ProcessedItem) -> Optional[str]:
        """Decode a QR code from an image capture; return it if it is a URL."""
        payload_text = None
        if capture.input_type == InputType.QR_CODE and capture.text:
            payload_text = capture.text
        elif capture.payload and self.qr is not None and capture.input_type in (
                InputType.IMAGE, InputType.QR_CODE):
            payload_text = await self.qr.decode(capture.payload)
        if not payload_text:
            return None
        item.qr = QRCodeContext(payload=payload_text)
        return payload_text.strip() if is_url(payload_text) else None

    def _from_session(self, item: ProcessedItem, session: Optional[Session]) -> Optional[ResolvedLocation]:
        if session is None or not session.has_coordinate or item.place_pinned:
            return None
        resolved = ResolvedLocation(
            coordinate=Coordinate(session.latitude, session.longitude),
            source="session",
        )
        if session.location_name:
            # A named session pins the place for later passes
            item.place_pinned = True
            resolved.is_user_override = True
            resolved.place_name = session.location_name
        return resolved
