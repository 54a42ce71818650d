"""
Embedded metadata readers for capture payloads.

Images: EXIF GPS tags via Pillow.
Video: ISO 6709 location strings from QuickTime/MP4 metadata.
Documents: page count and author from PDF info via pypdf.
"""

import io
import logging
import re
from typing import Optional

from ..types import DocumentContext
from .base import Coordinate, get_registry

logger = logging.getLogger(__name__)

# EXIF pointer to the GPS IFD, and tags inside it
_GPS_IFD = 0x8825
_GPS_LAT_REF = 1
_GPS_LAT = 2
_GPS_LON_REF = 3
_GPS_LON = 4

# QuickTime user-data atom and the mdta key used for location
_QT_XYZ_ATOM = b"\xa9xyz"
_MDTA_LOCATION_KEY = b"com.apple.quicktime.location.ISO6709"

# ±DD.DDDD±DDD.DDDD[±AAA.AAA]/  (degrees form of ISO 6709 Annex H)
_ISO6709_PATTERN = re.compile(
    r"([+-]\d{2}(?:\.\d+)?)([+-]\d{3}(?:\.\d+)?)(?:[+-]\d+(?:\.\d+)?)?(?:CRS[^/]*)?/?"
)


def _rational(value) -> float:
    if hasattr(value, "numerator"):
        return value.numerator / value.denominator if value.denominator else 0.0
    return float(value)


def dms_to_decimal(dms, ref: str) -> float:
    """Degrees/minutes/seconds triple to signed decimal degrees."""
    degrees, minutes, seconds = (_rational(v) for v in dms)
    value = degrees + minutes / 60.0 + seconds / 3600.0
    return -value if ref.upper() in ("S", "W") else value


def parse_iso6709(text: str) -> Optional[Coordinate]:
    """Parse an ISO 6709 string like '+37.3349-122.0090+020.000/'."""
    match = _ISO6709_PATTERN.search(text)
    if not match:
        return None
    lat, lon = float(match.group(1)), float(match.group(2))
    if not (-90 <= lat <= 90 and -180 <= lon <= 180):
        return None
    return Coordinate(lat, lon)


class PillowMediaReader:
    """Reads GPS positions from image and video payloads."""

    def __init__(self, scan_bytes: int = 4_000_000):
        """
        Args:
            scan_bytes: How far into a video payload to look for
                location atoms (moov is usually near the start or end)
        """
        self.scan_bytes = scan_bytes

    def image_gps(self, payload: bytes) -> Optional[Coordinate]:
        from PIL import Image, UnidentifiedImageError

        try:
            with Image.open(io.BytesIO(payload)) as img:
                gps = img.getexif().get_ifd(_GPS_IFD)
        except (UnidentifiedImageError, OSError) as e:
            logger.debug("No EXIF readable from payload: %s", e)
            return None

        if not gps or _GPS_LAT not in gps or _GPS_LON not in gps:
            return None
        try:
            lat = dms_to_decimal(gps[_GPS_LAT], gps.get(_GPS_LAT_REF, "N"))
            lon = dms_to_decimal(gps[_GPS_LON], gps.get(_GPS_LON_REF, "E"))
        except (TypeError, ValueError, ZeroDivisionError) as e:
            logger.debug("Malformed GPS EXIF: %s", e)
            return None
        return Coordinate(lat, lon)

    def video_gps(self, payload: bytes) -> Optional[Coordinate]:
        # Check both ends of the file; moov may trail the media data
        windows = (payload[:self.scan_bytes], payload[-self.scan_bytes:])
        for window in windows:
            for marker in (_MDTA_LOCATION_KEY, _QT_XYZ_ATOM):
                idx = window.find(marker)
                while idx != -1:
                    snippet = window[idx + len(marker): idx + len(marker) + 256]
                    coord = parse_iso6709(snippet.decode("latin-1"))
                    if coord is not None:
                        return coord
                    idx = window.find(marker, idx + 1)
        return None


def read_document_info(payload: bytes) -> Optional[DocumentContext]:
    """PDF page count and author. None for non-PDF payloads."""
    if not payload.startswith(b"%PDF"):
        return None
    from pypdf import PdfReader
    from pypdf.errors import PdfReadError

    try:
        reader = PdfReader(io.BytesIO(payload))
        author = reader.metadata.author if reader.metadata else None
        return DocumentContext(file_type="pdf", page_count=len(reader.pages), author=author)
    except (PdfReadError, ValueError, OSError) as e:
        logger.debug("Unreadable PDF payload: %s", e)
        return DocumentContext(file_type="pdf")


# Register providers
get_registry().register("media", "pillow", PillowMediaReader)
