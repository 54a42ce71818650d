"""
Data types for the capture pipeline.
"""

import hashlib
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union
from urllib.parse import urlparse, urlunparse


# Internal URL scheme for assets spawned from a parent capture
ASSET_SCHEME = "capture-asset"

# Length of the hex digest used as a record id for URL captures
ITEM_ID_LENGTH = 24


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DDTHH:MM:SS.

    All timestamps are UTC, stored without timezone suffix.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Handles both the canonical format (no suffix) and formats that include
    microseconds, 'Z', or '+00:00' suffixes.
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_utc(dt: datetime) -> str:
    """Format a datetime in the canonical UTC format."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S")


def age_seconds(ts: str, now: Optional[datetime] = None) -> float:
    """Seconds elapsed since a stored timestamp."""
    now = now or datetime.now(timezone.utc)
    return (now - parse_utc_timestamp(ts)).total_seconds()


# ---------------------------------------------------------------------------
# URL normalization: RFC 3986 §6.2.2 syntax-based normalization
# ---------------------------------------------------------------------------

_UNRESERVED = frozenset(
    'ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~'
)
_DEFAULT_PORTS = {'http': 80, 'https': 443}


def _decode_unreserved(s: str) -> str:
    """Decode percent-encoded unreserved characters, uppercase the rest."""
    if '%' not in s:
        return s
    result: list[str] = []
    i = 0
    while i < len(s):
        if s[i] == '%' and i + 2 < len(s):
            hex_str = s[i + 1:i + 3]
            try:
                char = chr(int(hex_str, 16))
            except ValueError:
                result.append(s[i])
                i += 1
                continue
            result.append(char if char in _UNRESERVED else f'%{hex_str.upper()}')
            i += 3
            continue
        result.append(s[i])
        i += 1
    return ''.join(result)


def _resolve_dot_segments(path: str) -> str:
    """Remove dot segments from a URL path (RFC 3986 §5.2.4)."""
    output: list[str] = []
    for seg in path.split('/'):
        if seg == '.':
            continue
        if seg == '..':
            if output and output[-1] != '':
                output.pop()
            continue
        output.append(seg)
    resolved = '/'.join(output)
    if path.startswith('/') and not resolved.startswith('/'):
        resolved = '/' + resolved
    return resolved


def normalize_url(url: str) -> str:
    """Canonical form of a URL so equivalent spellings hash alike.

    Lowercases scheme and host, drops default ports, resolves dot
    segments and decodes unreserved percent-escapes. Fragments are
    dropped since they never address a different resource. Non-HTTP
    URLs are returned stripped but otherwise untouched.
    """
    url = url.strip()
    if not url[:8].lower().startswith(('http://', 'https://')):
        return url

    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    host = (parsed.hostname or '').lower()
    port = parsed.port
    if port and port == _DEFAULT_PORTS.get(scheme):
        port = None
    netloc = f'{host}:{port}' if port else host

    path = _resolve_dot_segments(_decode_unreserved(parsed.path)) or '/'
    query = _decode_unreserved(parsed.query)
    return urlunparse((scheme, netloc, path, parsed.params, query, ''))


def url_host(url: Optional[str]) -> str:
    """Hostname of a URL without a leading 'www.', or '' if none."""
    if not url:
        return ''
    host = (urlparse(url).hostname or '').lower()
    return host[4:] if host.startswith('www.') else host


def url_item_id(url: str) -> str:
    """Deterministic record id for a URL capture."""
    digest = hashlib.sha256(normalize_url(url).encode('utf-8')).hexdigest()
    return digest[:ITEM_ID_LENGTH]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ItemStatus(str, Enum):
    """Lifecycle states of a processed item."""
    QUEUED = "queued"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"
    REVIEW_REQUIRED = "reviewRequired"


class InputType(str, Enum):
    """Kind of raw content a capture carries."""
    WEB = "web"
    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"
    MEDIA = "media"
    PRODUCT = "product"
    PLACE = "place"
    QR_CODE = "qrCode"

    @classmethod
    def parse(cls, value: Optional[str]) -> "InputType":
        """Lenient lookup; unknown values fall back to WEB."""
        if isinstance(value, cls):
            return value
        for member in cls:
            if value and member.value.lower() == str(value).lower():
                return member
        return cls.WEB


# ---------------------------------------------------------------------------
# Structured sub-contexts
# ---------------------------------------------------------------------------


def _from_dict(cls, data: Optional[dict]):
    """Build a dataclass from a dict, ignoring unknown keys."""
    if data is None:
        return None
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in names})


@dataclass
class WeatherContext:
    condition: str
    temperature_c: float
    symbol_name: Optional[str] = None


@dataclass
class ActivityContext:
    type: str
    confidence: str = "low"


@dataclass
class PlaceContext:
    """A resolved place. `name`, `place_id` and the coordinate form its identity."""
    name: Optional[str] = None
    categories: list[str] = field(default_factory=list)
    place_id: Optional[str] = None
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    rating: Optional[float] = None
    is_open: Optional[bool] = None
    price_level: Optional[int] = None
    phone_number: Optional[str] = None
    website: Optional[str] = None

    @property
    def has_coordinate(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass
class WebContext:
    site_name: Optional[str] = None
    favicon_url: Optional[str] = None
    reading_time_minutes: Optional[int] = None
    is_reader_available: Optional[bool] = None
    snapshot_url: Optional[str] = None
    text_content: Optional[str] = None
    structured_data: Optional[str] = None


@dataclass
class DocumentContext:
    file_type: Optional[str] = None
    page_count: Optional[int] = None
    author: Optional[str] = None


@dataclass
class QRCodeContext:
    payload: str


# ---------------------------------------------------------------------------
# Capture input and descriptor
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ItemDescriptor:
    """
    Caller-supplied hints accompanying a capture.

    Every field is optional. Descriptor values seed a new record and
    fill empty fields on a refresh; they never overwrite enriched data.
    """
    id: Optional[str] = None
    url: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    style_tags: tuple[str, ...] = ()
    categories: tuple[str, ...] = ()
    type: Optional[str] = None
    location: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    place_id: Optional[str] = None
    price: Optional[float] = None
    cover_image_url: Optional[str] = None
    session_id: Optional[str] = None
    attribution_id: Optional[str] = None
    master_capture_id: Optional[str] = None
    purposes: tuple[str, ...] = ()
    created_at: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("style_tags", "categories", "purposes"):
            data[key] = list(data[key])
        return data

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["ItemDescriptor"]:
        if not data:
            return None
        data = dict(data)
        for key in ("style_tags", "categories", "purposes"):
            data[key] = tuple(data.get(key) or ())
        return _from_dict(cls, data)


@dataclass
class CaptureInput:
    """
    A raw unit of work awaiting processing.

    Consumed once by the pipeline and deleted from the store only after
    processing completes successfully.
    """
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=utc_now)
    url: Optional[str] = None
    text: Optional[str] = None
    source: Optional[str] = None
    payload: Optional[bytes] = None
    input_type: InputType = InputType.WEB

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "CaptureInput":
        kwargs.setdefault("input_type", InputType.WEB)
        return cls(url=url, **kwargs)

    @classmethod
    def from_text(cls, text: str, **kwargs) -> "CaptureInput":
        kwargs.setdefault("input_type", InputType.TEXT)
        return cls(text=text, **kwargs)

    def to_dict(self) -> dict:
        """Serializable form; the binary payload is stored separately."""
        return {
            "id": self.id,
            "created_at": self.created_at,
            "url": self.url,
            "text": self.text,
            "source": self.source,
            "input_type": self.input_type.value,
        }

    @classmethod
    def from_dict(cls, data: dict, payload: Optional[bytes] = None) -> "CaptureInput":
        return cls(
            id=data["id"],
            created_at=data.get("created_at") or utc_now(),
            url=data.get("url"),
            text=data.get("text"),
            source=data.get("source"),
            payload=payload,
            input_type=InputType.parse(data.get("input_type")),
        )


def resolve_item_id(capture: CaptureInput, descriptor: Optional[ItemDescriptor] = None) -> str:
    """Stable record id for a capture.

    URL captures hash their canonical URL so re-submitting the same link
    always targets the same record. An explicit descriptor id wins;
    everything else uses the capture's own id.
    """
    if descriptor is not None and descriptor.id:
        return descriptor.id
    url = capture.url or (descriptor.url if descriptor else None)
    if url:
        return url_item_id(url)
    return capture.id


# ---------------------------------------------------------------------------
# Processed item and session
# ---------------------------------------------------------------------------

_CONTEXT_TYPES = {
    "weather": WeatherContext,
    "activity": ActivityContext,
    "place": PlaceContext,
    "web": WebContext,
    "document": DocumentContext,
    "qr": QRCodeContext,
}


@dataclass
class ProcessedItem:
    """
    The persisted, enriched record for one resolved capture id.

    Sets (tags, categories, purposes) are held as sorted lists so the
    record serializes deterministically.
    """
    id: str
    input_id: Optional[str] = None
    url: Optional[str] = None
    title: str = ""
    summary: str = ""
    entity_type: str = InputType.WEB.value
    modality: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    purposes: list[str] = field(default_factory=list)
    questions: list[str] = field(default_factory=list)
    themes: list[str] = field(default_factory=list)
    status: ItemStatus = ItemStatus.QUEUED
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    last_processed_at: Optional[str] = None
    failure_count: int = 0
    processing_log: list[str] = field(default_factory=list)
    source: Optional[str] = None
    transcription: Optional[str] = None
    location: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    place_pinned: bool = False
    price: Optional[float] = None
    rating: Optional[float] = None
    attribution_id: Optional[str] = None
    master_capture_id: Optional[str] = None
    session_id: Optional[str] = None
    weather: Optional[WeatherContext] = None
    activity: Optional[ActivityContext] = None
    place: Optional[PlaceContext] = None
    web: Optional[WebContext] = None
    document: Optional[DocumentContext] = None
    qr: Optional[QRCodeContext] = None

    def log(self, message: str) -> None:
        """Append a timestamped entry to the audit trail."""
        self.processing_log.append(f"[{utc_now()}] {message}")

    def touch(self) -> None:
        self.updated_at = utc_now()

    @property
    def has_coordinate(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ProcessedItem":
        data = dict(data)
        data["status"] = ItemStatus(data.get("status", ItemStatus.QUEUED.value))
        for key, ctx_cls in _CONTEXT_TYPES.items():
            data[key] = _from_dict(ctx_cls, data.get(key))
        return _from_dict(cls, data)


@dataclass
class Session:
    """A contiguous user activity grouping many items."""
    session_id: str
    title: Optional[str] = None
    summary: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    place_id: Optional[str] = None
    location_name: Optional[str] = None

    @property
    def has_coordinate(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        return _from_dict(cls, data)


# ---------------------------------------------------------------------------
# Enrichment results, one variant per provider kind
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LinkResult:
    """Link metadata extracted from a URL."""
    title: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    tags: tuple[str, ...] = ()
    web: Optional[WebContext] = None


@dataclass(frozen=True)
class PlaceResult:
    place: PlaceContext


@dataclass(frozen=True)
class SearchResult:
    """A general web search hit keyed by a resolved place name."""
    title: Optional[str] = None
    description: Optional[str] = None
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class EventsResult:
    place_name: str
    date: str
    description: str


@dataclass(frozen=True)
class WeatherResult:
    weather: WeatherContext


@dataclass(frozen=True)
class ActivityResult:
    activity: ActivityContext


@dataclass(frozen=True)
class CoverImageResult:
    path: str


@dataclass(frozen=True)
class ProductResult:
    title: Optional[str] = None
    description: Optional[str] = None
    tags: tuple[str, ...] = ()
    price: Optional[float] = None


EnrichmentResult = Union[
    LinkResult,
    PlaceResult,
    SearchResult,
    EventsResult,
    WeatherResult,
    ActivityResult,
    CoverImageResult,
    ProductResult,
]


# ---------------------------------------------------------------------------
# Reasoning output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Statement:
    """An inferred intent, tagged by the evidence it rests on."""
    text: str
    evidence: str = "visual"  # "visual" or "location"


@dataclass(frozen=True)
class ReasoningAnalysis:
    summary: Optional[str] = None
    statements: tuple[Statement, ...] = ()
    purpose: Optional[str] = None
    tags: tuple[str, ...] = ()

    def ordered_statements(self) -> list[str]:
        """Statement texts with visual evidence first."""
        visual = [s.text for s in self.statements if s.evidence == "visual"]
        located = [s.text for s in self.statements if s.evidence != "visual"]
        return visual + located

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReasoningAnalysis":
        statements = [
            Statement(text=str(s), evidence="visual")
            for s in data.get("visual_statements") or []
        ] + [
            Statement(text=str(s), evidence="location")
            for s in data.get("location_statements") or []
        ]
        return cls(
            summary=data.get("summary") or None,
            statements=tuple(statements),
            purpose=data.get("purpose") or None,
            tags=tuple(str(t) for t in data.get("tags") or []),
        )
