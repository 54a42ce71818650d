"""
Configuration management for capture stores.

The configuration is stored as a TOML file in the store directory.
It names the providers to use and the pipeline's policy constants.
"""

import os
import tomllib
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w  # tomllib is read-only


CONFIG_FILENAME = "capture.toml"
CONFIG_VERSION = 1

DEFAULT_STORE_DIR = Path.home() / ".capture"


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class Timeouts:
    """Per-provider timeouts in seconds."""
    link: float = 30.0
    place: float = 15.0
    search: float = 10.0
    events: float = 10.0
    weather: float = 10.0
    activity: float = 5.0
    cover: float = 15.0
    product: float = 15.0


@dataclass
class Policy:
    """
    Tunable pipeline constants.

    The consolidation thresholds are empirical; treat them as policy,
    not precision.
    """
    # Records are deleted once failure_count exceeds this
    failure_threshold: int = 2
    stale_processing_seconds: float = 300.0
    live_location_max_age_seconds: float = 300.0
    home_radius_meters: float = 100.0
    consolidation_seconds: float = 5.0
    consolidation_degrees: float = 0.0005
    reprocess_batch_size: int = 3
    context_chunk_threshold: int = 3500
    context_chunk_size: int = 3000
    context_chunk_overlap: int = 200
    session_context_limit: int = 10
    session_summary_items: int = 20
    events_min_description: int = 20
    timeouts: Timeouts = field(default_factory=Timeouts)


@dataclass
class HomeConfig:
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def is_set(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    reasoning: ProviderConfig = field(default_factory=lambda: ProviderConfig("truncate"))
    links: ProviderConfig = field(default_factory=lambda: ProviderConfig("http"))
    policy: Policy = field(default_factory=Policy)
    home: HomeConfig = field(default_factory=HomeConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def db_path(self) -> Path:
        return self.path / "capture.db"

    @property
    def queue_path(self) -> Path:
        return self.path / "queue.db"

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_default_store_path() -> Path:
    """Store directory from CAPTURE_STORE_PATH, else ~/.capture."""
    env = os.environ.get("CAPTURE_STORE_PATH")
    return Path(env).expanduser() if env else DEFAULT_STORE_DIR


def detect_default_reasoning() -> ProviderConfig:
    """
    Pick the reasoning provider for the current environment.

    Priority:
    1. Anthropic (if ANTHROPIC_API_KEY is set)
    2. OpenAI (if CAPTURE_OPENAI_API_KEY or OPENAI_API_KEY is set)
    3. Fallback: truncate (offline, no model)
    """
    if os.environ.get("ANTHROPIC_API_KEY"):
        return ProviderConfig("anthropic")
    if os.environ.get("CAPTURE_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY"):
        return ProviderConfig("openai")
    return ProviderConfig("truncate")


def create_default_config(store_path: Path) -> StoreConfig:
    """Create a new config with auto-detected defaults."""
    return StoreConfig(path=store_path, reasoning=detect_default_reasoning())


def _parse_provider(section: dict, default: str) -> ProviderConfig:
    return ProviderConfig(
        name=section.get("name", default),
        params={k: v for k, v in section.items() if k != "name"},
    )


def _parse_policy(section: dict) -> Policy:
    known = {f.name for f in fields(Policy)} - {"timeouts"}
    timeout_names = {f.name for f in fields(Timeouts)}
    timeouts = Timeouts(**{
        k: float(v) for k, v in section.get("timeouts", {}).items()
        if k in timeout_names
    })
    return Policy(
        timeouts=timeouts,
        **{k: v for k, v in section.items() if k in known},
    )


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    try:
        policy = _parse_policy(data.get("policy", {}))
    except TypeError as e:
        raise ValueError(f"Invalid [policy] section in {config_path}: {e}") from e

    home = data.get("home", {})
    return StoreConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        reasoning=_parse_provider(data.get("reasoning", {}), "truncate"),
        links=_parse_provider(data.get("links", {}), "http"),
        policy=policy,
        home=HomeConfig(
            latitude=home.get("latitude"),
            longitude=home.get("longitude"),
        ),
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    def provider_to_dict(p: ProviderConfig) -> dict:
        d = {"name": p.name}
        d.update(p.params)
        return d

    data: dict[str, Any] = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "reasoning": provider_to_dict(config.reasoning),
        "links": provider_to_dict(config.links),
        "policy": asdict(config.policy),
    }
    # TOML has no null; an unset home is simply omitted
    if config.home.is_set:
        data["home"] = asdict(config.home)

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = create_default_config(store_path)
    save_config(config)
    return config
