"""Configuration loading and management."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from session_meter.models import SOURCES

DEFAULT_PRICING_URL = "https://models.dev/api.json"


@dataclass
class SourceConfig:
    enabled: bool = True
    root: Path | None = None  # None keeps the built-in discovery root


@dataclass
class ScanConfig:
    interval_seconds: int = 300
    max_workers: int = 8
    timezone: str = "UTC"
    db_path: Path = field(default_factory=lambda: Path.home() / "session-meter" / "state" / "meter.db")


@dataclass
class PricingConfig:
    refresh: bool = True
    url: str = DEFAULT_PRICING_URL
    refresh_hours: float = 6.0
    cooldown_seconds: float = 600.0
    timeout_seconds: float = 2.5


@dataclass
class TypesenseConfig:
    enabled: bool = False
    host: str = "localhost"
    port: int = 8108
    protocol: str = "http"
    api_key: str = "dev-api-key"


@dataclass
class Config:
    scan: ScanConfig = field(default_factory=ScanConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    typesense: TypesenseConfig = field(default_factory=TypesenseConfig)
    sources: dict[str, SourceConfig] = field(
        default_factory=lambda: {name: SourceConfig() for name in SOURCES}
    )

    def enabled_sources(self) -> list[str]:
        """Sources that discovery should visit, in canonical order."""
        return [name for name in SOURCES if self.sources.get(name, SourceConfig()).enabled]

    def source_roots(self) -> dict[str, Path]:
        """Root overrides configured per source."""
        return {name: cfg.root for name, cfg in self.sources.items() if cfg.root is not None}


def expand_env_var(value: str) -> str:
    """Expand environment variables in string (e.g. ${VAR})."""
    if value.startswith("${") and value.endswith("}"):
        env_var = value[2:-1]
        return os.environ.get(env_var, value)
    return value


def expand_path(path_str: str) -> Path:
    """Expand ~ and environment variables in path."""
    return Path(os.path.expandvars(os.path.expanduser(path_str)))


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from YAML file."""
    if config_path is None:
        # Look for config in standard locations
        search_paths = [
            Path.cwd() / "config.yaml",
            Path.home() / ".config" / "session-meter" / "config.yaml",
            Path("/etc/session-meter/config.yaml"),
        ]
        for path in search_paths:
            if path.exists():
                config_path = path
                break

    if config_path is None or not config_path.exists():
        return Config()

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    defaults = Config()

    # Parse scan config
    scan_data = data.get("scan", {})
    db_path = scan_data.get("db_path")
    scan = ScanConfig(
        interval_seconds=int(scan_data.get("interval_seconds", defaults.scan.interval_seconds)),
        max_workers=max(1, int(scan_data.get("max_workers", defaults.scan.max_workers))),
        timezone=scan_data.get("timezone", defaults.scan.timezone),
        db_path=expand_path(db_path) if db_path else defaults.scan.db_path,
    )

    # Parse pricing config
    pricing_data = data.get("pricing", {})
    pricing = PricingConfig(
        refresh=bool(pricing_data.get("refresh", defaults.pricing.refresh)),
        url=pricing_data.get("url", defaults.pricing.url),
        refresh_hours=float(pricing_data.get("refresh_hours", defaults.pricing.refresh_hours)),
        cooldown_seconds=float(pricing_data.get("cooldown_seconds", defaults.pricing.cooldown_seconds)),
        timeout_seconds=float(pricing_data.get("timeout_seconds", defaults.pricing.timeout_seconds)),
    )

    # Parse typesense config
    ts_data = data.get("typesense", {})
    typesense = TypesenseConfig(
        enabled=bool(ts_data.get("enabled", False)),
        host=ts_data.get("host", "localhost"),
        port=ts_data.get("port", 8108),
        protocol=ts_data.get("protocol", "http"),
        api_key=expand_env_var(ts_data.get("api_key", "dev-api-key")),
    )

    # Parse per-source config; unknown source names are ignored
    sources = {name: SourceConfig() for name in SOURCES}
    for name, src_data in (data.get("sources") or {}).items():
        if name not in sources:
            continue
        src_data = src_data or {}
        root = src_data.get("root")
        sources[name] = SourceConfig(
            enabled=src_data.get("enabled", True),
            root=expand_path(root) if root else None,
        )

    return Config(
        scan=scan,
        pricing=pricing,
        typesense=typesense,
        sources=sources,
    )
