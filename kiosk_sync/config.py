"""
config.py - Kiosk configuration

Settings come from config/settings.json with environment overrides
(config/secrets.env or the process environment). All timing values are in
milliseconds; JSON may also give them as "30s", "5m", "1h" or "1d".
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Dict, List, Optional

from .services.errors import ConfigError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("Config")

BASE_DIR = Path(__file__).resolve().parent.parent
CONFIG_DIR = BASE_DIR / "config"
SETTINGS_PATH = CONFIG_DIR / "settings.json"
SECRETS_PATH = CONFIG_DIR / "secrets.env"

_DURATION_UNITS = {"s": 1000, "m": 60000, "h": 3600000, "d": 86400000}

# Environment variable -> settings field
ENV_OVERRIDES = {
    "KIOSK_ID": "kiosk_id",
    "KIOSK_SERVER_URL": "server_url",
    "KIOSK_DATA_DIR": "data_dir",
    "KIOSK_LOG_LEVEL": "log_level",
    "KIOSK_PORT": "kiosk_port",
    "KIOSK_BRIDGE_PORT": "bridge_port",
}

DEFAULT_CRITICAL_RESOURCES = [
    "/",
    "/index.html",
    "/manifest.json",
    "/dist/output.css",
    "/custom.css",
    "/config.js",
    "/appState.js",
    "/main/index.js",
    "/sync/dataSync.js",
    "/icons/icon-192x192.png",
    "/icons/icon-512x512.png",
    "/icons/favicon-32x32.png",
]

DEFAULT_MEDIA_RESOURCES = ["/asset/video/1.mp4"]


def parse_duration(value) -> int:
    """Convert "30s" / "5m" / "1h" / "1d" (or a bare number of ms) to milliseconds."""
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)

    match = re.fullmatch(r"\s*(\d+)\s*([smhd])\s*", str(value))
    if not match:
        raise ConfigError(f'Invalid time format: {value}. Use format like "30s", "5m", "1h", "1d"')
    return int(match.group(1)) * _DURATION_UNITS[match.group(2)]


def load_env_file(path):
    """Load KEY=VALUE lines into os.environ."""
    path = Path(path)
    if not path.exists():
        return
    with open(path, 'r') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#') or '=' not in line:
                continue
            key, val = line.split('=', 1)
            os.environ[key.strip()] = val.strip().strip('"').strip("'")


@dataclass
class KioskSettings:
    # Identity
    kiosk_id: str = "KIOSK-001"

    # Upstream
    server_url: str = "http://localhost:8000"
    sync_endpoint: str = "/api/submit-survey"
    analytics_endpoint: str = "/api/sync-analytics"
    connectivity_probe_path: str = "/"
    request_timeout_s: float = 30.0

    # Local surfaces
    data_dir: str = "data"
    kiosk_host: str = "0.0.0.0"
    kiosk_port: int = 8001
    bridge_port: int = 8002
    log_level: str = "INFO"

    # Timing
    sync_interval_ms: int = 86400000
    analytics_sync_interval_ms: int = 86400000
    update_check_interval_ms: int = 86400000
    connectivity_check_interval_ms: int = 30000
    offline_after_failures: int = 3

    # Retry
    max_retries: int = 3
    retry_delay_ms: int = 2000

    # Queue and storage limits
    store_capacity_bytes: int = 5 * 1024 * 1024
    max_queue_size: int = 1000
    queue_warning_threshold: int = 800
    max_analytics_size: int = 1000
    max_ambiguous_cycles: int = 5

    # Resource cache
    cache_prefix: str = "kiosk"
    cache_version: int = 12
    media_cache_version: int = 1
    app_shell: str = "/index.html"
    api_prefix: str = "/api/"
    media_prefix: str = "/asset/video/"
    manifest_path: str = "/cache-manifest.json"
    critical_resources: List[str] = field(default_factory=lambda: list(DEFAULT_CRITICAL_RESOURCES))
    media_resources: List[str] = field(default_factory=lambda: list(DEFAULT_MEDIA_RESOURCES))
    skip_waiting: bool = True
    throttle_ms: int = 300000
    throttle_cleanup_interval_ms: int = 600000
    throttle_retention_ms: int = 3600000

    @property
    def store_path(self) -> Path:
        return Path(self.data_dir) / "kiosk_store.db"

    @property
    def cache_path(self) -> Path:
        return Path(self.data_dir) / "resource_cache.db"

    @property
    def sync_url(self) -> str:
        return self._upstream(self.sync_endpoint)

    @property
    def analytics_url(self) -> str:
        return self._upstream(self.analytics_endpoint)

    @property
    def probe_url(self) -> str:
        return self._upstream(self.connectivity_probe_path)

    def _upstream(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.server_url.rstrip('/')}/{path.lstrip('/')}"

    @classmethod
    def from_dict(cls, data: Dict) -> "KioskSettings":
        known = {f.name: f for f in fields(cls)}
        kwargs = {}
        for key, value in (data or {}).items():
            if key not in known:
                logger.warning(f"Ignoring unknown setting: {key}")
                continue
            if key.endswith("_ms"):
                value = parse_duration(value)
            kwargs[key] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict:
        return asdict(self)

    def validate(self) -> List[str]:
        """
        Check for common misconfigurations.

        Raises ConfigError on critical errors; returns (and logs) warnings.
        """
        errors = []
        warnings = []

        if not self.kiosk_id:
            errors.append("kiosk_id is required")
        if self.max_queue_size < 1:
            errors.append("max_queue_size must be at least 1")
        if self.max_retries < 1:
            errors.append("max_retries must be at least 1")
        if self.store_capacity_bytes <= 0:
            errors.append("store_capacity_bytes must be positive")
        for f in fields(self):
            if f.name.endswith("_interval_ms") and getattr(self, f.name) <= 0:
                errors.append(f"{f.name} must be positive")

        if self.max_queue_size > 1500:
            warnings.append("max_queue_size > 1500 may exceed the store capacity on a busy kiosk")
        if self.queue_warning_threshold > self.max_queue_size:
            warnings.append("queue_warning_threshold is above max_queue_size and will never trigger")
        if self.sync_interval_ms < 60000:
            warnings.append("sync_interval_ms < 1 minute may cause excessive network usage")
        if self.throttle_retention_ms < self.throttle_ms:
            warnings.append("throttle_retention_ms is shorter than throttle_ms")

        for warning in warnings:
            logger.warning(f"Config: {warning}")
        if errors:
            for error in errors:
                logger.error(f"Config: {error}")
            raise ConfigError("Configuration validation failed: " + "; ".join(errors))
        return warnings


def load_settings(path: Optional[Path] = None, env_path: Optional[Path] = None) -> KioskSettings:
    """Load settings.json, apply environment overrides, validate."""
    path = Path(path) if path else SETTINGS_PATH
    load_env_file(env_path if env_path else SECRETS_PATH)

    data = {}
    if path.exists():
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Failed to load {path}: {e}") from e
    else:
        logger.info(f"No settings file at {path}, using defaults")

    for env_key, setting in ENV_OVERRIDES.items():
        if os.getenv(env_key):
            data[setting] = os.environ[env_key]

    for int_field in ("kiosk_port", "bridge_port"):
        if int_field in data:
            try:
                data[int_field] = int(data[int_field])
            except (TypeError, ValueError) as e:
                raise ConfigError(f"{int_field} must be an integer") from e

    settings = KioskSettings.from_dict(data)
    settings.validate()
    return settings
