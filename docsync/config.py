"""
Configuration management for docsync.

The configuration is stored as a TOML file in the store directory.
It specifies the ingestion service, endpoint paths, storage backend,
polling cadence and upload limits. A few values can be overridden
with environment variables.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .types import ALLOWED_EXTENSIONS, MAX_UPLOAD_BYTES

# tomli_w for writing TOML (tomllib is read-only)
try:
    import tomli_w
except ImportError:
    tomli_w = None  # type: ignore


CONFIG_FILENAME = "docsync.toml"
CONFIG_VERSION = 1

DEFAULT_API_URL = "http://localhost:3001/api"
BACKEND_CHOICES = ("auto", "native", "fallback")


@dataclass
class ServiceConfig:
    """Ingestion service connection settings."""
    api_url: str = DEFAULT_API_URL
    api_key: Optional[str] = None
    timeout: float = 30.0
    max_retries: int = 3
    backoff_base: float = 1.0


@dataclass
class EndpointConfig:
    """Endpoint path templates, relative to the service URL."""
    upload: str = "/documents/upload"
    status: str = "/documents/{id}/status"
    list: str = "/documents"
    delete: str = "/documents/{id}"
    download: str = "/documents/{id}/download"
    chat: str = "/chat"


@dataclass
class StorageConfig:
    backend: str = "auto"
    directory: Optional[Path] = None


@dataclass
class SyncConfig:
    """Complete docsync configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    service: ServiceConfig = field(default_factory=ServiceConfig)
    endpoints: EndpointConfig = field(default_factory=EndpointConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    poll_interval: float = 3.0
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    allowed_extensions: frozenset[str] = ALLOWED_EXTENSIONS

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def kv_path(self) -> Path:
        """Path to the SQLite key-value database."""
        return self.path / "docsync.db"

    def exists(self) -> bool:
        return self.config_path.exists()


def get_default_store_path() -> Path:
    """Store directory: DOCSYNC_STORE_PATH or ~/.docsync."""
    env = os.environ.get("DOCSYNC_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".docsync"


def apply_env_overrides(config: SyncConfig) -> SyncConfig:
    """Environment variables win over the TOML file."""
    api_url = os.environ.get("DOCSYNC_API_URL")
    if api_url:
        config.service.api_url = api_url
    api_key = os.environ.get("DOCSYNC_API_KEY")
    if api_key:
        config.service.api_key = api_key
    return config


def load_config(store_path: Path) -> SyncConfig:
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

    svc = data.get("service", {})
    service = ServiceConfig(
        api_url=svc.get("api_url", DEFAULT_API_URL),
        api_key=svc.get("api_key") or None,
        timeout=float(svc.get("timeout", 30.0)),
        max_retries=int(svc.get("max_retries", 3)),
        backoff_base=float(svc.get("backoff_base", 1.0)),
    )
    if service.max_retries < 1:
        raise ValueError(f"service.max_retries must be >= 1 (got {service.max_retries})")

    defaults = EndpointConfig()
    ep = data.get("endpoints", {})
    endpoints = EndpointConfig(**{
        name: ep.get(name, getattr(defaults, name))
        for name in ("upload", "status", "list", "delete", "download", "chat")
    })

    st = data.get("storage", {})
    backend = st.get("backend", "auto")
    if backend not in BACKEND_CHOICES:
        raise ValueError(f"Unknown storage backend {backend!r}; expected one of {BACKEND_CHOICES}")
    directory = st.get("directory")
    storage = StorageConfig(
        backend=backend,
        directory=Path(directory).expanduser() if directory else None,
    )

    upload = data.get("upload", {})
    extensions = upload.get("allowed_extensions")

    return SyncConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        service=service,
        endpoints=endpoints,
        storage=storage,
        poll_interval=float(data.get("polling", {}).get("interval", 3.0)),
        max_upload_bytes=int(upload.get("max_bytes", MAX_UPLOAD_BYTES)),
        allowed_extensions=(
            frozenset(e.lower().lstrip(".") for e in extensions)
            if extensions else ALLOWED_EXTENSIONS
        ),
    )


def save_config(config: SyncConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist. The API key is only
    written if it came from the file, never from the environment.
    """
    if tomli_w is None:
        raise RuntimeError("tomli_w is required to save config. Install with: pip install tomli-w")

    config.path.mkdir(parents=True, exist_ok=True)

    service = {
        "api_url": config.service.api_url,
        "timeout": config.service.timeout,
        "max_retries": config.service.max_retries,
        "backoff_base": config.service.backoff_base,
    }
    if config.service.api_key and not os.environ.get("DOCSYNC_API_KEY"):
        service["api_key"] = config.service.api_key

    storage: dict = {"backend": config.storage.backend}
    if config.storage.directory:
        storage["directory"] = str(config.storage.directory)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "service": service,
        "endpoints": {
            "upload": config.endpoints.upload,
            "status": config.endpoints.status,
            "list": config.endpoints.list,
            "delete": config.endpoints.delete,
            "download": config.endpoints.download,
            "chat": config.endpoints.chat,
        },
        "storage": storage,
        "polling": {"interval": config.poll_interval},
        "upload": {
            "max_bytes": config.max_upload_bytes,
            "allowed_extensions": sorted(config.allowed_extensions),
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Optional[Path] = None) -> SyncConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    store_path = store_path or get_default_store_path()
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        config = load_config(store_path)
    else:
        config = SyncConfig(path=store_path)
        save_config(config)
    return apply_env_overrides(config)
