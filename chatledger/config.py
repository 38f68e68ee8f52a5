"""
Configuration management for chatledger.

The configuration is stored as a TOML file in the config directory.
It specifies the storage backend, the gateway endpoints, the app names
used to tag records, and which completion provider to use.

Secrets (API keys) are never written to the file; they come from
environment variables.
"""

import os
import tomllib
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w

from .types import AGENT, CHAT, DEFAULT_AGENT_APP_NAME, DEFAULT_CHAT_APP_NAME, EntityKind


CONFIG_FILENAME = "chatledger.toml"
CONFIG_VERSION = 1

DEFAULT_UPLOAD_URL = "https://uploader.irys.xyz"
DEFAULT_GRAPHQL_URL = "https://uploader.irys.xyz/graphql"
DEFAULT_GATEWAY_URL = "https://gateway.irys.xyz"

DEFAULT_COMPLETION_MODEL = "openai/gpt-oss-120b"
DEFAULT_HISTORY_LIMIT = 20


def get_config_dir() -> Path:
    """Config directory: CHATLEDGER_CONFIG_DIR or ~/.chatledger."""
    env_dir = os.environ.get("CHATLEDGER_CONFIG_DIR")
    if env_dir:
        return Path(env_dir).expanduser()
    return Path.home() / ".chatledger"


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayConfig:
    """Endpoints of the remote record store."""
    upload_url: str = DEFAULT_UPLOAD_URL
    graphql_url: str = DEFAULT_GRAPHQL_URL
    gateway_url: str = DEFAULT_GATEWAY_URL
    owner_address: str = ""   # address of the server-side writer identity
    api_key: str = ""         # from CHATLEDGER_API_KEY only


@dataclass
class StoreConfig:
    """Complete configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    # "local" (SQLite record log) or "gateway" (HTTP upload + GraphQL index)
    backend: str = "local"
    # Simulated indexing delay for the local backend, in seconds
    index_delay: float = 0.0

    gateway: GatewayConfig = field(default_factory=GatewayConfig)

    chat_app_name: str = DEFAULT_CHAT_APP_NAME
    agent_app_name: str = DEFAULT_AGENT_APP_NAME
    use_mutable_refs: bool = True
    history_limit: int = DEFAULT_HISTORY_LIMIT
    fetch_concurrency: int = 8
    user_address: str = ""

    request_timeout: float = 30.0
    completion_timeout: float = 120.0

    completion: ProviderConfig = field(
        default_factory=lambda: ProviderConfig("openrouter", {"model": DEFAULT_COMPLETION_MODEL})
    )

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def records_path(self) -> Path:
        """SQLite file for the local backend."""
        return self.path / "records.db"

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()

    @property
    def chat_kind(self) -> EntityKind:
        return replace(CHAT, app_name=self.chat_app_name)

    @property
    def agent_kind(self) -> EntityKind:
        return replace(AGENT, app_name=self.agent_app_name)

    @property
    def completion_model(self) -> str:
        return self.completion.params.get("model", DEFAULT_COMPLETION_MODEL)


def apply_env_overrides(config: StoreConfig) -> StoreConfig:
    """Fill secrets and per-user settings from the environment."""
    api_key = os.environ.get("CHATLEDGER_API_KEY")
    if api_key:
        config.gateway.api_key = api_key
    owner = os.environ.get("CHATLEDGER_OWNER_ADDRESS")
    if owner:
        config.gateway.owner_address = owner
    user = os.environ.get("CHATLEDGER_USER_ADDRESS")
    if user:
        config.user_address = user
    return config


def load_config(config_dir: Path) -> StoreConfig:
    """
    Load configuration from a config directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = config_dir / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    store = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    backend = store.get("backend", "local")
    if not isinstance(backend, str) or not backend:
        raise ValueError(f"Invalid backend: {backend!r}")

    gw = data.get("gateway", {})
    app = data.get("app", {})
    timeouts = data.get("timeouts", {})

    def parse_provider(section: dict) -> ProviderConfig:
        return ProviderConfig(
            name=section.get("name", ""),
            params={k: v for k, v in section.items() if k != "name"},
        )

    config = StoreConfig(
        path=config_dir,
        version=version,
        created=store.get("created", ""),
        backend=backend,
        index_delay=float(store.get("index_delay", 0.0)),
        gateway=GatewayConfig(
            upload_url=gw.get("upload_url", DEFAULT_UPLOAD_URL),
            graphql_url=gw.get("graphql_url", DEFAULT_GRAPHQL_URL),
            gateway_url=gw.get("gateway_url", DEFAULT_GATEWAY_URL),
            owner_address=gw.get("owner_address", ""),
        ),
        chat_app_name=app.get("chat_app_name", DEFAULT_CHAT_APP_NAME),
        agent_app_name=app.get("agent_app_name", DEFAULT_AGENT_APP_NAME),
        use_mutable_refs=bool(app.get("use_mutable_refs", True)),
        history_limit=int(app.get("history_limit", DEFAULT_HISTORY_LIMIT)),
        fetch_concurrency=int(app.get("fetch_concurrency", 8)),
        user_address=app.get("user_address", ""),
        request_timeout=float(timeouts.get("request", 30.0)),
        completion_timeout=float(timeouts.get("completion", 120.0)),
        completion=parse_provider(data.get(
            "completion", {"name": "openrouter", "model": DEFAULT_COMPLETION_MODEL}
        )),
    )
    if config.history_limit < 1:
        raise ValueError("app.history_limit must be at least 1")
    if config.fetch_concurrency < 1:
        raise ValueError("app.fetch_concurrency must be at least 1")
    return config


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the config directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    completion = {"name": config.completion.name}
    completion.update(config.completion.params)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
            "backend": config.backend,
            "index_delay": config.index_delay,
        },
        "gateway": {
            "upload_url": config.gateway.upload_url,
            "graphql_url": config.gateway.graphql_url,
            "gateway_url": config.gateway.gateway_url,
            "owner_address": config.gateway.owner_address,
        },
        "app": {
            "chat_app_name": config.chat_app_name,
            "agent_app_name": config.agent_app_name,
            "use_mutable_refs": config.use_mutable_refs,
            "history_limit": config.history_limit,
            "fetch_concurrency": config.fetch_concurrency,
            "user_address": config.user_address,
        },
        "timeouts": {
            "request": config.request_timeout,
            "completion": config.completion_timeout,
        },
        "completion": completion,
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(config_dir: Optional[Path] = None) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    Environment overrides are applied after loading.
    """
    config_dir = config_dir or get_config_dir()
    if (config_dir / CONFIG_FILENAME).exists():
        config = load_config(config_dir)
    else:
        config = StoreConfig(path=config_dir)
        save_config(config)
    return apply_env_overrides(config)
