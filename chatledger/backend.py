"""
Pluggable storage backend factory.

Creates the record store, its index and the writer identity from
configuration. The local backend uses a SQLite record log. The gateway
backend talks to the upload service, GraphQL index and gateway over HTTP.
External backends register via the ``chatledger.backends`` entry point group.

External backend packages provide a factory function::

    def create_stores(config: StoreConfig) -> StoreBundle:
        ...

and register it in their pyproject.toml::

    [project.entry-points."chatledger.backends"]
    my-backend = "my_package.backend:create_stores"
"""

from typing import NamedTuple

from .config import StoreConfig
from .protocol import IdentityProvider, RecordIndexProtocol, RecordStoreProtocol

LOCAL_OWNER_ADDRESS = "local"


class StoreBundle(NamedTuple):
    """Collection of storage backends returned by the factory."""
    record_store: RecordStoreProtocol
    index: RecordIndexProtocol
    identity: IdentityProvider
    is_local: bool  # True for filesystem-backed stores


def create_stores(config: StoreConfig) -> StoreBundle:
    """
    Create storage backends from configuration.

    For ``backend = "local"`` (default), one SQLite LocalRecordStore
    serves as both store and index.

    For ``backend = "gateway"``, creates the HTTP record store and
    GraphQL index.

    For other values, loads the backend via the ``chatledger.backends``
    entry point group.
    """
    if config.backend == "local":
        return _create_local_stores(config)
    if config.backend == "gateway":
        return _create_gateway_stores(config)
    return _load_backend(config.backend, config)


def _create_local_stores(config: StoreConfig) -> StoreBundle:
    """Create the default local storage backend."""
    from .identity import StaticIdentity
    from .protocol import Identity
    from .record_store import LocalRecordStore

    address = config.gateway.owner_address or LOCAL_OWNER_ADDRESS
    store = LocalRecordStore(
        config.records_path,
        identity=Identity(address),
        index_delay=config.index_delay,
    )
    return StoreBundle(
        record_store=store,
        index=store,
        identity=StaticIdentity(address),
        is_local=True,
    )


def _create_gateway_stores(config: StoreConfig) -> StoreBundle:
    """Create HTTP clients for the remote store."""
    from .gateway import GatewayRecordStore, GraphQLIndex
    from .identity import StaticIdentity

    gw = config.gateway
    record_store = GatewayRecordStore(
        gw.upload_url,
        gw.gateway_url,
        gw.api_key,
        timeout=config.request_timeout,
    )
    index = GraphQLIndex(gw.graphql_url, timeout=config.request_timeout)
    return StoreBundle(
        record_store=record_store,
        index=index,
        identity=StaticIdentity(gw.owner_address, gw.api_key, require_credential=True),
        is_local=False,
    )


def _load_backend(name: str, config: StoreConfig) -> StoreBundle:
    """Load a backend by entry point name."""
    from importlib.metadata import entry_points

    eps = entry_points(group="chatledger.backends")
    for ep in eps:
        if ep.name == name:
            factory = ep.load()
            return factory(config)

    available = [ep.name for ep in eps]
    if available:
        raise ValueError(
            f"Unknown backend: {name!r}. Available: {available}"
        )
    raise ValueError(
        f"Unknown backend: {name!r}. Use 'local' or 'gateway', "
        "or install a package that registers a chatledger backend."
    )
