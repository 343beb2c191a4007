from functools import lru_cache
from typing import Optional

import structlog
from fastapi import Depends, Query
from starlette.requests import HTTPConnection

from cilikube.config import get_app_config, get_settings
from cilikube.db import get_session_factory
from cilikube.services.cluster_store import ClusterStore, MemoryClusterStore, SqlClusterStore
from cilikube.services.k8s.client_factory import ClientFactory
from cilikube.services.k8s.registry import ClusterRegistry
from cilikube.services.k8s.resolver import ClientResolver, ResolvedCluster


@lru_cache(maxsize=1)
def get_cluster_store() -> ClusterStore:
    app_config = get_app_config()
    if app_config.database.enabled:
        key = get_settings().fernet_key or app_config.database.encryption_key
        return SqlClusterStore(get_session_factory(), encryption_key=key)
    return MemoryClusterStore()


@lru_cache(maxsize=1)
def get_client_factory() -> ClientFactory:
    return ClientFactory(get_app_config().kubernetes)


@lru_cache(maxsize=1)
def get_cluster_registry() -> ClusterRegistry:
    app_config = get_app_config()
    k8s = app_config.kubernetes
    return ClusterRegistry(
        get_cluster_store(),
        get_client_factory(),
        file_clusters=app_config.clusters,
        active_cluster_id=app_config.server.active_cluster_id,
        refresh_initial_delay=k8s.refresh_initial_delay,
        refresh_interval=k8s.refresh_interval,
        probe_timeout=k8s.probe_timeout,
    )


def get_client_resolver(registry: ClusterRegistry = Depends(get_cluster_registry)) -> ClientResolver:
    return ClientResolver(registry)


def bind_cluster(connection: HTTPConnection, cluster_id: str) -> None:
    """Attach the resolved cluster id to the log context and the response."""
    structlog.contextvars.bind_contextvars(cluster_id=cluster_id)
    connection.state.cluster_id = cluster_id


def resolve_cluster(
    connection: HTTPConnection,
    cluster_id: Optional[str] = Query(default=None, alias="clusterId"),
    cluster_name: Optional[str] = Query(default=None, alias="clusterName"),
    resolver: ClientResolver = Depends(get_client_resolver),
) -> ResolvedCluster:
    resolved = resolver.resolve(cluster_id, cluster_name)
    bind_cluster(connection, resolved.id)
    return resolved
