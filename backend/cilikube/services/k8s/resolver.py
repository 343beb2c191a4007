from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from cilikube.exceptions import ClusterSelectionMissing, NoActiveCluster
from cilikube.services.k8s.client_factory import ClusterClient
from cilikube.services.k8s.registry import ClusterRegistry

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ResolvedCluster:
    id: str
    client: ClusterClient


class ClientResolver:
    """Pick the target cluster for a request: explicit id, then name, then active."""

    def __init__(self, registry: ClusterRegistry) -> None:
        self._registry = registry

    def resolve(self, cluster_id: Optional[str] = None, cluster_name: Optional[str] = None) -> ResolvedCluster:
        if cluster_id:
            target = cluster_id
        elif cluster_name:
            target = self._registry.resolve_name(cluster_name)
        else:
            try:
                target, _ = self._registry.get_active()
            except NoActiveCluster as exc:
                raise ClusterSelectionMissing(
                    "no clusterId given and no active cluster is selected"
                ) from exc

        client = self._registry.get_client(target)
        logger.debug("cluster.resolved", cluster_id=target)
        return ResolvedCluster(id=target, client=client)
