"""Per-cluster object counts across the built-in kinds."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Iterable, Optional

import structlog

from cilikube.exceptions import AppException
from cilikube.services.k8s.kinds import BUILTIN_KINDS
from cilikube.services.k8s.resolver import ResolvedCluster
from cilikube.services.k8s.resources import typed_gateway

logger = structlog.get_logger(__name__)


@dataclass
class ResourceSummary:
    counts: dict[str, int] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)


async def _count(cluster: ResolvedCluster, plural: str) -> int:
    page = await typed_gateway(cluster, plural).list(None)
    return len(page["items"])


async def resource_summary(cluster: ResolvedCluster, kinds: Optional[Iterable[str]] = None) -> ResourceSummary:
    """Count objects of each kind across all namespaces.

    A kind that cannot be listed (RBAC, API not served) is reported in
    ``errors`` and left out of ``counts``; the other kinds still count.
    """
    plurals = list(kinds) if kinds is not None else list(BUILTIN_KINDS)
    results = await asyncio.gather(*(_count(cluster, p) for p in plurals), return_exceptions=True)

    summary = ResourceSummary()
    for plural, result in zip(plurals, results):
        if isinstance(result, AppException):
            summary.errors[plural] = result.message
        elif isinstance(result, BaseException):
            raise result
        else:
            summary.counts[plural] = result
    if summary.errors:
        logger.info("summary.partial", cluster_id=cluster.id, failed=sorted(summary.errors))
    return summary
