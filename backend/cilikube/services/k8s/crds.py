from __future__ import annotations

import asyncio
from typing import Any

import urllib3
from kubernetes.client.exceptions import ApiException

from cilikube.exceptions import AppException, UpstreamError, ValidationError, classify_api_exception
from cilikube.schemas.resources import CRDCondition, CRDDetail, CRDNames, CRDSummary, CRDVersion
from cilikube.services.k8s.resolver import ResolvedCluster
from cilikube.services.k8s.resources import CustomResource, ResourceGateway


def _names(spec: dict[str, Any]) -> CRDNames:
    names = spec.get("names") or {}
    return CRDNames(
        kind=names.get("kind") or "",
        plural=names.get("plural") or "",
        singular=names.get("singular") or "",
        list_kind=names.get("listKind") or "",
        short_names=list(names.get("shortNames") or []),
        categories=list(names.get("categories") or []),
    )


def _summary(crd: dict[str, Any]) -> CRDSummary:
    metadata = crd.get("metadata") or {}
    spec = crd.get("spec") or {}
    names = spec.get("names") or {}
    versions = spec.get("versions") or []
    storage = next((v.get("name") for v in versions if v.get("storage")), "")
    return CRDSummary(
        name=metadata.get("name") or "",
        group=spec.get("group") or "",
        kind=names.get("kind") or "",
        plural=names.get("plural") or "",
        scope=spec.get("scope") or "",
        versions=[v.get("name") for v in versions if v.get("served") and v.get("name")],
        storage_version=storage or "",
        created_at=metadata.get("creationTimestamp"),
    )


class CRDService:
    """Read installed CustomResourceDefinitions of a cluster."""

    def __init__(self, cluster: ResolvedCluster) -> None:
        self._cluster = cluster
        self._api = cluster.client.api("ApiextensionsV1Api")

    async def _call(self, fn, *args: Any) -> Any:
        client = self._cluster.client
        await client.rate_limiter.acquire()
        try:
            result = await asyncio.to_thread(fn, *args)
        except ApiException as exc:
            raise classify_api_exception(exc, self._cluster.id) from exc
        except urllib3.exceptions.HTTPError as exc:
            raise UpstreamError(f"request to {client.server} failed: {exc}", cluster_id=self._cluster.id) from exc
        return client.sanitize(result)

    async def list_crds(self) -> list[CRDSummary]:
        data = await self._call(self._api.list_custom_resource_definition)
        items = [_summary(item) for item in (data or {}).get("items") or []]
        items.sort(key=lambda s: s.name)
        return items

    async def get_crd(self, name: str) -> CRDDetail:
        crd = await self._call(self._api.read_custom_resource_definition, name) or {}
        summary = _summary(crd)
        spec = crd.get("spec") or {}
        status = crd.get("status") or {}
        return CRDDetail(
            **summary.model_dump(),
            names=_names(spec),
            version_details=[
                CRDVersion(
                    name=v.get("name") or "",
                    served=bool(v.get("served")),
                    storage=bool(v.get("storage")),
                    deprecated=bool(v.get("deprecated")),
                    deprecation_warning=v.get("deprecationWarning"),
                )
                for v in spec.get("versions") or []
            ],
            conditions=[
                CRDCondition(
                    type=c.get("type") or "",
                    status=c.get("status") or "",
                    reason=c.get("reason"),
                    message=c.get("message"),
                    last_transition_time=c.get("lastTransitionTime"),
                )
                for c in status.get("conditions") or []
            ],
            labels=dict((crd.get("metadata") or {}).get("labels") or {}),
            annotations=dict((crd.get("metadata") or {}).get("annotations") or {}),
        )


async def custom_gateway(
    cluster: ResolvedCluster,
    group: str,
    version: str,
    plural: str,
) -> ResourceGateway:
    """Gateway over a custom resource, scoped from the cached discovery map."""
    if not group or not version or not plural:
        raise ValidationError("group, version and plural are required", cluster_id=cluster.id)
    try:
        info = await asyncio.to_thread(cluster.client.discovery.lookup, group, version, plural)
    except AppException as exc:
        exc.details.setdefault("cluster_id", cluster.id)
        raise
    except urllib3.exceptions.HTTPError as exc:
        raise UpstreamError(f"discovery on {cluster.client.server} failed: {exc}", cluster_id=cluster.id) from exc
    return ResourceGateway(cluster.client, CustomResource(cluster.client, info), cluster.id)
