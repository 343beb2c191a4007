"""Generic routes over the built-in resource kinds."""
import json
from collections.abc import AsyncIterator
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import StreamingResponse

from cilikube.core.validators import validate_namespace, validate_resource_name
from cilikube.dependencies import resolve_cluster
from cilikube.exceptions import ValidationError
from cilikube.schemas.resources import ResourcePage
from cilikube.services.k8s.resolver import ResolvedCluster
from cilikube.services.k8s.resources import ResourceGateway, typed_gateway

router = APIRouter(tags=["resources"])

NDJSON_MEDIA_TYPE = "application/x-ndjson"


async def _ndjson(events: AsyncIterator[dict[str, Any]]) -> AsyncIterator[str]:
    async for event in events:
        yield json.dumps(event, default=str) + "\n"


async def watch_response(
    gateway: ResourceGateway,
    cluster: ResolvedCluster,
    namespace: Optional[str],
    *,
    label_selector: Optional[str] = None,
    resource_version: Optional[str] = None,
    timeout_seconds: Optional[int] = None,
    name: Optional[str] = None,
) -> StreamingResponse:
    events = await gateway.watch(
        namespace,
        label_selector=label_selector,
        resource_version=resource_version,
        timeout_seconds=timeout_seconds,
        name=name,
    )
    return StreamingResponse(
        _ndjson(events),
        media_type=NDJSON_MEDIA_TYPE,
        headers={"X-Cluster-ID": cluster.id},
    )


def _cluster_scoped(cluster: ResolvedCluster, kind: str) -> ResourceGateway:
    gateway = typed_gateway(cluster, kind)
    if gateway.namespaced:
        raise ValidationError(
            f"{kind} is namespaced; use /namespaces/{{namespace}}/{kind}/{{name}}",
            cluster_id=cluster.id,
        )
    return gateway


def _namespaced(cluster: ResolvedCluster, namespace: str, kind: str) -> ResourceGateway:
    validate_namespace(namespace)
    gateway = typed_gateway(cluster, kind)
    if not gateway.namespaced:
        raise ValidationError(f"{kind} is cluster-scoped; use /{kind}", cluster_id=cluster.id)
    return gateway


@router.get("/namespaces/{namespace}/{kind}", summary="List namespaced resources, or watch with ?watch=true")
async def list_namespaced(
    namespace: str,
    kind: str,
    label_selector: Optional[str] = Query(default=None, alias="labelSelector"),
    field_selector: Optional[str] = Query(default=None, alias="fieldSelector"),
    limit: int = Query(default=0, ge=0),
    continue_token: Optional[str] = Query(default=None, alias="continue"),
    watch: bool = Query(default=False),
    resource_version: Optional[str] = Query(default=None, alias="resourceVersion"),
    timeout_seconds: Optional[int] = Query(default=None, alias="timeoutSeconds", ge=1),
    cluster: ResolvedCluster = Depends(resolve_cluster),
):
    gateway = _namespaced(cluster, namespace, kind)
    if watch:
        return await watch_response(
            gateway,
            cluster,
            namespace,
            label_selector=label_selector,
            resource_version=resource_version,
            timeout_seconds=timeout_seconds,
        )
    page = await gateway.list(
        namespace,
        label_selector=label_selector,
        field_selector=field_selector,
        limit=limit,
        continue_token=continue_token,
    )
    return ResourcePage.model_validate(page).model_dump(by_alias=True)


@router.post("/namespaces/{namespace}/{kind}", summary="Create a namespaced resource", status_code=201)
async def create_namespaced(
    namespace: str,
    kind: str,
    body: dict[str, Any] = Body(...),
    cluster: ResolvedCluster = Depends(resolve_cluster),
) -> dict[str, Any]:
    return await _namespaced(cluster, namespace, kind).create(namespace, body)


@router.get("/namespaces/{namespace}/{kind}/{name}/watch", summary="Watch a single namespaced resource")
async def watch_namespaced_object(
    namespace: str,
    kind: str,
    name: str,
    resource_version: Optional[str] = Query(default=None, alias="resourceVersion"),
    timeout_seconds: Optional[int] = Query(default=None, alias="timeoutSeconds", ge=1),
    cluster: ResolvedCluster = Depends(resolve_cluster),
) -> StreamingResponse:
    validate_resource_name(name)
    gateway = _namespaced(cluster, namespace, kind)
    return await watch_response(
        gateway,
        cluster,
        namespace,
        resource_version=resource_version,
        timeout_seconds=timeout_seconds,
        name=name,
    )


@router.get("/namespaces/{namespace}/{kind}/{name}", summary="Get a namespaced resource")
async def get_namespaced(
    namespace: str,
    kind: str,
    name: str,
    cluster: ResolvedCluster = Depends(resolve_cluster),
) -> dict[str, Any]:
    validate_resource_name(name)
    return await _namespaced(cluster, namespace, kind).get(namespace, name)


@router.put("/namespaces/{namespace}/{kind}/{name}", summary="Replace a namespaced resource")
async def update_namespaced(
    namespace: str,
    kind: str,
    name: str,
    body: dict[str, Any] = Body(...),
    cluster: ResolvedCluster = Depends(resolve_cluster),
) -> dict[str, Any]:
    validate_resource_name(name)
    return await _namespaced(cluster, namespace, kind).update(namespace, name, body)


@router.patch("/namespaces/{namespace}/{kind}/{name}", summary="Merge-patch a namespaced resource")
async def patch_namespaced(
    namespace: str,
    kind: str,
    name: str,
    body: dict[str, Any] = Body(...),
    cluster: ResolvedCluster = Depends(resolve_cluster),
) -> dict[str, Any]:
    validate_resource_name(name)
    return await _namespaced(cluster, namespace, kind).patch(namespace, name, body)


@router.delete("/namespaces/{namespace}/{kind}/{name}", summary="Delete a namespaced resource")
async def delete_namespaced(
    namespace: str,
    kind: str,
    name: str,
    cluster: ResolvedCluster = Depends(resolve_cluster),
) -> dict[str, Any]:
    validate_resource_name(name)
    return await _namespaced(cluster, namespace, kind).delete(namespace, name)


@router.get("/{kind}", summary="List cluster-scoped resources or a namespaced kind across namespaces")
async def list_resources(
    kind: str,
    label_selector: Optional[str] = Query(default=None, alias="labelSelector"),
    field_selector: Optional[str] = Query(default=None, alias="fieldSelector"),
    limit: int = Query(default=0, ge=0),
    continue_token: Optional[str] = Query(default=None, alias="continue"),
    watch: bool = Query(default=False),
    resource_version: Optional[str] = Query(default=None, alias="resourceVersion"),
    timeout_seconds: Optional[int] = Query(default=None, alias="timeoutSeconds", ge=1),
    cluster: ResolvedCluster = Depends(resolve_cluster),
):
    gateway = typed_gateway(cluster, kind)
    if watch:
        return await watch_response(
            gateway,
            cluster,
            None,
            label_selector=label_selector,
            resource_version=resource_version,
            timeout_seconds=timeout_seconds,
        )
    page = await gateway.list(
        None,
        label_selector=label_selector,
        field_selector=field_selector,
        limit=limit,
        continue_token=continue_token,
    )
    return ResourcePage.model_validate(page).model_dump(by_alias=True)


@router.post("/{kind}", summary="Create a cluster-scoped resource", status_code=201)
async def create_resource(
    kind: str,
    body: dict[str, Any] = Body(...),
    cluster: ResolvedCluster = Depends(resolve_cluster),
) -> dict[str, Any]:
    return await _cluster_scoped(cluster, kind).create(None, body)


@router.get("/{kind}/{name}", summary="Get a cluster-scoped resource")
async def get_resource(kind: str, name: str, cluster: ResolvedCluster = Depends(resolve_cluster)) -> dict[str, Any]:
    validate_resource_name(name)
    return await _cluster_scoped(cluster, kind).get(None, name)


@router.put("/{kind}/{name}", summary="Replace a cluster-scoped resource")
async def update_resource(
    kind: str,
    name: str,
    body: dict[str, Any] = Body(...),
    cluster: ResolvedCluster = Depends(resolve_cluster),
) -> dict[str, Any]:
    validate_resource_name(name)
    return await _cluster_scoped(cluster, kind).update(None, name, body)


@router.patch("/{kind}/{name}", summary="Merge-patch a cluster-scoped resource")
async def patch_resource(
    kind: str,
    name: str,
    body: dict[str, Any] = Body(...),
    cluster: ResolvedCluster = Depends(resolve_cluster),
) -> dict[str, Any]:
    validate_resource_name(name)
    return await _cluster_scoped(cluster, kind).patch(None, name, body)


@router.delete("/{kind}/{name}", summary="Delete a cluster-scoped resource")
async def delete_resource(kind: str, name: str, cluster: ResolvedCluster = Depends(resolve_cluster)) -> dict[str, Any]:
    validate_resource_name(name)
    return await _cluster_scoped(cluster, kind).delete(None, name)
