from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query

from cilikube.core.validators import validate_namespace, validate_resource_name
from cilikube.dependencies import resolve_cluster
from cilikube.schemas.resources import CRDDetail, CRDSummary, ResourcePage
from cilikube.services.k8s.crds import CRDService, custom_gateway
from cilikube.services.k8s.resolver import ResolvedCluster

router = APIRouter(prefix="/crds", tags=["crds"])


def _namespace(namespace: Optional[str]) -> Optional[str]:
    if namespace:
        validate_namespace(namespace)
    return namespace or None


@router.get("", response_model=list[CRDSummary], summary="List CustomResourceDefinitions")
async def list_crds(cluster: ResolvedCluster = Depends(resolve_cluster)) -> list[CRDSummary]:
    return await CRDService(cluster).list_crds()


@router.get("/definition/{name}", response_model=CRDDetail, summary="Get a CustomResourceDefinition")
async def get_crd(name: str, cluster: ResolvedCluster = Depends(resolve_cluster)) -> CRDDetail:
    return await CRDService(cluster).get_crd(name)


@router.get("/resources/{group}/{version}/{plural}", response_model=ResourcePage, summary="List custom resources")
async def list_custom_resources(
    group: str,
    version: str,
    plural: str,
    namespace: Optional[str] = Query(default=None),
    label_selector: Optional[str] = Query(default=None, alias="labelSelector"),
    limit: int = Query(default=0, ge=0),
    continue_token: Optional[str] = Query(default=None, alias="continue"),
    cluster: ResolvedCluster = Depends(resolve_cluster),
) -> ResourcePage:
    gateway = await custom_gateway(cluster, group, version, plural)
    page = await gateway.list(
        _namespace(namespace),
        label_selector=label_selector,
        limit=limit,
        continue_token=continue_token,
    )
    return ResourcePage.model_validate(page)


@router.post("/resources/{group}/{version}/{plural}", summary="Create a custom resource", status_code=201)
async def create_custom_resource(
    group: str,
    version: str,
    plural: str,
    namespace: Optional[str] = Query(default=None),
    body: dict[str, Any] = Body(...),
    cluster: ResolvedCluster = Depends(resolve_cluster),
) -> dict[str, Any]:
    gateway = await custom_gateway(cluster, group, version, plural)
    return await gateway.create(_namespace(namespace), body)


@router.get("/resources/{group}/{version}/{plural}/{name}", summary="Get a custom resource")
async def get_custom_resource(
    group: str,
    version: str,
    plural: str,
    name: str,
    namespace: Optional[str] = Query(default=None),
    cluster: ResolvedCluster = Depends(resolve_cluster),
) -> dict[str, Any]:
    validate_resource_name(name)
    gateway = await custom_gateway(cluster, group, version, plural)
    return await gateway.get(_namespace(namespace), name)


@router.put("/resources/{group}/{version}/{plural}/{name}", summary="Replace a custom resource")
async def update_custom_resource(
    group: str,
    version: str,
    plural: str,
    name: str,
    namespace: Optional[str] = Query(default=None),
    body: dict[str, Any] = Body(...),
    cluster: ResolvedCluster = Depends(resolve_cluster),
) -> dict[str, Any]:
    validate_resource_name(name)
    gateway = await custom_gateway(cluster, group, version, plural)
    return await gateway.update(_namespace(namespace), name, body)


@router.patch("/resources/{group}/{version}/{plural}/{name}", summary="Merge-patch a custom resource")
async def patch_custom_resource(
    group: str,
    version: str,
    plural: str,
    name: str,
    namespace: Optional[str] = Query(default=None),
    body: dict[str, Any] = Body(...),
    cluster: ResolvedCluster = Depends(resolve_cluster),
) -> dict[str, Any]:
    validate_resource_name(name)
    gateway = await custom_gateway(cluster, group, version, plural)
    return await gateway.patch(_namespace(namespace), name, body)


@router.delete("/resources/{group}/{version}/{plural}/{name}", summary="Delete a custom resource")
async def delete_custom_resource(
    group: str,
    version: str,
    plural: str,
    name: str,
    namespace: Optional[str] = Query(default=None),
    cluster: ResolvedCluster = Depends(resolve_cluster),
) -> dict[str, Any]:
    validate_resource_name(name)
    gateway = await custom_gateway(cluster, group, version, plural)
    return await gateway.delete(_namespace(namespace), name)
