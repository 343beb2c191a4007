from dataclasses import asdict

from fastapi import APIRouter, Depends, status

from cilikube.dependencies import get_cluster_registry
from cilikube.schemas.cluster import (
    ActiveClusterOut,
    ActiveClusterRequest,
    ClusterCreate,
    ClusterDetail,
    ClusterStatusOut,
    ClusterUpdate,
    ConnectionTestOut,
)
from cilikube.services.cluster_store import ClusterRecord
from cilikube.services.k8s.registry import ClusterRegistry, ClusterStatus

router = APIRouter(prefix="/clusters", tags=["clusters"])


def _status_out(cluster: ClusterStatus, active_id: str) -> ClusterStatusOut:
    return ClusterStatusOut(**asdict(cluster), is_active=bool(active_id) and cluster.id == active_id)


@router.get("", response_model=list[ClusterStatusOut], summary="List clusters with their health")
async def list_clusters(registry: ClusterRegistry = Depends(get_cluster_registry)) -> list[ClusterStatusOut]:
    active_id = registry.active_id
    return [_status_out(c, active_id) for c in registry.list_clusters()]


@router.post(
    "",
    response_model=ClusterStatusOut,
    status_code=status.HTTP_201_CREATED,
    summary="Register a cluster from a base64 kubeconfig",
)
async def create_cluster(
    payload: ClusterCreate,
    registry: ClusterRegistry = Depends(get_cluster_registry),
) -> ClusterStatusOut:
    record = ClusterRecord(
        name=payload.name,
        kubeconfig=payload.kubeconfig_bytes(),
        environment=payload.environment,
        provider=payload.provider,
        description=payload.description,
        region=payload.region,
        labels=dict(payload.labels),
    )
    created = await registry.add_cluster(record)
    return _status_out(created, registry.active_id)


@router.get("/active", response_model=ActiveClusterOut, summary="Currently active cluster")
async def get_active_cluster(registry: ClusterRegistry = Depends(get_cluster_registry)) -> ActiveClusterOut:
    active_id, _ = registry.get_active()
    return ActiveClusterOut(id=active_id, name=registry.get_status(active_id).name)


@router.post("/active", response_model=ClusterStatusOut, summary="Select the active cluster by id or name")
async def set_active_cluster(
    payload: ActiveClusterRequest,
    registry: ClusterRegistry = Depends(get_cluster_registry),
) -> ClusterStatusOut:
    if payload.id is not None:
        selected = registry.set_active(payload.id)
    else:
        selected = registry.set_active_by_name(payload.name or "")
    return _status_out(selected, registry.active_id)


@router.post("/refresh", response_model=list[ClusterStatusOut], summary="Probe every cluster now")
async def refresh_clusters(registry: ClusterRegistry = Depends(get_cluster_registry)) -> list[ClusterStatusOut]:
    statuses = await registry.refresh()
    active_id = registry.active_id
    return [_status_out(c, active_id) for c in statuses]


@router.get("/{cluster_id}", response_model=ClusterDetail, summary="Cluster status and metadata")
async def get_cluster(cluster_id: str, registry: ClusterRegistry = Depends(get_cluster_registry)) -> ClusterDetail:
    cluster = registry.get_status(cluster_id)
    record = registry.get_record(cluster_id)
    return ClusterDetail(
        **asdict(cluster),
        is_active=cluster.id == registry.active_id,
        config_path=record.config_path,
        admin_status=record.status,
        labels=record.labels,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


@router.put("/{cluster_id}", response_model=ClusterStatusOut, summary="Update a database-sourced cluster")
async def update_cluster(
    cluster_id: str,
    payload: ClusterUpdate,
    registry: ClusterRegistry = Depends(get_cluster_registry),
) -> ClusterStatusOut:
    updated = await registry.update_cluster(cluster_id, **payload.changes())
    return _status_out(updated, registry.active_id)


@router.delete("/{cluster_id}", response_model=dict, summary="Remove a database-sourced cluster")
async def delete_cluster(cluster_id: str, registry: ClusterRegistry = Depends(get_cluster_registry)) -> dict:
    await registry.remove_cluster(cluster_id)
    return {"id": cluster_id, "activeId": registry.active_id}


@router.post("/{cluster_id}/test", response_model=ConnectionTestOut, summary="Test connectivity to a cluster")
async def test_cluster_connection(
    cluster_id: str,
    registry: ClusterRegistry = Depends(get_cluster_registry),
) -> ConnectionTestOut:
    return ConnectionTestOut(**await registry.test_connection(cluster_id))
