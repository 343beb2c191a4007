from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, WebSocket
from fastapi.responses import StreamingResponse

from cilikube.api.routes.streaming import resolve_or_reject
from cilikube.dependencies import get_client_resolver, resolve_cluster
from cilikube.services.k8s.proxy import KubernetesProxy
from cilikube.services.k8s.resolver import ClientResolver, ResolvedCluster

router = APIRouter(prefix="/proxy", tags=["proxy"])

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


@router.api_route("/{path:path}", methods=PROXY_METHODS, summary="Pass a request through to the cluster API server")
async def proxy_request(
    path: str,
    request: Request,
    cluster: ResolvedCluster = Depends(resolve_cluster),
) -> StreamingResponse:
    response = await KubernetesProxy(cluster).forward(request, path)
    response.headers["X-Cluster-ID"] = cluster.id
    return response


@router.websocket("/{path:path}")
async def proxy_websocket(
    websocket: WebSocket,
    path: str,
    cluster_id: Optional[str] = Query(default=None, alias="clusterId"),
    cluster_name: Optional[str] = Query(default=None, alias="clusterName"),
    resolver: ClientResolver = Depends(get_client_resolver),
) -> None:
    cluster = await resolve_or_reject(websocket, resolver, cluster_id, cluster_name)
    if cluster is None:
        return
    await KubernetesProxy(cluster).bridge_websocket(websocket, path)
