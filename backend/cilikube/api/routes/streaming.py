from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, WebSocket

from cilikube.core.validators import validate_namespace, validate_resource_name
from cilikube.dependencies import bind_cluster, get_client_resolver
from cilikube.exceptions import AppException
from cilikube.services.k8s.resolver import ClientResolver, ResolvedCluster
from cilikube.services.k8s.streaming import (
    EXEC_FAILURE_TEMPLATE,
    WS_POLICY_VIOLATION,
    ExecSession,
    PodLogStreamer,
    open_pod_exec,
    resolve_command,
    send_error_and_close,
)

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["streaming"])


async def resolve_or_reject(
    websocket: WebSocket,
    resolver: ClientResolver,
    cluster_id: Optional[str],
    cluster_name: Optional[str],
    *,
    error_template: str = "Error: {reason}",
) -> Optional[ResolvedCluster]:
    """Resolve the target cluster; on failure accept, report and close the socket."""
    try:
        cluster = resolver.resolve(cluster_id, cluster_name)
    except AppException as exc:
        await websocket.accept()
        await send_error_and_close(websocket, error_template.format(reason=exc.message), WS_POLICY_VIOLATION)
        return None
    bind_cluster(websocket, cluster.id)
    return cluster


@router.websocket("/namespaces/{namespace}/pods/{name}/logs")
async def pod_logs(
    websocket: WebSocket,
    namespace: str,
    name: str,
    container: Optional[str] = Query(default=None),
    follow: bool = Query(default=False),
    timestamps: bool = Query(default=False),
    previous: bool = Query(default=False),
    tail_lines: Optional[int] = Query(default=None, alias="tailLines"),
    cluster_id: Optional[str] = Query(default=None, alias="clusterId"),
    cluster_name: Optional[str] = Query(default=None, alias="clusterName"),
    resolver: ClientResolver = Depends(get_client_resolver),
) -> None:
    cluster = await resolve_or_reject(websocket, resolver, cluster_id, cluster_name)
    if cluster is None:
        return
    streamer = PodLogStreamer(
        websocket,
        cluster.client,
        cluster_id=cluster.id,
        namespace=namespace,
        pod=name,
        container=container,
        follow=follow,
        timestamps=timestamps,
        previous=previous,
        tail_lines=tail_lines,
    )
    await streamer.run()


@router.websocket("/namespaces/{namespace}/pods/{name}/exec")
async def pod_exec(
    websocket: WebSocket,
    namespace: str,
    name: str,
    container: Optional[str] = Query(default=None),
    command: list[str] = Query(default=[]),
    shell: Optional[str] = Query(default=None),
    stdin: bool = Query(default=True),
    stdout: bool = Query(default=True),
    stderr: bool = Query(default=True),
    tty: bool = Query(default=True),
    cluster_id: Optional[str] = Query(default=None, alias="clusterId"),
    cluster_name: Optional[str] = Query(default=None, alias="clusterName"),
    resolver: ClientResolver = Depends(get_client_resolver),
) -> None:
    cluster = await resolve_or_reject(
        websocket, resolver, cluster_id, cluster_name, error_template=EXEC_FAILURE_TEMPLATE
    )
    if cluster is None:
        return
    cmd = resolve_command(command, shell)
    owned_clients = []

    def opener():
        validate_namespace(namespace)
        validate_resource_name(name, "pod name")
        upstream, api_client = open_pod_exec(
            cluster.client,
            namespace=namespace,
            pod=name,
            container=container,
            command=cmd,
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
            tty=tty,
        )
        owned_clients.append(api_client)
        return upstream

    def release() -> None:
        for api_client in owned_clients:
            api_client.close()

    logger.info("stream.exec_requested", namespace=namespace, pod=name, command=cmd, tty=tty)
    session = ExecSession(websocket, opener, cluster_id=cluster.id, on_finish=release)
    await session.run()
