from fastapi import APIRouter, Depends, Response

from cilikube.dependencies import resolve_cluster
from cilikube.services.k8s.resolver import ResolvedCluster
from cilikube.services.k8s.summary import resource_summary

router = APIRouter(prefix="/summary", tags=["summary"])

ERROR_HEADER_PREFIX = "X-Resource-Error-"


def _header_value(message: str) -> str:
    # Header values are latin-1 and single-line
    flat = " ".join(message.split())
    return flat.encode("latin-1", errors="replace").decode("latin-1")


@router.get("", summary="Count objects of each built-in kind in the cluster")
async def get_resource_summary(response: Response, cluster: ResolvedCluster = Depends(resolve_cluster)) -> dict:
    summary = await resource_summary(cluster)
    for plural, message in summary.errors.items():
        response.headers[ERROR_HEADER_PREFIX + plural] = _header_value(message)
    return {"counts": summary.counts, "errors": summary.errors}
