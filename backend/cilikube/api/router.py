from fastapi import APIRouter

from cilikube.api.routes import clusters, crds, proxy, resources, streaming, summary

api_router = APIRouter(prefix="/api/v1")
# Fixed prefixes first: the generic /{kind} routes would shadow them
api_router.include_router(clusters.router)
api_router.include_router(crds.router)
api_router.include_router(proxy.router)
api_router.include_router(streaming.router)
api_router.include_router(summary.router)
api_router.include_router(resources.router)
