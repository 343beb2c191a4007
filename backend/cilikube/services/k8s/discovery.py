from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any

import structlog
from cachetools import TTLCache
from kubernetes import client
from kubernetes.client import ApiClient
from kubernetes.client.exceptions import ApiException

from cilikube.exceptions import UpstreamNotFound, classify_api_exception

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class APIResourceInfo:
    group: str
    version: str
    plural: str
    kind: str
    namespaced: bool
    verbs: tuple[str, ...] = field(default_factory=tuple)

    @property
    def group_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version


def _group_version(group: str, version: str) -> str:
    return f"{group}/{version}" if group else version


def _resource_path(group_version: str) -> str:
    return f"/api/{group_version}" if "/" not in group_version else f"/apis/{group_version}"


class DiscoveryCache:
    """Server version and preferred API resources of one cluster.

    Group-versions are fetched once and kept for ``ttl`` seconds; a lookup
    miss re-fetches only the affected group-version.
    """

    def __init__(self, api_client: ApiClient, ttl: float = 600.0, timeout: float = 10.0) -> None:
        self._api_client = api_client
        self._timeout = timeout
        self._resources: TTLCache = TTLCache(maxsize=512, ttl=ttl)
        self._preferred: dict[str, str] = {}
        self._lock = threading.Lock()

    def server_version(self, timeout: float | None = None) -> str:
        info = client.VersionApi(self._api_client).get_code(_request_timeout=timeout or self._timeout)
        return getattr(info, "git_version", None) or "unknown"

    def _get_json(self, path: str) -> Any:
        return self._api_client.call_api(
            path,
            "GET",
            header_params={"Accept": "application/json"},
            response_type="object",
            auth_settings=["BearerToken"],
            _return_http_data_only=True,
            _request_timeout=self._timeout,
        )

    def _fetch_group_version(self, group: str, version: str) -> dict[str, APIResourceInfo]:
        data = self._get_json(_resource_path(_group_version(group, version))) or {}
        resources: dict[str, APIResourceInfo] = {}
        for item in data.get("resources") or []:
            plural = item.get("name") or ""
            # Subresources such as pods/log are not addressable on their own
            if not plural or "/" in plural:
                continue
            resources[plural] = APIResourceInfo(
                group=group,
                version=version,
                plural=plural,
                kind=item.get("kind") or "",
                namespaced=bool(item.get("namespaced")),
                verbs=tuple(item.get("verbs") or ()),
            )
        with self._lock:
            self._resources[_group_version(group, version)] = resources
        return resources

    def refresh(self) -> int:
        """Fetch all preferred group-versions; returns the resource count."""
        preferred: dict[str, str] = {"": "v1"}
        groups = self._get_json("/apis") or {}
        for group in groups.get("groups") or []:
            name = group.get("name")
            pv = (group.get("preferredVersion") or {}).get("version")
            if name and pv:
                preferred[name] = pv

        total = 0
        for group, version in preferred.items():
            try:
                total += len(self._fetch_group_version(group, version))
            except ApiException as exc:
                # Aggregated APIs may be down; keep the rest of the map
                logger.warning(
                    "discovery.group_unavailable",
                    group_version=_group_version(group, version),
                    status=exc.status,
                )
        with self._lock:
            self._preferred = preferred
        return total

    def preferred_resources(self) -> list[APIResourceInfo]:
        with self._lock:
            pairs = list(self._preferred.items())
            cached = {gv: dict(res) for gv, res in self._resources.items()}
        out: list[APIResourceInfo] = []
        for group, version in pairs:
            out.extend(cached.get(_group_version(group, version), {}).values())
        return out

    def lookup(self, group: str, version: str, plural: str) -> APIResourceInfo:
        gv = _group_version(group, version)
        with self._lock:
            cached = self._resources.get(gv)
        if cached is not None and plural in cached:
            return cached[plural]

        try:
            fetched = self._fetch_group_version(group, version)
        except ApiException as exc:
            if exc.status == 404:
                raise UpstreamNotFound(f"API group version {gv} is not served by the cluster") from exc
            raise classify_api_exception(exc) from exc
        if plural not in fetched:
            raise UpstreamNotFound(f"resource {plural!r} not found in {gv}")
        return fetched[plural]
