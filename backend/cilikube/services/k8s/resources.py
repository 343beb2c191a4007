from __future__ import annotations

import asyncio
import copy
import json
from collections.abc import AsyncIterator, Callable
from typing import Any, Optional, Protocol

import structlog
import urllib3
from kubernetes.client.exceptions import ApiException
from kubernetes.watch.watch import iter_resp_lines

from cilikube.exceptions import UpstreamError, ValidationError, classify_api_exception
from cilikube.services.k8s.client_factory import ClusterClient
from cilikube.services.k8s.discovery import APIResourceInfo
from cilikube.services.k8s.kinds import ResourceKind, get_kind
from cilikube.services.k8s.resolver import ResolvedCluster
from cilikube.services.k8s.streaming import abort_response

logger = structlog.get_logger(__name__)


class ResourceHandle(Protocol):
    """Blocking verb bindings for one resource kind on one cluster."""

    kind: str
    api_version: str
    namespaced: bool

    def list(self, namespace: Optional[str], **kwargs: Any) -> Any: ...

    def read(self, namespace: Optional[str], name: str) -> Any: ...

    def create(self, namespace: Optional[str], body: dict) -> Any: ...

    def replace(self, namespace: Optional[str], name: str, body: dict) -> Any: ...

    def delete(self, namespace: Optional[str], name: str) -> Any: ...


class TypedResource:
    """Dispatch verbs to the generated typed API methods of a built-in kind."""

    def __init__(self, client: ClusterClient, kind: ResourceKind) -> None:
        self._client = client
        self._kind = kind
        self._api = client.api(kind.api_class)
        self.kind = kind.kind
        self.api_version = kind.api_version
        self.namespaced = kind.namespaced

    def _method(self, verb: str, namespaced: bool) -> Callable[..., Any]:
        stem = self._kind.stem
        name = f"{verb}_namespaced_{stem}" if namespaced else f"{verb}_{stem}"
        return getattr(self._api, name)

    def list(self, namespace: Optional[str], **kwargs: Any) -> Any:
        if not self.namespaced:
            return self._method("list", False)(**kwargs)
        if namespace:
            return self._method("list", True)(namespace, **kwargs)
        return getattr(self._api, f"list_{self._kind.stem}_for_all_namespaces")(**kwargs)

    def read(self, namespace: Optional[str], name: str) -> Any:
        if self.namespaced:
            return self._method("read", True)(name, namespace)
        return self._method("read", False)(name)

    def create(self, namespace: Optional[str], body: dict) -> Any:
        if self.namespaced:
            return self._method("create", True)(namespace, body)
        return self._method("create", False)(body)

    def replace(self, namespace: Optional[str], name: str, body: dict) -> Any:
        if self.namespaced:
            return self._method("replace", True)(name, namespace, body)
        return self._method("replace", False)(name, body)

    def delete(self, namespace: Optional[str], name: str) -> Any:
        if self.namespaced:
            return self._method("delete", True)(name, namespace)
        return self._method("delete", False)(name)


class CustomResource:
    """Dispatch verbs through the dynamic facet for a discovered resource."""

    def __init__(self, client: ClusterClient, info: APIResourceInfo) -> None:
        self._api = client.custom_objects
        self._info = info
        self.kind = info.kind
        self.api_version = info.group_version
        self.namespaced = info.namespaced

    def list(self, namespace: Optional[str], **kwargs: Any) -> Any:
        i = self._info
        if self.namespaced and namespace:
            return self._api.list_namespaced_custom_object(i.group, i.version, namespace, i.plural, **kwargs)
        return self._api.list_cluster_custom_object(i.group, i.version, i.plural, **kwargs)

    def read(self, namespace: Optional[str], name: str) -> Any:
        i = self._info
        if self.namespaced:
            return self._api.get_namespaced_custom_object(i.group, i.version, namespace, i.plural, name)
        return self._api.get_cluster_custom_object(i.group, i.version, i.plural, name)

    def create(self, namespace: Optional[str], body: dict) -> Any:
        i = self._info
        if self.namespaced:
            return self._api.create_namespaced_custom_object(i.group, i.version, namespace, i.plural, body)
        return self._api.create_cluster_custom_object(i.group, i.version, i.plural, body)

    def replace(self, namespace: Optional[str], name: str, body: dict) -> Any:
        i = self._info
        if self.namespaced:
            return self._api.replace_namespaced_custom_object(i.group, i.version, namespace, i.plural, name, body)
        return self._api.replace_cluster_custom_object(i.group, i.version, i.plural, name, body)

    def delete(self, namespace: Optional[str], name: str) -> Any:
        i = self._info
        if self.namespaced:
            return self._api.delete_namespaced_custom_object(i.group, i.version, namespace, i.plural, name)
        return self._api.delete_cluster_custom_object(i.group, i.version, i.plural, name)


def json_merge_patch(target: Any, patch: Any) -> Any:
    """Apply an RFC 7386 merge patch; ``None`` values remove keys."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = dict(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = json_merge_patch(result.get(key), value)
    return result


def expired_event(message: str) -> dict[str, Any]:
    return {
        "type": "ERROR",
        "object": {
            "kind": "Status",
            "apiVersion": "v1",
            "status": "Failure",
            "reason": "Expired",
            "code": 410,
            "message": message,
        },
    }


class ResourceGateway:
    """List/get/create/update/patch/delete/watch over one resource handle.

    Every call is a live upstream request executed in a worker thread after
    taking a token from the cluster's rate limiter. Upstream failures are
    classified and annotated with the cluster id.
    """

    def __init__(self, client: ClusterClient, handle: ResourceHandle, cluster_id: Optional[str] = None) -> None:
        self._client = client
        self._handle = handle
        self._cluster_id = cluster_id

    @property
    def namespaced(self) -> bool:
        return self._handle.namespaced

    def _namespace_for(self, namespace: Optional[str]) -> Optional[str]:
        if not self._handle.namespaced:
            return None
        if not namespace:
            raise ValidationError(f"namespace is required for {self._handle.kind}", cluster_id=self._cluster_id)
        return namespace

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        await self._client.rate_limiter.acquire()
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ApiException as exc:
            raise classify_api_exception(exc, self._cluster_id) from exc
        except urllib3.exceptions.HTTPError as exc:
            raise UpstreamError(f"request to {self._client.server} failed: {exc}", cluster_id=self._cluster_id) from exc

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        data = obj if isinstance(obj, dict) else self._client.sanitize(obj)
        return data or {}

    async def list(
        self,
        namespace: Optional[str] = None,
        *,
        label_selector: Optional[str] = None,
        field_selector: Optional[str] = None,
        limit: int = 0,
        continue_token: Optional[str] = None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if label_selector:
            kwargs["label_selector"] = label_selector
        if field_selector:
            kwargs["field_selector"] = field_selector
        if limit and limit > 0:
            kwargs["limit"] = limit
        if continue_token:
            kwargs["_continue"] = continue_token

        ns = namespace if self._handle.namespaced else None
        data = self._to_dict(await self._call(self._handle.list, ns, **kwargs))
        metadata = data.get("metadata") or {}
        items = data.get("items") or []
        for item in items:
            if isinstance(item, dict):
                item.setdefault("kind", self._handle.kind)
                item.setdefault("apiVersion", self._handle.api_version)
        return {
            "items": items,
            "continue": metadata.get("continue") or "",
            "resourceVersion": metadata.get("resourceVersion") or "",
        }

    async def get(self, namespace: Optional[str], name: str) -> dict[str, Any]:
        ns = self._namespace_for(namespace)
        return self._to_dict(await self._call(self._handle.read, ns, name))

    async def create(self, namespace: Optional[str], body: dict[str, Any]) -> dict[str, Any]:
        ns = self._namespace_for(namespace)
        if not isinstance(body, dict):
            raise ValidationError("request body must be a JSON object", cluster_id=self._cluster_id)
        return self._to_dict(await self._call(self._handle.create, ns, body))

    async def update(self, namespace: Optional[str], name: str, body: dict[str, Any]) -> dict[str, Any]:
        ns = self._namespace_for(namespace)
        if not isinstance(body, dict):
            raise ValidationError("request body must be a JSON object", cluster_id=self._cluster_id)
        return self._to_dict(await self._call(self._handle.replace, ns, name, body))

    async def patch(self, namespace: Optional[str], name: str, partial: dict[str, Any]) -> dict[str, Any]:
        """Fetch, merge, then replace with the fetched resourceVersion."""
        if not isinstance(partial, dict):
            raise ValidationError("patch body must be a JSON object", cluster_id=self._cluster_id)
        current = await self.get(namespace, name)
        merged = json_merge_patch(current, partial)
        metadata = merged.setdefault("metadata", {})
        resource_version = (current.get("metadata") or {}).get("resourceVersion")
        if resource_version:
            metadata["resourceVersion"] = resource_version
        else:
            metadata.pop("resourceVersion", None)
        return await self.update(namespace, name, merged)

    async def delete(self, namespace: Optional[str], name: str) -> dict[str, Any]:
        ns = self._namespace_for(namespace)
        return self._to_dict(await self._call(self._handle.delete, ns, name))

    async def watch(
        self,
        namespace: Optional[str] = None,
        *,
        label_selector: Optional[str] = None,
        resource_version: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
        name: Optional[str] = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Open a watch and return a lazy stream of ``{type, object}`` events.

        Opening errors are raised here, before any event is consumed. A
        history-window miss (HTTP 410) is reported as one ``ERROR`` event with
        reason ``Expired`` that ends the stream; the caller must relist.
        """
        kwargs: dict[str, Any] = {"watch": True, "allow_watch_bookmarks": True, "_preload_content": False}
        if label_selector:
            kwargs["label_selector"] = label_selector
        if name:
            kwargs["field_selector"] = f"metadata.name={name}"
        if resource_version:
            kwargs["resource_version"] = resource_version
        if timeout_seconds:
            kwargs["timeout_seconds"] = timeout_seconds
        ns = namespace if self._handle.namespaced else None

        await self._client.rate_limiter.acquire()
        try:
            resp = await asyncio.to_thread(self._handle.list, ns, **kwargs)
        except ApiException as exc:
            if exc.status == 410:
                return _single(expired_event(exc.reason or "resource version too old"))
            raise classify_api_exception(exc, self._cluster_id) from exc
        except urllib3.exceptions.HTTPError as exc:
            raise UpstreamError(f"watch on {self._client.server} failed: {exc}", cluster_id=self._cluster_id) from exc
        logger.debug("resources.watch_opened", cluster_id=self._cluster_id, kind=self._handle.kind)
        return self._events(resp)

    async def _events(self, resp: Any) -> AsyncIterator[dict[str, Any]]:
        lines = iter_resp_lines(resp)
        try:
            while True:
                try:
                    line = await asyncio.to_thread(next, lines, None)
                except (urllib3.exceptions.ProtocolError, urllib3.exceptions.ReadTimeoutError, OSError) as exc:
                    logger.debug("resources.watch_stream_closed", cluster_id=self._cluster_id, error=str(exc))
                    break
                if line is None:
                    break
                if not line.strip():
                    continue
                try:
                    event = json.loads(line)
                except ValueError:
                    logger.warning("resources.watch_bad_line", cluster_id=self._cluster_id)
                    continue
                event_type = event.get("type")
                obj = event.get("object") or {}
                if event_type == "ERROR" and obj.get("code") == 410:
                    yield expired_event(obj.get("message") or "resource version too old")
                    break
                yield {"type": event_type, "object": obj}
        finally:
            abort_response(resp)


async def _single(event: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
    yield event


def typed_gateway(cluster: ResolvedCluster, plural: str) -> ResourceGateway:
    kind = get_kind(plural)
    return ResourceGateway(cluster.client, TypedResource(cluster.client, kind), cluster.id)
