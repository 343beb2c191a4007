import asyncio

import pytest

from cilikube.exceptions import Conflict, Forbidden, Invalid, UpstreamNotFound, ValidationError
from cilikube.services.k8s.kinds import get_kind
from cilikube.services.k8s.resources import ResourceGateway, TypedResource, json_merge_patch

from fakes import FakeClusterClient, FakeNodeApi, FakePodApi, api_error, watch_lines


def _pod(name: str, namespace: str = "default", **labels: str) -> dict:
    return {"metadata": {"name": name, "namespace": namespace, "labels": dict(labels)}, "spec": {"containers": []}}


def _make_gateway(plural: str = "pods", pods=None, nodes=None) -> tuple[ResourceGateway, FakeClusterClient]:
    client = FakeClusterClient(apis={"CoreV1Api": FakePodApi(pods)})
    if nodes is not None:
        client.apis["CoreV1Api"] = FakeNodeApi(nodes)
    kind = get_kind(plural)
    return ResourceGateway(client, TypedResource(client, kind), "cluster-1"), client


async def _collect(events) -> list[dict]:
    return [e async for e in events]


class TestList:
    def test_items_carry_kind_and_api_version(self):
        gateway, _ = _make_gateway(pods=[_pod("a"), _pod("b")])
        page = asyncio.run(gateway.list("default"))
        assert [p["metadata"]["name"] for p in page["items"]] == ["a", "b"]
        assert all(p["kind"] == "Pod" and p["apiVersion"] == "v1" for p in page["items"])
        assert page["continue"] == ""
        assert page["resourceVersion"]

    def test_limit_returns_continue_token(self):
        gateway, client = _make_gateway(pods=[_pod("a"), _pod("b"), _pod("c")])
        page = asyncio.run(gateway.list("default", limit=2, continue_token="tok"))
        assert len(page["items"]) == 2
        assert page["continue"] == "next-page"
        _, kwargs = client.apis["CoreV1Api"].calls[-1]
        assert kwargs["limit"] == 2
        assert kwargs["_continue"] == "tok"

    def test_empty_namespace_lists_all_namespaces(self):
        gateway, client = _make_gateway(pods=[_pod("a", "ns1"), _pod("b", "ns2")])
        page = asyncio.run(gateway.list(None))
        assert len(page["items"]) == 2
        assert client.apis["CoreV1Api"].calls[-1][0] == "list_pod_for_all_namespaces"

    def test_cluster_scoped_kind_ignores_namespace(self):
        gateway, _ = _make_gateway("nodes", nodes=["n1", "n2"])
        page = asyncio.run(gateway.list("default"))
        assert [n["kind"] for n in page["items"]] == ["Node", "Node"]

    def test_bad_label_selector_is_invalid(self):
        gateway, _ = _make_gateway(pods=[_pod("a")])
        with pytest.raises(Invalid) as exc_info:
            asyncio.run(gateway.list("default", label_selector="app"))
        assert exc_info.value.cluster_id == "cluster-1"
        assert exc_info.value.status_code == 400


class TestReadWrite:
    def test_get_requires_namespace_for_namespaced_kind(self):
        gateway, _ = _make_gateway(pods=[_pod("a")])
        with pytest.raises(ValidationError):
            asyncio.run(gateway.get("", "a"))

    def test_get_missing_object(self):
        gateway, _ = _make_gateway()
        with pytest.raises(UpstreamNotFound) as exc_info:
            asyncio.run(gateway.get("default", "ghost"))
        assert exc_info.value.details["upstream_status"] == 404

    def test_create_duplicate_conflicts(self):
        gateway, _ = _make_gateway(pods=[_pod("a")])
        with pytest.raises(Conflict):
            asyncio.run(gateway.create("default", _pod("a")))

    def test_create_rejects_non_object_body(self):
        gateway, _ = _make_gateway()
        with pytest.raises(ValidationError):
            asyncio.run(gateway.create("default", ["not", "an", "object"]))

    def test_update_with_stale_resource_version_conflicts(self):
        gateway, _ = _make_gateway(pods=[_pod("a")])
        stale = _pod("a")
        stale["metadata"]["resourceVersion"] = "1"
        with pytest.raises(Conflict):
            asyncio.run(gateway.update("default", "a", stale))

    def test_patch_merges_and_forces_fetched_resource_version(self):
        gateway, client = _make_gateway(pods=[_pod("a", app="web", tier="front")])
        before = asyncio.run(gateway.get("default", "a"))
        patched = asyncio.run(
            gateway.patch(
                "default",
                "a",
                {"metadata": {"labels": {"tier": None, "env": "prod"}, "resourceVersion": "999"}},
            )
        )
        assert patched["metadata"]["labels"] == {"app": "web", "env": "prod"}
        _, kwargs = client.apis["CoreV1Api"].calls[-1]
        assert kwargs["body"]["metadata"]["resourceVersion"] == before["metadata"]["resourceVersion"]

    def test_delete_then_get(self):
        gateway, _ = _make_gateway(pods=[_pod("a")])
        asyncio.run(gateway.delete("default", "a"))
        with pytest.raises(UpstreamNotFound):
            asyncio.run(gateway.get("default", "a"))


class TestWatch:
    def test_events_are_forwarded_in_order(self):
        gateway, client = _make_gateway()
        pods = client.apis["CoreV1Api"]
        pods.watch_response = watch_lines(
            {"type": "ADDED", "object": _pod("a")},
            {"type": "MODIFIED", "object": _pod("a")},
            {"type": "DELETED", "object": _pod("a")},
        )

        async def scenario():
            return await _collect(await gateway.watch("default", label_selector="app=web"))

        events = asyncio.run(scenario())
        assert [e["type"] for e in events] == ["ADDED", "MODIFIED", "DELETED"]
        assert pods.watch_response.closed
        _, kwargs = pods.calls[-1]
        assert kwargs["watch"] is True
        assert kwargs["label_selector"] == "app=web"

    def test_expired_event_ends_stream(self):
        gateway, client = _make_gateway()
        client.apis["CoreV1Api"].watch_response = watch_lines(
            {"type": "ADDED", "object": _pod("a")},
            {"type": "ERROR", "object": {"kind": "Status", "code": 410, "message": "too old resource version"}},
            {"type": "ADDED", "object": _pod("b")},
        )

        async def scenario():
            return await _collect(await gateway.watch("default", resource_version="5"))

        events = asyncio.run(scenario())
        assert [e["type"] for e in events] == ["ADDED", "ERROR"]
        assert events[-1]["object"]["reason"] == "Expired"
        assert events[-1]["object"]["message"] == "too old resource version"

    def test_gone_on_open_yields_single_expired_event(self):
        gateway, client = _make_gateway()
        client.apis["CoreV1Api"].watch_error = api_error(410, "Gone")

        async def scenario():
            return await _collect(await gateway.watch("default", resource_version="1"))

        events = asyncio.run(scenario())
        assert len(events) == 1
        assert events[0]["object"]["code"] == 410
        assert events[0]["object"]["reason"] == "Expired"

    def test_open_error_raises_before_streaming(self):
        gateway, client = _make_gateway()
        client.apis["CoreV1Api"].watch_error = api_error(403, "Forbidden", "pods is forbidden")
        with pytest.raises(Forbidden) as exc_info:
            asyncio.run(gateway.watch("default"))
        assert exc_info.value.message == "pods is forbidden"

    def test_single_object_watch_uses_field_selector(self):
        gateway, client = _make_gateway()

        async def scenario():
            return await _collect(await gateway.watch("default", name="a"))

        assert asyncio.run(scenario()) == []
        _, kwargs = client.apis["CoreV1Api"].calls[-1]
        assert kwargs["field_selector"] == "metadata.name=a"


class TestJsonMergePatch:
    def test_null_removes_and_nested_merges(self):
        target = {"a": 1, "b": {"c": 2, "d": 3}, "e": [1, 2]}
        patch = {"a": None, "b": {"c": None, "x": 9}, "e": [3]}
        assert json_merge_patch(target, patch) == {"b": {"d": 3, "x": 9}, "e": [3]}

    def test_target_is_not_mutated(self):
        target = {"a": {"b": 1}}
        json_merge_patch(target, {"a": {"b": 2}})
        assert target == {"a": {"b": 1}}

    def test_non_object_patch_replaces(self):
        assert json_merge_patch({"a": 1}, "scalar") == "scalar"


class TestKinds:
    def test_unknown_kind(self):
        with pytest.raises(UpstreamNotFound):
            get_kind("widgets")

    def test_group_of_core_and_named_groups(self):
        assert get_kind("pods").group == ""
        assert get_kind("deployments").group == "apps"
