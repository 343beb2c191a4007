"""Tests for the cluster registry: initialization, active selection, admin writes, refresh."""

import asyncio

import pytest

from cilikube.config import FileClusterConfig
from cilikube.exceptions import (
    ClusterNotFound,
    ClusterUnavailable,
    Conflict,
    Forbidden,
    NoActiveCluster,
    ValidationError,
)
from cilikube.services.cluster_store import ClusterRecord, MemoryClusterStore
from cilikube.services.k8s.registry import ClusterRegistry

from fakes import FakeFactory, kubeconfig_for


def _make_record(name: str, server: str | None = None, **overrides) -> ClusterRecord:
    return ClusterRecord(name=name, kubeconfig=kubeconfig_for(server or f"https://{name}:6443"), **overrides)


def _make_registry(store=None, factory=None, **kwargs) -> ClusterRegistry:
    kwargs.setdefault("refresh_initial_delay", 3600)
    kwargs.setdefault("refresh_interval", 3600)
    kwargs.setdefault("probe_timeout", 1)
    return ClusterRegistry(store or MemoryClusterStore(), factory or FakeFactory(), **kwargs)


def _client_for(factory: FakeFactory, server: str):
    return next(c for c in factory.clients if c.server == server)


def _assert_invariants(registry: ClusterRegistry) -> None:
    ids = {s.id for s in registry.list_clusters()}
    index = registry.name_index()
    assert set(index.values()) == ids
    for name, cluster_id in index.items():
        assert registry.get_status(cluster_id).name == name
    assert registry.active_id == "" or registry.active_id in ids


async def _seed(store: MemoryClusterStore, *records: ClusterRecord) -> list[ClusterRecord]:
    return [await store.create(r) for r in records]


class TestInitialize:
    def test_loads_database_and_file_clusters(self):
        async def scenario():
            store = MemoryClusterStore()
            await _seed(store, _make_record("prod"), _make_record("dev"))
            registry = _make_registry(
                store,
                file_clusters=[
                    FileClusterConfig(id="file-1", name="staging", config_path="staging.kubeconfig"),
                    FileClusterConfig(id="file-2", name="prod", config_path="other.kubeconfig"),
                    FileClusterConfig(id="", name="nameless", config_path="x"),
                ],
            )
            await registry.initialize()
            try:
                names = sorted(s.name for s in registry.list_clusters())
                sources = {s.name: s.source for s in registry.list_clusters()}
                _assert_invariants(registry)
                return names, sources, registry.active_id
            finally:
                await registry.stop()

        names, sources, active_id = asyncio.run(scenario())
        assert names == ["dev", "prod", "staging"]
        assert sources["staging"] == "file"
        assert sources["prod"] == "database"
        assert active_id

    def test_configured_active_cluster_is_selected(self):
        async def scenario():
            store = MemoryClusterStore()
            await _seed(store, _make_record("prod"))
            registry = _make_registry(
                store,
                file_clusters=[FileClusterConfig(id="file-1", name="staging", config_path="staging")],
                active_cluster_id="file-1",
            )
            await registry.initialize()
            await registry.stop()
            return registry.active_id

        assert asyncio.run(scenario()) == "file-1"

    def test_failed_build_is_recorded_as_init_failed(self):
        async def scenario():
            store = MemoryClusterStore()
            bad, good = await _seed(store, _make_record("broken", "https://invalid"), _make_record("ok"))
            registry = _make_registry(store, active_cluster_id=bad.id)
            await registry.initialize()
            await registry.stop()
            return registry, bad, good

        registry, bad, good = asyncio.run(scenario())
        status = registry.get_status(bad.id)
        assert status.status == "init-failed"
        assert status.reason.startswith("Initialization failed:")
        assert registry.active_id == good.id
        with pytest.raises(ClusterUnavailable):
            registry.get_client(bad.id)
        with pytest.raises(ClusterUnavailable):
            registry.set_active(bad.id)

    def test_unreachable_cluster_is_unavailable_but_kept(self):
        factory = FakeFactory()
        factory.unreachable.add("https://down:6443")

        async def scenario():
            store = MemoryClusterStore()
            (down,) = await _seed(store, _make_record("down"))
            registry = _make_registry(store, factory)
            await registry.initialize()
            await registry.stop()
            return registry, down

        registry, down = asyncio.run(scenario())
        status = registry.get_status(down.id)
        assert status.status == "unavailable"
        # A client exists, so the cluster can still be selected
        assert registry.active_id == down.id

    def test_empty_registry_lists_nothing(self):
        async def scenario():
            registry = _make_registry()
            await registry.initialize()
            await registry.stop()
            return registry

        registry = asyncio.run(scenario())
        assert registry.list_clusters() == []
        assert registry.active_id == ""
        with pytest.raises(NoActiveCluster):
            registry.get_active()


class TestActiveSelection:
    def test_set_active_rejects_empty_id(self):
        registry = _make_registry()
        with pytest.raises(ValidationError):
            registry.set_active("")

    def test_set_active_unknown_id(self):
        registry = _make_registry()
        with pytest.raises(ClusterNotFound):
            registry.set_active("missing")

    def test_set_active_by_name(self):
        async def scenario():
            registry = _make_registry()
            await registry.add_cluster(_make_record("a"))
            b = await registry.add_cluster(_make_record("b"))
            registry.set_active_by_name("b")
            await registry.drain()
            return registry, b

        registry, b = asyncio.run(scenario())
        assert registry.active_id == b.id
        active_id, client = registry.get_active()
        assert active_id == b.id
        assert client is registry.get_client(b.id)


class TestAdminWrites:
    def test_add_cluster_auto_activates_first(self):
        async def scenario():
            registry = _make_registry()
            first = await registry.add_cluster(_make_record("a"))
            second = await registry.add_cluster(_make_record("b"))
            await registry.drain()
            return registry, first, second

        registry, first, second = asyncio.run(scenario())
        assert first.status == "checking"
        assert registry.active_id == first.id
        # The async re-probe moves the new cluster to available
        assert registry.get_status(second.id).status == "available"
        _assert_invariants(registry)

    def test_add_cluster_name_conflict(self):
        async def scenario():
            registry = _make_registry()
            await registry.add_cluster(_make_record("a"))
            await registry.add_cluster(_make_record("a"))

        with pytest.raises(Conflict):
            asyncio.run(scenario())

    def test_remove_active_promotes_next(self):
        async def scenario():
            registry = _make_registry()
            a = await registry.add_cluster(_make_record("a"))
            b = await registry.add_cluster(_make_record("b"))
            await registry.drain()
            client_a = registry.get_client(a.id)
            await registry.remove_cluster(a.id)
            return registry, b, client_a

        registry, b, client_a = asyncio.run(scenario())
        assert registry.active_id == b.id
        assert client_a.closed
        _assert_invariants(registry)

    def test_remove_last_cluster_clears_active(self):
        async def scenario():
            registry = _make_registry()
            a = await registry.add_cluster(_make_record("a"))
            await registry.drain()
            await registry.remove_cluster(a.id)
            return registry

        registry = asyncio.run(scenario())
        assert registry.active_id == ""
        assert registry.name_index() == {}

    def test_file_clusters_are_read_only(self):
        async def scenario():
            registry = _make_registry(
                file_clusters=[FileClusterConfig(id="file-1", name="staging", config_path="staging")]
            )
            await registry.initialize()
            await registry.stop()
            return registry

        registry = asyncio.run(scenario())
        with pytest.raises(Forbidden):
            asyncio.run(registry.remove_cluster("file-1"))
        with pytest.raises(Forbidden):
            asyncio.run(registry.update_cluster("file-1", description="x"))

    def test_update_rename_keeps_index_consistent(self):
        async def scenario():
            registry = _make_registry()
            a = await registry.add_cluster(_make_record("a"))
            await registry.update_cluster(a.id, name="renamed", region="eu-west-1")
            await registry.drain()
            return registry, a

        registry, a = asyncio.run(scenario())
        assert registry.name_index() == {"renamed": a.id}
        assert registry.resolve_name("renamed") == a.id
        assert registry.get_status(a.id).region == "eu-west-1"
        with pytest.raises(ClusterNotFound):
            registry.resolve_name("a")

    def test_update_kubeconfig_swaps_client(self):
        async def scenario():
            registry = _make_registry()
            a = await registry.add_cluster(_make_record("a"))
            await registry.drain()
            old_client = registry.get_client(a.id)
            await registry.update_cluster(a.id, kubeconfig=kubeconfig_for("https://a-new:6443"))
            await registry.drain()
            return registry, a, old_client

        registry, a, old_client = asyncio.run(scenario())
        new_client = registry.get_client(a.id)
        assert new_client is not old_client
        assert old_client.closed
        assert new_client.server == "https://a-new:6443"
        _, active_client = registry.get_active()
        assert active_client is new_client

    def test_update_rejects_unknown_fields(self):
        registry = _make_registry()
        with pytest.raises(ValidationError):
            asyncio.run(registry.update_cluster("x", id="other"))


class TestRefresh:
    def test_refresh_never_changes_entry_count(self):
        factory = FakeFactory()

        async def scenario():
            store = MemoryClusterStore()
            await _seed(store, _make_record("a"), _make_record("b"), _make_record("broken", "https://invalid"))
            registry = _make_registry(store, factory)
            await registry.initialize()
            before = len(registry.list_clusters())
            _client_for(factory, "https://a:6443").reachable = False
            statuses = await registry.refresh()
            await registry.stop()
            return before, statuses

        before, statuses = asyncio.run(scenario())
        assert len(statuses) == before == 3
        by_name = {s.name: s for s in statuses}
        assert by_name["a"].status == "unavailable"
        assert by_name["a"].version == "N/A"
        assert by_name["b"].status == "available"
        assert by_name["broken"].status == "init-failed"

    def test_refresh_persists_changed_versions(self):
        factory = FakeFactory()
        store = MemoryClusterStore()

        async def scenario():
            (a,) = await _seed(store, _make_record("a"))
            registry = _make_registry(store, factory)
            await registry.initialize()
            factory.clients[0].version = "v1.30.1"
            await registry.refresh()
            await registry.stop()
            return a, await store.get(a.id)

        a, stored = asyncio.run(scenario())
        assert stored.version == "v1.30.1"

    def test_connection_test_does_not_touch_status(self):
        factory = FakeFactory()

        async def scenario():
            registry = _make_registry(factory=factory)
            a = await registry.add_cluster(_make_record("a"))
            await registry.drain()
            factory.clients[-1].reachable = False
            result = await registry.test_connection(a.id)
            return registry, a, result

        registry, a, result = asyncio.run(scenario())
        assert result["reachable"] is False
        assert "connection refused" in result["message"]
        assert registry.get_status(a.id).status == "available"
