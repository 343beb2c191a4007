from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Literal, Optional

import structlog
import urllib3
from kubernetes.client.exceptions import ApiException
from sqlalchemy.exc import SQLAlchemyError

from cilikube.config import FileClusterConfig
from cilikube.exceptions import (
    AppException,
    ClusterNotFound,
    ClusterUnavailable,
    Conflict,
    ConfigInvalid,
    Forbidden,
    NoActiveCluster,
    ValidationError,
)
from cilikube.services.cluster_store import ClusterRecord, ClusterStore
from cilikube.services.k8s.client_factory import ClientFactory, ClientSource, ClusterClient

logger = structlog.get_logger(__name__)

StatusKind = Literal["checking", "available", "unavailable", "init-failed"]

_UPDATABLE_FIELDS = {"name", "kubeconfig", "environment", "provider", "description", "region", "labels", "status"}


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass
class ClusterStatus:
    id: str
    name: str
    server: str = ""
    version: str = ""
    status: StatusKind = "checking"
    reason: str = ""
    source: str = "database"
    environment: str = ""
    provider: str = ""
    region: str = ""
    description: str = ""
    insecure: bool = False
    last_updated: Optional[datetime] = None


@dataclass
class ClusterEntry:
    record: ClusterRecord
    client: Optional[ClusterClient]
    status: ClusterStatus


def _status_for(record: ClusterRecord, client: Optional[ClusterClient], error: Optional[str]) -> ClusterStatus:
    status = ClusterStatus(
        id=record.id,
        name=record.name,
        server=client.server if client else "",
        version=record.version,
        source=record.source,
        environment=record.environment,
        provider=record.provider,
        region=record.region,
        description=record.description,
        insecure=bool(client and client.insecure),
        last_updated=_utcnow(),
    )
    if client is None:
        status.status = "init-failed"
        status.reason = error or "client not initialised"
    elif client.probe_error is not None:
        status.status = "unavailable"
        status.reason = client.probe_error.message
    elif client.version:
        status.status = "available"
        status.version = client.version
    return status


def _source_for(record: ClusterRecord) -> ClientSource:
    if record.source == "file":
        return ClientSource.from_path(record.config_path)
    if not record.kubeconfig:
        raise ConfigInvalid(f"cluster {record.name!r} has no kubeconfig", cluster_id=record.id)
    return ClientSource.from_bytes(record.kubeconfig)


class ClusterRegistry:
    """Authoritative map of live cluster clients and the active selection.

    A single lock guards entries, the name index, statuses and the active
    pair. It is never held across upstream I/O or store calls.
    """

    def __init__(
        self,
        store: ClusterStore,
        factory: ClientFactory,
        *,
        file_clusters: Iterable[FileClusterConfig] = (),
        active_cluster_id: str = "",
        refresh_initial_delay: float = 5.0,
        refresh_interval: float = 300.0,
        probe_timeout: float = 5.0,
    ) -> None:
        self._store = store
        self._factory = factory
        self._file_clusters = list(file_clusters)
        self._configured_active_id = active_cluster_id
        self._refresh_initial_delay = refresh_initial_delay
        self._refresh_interval = refresh_interval
        self._probe_timeout = probe_timeout

        self._lock = threading.RLock()
        self._entries: dict[str, ClusterEntry] = {}
        self._name_index: dict[str, str] = {}
        self._active_id = ""
        self._active_client: Optional[ClusterClient] = None

        self._refresh_task: Optional[asyncio.Task[None]] = None
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def _build(self, record: ClusterRecord, *, probe: bool) -> tuple[Optional[ClusterClient], ClusterStatus]:
        try:
            source = _source_for(record)
            client = await asyncio.to_thread(self._factory.build, source, probe=probe)
        except AppException as exc:
            logger.warning(
                "cluster.client_init_failed",
                cluster_id=record.id,
                cluster_name=record.name,
                error=exc.message,
            )
            return None, _status_for(record, None, f"Initialization failed: {exc.message}")
        return client, _status_for(record, client, None)

    def _insert_locked(self, record: ClusterRecord, client: Optional[ClusterClient], status: ClusterStatus) -> None:
        self._entries[record.id] = ClusterEntry(record=record, client=client, status=status)
        self._name_index[record.name] = record.id

    async def initialize(self) -> None:
        """Load database then file clusters, pick the active one, start refreshing."""
        records = await self._store.list_all()
        built = await asyncio.gather(*(self._build(r, probe=True) for r in records))
        discarded: list[ClusterClient] = []
        with self._lock:
            for record, (client, status) in zip(records, built):
                if record.id in self._entries or record.name in self._name_index:
                    logger.warning("cluster.duplicate_record", cluster_id=record.id, cluster_name=record.name)
                    if client:
                        discarded.append(client)
                    continue
                self._insert_locked(record, client, status)
        for client in discarded:
            await client.aclose()

        await self._load_file_clusters()

        with self._lock:
            configured = self._configured_active_id
            entry = self._entries.get(configured) if configured else None
            if entry is not None and entry.client is not None:
                self._active_id, self._active_client = configured, entry.client
            else:
                if configured:
                    logger.warning("cluster.configured_active_missing", cluster_id=configured)
                self._promote_locked()
            logger.info("cluster.registry_initialized", clusters=len(self._entries), active_id=self._active_id)

        self.start()

    async def _load_file_clusters(self) -> None:
        candidates: list[ClusterRecord] = []
        with self._lock:
            seen_ids = set(self._entries)
            seen_names = set(self._name_index)
        for fc in self._file_clusters:
            name = fc.name or fc.id
            if not fc.id:
                logger.warning("cluster.file_entry_without_id", cluster_name=name)
                continue
            if fc.id in seen_ids or name in seen_names:
                logger.warning("cluster.file_entry_skipped", cluster_id=fc.id, cluster_name=name, reason="collision")
                continue
            seen_ids.add(fc.id)
            seen_names.add(name)
            candidates.append(
                ClusterRecord(
                    id=fc.id,
                    name=name,
                    source="file",
                    config_path=fc.config_path,
                    environment=fc.environment,
                    provider=fc.provider,
                    description=fc.description,
                    region=fc.region,
                )
            )

        built = await asyncio.gather(*(self._build(r, probe=True) for r in candidates))
        discarded: list[ClusterClient] = []
        with self._lock:
            for record, (client, status) in zip(candidates, built):
                if record.id in self._entries or record.name in self._name_index:
                    logger.warning("cluster.file_entry_skipped", cluster_id=record.id, cluster_name=record.name)
                    if client:
                        discarded.append(client)
                    continue
                self._insert_locked(record, client, status)
        for client in discarded:
            await client.aclose()

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop(), name="cluster-refresh")

    async def stop(self) -> None:
        tasks = list(self._background)
        if self._refresh_task is not None:
            tasks.append(self._refresh_task)
            self._refresh_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        with self._lock:
            clients = [e.client for e in self._entries.values() if e.client is not None]
        for client in clients:
            await client.aclose()

    async def _refresh_loop(self) -> None:
        await asyncio.sleep(self._refresh_initial_delay)
        while True:
            try:
                await self.refresh()
            except (AppException, SQLAlchemyError) as exc:
                logger.error("cluster.refresh_failed", error=str(exc))
            await asyncio.sleep(self._refresh_interval)

    async def _probe_version(self, client: ClusterClient) -> tuple[Optional[str], Optional[str]]:
        try:
            version = await asyncio.wait_for(
                asyncio.to_thread(client.server_version, self._probe_timeout),
                timeout=self._probe_timeout + 1,
            )
        except asyncio.TimeoutError:
            return None, f"probe timed out after {self._probe_timeout:g}s"
        except (ApiException, urllib3.exceptions.HTTPError, OSError) as exc:
            return None, str(getattr(exc, "reason", None) or exc)
        return version, None

    async def refresh(self) -> list[ClusterStatus]:
        """Probe every live client once and record the results."""
        with self._lock:
            snapshot = [(cid, e.client) for cid, e in self._entries.items() if e.client is not None]

        results = await asyncio.gather(*(self._probe_version(c) for _, c in snapshot))

        changed_versions: list[tuple[str, str]] = []
        now = _utcnow()
        with self._lock:
            for (cid, client), (version, error) in zip(snapshot, results):
                entry = self._entries.get(cid)
                # Skip entries removed or rebuilt while the probe ran
                if entry is None or entry.client is not client:
                    continue
                status = entry.status
                status.last_updated = now
                if error is None and version:
                    status.status = "available"
                    status.reason = ""
                    status.version = version
                    if entry.record.source == "database" and version != entry.record.version:
                        entry.record.version = version
                        changed_versions.append((cid, version))
                else:
                    status.status = "unavailable"
                    status.reason = error or "unknown error"
                    status.version = "N/A"

        for cid, version in changed_versions:
            try:
                await self._store.update_version(cid, version)
            except SQLAlchemyError as exc:
                logger.warning("cluster.version_persist_failed", cluster_id=cid, error=str(exc))

        logger.debug("cluster.refresh_completed", probed=len(snapshot))
        return self.list_clusters()

    def _schedule_probe(self, cluster_id: str) -> None:
        task = asyncio.create_task(self._probe_one(cluster_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _probe_one(self, cluster_id: str) -> None:
        with self._lock:
            entry = self._entries.get(cluster_id)
            client = entry.client if entry else None
        if client is None:
            return
        await asyncio.to_thread(self._factory.probe, client)
        persist: Optional[str] = None
        with self._lock:
            entry = self._entries.get(cluster_id)
            if entry is None or entry.client is not client:
                return
            entry.status = _status_for(entry.record, client, None)
            if entry.status.status != "available":
                entry.status.version = "N/A"
            elif entry.record.source == "database" and client.version != entry.record.version:
                entry.record.version = client.version or ""
                persist = entry.record.version
        if persist:
            try:
                await self._store.update_version(cluster_id, persist)
            except SQLAlchemyError as exc:
                logger.warning("cluster.version_persist_failed", cluster_id=cluster_id, error=str(exc))

    async def drain(self) -> None:
        """Wait for pending background probes."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_clusters(self) -> list[ClusterStatus]:
        with self._lock:
            return [replace(e.status) for e in self._entries.values()]

    def get_status(self, cluster_id: str) -> ClusterStatus:
        with self._lock:
            entry = self._entries.get(cluster_id)
            if entry is None:
                raise ClusterNotFound(f"cluster {cluster_id!r} not found", cluster_id=cluster_id)
            return replace(entry.status)

    def get_record(self, cluster_id: str) -> ClusterRecord:
        with self._lock:
            entry = self._entries.get(cluster_id)
            if entry is None:
                raise ClusterNotFound(f"cluster {cluster_id!r} not found", cluster_id=cluster_id)
            return entry.record.copy()

    def get_client(self, cluster_id: str) -> ClusterClient:
        with self._lock:
            entry = self._entries.get(cluster_id)
            if entry is None:
                raise ClusterNotFound(f"cluster {cluster_id!r} not found", cluster_id=cluster_id)
            if entry.client is None:
                raise ClusterUnavailable(
                    f"cluster {entry.record.name!r} is unavailable: {entry.status.reason}",
                    cluster_id=cluster_id,
                )
            return entry.client

    def resolve_name(self, name: str) -> str:
        with self._lock:
            cluster_id = self._name_index.get(name)
        if cluster_id is None:
            raise ClusterNotFound(f"cluster named {name!r} not found")
        return cluster_id

    def name_index(self) -> dict[str, str]:
        with self._lock:
            return dict(self._name_index)

    # ------------------------------------------------------------------
    # Active selection
    # ------------------------------------------------------------------

    @property
    def active_id(self) -> str:
        with self._lock:
            return self._active_id

    def get_active(self) -> tuple[str, Optional[ClusterClient]]:
        with self._lock:
            if not self._active_id:
                raise NoActiveCluster("no active cluster selected")
            return self._active_id, self._active_client

    def set_active(self, cluster_id: str) -> ClusterStatus:
        if not cluster_id:
            raise ValidationError("cluster id must not be empty")
        with self._lock:
            entry = self._entries.get(cluster_id)
            if entry is None:
                raise ClusterNotFound(f"cluster {cluster_id!r} not found", cluster_id=cluster_id)
            if entry.client is None:
                raise ClusterUnavailable(
                    f"cluster {entry.record.name!r} has no live client: {entry.status.reason}",
                    cluster_id=cluster_id,
                )
            self._active_id, self._active_client = cluster_id, entry.client
            status = replace(entry.status)
        logger.info("cluster.active_changed", cluster_id=cluster_id)
        return status

    def set_active_by_name(self, name: str) -> ClusterStatus:
        if not name:
            raise ValidationError("cluster name must not be empty")
        with self._lock:
            cluster_id = self._name_index.get(name)
            if cluster_id is None:
                raise ClusterNotFound(f"cluster named {name!r} not found")
            return self.set_active(cluster_id)

    def _promote_locked(self) -> None:
        for cluster_id, entry in self._entries.items():
            if entry.client is not None:
                self._active_id, self._active_client = cluster_id, entry.client
                return
        self._active_id, self._active_client = "", None

    # ------------------------------------------------------------------
    # Admin writes
    # ------------------------------------------------------------------

    async def add_cluster(self, record: ClusterRecord) -> ClusterStatus:
        with self._lock:
            if record.name in self._name_index:
                raise Conflict(f"cluster name {record.name!r} already exists")
        stored = await self._store.create(record)
        client, status = await self._build(stored, probe=False)

        with self._lock:
            self._insert_locked(stored, client, status)
            if not self._active_id and client is not None:
                self._active_id, self._active_client = stored.id, client
            result = replace(status)
        logger.info("cluster.added", cluster_id=stored.id, cluster_name=stored.name, status=result.status)
        if client is not None:
            self._schedule_probe(stored.id)
        return result

    async def update_cluster(self, cluster_id: str, **changes: Any) -> ClusterStatus:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"fields cannot be updated: {', '.join(sorted(unknown))}")
        changes = {k: v for k, v in changes.items() if v is not None}

        with self._lock:
            entry = self._entries.get(cluster_id)
            if entry is None:
                raise ClusterNotFound(f"cluster {cluster_id!r} not found", cluster_id=cluster_id)
            if entry.record.source == "file":
                raise Forbidden("clusters loaded from the config file cannot be modified", cluster_id=cluster_id)
            current = entry.record.copy()
            new_name = changes.get("name", current.name)
            if new_name != current.name and new_name in self._name_index:
                raise Conflict(f"cluster name {new_name!r} already exists", cluster_id=cluster_id)

        kubeconfig_changed = "kubeconfig" in changes and changes["kubeconfig"] != current.kubeconfig
        stored = await self._store.update(replace(current, **changes))

        new_client: Optional[ClusterClient] = None
        new_status: Optional[ClusterStatus] = None
        if kubeconfig_changed:
            new_client, new_status = await self._build(stored, probe=False)

        old_client: Optional[ClusterClient] = None
        with self._lock:
            entry = self._entries.get(cluster_id)
            if entry is None:
                if new_client is not None:
                    new_client.close()
                raise ClusterNotFound(f"cluster {cluster_id!r} was removed concurrently", cluster_id=cluster_id)
            old_name = entry.record.name
            if stored.name != old_name:
                self._name_index.pop(old_name, None)
                self._name_index[stored.name] = cluster_id
            entry.record = stored
            if kubeconfig_changed:
                old_client = entry.client
                entry.client = new_client
                entry.status = new_status  # type: ignore[assignment]
                if self._active_id == cluster_id:
                    self._active_client = new_client
            else:
                entry.status.name = stored.name
                entry.status.environment = stored.environment
                entry.status.provider = stored.provider
                entry.status.region = stored.region
                entry.status.description = stored.description
            result = replace(entry.status)

        if old_client is not None:
            await old_client.aclose()
        if kubeconfig_changed and new_client is not None:
            self._schedule_probe(cluster_id)
        logger.info("cluster.updated", cluster_id=cluster_id, kubeconfig_changed=kubeconfig_changed)
        return result

    async def remove_cluster(self, cluster_id: str) -> None:
        with self._lock:
            entry = self._entries.get(cluster_id)
            if entry is None:
                raise ClusterNotFound(f"cluster {cluster_id!r} not found", cluster_id=cluster_id)
            if entry.record.source == "file":
                raise Forbidden("clusters loaded from the config file cannot be deleted", cluster_id=cluster_id)

        await self._store.delete_by_id(cluster_id)

        with self._lock:
            entry = self._entries.pop(cluster_id, None)
            if entry is None:
                return
            if self._name_index.get(entry.record.name) == cluster_id:
                del self._name_index[entry.record.name]
            if self._active_id == cluster_id:
                self._promote_locked()
                logger.info("cluster.active_promoted", removed_id=cluster_id, active_id=self._active_id)
        if entry.client is not None:
            await entry.client.aclose()
        logger.info("cluster.removed", cluster_id=cluster_id)

    async def test_connection(self, cluster_id: str) -> dict[str, Any]:
        """Probe a cluster now without touching its recorded status."""
        client = self.get_client(cluster_id)
        version, error = await self._probe_version(client)
        return {"reachable": error is None, "version": version, "message": error}
