from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Literal, Optional, Protocol, Sequence

import structlog
from cachetools import LRUCache
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cilikube.core.crypto import decrypt_if_encrypted, encrypt_if_configured
from cilikube.exceptions import ClusterNotFound, Conflict
from cilikube.models.cluster import Cluster

logger = structlog.get_logger(__name__)

ClusterSource = Literal["database", "file"]
# Ids of recently deleted clusters; a repeated delete of one of these is a no-op
DELETED_ID_RETENTION = 1024


@dataclass
class ClusterRecord:
    """Durable description of one cluster, independent of its live client."""

    id: str = ""
    name: str = ""
    kubeconfig: Optional[bytes] = None
    source: ClusterSource = "database"
    config_path: str = ""
    environment: str = ""
    provider: str = ""
    description: str = ""
    region: str = ""
    version: str = ""
    status: str = "Active"
    labels: dict[str, str] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def copy(self) -> "ClusterRecord":
        return replace(self, labels=dict(self.labels))


class ClusterStore(Protocol):
    async def create(self, record: ClusterRecord) -> ClusterRecord: ...

    async def get(self, cluster_id: str) -> Optional[ClusterRecord]: ...

    async def get_by_name(self, name: str) -> Optional[ClusterRecord]: ...

    async def list_all(self) -> list[ClusterRecord]: ...

    async def update(self, record: ClusterRecord) -> ClusterRecord: ...

    async def update_version(self, cluster_id: str, version: str) -> None: ...

    async def delete_by_id(self, cluster_id: str) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class SqlClusterStore:
    """Cluster records in a relational table via async SQLAlchemy."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        encryption_key: str | None = None,
        *,
        deleted_id_retention: int = DELETED_ID_RETENTION,
    ) -> None:
        self._session_factory = session_factory
        self._encryption_key = encryption_key
        self._deleted_ids: LRUCache[str, bool] = LRUCache(maxsize=deleted_id_retention)

    def _to_record(self, row: Cluster) -> ClusterRecord:
        return ClusterRecord(
            id=row.id,
            name=row.name,
            kubeconfig=decrypt_if_encrypted(row.kubeconfig, self._encryption_key),
            source="database",
            environment=row.environment or "",
            provider=row.provider or "",
            description=row.description or "",
            region=row.region or "",
            version=row.version or "",
            status=row.status or "Active",
            labels=dict(row.labels or {}),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    async def _name_taken(self, session: AsyncSession, name: str, exclude_id: str | None = None) -> bool:
        stmt = select(Cluster.id).where(Cluster.name == name)
        if exclude_id:
            stmt = stmt.where(Cluster.id != exclude_id)
        result = await session.execute(stmt)
        return result.first() is not None

    async def create(self, record: ClusterRecord) -> ClusterRecord:
        async with self._session_factory() as session:
            if await self._name_taken(session, record.name):
                raise Conflict(f"cluster name {record.name!r} already exists")
            now = _utcnow()
            row = Cluster(
                id=record.id or str(uuid.uuid4()),
                name=record.name,
                kubeconfig=encrypt_if_configured(record.kubeconfig, self._encryption_key),
                description=record.description,
                provider=record.provider,
                environment=record.environment,
                region=record.region,
                version=record.version,
                status=record.status or "Active",
                labels=dict(record.labels),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise Conflict(f"cluster {record.name!r} already exists") from exc
            await session.refresh(row)
            logger.info("store.cluster_created", cluster_id=row.id, cluster_name=row.name)
            return self._to_record(row)

    async def get(self, cluster_id: str) -> Optional[ClusterRecord]:
        async with self._session_factory() as session:
            row = await session.get(Cluster, cluster_id)
            return self._to_record(row) if row else None

    async def get_by_name(self, name: str) -> Optional[ClusterRecord]:
        async with self._session_factory() as session:
            result = await session.execute(select(Cluster).where(Cluster.name == name))
            row = result.scalar_one_or_none()
            return self._to_record(row) if row else None

    async def list_all(self) -> list[ClusterRecord]:
        async with self._session_factory() as session:
            result = await session.execute(select(Cluster).order_by(Cluster.created_at.asc()))
            rows: Sequence[Cluster] = result.scalars().all()
            return [self._to_record(row) for row in rows]

    async def update(self, record: ClusterRecord) -> ClusterRecord:
        async with self._session_factory() as session:
            row = await session.get(Cluster, record.id)
            if row is None:
                raise ClusterNotFound(f"cluster {record.id!r} not found", cluster_id=record.id)
            if record.name != row.name and await self._name_taken(session, record.name, exclude_id=record.id):
                raise Conflict(f"cluster name {record.name!r} already exists", cluster_id=record.id)
            row.name = record.name
            row.kubeconfig = encrypt_if_configured(record.kubeconfig, self._encryption_key)
            row.description = record.description
            row.provider = record.provider
            row.environment = record.environment
            row.region = record.region
            row.version = record.version
            row.status = record.status or "Active"
            row.labels = dict(record.labels)
            row.updated_at = _utcnow()
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise Conflict(f"cluster name {record.name!r} already exists", cluster_id=record.id) from exc
            await session.refresh(row)
            return self._to_record(row)

    async def update_version(self, cluster_id: str, version: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(Cluster)
                .where(Cluster.id == cluster_id)
                .values(version=version, updated_at=_utcnow())
            )
            await session.commit()

    async def delete_by_id(self, cluster_id: str) -> None:
        async with self._session_factory() as session:
            row = await session.get(Cluster, cluster_id)
            if row is None:
                if cluster_id in self._deleted_ids:
                    return
                raise ClusterNotFound(f"cluster {cluster_id!r} not found", cluster_id=cluster_id)
            await session.delete(row)
            await session.commit()
        self._deleted_ids[cluster_id] = True
        logger.info("store.cluster_deleted", cluster_id=cluster_id)


class MemoryClusterStore:
    """Process-local store used when the database is disabled."""

    def __init__(self, *, deleted_id_retention: int = DELETED_ID_RETENTION) -> None:
        self._records: dict[str, ClusterRecord] = {}
        self._deleted_ids: LRUCache[str, bool] = LRUCache(maxsize=deleted_id_retention)

    def _name_taken(self, name: str, exclude_id: str | None = None) -> bool:
        return any(r.name == name and r.id != exclude_id for r in self._records.values())

    async def create(self, record: ClusterRecord) -> ClusterRecord:
        if self._name_taken(record.name):
            raise Conflict(f"cluster name {record.name!r} already exists")
        stored = record.copy()
        stored.id = stored.id or str(uuid.uuid4())
        if stored.id in self._records:
            raise Conflict(f"cluster id {stored.id!r} already exists")
        stored.source = "database"
        stored.status = stored.status or "Active"
        stored.created_at = stored.updated_at = _utcnow()
        self._records[stored.id] = stored
        return stored.copy()

    async def get(self, cluster_id: str) -> Optional[ClusterRecord]:
        record = self._records.get(cluster_id)
        return record.copy() if record else None

    async def get_by_name(self, name: str) -> Optional[ClusterRecord]:
        for record in self._records.values():
            if record.name == name:
                return record.copy()
        return None

    async def list_all(self) -> list[ClusterRecord]:
        return [record.copy() for record in self._records.values()]

    async def update(self, record: ClusterRecord) -> ClusterRecord:
        current = self._records.get(record.id)
        if current is None:
            raise ClusterNotFound(f"cluster {record.id!r} not found", cluster_id=record.id)
        if self._name_taken(record.name, exclude_id=record.id):
            raise Conflict(f"cluster name {record.name!r} already exists", cluster_id=record.id)
        stored = record.copy()
        stored.source = "database"
        stored.created_at = current.created_at
        stored.updated_at = _utcnow()
        self._records[record.id] = stored
        return stored.copy()

    async def update_version(self, cluster_id: str, version: str) -> None:
        record = self._records.get(cluster_id)
        if record is not None:
            record.version = version
            record.updated_at = _utcnow()

    async def delete_by_id(self, cluster_id: str) -> None:
        if self._records.pop(cluster_id, None) is None:
            if cluster_id in self._deleted_ids:
                return
            raise ClusterNotFound(f"cluster {cluster_id!r} not found", cluster_id=cluster_id)
        self._deleted_ids[cluster_id] = True


