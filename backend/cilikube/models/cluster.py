from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, LargeBinary, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from cilikube.db import Base


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class Cluster(Base):
    __tablename__ = "clusters"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)
    # Raw kubeconfig bytes, Fernet-encrypted when a key is configured
    kubeconfig: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    provider: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    environment: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    region: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    version: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="Active", nullable=False)
    labels: Mapped[dict[str, str]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
