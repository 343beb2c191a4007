from __future__ import annotations

import base64
import binascii
from datetime import datetime
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class _APIModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def decode_kubeconfig(value: str) -> bytes:
    """Decode base64 kubeconfig data submitted by clients."""
    try:
        raw = base64.b64decode(value.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("kubeconfigData must be valid base64") from exc
    if not raw.strip():
        raise ValueError("kubeconfigData must not be empty")
    try:
        document = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ValueError("kubeconfigData is not a valid kubeconfig document") from exc
    if not isinstance(document, dict):
        raise ValueError("kubeconfigData is not a valid kubeconfig document")
    return raw


class ClusterCreate(_APIModel):
    name: str = Field(min_length=1, max_length=128)
    kubeconfig_data: str = Field(min_length=1, description="base64-encoded kubeconfig")
    environment: str = ""
    provider: str = ""
    description: str = ""
    region: str = ""
    labels: dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value

    @field_validator("kubeconfig_data")
    @classmethod
    def _check_base64(cls, value: str) -> str:
        decode_kubeconfig(value)
        return value

    def kubeconfig_bytes(self) -> bytes:
        return decode_kubeconfig(self.kubeconfig_data)


class ClusterUpdate(_APIModel):
    """Replacement fields; omitted fields keep their current value."""

    name: str | None = Field(default=None, min_length=1, max_length=128)
    kubeconfig_data: str | None = None
    environment: str | None = None
    provider: str | None = None
    description: str | None = None
    region: str | None = None
    labels: dict[str, str] | None = None
    status: str | None = None

    @field_validator("kubeconfig_data")
    @classmethod
    def _check_base64(cls, value: str | None) -> str | None:
        if value:
            decode_kubeconfig(value)
        return value or None

    def changes(self) -> dict:
        data = self.model_dump(exclude_none=True, exclude={"kubeconfig_data"})
        if self.kubeconfig_data:
            data["kubeconfig"] = decode_kubeconfig(self.kubeconfig_data)
        return data


class ClusterStatusOut(_APIModel):
    id: str
    name: str
    server: str = ""
    version: str = ""
    status: Literal["checking", "available", "unavailable", "init-failed"]
    reason: str = ""
    source: Literal["database", "file"]
    environment: str = ""
    provider: str = ""
    region: str = ""
    description: str = ""
    insecure: bool = False
    is_active: bool = False
    last_updated: datetime | None = None


class ClusterDetail(ClusterStatusOut):
    config_path: str = ""
    admin_status: str = ""
    labels: dict[str, str] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ActiveClusterRequest(_APIModel):
    id: str | None = None
    name: str | None = None

    @model_validator(mode="after")
    def _one_selector(self) -> "ActiveClusterRequest":
        if self.id is None and self.name is None:
            raise ValueError("either id or name is required")
        return self


class ActiveClusterOut(_APIModel):
    id: str
    name: str


class ConnectionTestOut(_APIModel):
    reachable: bool
    version: str | None = None
    message: str | None = None
