from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _APIModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ResourcePage(_APIModel):
    items: list[dict[str, Any]] = Field(default_factory=list)
    continue_: str = Field(default="", alias="continue")
    resource_version: str = ""


class CRDNames(_APIModel):
    kind: str
    plural: str
    singular: str = ""
    list_kind: str = ""
    short_names: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)


class CRDVersion(_APIModel):
    name: str
    served: bool
    storage: bool
    deprecated: bool = False
    deprecation_warning: str | None = None


class CRDCondition(_APIModel):
    type: str
    status: str
    reason: str | None = None
    message: str | None = None
    last_transition_time: str | None = None


class CRDSummary(_APIModel):
    name: str
    group: str
    kind: str
    plural: str
    scope: str
    versions: list[str] = Field(default_factory=list)
    storage_version: str = ""
    created_at: str | None = None


class CRDDetail(CRDSummary):
    names: CRDNames
    version_details: list[CRDVersion] = Field(default_factory=list)
    conditions: list[CRDCondition] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
