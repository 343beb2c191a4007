from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal
from urllib.parse import quote_plus

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, computed_field
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_PATH = "configs/config.yaml"


class Settings(BaseSettings):
    """Process settings sourced from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CILIKUBE_",
        env_file=(".env",),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    config_path: str = DEFAULT_CONFIG_PATH
    # Overrides server.mode from the config file when set
    mode: Literal["debug", "release", "test"] | None = None
    log_level: str = "INFO"
    log_json: bool = False
    allowed_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    # Optional Fernet key for encrypting kubeconfig blobs at rest
    fernet_key: str | None = None


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ServerConfig(_CamelModel):
    port: int = 8080
    mode: Literal["debug", "release", "test"] = "debug"
    active_cluster_id: str = ""


class FileClusterConfig(_CamelModel):
    id: str = ""
    name: str = ""
    config_path: str = ""
    environment: str = ""
    provider: str = ""
    description: str = ""
    region: str = ""


class DatabaseConfig(_CamelModel):
    enabled: bool = False
    type: Literal["sqlite", "mysql"] = "sqlite"
    path: str = "cilikube.db"
    host: str = "localhost"
    port: int = 3306
    username: str = "root"
    password: str = ""
    database: str = "cilikube"
    charset: str = "utf8mb4"
    encryption_key: str | None = None

    @computed_field
    @property
    def url(self) -> str:
        if self.type == "mysql":
            return (
                f"mysql+aiomysql://{quote_plus(self.username)}:{quote_plus(self.password)}"
                f"@{self.host}:{self.port}/{self.database}?charset={self.charset}"
            )
        return f"sqlite+aiosqlite:///{self.path}"


class JWTConfig(_CamelModel):
    secret_key: str = ""
    expire_duration: str = "24h"
    issuer: str = "cilikube"


class KubernetesConfig(_CamelModel):
    qps: float = 50.0
    burst: int = 100
    insecure_fallback: bool = True
    probe_timeout: float = 5.0
    refresh_initial_delay: float = 5.0
    refresh_interval: float = 300.0
    discovery_cache_ttl: float = 600.0


class AppConfig(_CamelModel):
    """Static configuration read from the YAML file at boot."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    clusters: list[FileClusterConfig] = Field(default_factory=list)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    jwt: JWTConfig = Field(default_factory=JWTConfig)
    kubernetes: KubernetesConfig = Field(default_factory=KubernetesConfig)


def load_app_config(path: str | Path, settings: Settings | None = None) -> AppConfig:
    """Read the YAML config file; a missing file yields defaults.

    Environment settings win over the file for the run mode.
    """
    from cilikube.exceptions import ConfigInvalid

    file_path = Path(path)
    data: dict = {}
    if file_path.is_file():
        try:
            data = yaml.safe_load(file_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigInvalid(f"cannot parse config file {file_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigInvalid(f"config file {file_path} must contain a mapping")

    try:
        app_config = AppConfig.model_validate(data)
    except ValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False)
        raise ConfigInvalid(f"invalid config file {file_path}", details={"errors": errors}) from exc

    if settings is not None and settings.mode:
        app_config.server.mode = settings.mode
    return app_config


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    settings = get_settings()
    return load_app_config(settings.config_path, settings)
