"""Application configuration models shared by services."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Optional

from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .credentials import PASSWORD_PREFIX


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


def _split_csv(value):
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class ControlPlaneSettings(BaseSettings):
    """Runtime settings for the control plane API service."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_url: str = env_field(..., "SSHMGMT_DATABASE_URL")
    jwt_secret: SecretStr = env_field(..., "SSHMGMT_JWT_SECRET")
    jwt_secret_fallbacks: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        validation_alias="SSHMGMT_JWT_SECRET_FALLBACKS",
    )
    admin_key: SecretStr = env_field(..., "SSHMGMT_ADMIN_KEY")
    bind_host: str = env_field("127.0.0.1", "SSHMGMT_BIND_HOST")
    bind_port: int = env_field(8000, "SSHMGMT_BIND_PORT")
    metrics_token: Optional[SecretStr] = env_field(None, "SSHMGMT_METRICS_TOKEN")
    log_level: str = env_field("INFO", "SSHMGMT_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "SSHMGMT_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "SSHMGMT_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "SSHMGMT_OTEL_SAMPLER_RATIO")

    @field_validator("jwt_secret_fallbacks", mode="before")
    @classmethod
    def _split_jwt_fallbacks(cls, value):
        return _split_csv(value)

    @property
    def jwt_secrets(self) -> list[str]:
        return [self.jwt_secret.get_secret_value(), *self.jwt_secret_fallbacks]


class NodeAgentSettings(BaseSettings):
    """Configuration for the node agent daemon."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    token_secret: SecretStr = env_field(..., "SSHMGMT_NODE_TOKEN_SECRET")
    token_secret_fallbacks: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        validation_alias="SSHMGMT_NODE_TOKEN_SECRET_FALLBACKS",
    )
    password_salt: SecretStr = env_field(..., "SSHMGMT_PASSWORD_SALT")
    password_prefix: str = env_field(PASSWORD_PREFIX, "SSHMGMT_PASSWORD_PREFIX")
    default_shell: str = env_field("/bin/rbash", "SSHMGMT_DEFAULT_SHELL")
    trace_path: Path = env_field(Path("/tmp/log"), "SSHMGMT_TRACE_PATH")
    node_config_path: Path = env_field(Path("/etc/sshmgmt_config.json"), "SSHMGMT_NODE_CONFIG")
    worker_pool_size: int = env_field(8, "SSHMGMT_WORKER_POOL_SIZE")
    bind_host: str = env_field("0.0.0.0", "SSHMGMT_NODE_BIND_HOST")
    bind_port: int = env_field(8010, "SSHMGMT_NODE_BIND_PORT")
    metrics_token: Optional[SecretStr] = env_field(None, "SSHMGMT_METRICS_TOKEN")
    log_level: str = env_field("INFO", "SSHMGMT_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "SSHMGMT_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "SSHMGMT_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "SSHMGMT_OTEL_SAMPLER_RATIO")

    @field_validator("token_secret_fallbacks", mode="before")
    @classmethod
    def _split_token_fallbacks(cls, value):
        return _split_csv(value)

    @field_validator("worker_pool_size")
    @classmethod
    def _positive_pool(cls, value: int) -> int:
        if value < 1:
            raise ValueError("worker pool size must be at least 1")
        return value

    @property
    def token_secrets(self) -> list[str]:
        return [self.token_secret.get_secret_value(), *self.token_secret_fallbacks]


class NodeInfo(BaseModel):
    """Identity a node agent reports about itself."""

    name: str
    location: str
    capacity: Optional[int] = None


class NodeConfig(BaseModel):
    node_info: NodeInfo


def load_node_config(path: Path) -> NodeConfig:
    """Load the node identity file; a missing or malformed file is fatal at start-up."""
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise RuntimeError(f"Couldn't load node config file {path}: {exc}") from exc
    try:
        return NodeConfig.model_validate(raw)
    except ValidationError as exc:
        raise RuntimeError(f"Node config file {path} is invalid: {exc}") from exc
