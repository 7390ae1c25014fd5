"""Configuration management for Dewey."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict, TomlConfigSettingsSource


def _find_dewey_toml() -> Path | None:
    """Return the nearest ``dewey.toml`` in the cwd or one of its ancestors."""
    cwd = Path.cwd().resolve()
    for directory in (cwd, *cwd.parents):
        candidate = directory / "dewey.toml"
        if candidate.is_file():
            return candidate
    return None


class IrodsSettings(BaseSettings):
    """iRODS connection settings, handed to every repository session."""

    model_config = SettingsConfigDict(env_prefix="DEWEY_IRODS_")

    host: str = Field(default="localhost", description="iRODS server host.")
    port: int = Field(default=1247, description="iRODS server port.")
    user: str = Field(default="rods", description="iRODS account name.")
    password: str = Field(default="rods", description="iRODS account password.")
    zone: str = Field(default="iplant", description="iRODS zone.")


class ElasticsearchSettings(BaseSettings):
    """Elasticsearch connection and index settings."""

    model_config = SettingsConfigDict(env_prefix="DEWEY_ELASTICSEARCH_")

    url: str = Field(default="http://localhost:9200", description="Elasticsearch base URL.")
    index: str = Field(default="data", description="Index name prefix ('<index>-folder', '<index>-file').")
    request_timeout_s: float = Field(default=30.0, description="Per-request timeout in seconds.")
    refresh_on_delete: bool = Field(
        default=True, description="Refresh affected indices after a prefix deletion so rebuilt subtrees are searchable."
    )


class RedisSettings(BaseSettings):
    """Redis/Valkey connection settings for the change event bus."""

    model_config = SettingsConfigDict(env_prefix="DEWEY_REDIS_")

    host: str = Field(default="localhost", description="Redis/Valkey host.")
    port: int = Field(default=6379, description="Redis/Valkey port.")
    db: int = Field(default=0, description="Logical database index.")
    password: str = Field(default="", description="Password, empty for none.")
    stream_prefix: str = Field(default="dewey", description="Prefix for Redis Stream keys.")
    topic: str = Field(default="indexing", description="Stream carrying repository change events.")
    group: str = Field(default="dewey", description="Consumer group name.")
    consumer_name: str = Field(default="dewey-0", description="Consumer name within the group.")
    batch_size: int = Field(default=10, description="Max messages pulled per read.")
    block_ms: int = Field(default=2000, description="Max milliseconds a read blocks waiting for messages.")


class LoggingSettings(BaseSettings):
    """Loguru sink settings."""

    model_config = SettingsConfigDict(env_prefix="DEWEY_LOGGING_")

    level: str = Field(default="INFO", description="Minimum log level.")
    json_logs: bool = Field(default=False, description="Serialize log records as JSON lines.")


class ObservabilitySettings(BaseSettings):
    """Tracing and metrics export. Needs the ``[otel]`` extra to have any effect."""

    model_config = SettingsConfigDict(env_prefix="DEWEY_OBSERVABILITY_")

    enabled: bool = Field(default=False, description="Export spans and metrics through OpenTelemetry.")
    exporter: str = Field(default="otlp", description="Exporter type: 'otlp', 'console', or 'none'.")
    endpoint: str = Field(default="http://localhost:4317", description="OTLP gRPC collector address.")
    service_name: str = Field(default="dewey", description="OTel service.name resource attribute.")
    sample_rate: float = Field(default=1.0, description="Fraction of event traces kept.")


class DeweySettings(BaseSettings):
    """Root configuration for Dewey."""

    model_config = SettingsConfigDict(
        toml_file="dewey.toml",
        env_prefix="DEWEY_",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        toml_path = _find_dewey_toml()
        sources: list[PydanticBaseSettingsSource] = [init_settings, env_settings]
        if toml_path:
            sources.append(TomlConfigSettingsSource(settings_cls, toml_file=toml_path))
        sources.append(file_secret_settings)
        return tuple(sources)

    irods: IrodsSettings = Field(default_factory=IrodsSettings)
    elasticsearch: ElasticsearchSettings = Field(default_factory=ElasticsearchSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)
