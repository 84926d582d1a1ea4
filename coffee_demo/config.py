from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Empty variables count as unset so the defaults below apply.
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", env_ignore_empty=True
    )

    db_host: str = Field(default="localhost", alias="DB_HOST")
    db_port: int = Field(default=5432, alias="DB_PORT")
    db_name: str = Field(default="observability_demo", alias="DB_NAME")
    db_user: str = Field(default="postgres", alias="DB_USER")
    db_password: str = Field(default="password", alias="DB_PASSWORD")
    db_sslmode: str = Field(default="prefer", alias="DB_SSLMODE")
    database_url_override: str = Field(default="", alias="DATABASE_URL")

    db_pool_max: int = Field(default=25, alias="DB_POOL_MAX")
    db_pool_min: int = Field(default=5, alias="DB_POOL_MIN")
    db_pool_max_lifetime_seconds: int = Field(default=300, alias="DB_POOL_MAX_LIFETIME_SECONDS")
    db_pool_max_idle_seconds: int = Field(default=60, alias="DB_POOL_MAX_IDLE_SECONDS")
    db_pool_timeout_seconds: float = Field(default=30.0, alias="DB_POOL_TIMEOUT_SECONDS")

    region: str = Field(default="eu-central-1", alias="AWS_REGION")
    port: int = Field(default=8080, alias="PORT")

    service_name: str = Field(default="coffee-observability-demo", alias="SERVICE_NAME")
    service_version: str = Field(default="1.0.0", alias="SERVICE_VERSION")
    environment: str = Field(default="demo", alias="DEPLOYMENT_ENVIRONMENT")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=True, alias="LOG_JSON")

    tracing_enabled: bool = Field(default=True, alias="TRACING_ENABLED")
    otlp_endpoint: str = Field(default="", alias="OTEL_EXPORTER_OTLP_ENDPOINT")

    metrics_enabled: bool = Field(default=True, alias="METRICS_ENABLED")
    metrics_namespace: str = Field(default="CoffeeObservabilityDemo/Application", alias="METRICS_NAMESPACE")
    metrics_workers: int = Field(default=2, alias="METRICS_WORKERS")
    metrics_queue_size: int = Field(default=1000, alias="METRICS_QUEUE_SIZE")

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        # psycopg3 driver uses `postgresql+psycopg://...`
        return (
            f"postgresql+psycopg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}?sslmode={self.db_sslmode}"
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
