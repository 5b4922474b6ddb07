from typing import List, Optional

from psycopg.conninfo import conninfo_to_dict, make_conninfo
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "Stats Harvest"
    log_level: str = Field("INFO", description="Root logging level.")
    enabled_plugins: List[str] = Field(
        default_factory=lambda: ["postgres", "memcached", "varnish"],
        description="Plugins exposed by the HTTP API, in registration order.",
    )

    @field_validator("log_level")
    def normalize_log_level(cls, value: str) -> str:
        return value.upper()

    class Config:
        env_prefix = "HARVEST_"


class PostgresSettings(BaseSettings):
    host: str = Field("localhost", description="Hostname to login to.")
    port: int = Field(5432, description="Database port.")
    user: str = Field("", description="Postgres user.")
    password: str = Field("", description="Postgres password.")
    database: Optional[str] = Field(None, description="Database name.")
    sslmode: str = Field("disable", description="Whether or not to use SSL.")
    options: str = Field("", description="Extra libpq connection options.")
    connect_timeout: int = Field(
        5, ge=0, description="Maximum wait for connection, in seconds."
    )
    metric_key_prefix: str = Field("postgres", description="Metric key prefix.")

    def conninfo(self) -> str:
        params = {
            "user": self.user,
            "password": self.password,
            "host": self.host,
            "port": self.port,
            "sslmode": self.sslmode,
            "connect_timeout": self.connect_timeout,
        }
        if self.database:
            params["dbname"] = self.database
        base = make_conninfo("", **params)
        if not self.options:
            return base
        # explicit options override the individual fields
        return make_conninfo(base, **conninfo_to_dict(self.options))

    class Config:
        env_prefix = "HARVEST_POSTGRES_"


class MemcachedSettings(BaseSettings):
    host: str = Field("localhost", description="Hostname.")
    port: int = Field(11211, description="Port.")
    socket: Optional[str] = Field(
        None, description="Server socket (overrides host and port)."
    )
    timeout: float = Field(5.0, gt=0, description="Socket timeout, in seconds.")
    metric_key_prefix: str = Field("memcached", description="Metric key prefix.")

    class Config:
        env_prefix = "HARVEST_MEMCACHED_"


class VarnishSettings(BaseSettings):
    varnishstat_path: str = Field(
        "/usr/bin/varnishstat", description="Path of varnishstat."
    )
    metric_key_prefix: str = Field("varnish", description="Metric key prefix.")

    class Config:
        env_prefix = "HARVEST_VARNISH_"


settings = Settings()
