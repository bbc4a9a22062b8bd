"""Settings loading helpers."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Mapping

import tomllib

from pydantic import BaseModel, Field

CONFIG_FILE = Path.home() / ".config" / "psqlweb" / "config.toml"
ENV_PREFIX = "PSQLWEB_"
DEFAULT_SESSION_TTL_MS = 1000 * 60 * 60 * 8

QueryAuthMode = Literal["shared", "session"]


class Settings(BaseModel):
    """Runtime configuration for the web console."""

    dsn: str | None = None
    pool_max_size: int | None = None
    session_ttl_ms: int = DEFAULT_SESSION_TTL_MS
    environment: str = "development"
    query_auth: QueryAuthMode = "shared"
    fetch_size: int = Field(default=100, gt=0)
    host: str = "127.0.0.1"
    port: int = 8000

    @property
    def production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def session_ttl_seconds(self) -> float:
        return self.session_ttl_ms / 1000


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Load settings from the config file, then overlay environment variables."""

    env = os.environ if environ is None else environ
    try:
        data = _read_config_file()
    except (FileNotFoundError, tomllib.TOMLDecodeError, OSError):
        data = {}

    dsn = env.get(f"{ENV_PREFIX}DSN")
    if dsn:
        data["dsn"] = dsn
    pool_max = _positive_int(env.get(f"{ENV_PREFIX}POOL_MAX"))
    if pool_max is not None:
        data["pool_max_size"] = pool_max
    ttl = _positive_int(env.get(f"{ENV_PREFIX}SESSION_TTL_MS"))
    if ttl is not None:
        data["session_ttl_ms"] = ttl
    environment = env.get(f"{ENV_PREFIX}ENV")
    if environment:
        data["environment"] = environment
    query_auth = (env.get(f"{ENV_PREFIX}QUERY_AUTH") or "").strip().lower()
    if query_auth in ("shared", "session"):
        data["query_auth"] = query_auth
    fetch_size = _positive_int(env.get(f"{ENV_PREFIX}FETCH_SIZE"))
    if fetch_size is not None:
        data["fetch_size"] = fetch_size
    host = env.get(f"{ENV_PREFIX}HOST")
    if host:
        data["host"] = host
    port = _positive_int(env.get(f"{ENV_PREFIX}PORT"))
    if port is not None:
        data["port"] = port
    return Settings(**data)


def _read_config_file() -> dict[str, object]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    if not isinstance(raw, dict):
        return data
    for key in ("dsn", "environment", "host"):
        value = raw.get(key)
        if isinstance(value, str) and value:
            data[key] = value
    pool_max = _positive_int(raw.get("pool_max"))
    if pool_max is not None:
        data["pool_max_size"] = pool_max
    for key in ("session_ttl_ms", "fetch_size", "port"):
        value = _positive_int(raw.get(key))
        if value is not None:
            data[key] = value
    query_auth = raw.get("query_auth")
    if query_auth in ("shared", "session"):
        data["query_auth"] = query_auth
    return data


def _positive_int(value: object) -> int | None:
    """Parse a strictly positive integer; anything else means "use the default"."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return None
        return parsed if parsed > 0 else None
    return None


__all__ = ["CONFIG_FILE", "DEFAULT_SESSION_TTL_MS", "QueryAuthMode", "Settings", "load_settings"]
