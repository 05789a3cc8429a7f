"""
Application Settings

Environment-driven configuration for the image server.
All values are read once at startup by ``Settings.from_env()``.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("true", "1", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


@dataclass
class RedisSettings:
    """Connection and reconnect parameters for the external cache."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 6379
    password: Optional[str] = None
    db: int = 0
    ttl: int = 0                        # 0 -> fall back to Settings.cache_ttl
    max_retries: int = 5
    retry_interval: float = 8.0         # seconds
    retry_backoff: str = "fixed"        # "fixed" or "exponential"
    max_retry_delay: float = 300.0      # cap for exponential backoff
    connect_timeout: float = 10.0
    operation_timeout: float = 2.0
    poll_interval: float = 1.0          # reconnect scheduler tick


@dataclass
class Settings:
    """Top-level server configuration."""
    img_dir: Path = Path("./img")
    manifest_file: Path = Path("./list.json")
    update_token: str = ""
    timezone: str = "Asia/Shanghai"

    # Cache
    cache_enabled: bool = True
    local_cache_size: int = 100
    cache_ttl: int = 3600
    local_cache_ttl: int = 0            # 0 -> local entries never expire
    map_cleanup_interval: float = 60.0
    redis: RedisSettings = None

    # Manifest
    rebuild_interval: float = 0.0       # 0 -> timer disabled

    # Server
    debug: bool = False
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 3000

    def __post_init__(self):
        if self.redis is None:
            self.redis = RedisSettings()
        self.img_dir = Path(self.img_dir)
        self.manifest_file = Path(self.manifest_file)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        redis = RedisSettings(
            enabled=_env_bool("REDIS_ENABLED", False),
            host=os.getenv("REDIS_HOST", "127.0.0.1"),
            port=_env_int("REDIS_PORT", 6379),
            password=os.getenv("REDIS_PASSWORD") or None,
            db=_env_int("REDIS_DB", 0),
            ttl=_env_int("REDIS_TTL", 0),
            max_retries=_env_int("REDIS_MAX_RETRIES", 5),
            retry_interval=_env_float("REDIS_RETRY_INTERVAL", 8.0),
            retry_backoff=os.getenv("REDIS_RETRY_BACKOFF", "fixed").strip().lower(),
            max_retry_delay=_env_float("REDIS_MAX_RETRY_DELAY", 300.0),
            connect_timeout=_env_float("REDIS_CONNECT_TIMEOUT", 10.0),
            operation_timeout=_env_float("REDIS_OPERATION_TIMEOUT", 2.0),
        )
        return cls(
            img_dir=Path(os.getenv("IMG_DIR", "./img")).resolve(),
            manifest_file=Path(os.getenv("MANIFEST_FILE", "./list.json")).resolve(),
            update_token=os.getenv("UPDATE_TOKEN", "").strip(),
            timezone=os.getenv("TIMEZONE", "Asia/Shanghai"),
            cache_enabled=_env_bool("CACHE_ENABLED", True),
            local_cache_size=_env_int("LOCAL_CACHE_SIZE", 100),
            cache_ttl=_env_int("CACHE_TTL", 3600),
            local_cache_ttl=_env_int("LOCAL_CACHE_TTL", 0),
            map_cleanup_interval=_env_float("MAP_CLEANUP_INTERVAL", 60.0),
            redis=redis,
            rebuild_interval=_env_float("REBUILD_INTERVAL", 0.0),
            debug=_env_bool("DEBUG", False),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            host=os.getenv("HOST", "127.0.0.1"),
            port=_env_int("PORT", 3000),
        )
