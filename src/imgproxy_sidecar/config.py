"""Runtime settings, read once from the environment at startup.

The resulting Settings value is frozen and handed to each component's
constructor. Nothing reads os.environ after startup.
"""

import os
from dataclasses import dataclass
from typing import Mapping

import httpx

from .keys import KeyPolicy

DEFAULT_BACKEND_URL = "http://127.0.0.1:8081"
DEFAULT_BIND = ":8080"
DEFAULT_HEALTH_TIMEOUT = 30.0
DEFAULT_S3_ENDPOINT = "https://fly.storage.tigris.dev"
DEFAULT_S3_REGION = "auto"

TRUTHY = ("1", "true", "yes", "on")


class ConfigError(Exception):
    """Raised when the environment does not describe a runnable proxy."""


def _flag(value: str | None, default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in TRUTHY


def parse_bind(value: str) -> tuple[str, int]:
    """Split a `host:port` or `:port` bind address.

    An empty host means all interfaces.
    """
    host, sep, port = value.strip().rpartition(":")
    if not sep:
        raise ConfigError(f"Invalid bind address {value!r}: expected host:port")
    try:
        port_num = int(port)
    except ValueError:
        raise ConfigError(f"Invalid bind port in {value!r}") from None
    if not 0 <= port_num <= 65535:
        raise ConfigError(f"Bind port out of range in {value!r}")
    host = host.strip("[]") or "0.0.0.0"
    return host, port_num


def _backend_url(value: str) -> str:
    try:
        url = httpx.URL(value)
    except httpx.InvalidURL as e:
        raise ConfigError(f"Invalid backend URL {value!r}: {e}") from e
    if url.scheme not in ("http", "https") or not url.host:
        raise ConfigError(f"Invalid backend URL {value!r}: need http(s)://host[:port]")
    return value.rstrip("/")


def _health_timeout(value: str | None) -> float:
    if value is None or value.strip() == "":
        return DEFAULT_HEALTH_TIMEOUT
    try:
        seconds = int(value)
    except ValueError:
        raise ConfigError(f"Failed to parse HEALTH_CHECK_TIMEOUT_IN_SEC={value!r}") from None
    if seconds < 0:
        raise ConfigError("HEALTH_CHECK_TIMEOUT_IN_SEC must not be negative")
    return float(seconds)


@dataclass(frozen=True)
class Settings:
    s3_bucket: str
    s3_folder: str = ""
    s3_endpoint_url: str | None = DEFAULT_S3_ENDPOINT
    s3_region: str = DEFAULT_S3_REGION
    s3_path_style: bool = True
    backend_url: str = DEFAULT_BACKEND_URL
    health_path: str = "/health"
    health_timeout: float = DEFAULT_HEALTH_TIMEOUT
    bind_host: str = "0.0.0.0"
    bind_port: int = 8080
    key_policy: KeyPolicy = KeyPolicy.PATH
    debug: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from environment variables.

        Args:
            environ: Mapping to read from. Defaults to os.environ.

        Raises:
            ConfigError: If a required value is missing or a value is malformed.
        """
        env = os.environ if environ is None else environ

        bucket = env.get("S3_BUCKET", "").strip()
        if not bucket:
            raise ConfigError("Missing required environment variable S3_BUCKET")

        policy_name = env.get("KEY_POLICY", KeyPolicy.PATH.value).strip().lower()
        try:
            policy = KeyPolicy(policy_name)
        except ValueError:
            choices = ", ".join(p.value for p in KeyPolicy)
            raise ConfigError(f"Unknown KEY_POLICY {policy_name!r} (expected one of: {choices})") from None

        host, port = parse_bind(env.get("IMGPROXY_BIND") or DEFAULT_BIND)

        health_path = env.get("IMGPROXY_HEALTH_PATH") or "/health"
        if not health_path.startswith("/"):
            health_path = "/" + health_path

        return cls(
            s3_bucket=bucket,
            s3_folder=env.get("S3_FOLDER", ""),
            s3_endpoint_url=env.get("S3_ENDPOINT_URL") or DEFAULT_S3_ENDPOINT,
            s3_region=env.get("S3_REGION") or DEFAULT_S3_REGION,
            s3_path_style=_flag(env.get("S3_PATH_STYLE"), True),
            backend_url=_backend_url(env.get("IMGPROXY_URL") or DEFAULT_BACKEND_URL),
            health_path=health_path,
            health_timeout=_health_timeout(env.get("HEALTH_CHECK_TIMEOUT_IN_SEC")),
            bind_host=host,
            bind_port=port,
            key_policy=policy,
            debug=_flag(env.get("IMGPROXY_SIDECAR_DEBUG"), False),
        )
