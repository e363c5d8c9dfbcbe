import os
from typing import Mapping, Optional

from pydantic import BaseModel, ValidationError, field_validator

from localproxy.errors import ConfigError

LOG_LEVELS = ("silent", "error", "warn", "info", "debug")


class ProxyConfig(BaseModel):
    port: int = 8080
    host: str = "localhost"
    log_level: str = "info"
    log_file: Optional[str] = None
    enable_https: bool = False
    https_port: Optional[int] = 8443
    tunnel_enabled: bool = True
    system_proxy_enabled: bool = True
    backup_dir: str = os.path.join(os.getcwd(), "scripts")
    upstream_timeout: float = 300.0
    max_captured_body: int = 10 * 1024 * 1024

    @field_validator("port")
    @classmethod
    def check_port(cls, v: int) -> int:
        if v < 1 or v > 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("https_port")
    @classmethod
    def check_https_port(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and (v < 1 or v > 65535):
            raise ValueError("HTTPS port must be between 1 and 65535")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def check_log_level(cls, v: str) -> str:
        level = str(v).lower()
        if level not in LOG_LEVELS:
            raise ValueError(f"Log level must be one of: {', '.join(LOG_LEVELS)}")
        return level

    @field_validator("host")
    @classmethod
    def check_host(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Host is required")
        return v.strip()


def _env_flag(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(env: Optional[Mapping[str, str]] = None) -> ProxyConfig:
    """
    Build a validated ProxyConfig from environment variables.

    Raises:
        ConfigError: if a variable is malformed or out of range.
    """
    env = os.environ if env is None else env
    values: dict = {}

    if env.get("PROXY_PORT"):
        values["port"] = env["PROXY_PORT"]
    if env.get("PROXY_HOST") is not None:
        values["host"] = env["PROXY_HOST"]
    if env.get("LOG_LEVEL"):
        values["log_level"] = env["LOG_LEVEL"]
    if env.get("LOG_FILE"):
        values["log_file"] = env["LOG_FILE"]
    if env.get("HTTPS_PORT"):
        values["https_port"] = env["HTTPS_PORT"]
    if env.get("PROXY_BACKUP_DIR"):
        values["backup_dir"] = env["PROXY_BACKUP_DIR"]
    if env.get("PROXY_TIMEOUT"):
        values["upstream_timeout"] = env["PROXY_TIMEOUT"]
    if env.get("MAX_CAPTURED_BODY"):
        values["max_captured_body"] = env["MAX_CAPTURED_BODY"]

    values["enable_https"] = _env_flag(env.get("ENABLE_HTTPS"), False)
    values["tunnel_enabled"] = _env_flag(env.get("ENABLE_TUNNEL"), True)
    values["system_proxy_enabled"] = _env_flag(env.get("ENABLE_SYSTEM_PROXY"), True)

    try:
        return ProxyConfig(**values)
    except ValidationError as e:
        messages = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {messages}") from e
