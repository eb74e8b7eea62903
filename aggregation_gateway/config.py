"""Configuration models using Pydantic for validation."""
from typing import Literal, Optional
from pydantic import BaseModel, Field, field_validator
from croniter import croniter
import os


class GlobalConfig(BaseModel):
    """Global configuration settings."""
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "text"


class ServerConfig(BaseModel):
    """HTTP server configuration."""
    bind_address: str = "0.0.0.0"
    port: int = 9091
    push_path: str = "/metrics/"
    metrics_path: str = "/metrics"
    cors_origin: str = "*"

    @field_validator('push_path', 'metrics_path')
    @classmethod
    def validate_path(cls, v):
        if not v.startswith("/"):
            raise ValueError(f"HTTP path must start with '/': {v}")
        return v

    @property
    def listen(self) -> str:
        return f"{self.bind_address}:{self.port}"


class WindowConfig(BaseModel):
    """Reset window configuration."""
    crontab: str = "*/5 * * * *"
    publish_buffer_s: int = Field(default=30, ge=0)

    @field_validator('crontab')
    @classmethod
    def validate_crontab(cls, v):
        if not croniter.is_valid(v):
            raise ValueError(f"Invalid crontab expression: {v!r}")
        return v


class AggregationConfig(BaseModel):
    """Merge behaviour configuration."""
    # "partial" keeps families merged before a failing one in the same push
    batch_mode: Literal["atomic", "partial"] = "atomic"
    summary_policy: Literal["drop", "reject"] = "drop"


class Config(BaseModel):
    """Root configuration model."""
    global_: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    server: ServerConfig = Field(default_factory=ServerConfig)
    window: WindowConfig = Field(default_factory=WindowConfig)
    aggregation: AggregationConfig = Field(default_factory=AggregationConfig)

    class Config:
        populate_by_name = True


def parse_listen(listen: str):
    """Split a host:port listen address."""
    host, sep, port = listen.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"Invalid listen address: {listen!r}")
    return host or "0.0.0.0", int(port)


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate configuration from an optional YAML file."""
    import yaml

    raw_config = {}
    if config_path:
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r') as f:
            raw_config = yaml.safe_load(f) or {}

    # Apply environment variable overrides
    if env_log_level := os.getenv('LOG_LEVEL'):
        raw_config.setdefault('global', {})['log_level'] = env_log_level

    if env_listen := os.getenv('GATEWAY_LISTEN'):
        host, port = parse_listen(env_listen)
        server = raw_config.setdefault('server', {})
        server['bind_address'] = host
        server['port'] = port

    if env_crontab := os.getenv('GATEWAY_CRONTAB'):
        raw_config.setdefault('window', {})['crontab'] = env_crontab

    try:
        config = Config(**raw_config)
        return config
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}")
