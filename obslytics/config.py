"""Configuration models using Pydantic for validation."""
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
import os


class TLSConfig(BaseModel):
    """Client TLS settings for the store connection."""
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    ca_file: Optional[str] = None
    server_name: Optional[str] = None
    insecure_skip_verify: bool = False

    @model_validator(mode='after')
    def validate_key_pair(self):
        """Client certificate and key come together or not at all."""
        if bool(self.cert_file) != bool(self.key_file):
            raise ValueError("Both client key and certificate must be provided")
        return self


class InputConfig(BaseModel):
    """Where series are read from."""
    type: Literal["STOREAPI"] = "STOREAPI"
    endpoint: str = "localhost:10901"
    insecure: bool = False
    timeout_s: Optional[float] = None
    max_recv_message_bytes: int = 2**31 - 1
    tls_config: TLSConfig = Field(default_factory=TLSConfig)

    @field_validator('timeout_s')
    @classmethod
    def validate_timeout(cls, v):
        if v is not None and v <= 0:
            raise ValueError("timeout_s must be positive")
        return v


class OutputConfig(BaseModel):
    """Where and how rows are written."""
    type: Literal["CSV", "NDJSON", "PARQUET"] = "PARQUET"
    path: str = "export.parquet"
    # None picks two_pass for sinks with a fixed header, streaming otherwise
    schema_mode: Optional[Literal["streaming", "two_pass"]] = None
    compression: str = "snappy"

    @field_validator('type', mode='before')
    @classmethod
    def normalize_type(cls, v):
        return v.upper() if isinstance(v, str) else v


class TracingConfig(BaseModel):
    """OpenTelemetry span export settings."""
    enabled: bool = False
    endpoint: str = "localhost:4317"
    insecure: bool = True
    service_name: str = "obslytics"


class GlobalConfig(BaseModel):
    """Global configuration settings."""
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "text"
    metrics_port: Optional[int] = None
    metrics_textfile: Optional[str] = None
    metrics_prefix: str = "obslytics_"


class Config(BaseModel):
    """Root configuration model."""
    model_config = ConfigDict(populate_by_name=True)

    global_: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    input: InputConfig = Field(default_factory=InputConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    tracing: TracingConfig = Field(default_factory=TracingConfig)


def load_config(config_path: str) -> Config:
    """Load and validate configuration from YAML file."""
    import yaml

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        raw_config = yaml.safe_load(f) or {}

    # Apply environment variable overrides
    if env_endpoint := os.getenv('OBSLYTICS_ENDPOINT'):
        raw_config.setdefault('input', {})['endpoint'] = env_endpoint

    if env_log_level := os.getenv('LOG_LEVEL'):
        raw_config.setdefault('global', {})['log_level'] = env_log_level

    try:
        return Config(**raw_config)
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}")
