from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

from authdesk.core.events.bus import EventBusConfig


DEFAULT_TIME_SOURCE_URL = "https://api.steampowered.com/ITwoFactorService/QueryTime/v0001"


class TimeSourceConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    url: str = DEFAULT_TIME_SOURCE_URL
    timeout_seconds: float = Field(default=5.0, gt=0, le=120)
    align_interval_seconds: float = Field(default=5.0, ge=0.5, le=3600)

    @field_validator("url")
    @classmethod
    def _http_only(cls, v: str) -> str:
        if not str(v).startswith(("http://", "https://")):
            raise ValueError("time source url must be http(s)")
        return v


class TicksConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    code_interval_seconds: float = Field(default=1.0, ge=0.1, le=30)
    network_workers: int = Field(default=4, ge=1, le=32)


class KdfConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    scrypt_n: int = Field(default=2**14, ge=2**4, le=2**20)

    @field_validator("scrypt_n")
    @classmethod
    def _power_of_two(cls, v: int) -> int:
        if v & (v - 1):
            raise ValueError("scrypt_n must be a power of two")
        return v


class ErrorReporterFileConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    include_tracebacks: bool = False


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    config_version: int = Field(default=1, ge=1)
    manifest_path: str = "maFiles/manifest.json"
    log_dir: str = "logs"
    max_backups: int = Field(default=10, ge=0, le=200)
    time_source: TimeSourceConfig = Field(default_factory=TimeSourceConfig)
    ticks: TicksConfig = Field(default_factory=TicksConfig)
    kdf: KdfConfig = Field(default_factory=KdfConfig)
    events: EventBusConfig = Field(default_factory=EventBusConfig)
    error_reporter: ErrorReporterFileConfig = Field(default_factory=ErrorReporterFileConfig)
