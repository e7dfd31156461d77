"""Settings for stackrun.

All tunables live on ``StackRunSettings`` and can be overridden with
``STACKRUN_*`` environment variables or a ``.env`` file in the working
directory. Paths under ``home`` are derived unless set explicitly.

Examples:
    >>> from stackrun.config import StackRunSettings
    >>> settings = StackRunSettings(home="/tmp/stackrun")
    >>> settings.staging_dir
    PosixPath('/tmp/stackrun/staging')

Environment:
    STACKRUN_HOME                     root for staging, logs and templates
    STACKRUN_PROVIDER                 build arg passed to every image build
    STACKRUN_MIN_PORT / MAX_PORT      host port range for function gateways
    STACKRUN_CONTAINER_START_TIMEOUT  seconds to wait for a container start
    STACKRUN_STORAGE_IMAGE            object storage image for stacks with buckets
    STACKRUN_API_GATEWAY_IMAGE        image run once per declared API
    STACKRUN_LOG_LEVEL                structlog level

Tags:
    settings, configuration, pydantic, environment
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Start and end of the ephemeral port range, as defined by IANA
MIN_PORT = 49152
MAX_PORT = 65535

# Port the function runtime listens on inside its container
GATEWAY_PORT = 9001


class StackRunSettings(BaseSettings):
    """Runtime configuration for build and run cycles.

    Fields
    ──────
    home                     : Root directory for stackrun state
    staging_dir              : Build contexts, ``{staging_dir}/{stack}/{function}``
    log_dir                  : Per-function run logs, ``{log_dir}/{function}.txt``
    template_dir             : Installed runtime templates
    provider                 : Deployment provider tag passed to builds
    min_port / max_port      : Host port range for dynamic allocation
    gateway_port             : Internal function gateway port
    container_start_timeout  : Bound on the container start race, seconds
    volume_mount             : Mount point of the shared volume in containers
    storage_image            : Image of the local object storage service
    storage_access_key       : Storage access key injected into functions
    storage_secret_key       : Storage secret key injected into functions
    api_gateway_image        : Image serving one API document per gateway
    log_level                : structlog level
    json_logs                : Force JSON (True) or console (False) logs
    """

    model_config = SettingsConfigDict(
        env_prefix="STACKRUN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Filesystem ───────────────────────────────────────────────
    home: Path = Field(default_factory=lambda: Path.home() / ".stackrun")
    staging_dir: Path | None = None
    log_dir: Path | None = None
    template_dir: Path | None = None

    # ── Build ────────────────────────────────────────────────────
    provider: str = "local"

    # ── Run ──────────────────────────────────────────────────────
    min_port: int = Field(default=MIN_PORT, ge=1024, le=65535)
    max_port: int = Field(default=MAX_PORT, ge=1024, le=65535)
    gateway_port: int = GATEWAY_PORT
    container_start_timeout: float = Field(default=2.0, gt=0)
    volume_mount: str = "/stackrun/volume"

    # ── Services ─────────────────────────────────────────────────
    storage_image: str = "minio/minio"
    storage_access_key: str = "minioadmin"
    storage_secret_key: str = "minioadmin"
    api_gateway_image: str = "nitricimages/dev-api-gateway"

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    json_logs: bool | None = None

    @model_validator(mode="after")
    def _derive_paths(self) -> StackRunSettings:
        if self.max_port <= self.min_port:
            raise ValueError("max_port must be greater than min_port")
        if self.staging_dir is None:
            self.staging_dir = self.home / "staging"
        if self.log_dir is None:
            self.log_dir = self.home / "logs"
        if self.template_dir is None:
            self.template_dir = self.home / "templates"
        return self

    def function_log_path(self, function_name: str) -> Path:
        """Path of the run log for *function_name*."""
        return self.log_dir / f"{function_name}.txt"


__all__ = [
    "GATEWAY_PORT",
    "MAX_PORT",
    "MIN_PORT",
    "StackRunSettings",
]
