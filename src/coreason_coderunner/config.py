from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from coreason_coderunner.models import ResourceLimits


class CodeRunnerConfig(BaseSettings):
    """
    Configuration for the code runner.

    Every field can be set through a ``CODERUNNER_``-prefixed environment variable.
    """

    pool_size: int = Field(default=4, ge=1)
    acquire_timeout: float = Field(default=30.0, gt=0)

    # Hard per-container ceilings; submissions may ask for less, never more.
    max_memory_mb: int = Field(default=256, gt=0)
    max_cpu_shares: int = Field(default=1024, ge=2)
    pids_limit: int = Field(default=64, gt=0)

    compile_timeout: float = Field(default=15.0, gt=0)
    default_timeout_ms: int = Field(default=5000, gt=0)
    default_memory_limit_mb: int = Field(default=128, gt=0)
    default_cpu_shares: int = Field(default=512, ge=2)
    max_timeout_ms: int = Field(default=60000, gt=0)
    output_limit_bytes: int = Field(default=64 * 1024, gt=0)

    reaper_interval: float = Field(default=5.0, gt=0)
    reaper_grace: float = Field(default=10.0, ge=0)
    kill_grace: float = Field(default=2.0, gt=0)

    image_overrides: dict[str, str] = {}
    docker_label: str = "coreason.coderunner"

    enable_audit_logging: bool = True
    log_level: Literal["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_file: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="CODERUNNER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def hard_limits(self) -> ResourceLimits:
        return ResourceLimits(
            memory_limit_mb=self.max_memory_mb,
            cpu_shares=self.max_cpu_shares,
            pids_limit=self.pids_limit,
        )
