"""Configuration management for the node agent."""

import os
import socket
import uuid
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_agent_id() -> str:
    """Identity unique to this agent process: pod name plus a random suffix."""
    pod_name = os.getenv("POD_NAME") or socket.gethostname()
    return f"{pod_name}-{uuid.uuid4().hex[:8]}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="NODE_AGENT_",
        case_sensitive=False,
    )

    # Node identity
    node_name: str = Field(default="", description="Name of the node this agent manages")
    agent_id: str = Field(
        default_factory=_default_agent_id, description="Unique identity of this agent instance"
    )
    service_name: str = Field(default="neon-node-agent", description="Agent service name")

    # Host filesystem
    host_mount: Path = Field(
        default=Path("/mnt/host"), description="Where the host root is mounted in the container"
    )
    neon_run_folder: str = Field(
        default="var/run/neonkube", description="Runtime folder relative to the host root"
    )

    # NodeTask custom resource
    group: str = Field(default="neonkube.io", description="NodeTask API group")
    version: str = Field(default="v1alpha1", description="NodeTask API version")
    plural: str = Field(default="nodetasks", description="NodeTask plural name")

    # Leader election
    lease_namespace: str = Field(default="neon-system", description="Namespace for the lease lock")
    lease_duration_seconds: int = Field(default=30, description="Leader lease duration")
    renew_deadline_seconds: int = Field(default=15, description="Leader renew deadline")
    retry_period_seconds: int = Field(default=2, description="Leader retry period")

    # Reconciliation
    idle_interval_seconds: float = Field(
        default=60, description="Interval between idle cleanup sweeps"
    )
    process_start_timeout_seconds: float = Field(
        default=15, description="How long to wait for a launched script to report its pid"
    )
    watch_timeout_seconds: int = Field(
        default=300, description="Server-side timeout for each watch request"
    )

    log_level: str = Field(default="INFO", description="Log level")

    @property
    def api_version(self) -> str:
        """NodeTask ``apiVersion`` string."""
        return f"{self.group}/{self.version}"

    @property
    def lease_name(self) -> str:
        """Per-node lease name."""
        return f"{self.service_name}.nodetask-{self.node_name}"

    @property
    def host_neon_run_folder(self) -> Path:
        """Runtime folder on the host."""
        return self.host_mount / self.neon_run_folder.lstrip("/")

    @property
    def host_agent_folder(self) -> Path:
        """Agent folder on the host."""
        return self.host_neon_run_folder / "node-agent"

    @property
    def host_agent_tasks_folder(self) -> Path:
        """Folder holding one script directory per task run."""
        return self.host_agent_folder / "node-tasks"


def get_settings() -> Settings:
    """Get application settings."""
    return Settings()
