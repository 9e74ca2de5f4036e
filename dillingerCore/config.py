from pydantic import BaseModel, Field, field_validator
from typing import Dict, List, Optional
from pathlib import Path

import yaml


class PathConfig(BaseModel):
    data_root: Path = Field(
        default=Path("./dillinger"), description="Root directory for all managed data"
    )
    install_root: Path = Field(
        default=Path("./dillinger/installed"),
        description="Install root containing one subdirectory per game",
    )
    cache_root: Path = Field(
        default=Path("./dillinger/storage/installer_cache"),
        description="Cache root for in-progress and resumable downloads",
    )
    screenshots_root: Path = Field(
        default=Path("./dillinger/screenshots"),
        description="Screenshots directory, laid out as <game>/<session>/",
    )
    database_path: Path = Field(
        default=Path("./dillinger/dillinger.db"), description="SQLite document store path"
    )


class DownloadConfig(BaseModel):
    max_concurrent: int = Field(
        default=2, description="Maximum concurrent download tasks (1-10)"
    )
    max_redirects: int = Field(default=5, description="Maximum redirects followed per file")
    chunk_size: int = Field(default=65536, description="Streaming chunk size in bytes")
    progress_interval: float = Field(
        default=0.25, description="Minimum seconds between progress events"
    )
    resume_partial: bool = Field(
        default=True, description="Resume .part files with HTTP Range requests"
    )
    resume_on_startup: bool = Field(
        default=False, description="Re-queue interrupted downloads when state is loaded"
    )
    user_agent: str = Field(
        default="Dillinger/0.1 (+https://github.com/thrane20/dillinger)",
        description="User agent string",
    )

    @field_validator("max_concurrent")
    @classmethod
    def _clamp(cls, value: int) -> int:
        return clamp_concurrency(value)


class TimeoutConfig(BaseModel):
    connect: int = Field(default=10, description="Connection timeout in seconds")
    read: int = Field(default=120, description="Read timeout in seconds")
    diagnostic: float = Field(
        default=5.0, description="Timeout for container logs/inspect calls"
    )
    stop_grace: int = Field(
        default=10, description="Seconds to wait for a graceful stop before killing"
    )
    install_poll: float = Field(
        default=30.0, description="Upper bound for a single install-completion poll"
    )
    sidecar: float = Field(default=1.5, description="Pairing sidecar request timeout")


class ResourceConfig(BaseModel):
    cpu: float = Field(default=2.0, description="Default CPU cores per container")
    memory: str = Field(default="4g", description="Default memory limit per container")


class ImageConfig(BaseModel):
    native: str = Field(default="ghcr.io/thrane20/dillinger/runner-linux-native:latest")
    wine: str = Field(default="ghcr.io/thrane20/dillinger/runner-wine:latest")
    emulator: str = Field(default="ghcr.io/thrane20/dillinger/runner-retroarch:latest")


class DockerConfig(BaseModel):
    session_prefix: str = Field(default="dillinger-session-")
    install_prefix: str = Field(default="dillinger-install-")
    debug_prefix: str = Field(default="dillinger-debug-")
    volume_prefix: str = Field(
        default="dillinger-session-", description="Only volumes with this prefix are swept"
    )
    data_volume: str = Field(default="dillinger_root")
    protected_volumes: List[str] = Field(
        default=["dillinger_root", "dillinger_installers"],
        description="Volumes the orphan sweep never removes",
    )
    label_namespace: str = Field(default="dillinger")
    base_url: Optional[str] = Field(
        default=None, description="Engine socket URL (None uses the environment)"
    )


class StreamingConfig(BaseModel):
    sidecar_url: str = Field(default="http://localhost:9999")
    width: int = Field(default=1920, description="Virtual display width in streaming mode")
    height: int = Field(default=1080, description="Virtual display height in streaming mode")


class DillingerConfig(BaseModel):
    paths: PathConfig = Field(default_factory=PathConfig)
    downloads: DownloadConfig = Field(default_factory=DownloadConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    resources: ResourceConfig = Field(default_factory=ResourceConfig)
    images: ImageConfig = Field(default_factory=ImageConfig)
    docker: DockerConfig = Field(default_factory=DockerConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)

    # Extra environment applied to every container, lowest precedence
    extra_environment: Dict[str, str] = Field(default_factory=dict)


def clamp_concurrency(value: int) -> int:
    return max(1, min(10, int(value)))


def load_config(config_path: Optional[Path] = None) -> DillingerConfig:
    """Load configuration from a YAML file or use defaults"""
    if config_path and config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}
            return DillingerConfig(**config_data)
    return DillingerConfig()


def save_config(config: DillingerConfig, config_path: Path):
    """Save configuration to a YAML file"""
    config_dict = config.model_dump(mode="json")
    with open(config_path, "w", encoding="utf-8") as f:
        yaml.dump(config_dict, f, default_flow_style=False, indent=2)
