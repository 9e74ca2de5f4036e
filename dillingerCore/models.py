from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import json
import posixpath

import httpx

from .exceptions import InvalidTransitionError, ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class SessionStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


SESSION_TRANSITIONS: Dict[SessionStatus, frozenset] = {
    SessionStatus.STARTING: frozenset(
        {SessionStatus.RUNNING, SessionStatus.STOPPING, SessionStatus.ERROR}
    ),
    SessionStatus.RUNNING: frozenset(
        {SessionStatus.PAUSED, SessionStatus.STOPPING, SessionStatus.ERROR}
    ),
    SessionStatus.PAUSED: frozenset(
        {SessionStatus.RUNNING, SessionStatus.STOPPING, SessionStatus.ERROR}
    ),
    SessionStatus.STOPPING: frozenset({SessionStatus.STOPPED, SessionStatus.ERROR}),
    SessionStatus.STOPPED: frozenset(),
    SessionStatus.ERROR: frozenset(),
}


class SessionPurpose(str, Enum):
    PLAY = "play"
    INSTALL = "install"
    DEBUG = "debug"


class LaunchMode(str, Enum):
    LOCAL = "local"
    STREAMING = "streaming"


class NetworkStats(BaseModel):
    bytes_in: int = 0
    bytes_out: int = 0


class SessionResources(BaseModel):
    cpu_percent: float = 0.0
    memory_bytes: int = 0
    network: NetworkStats = Field(default_factory=NetworkStats)


class SessionPerformance(BaseModel):
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_seconds: Optional[int] = None


class SessionError(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    message: str


class GameSession(BaseModel):
    """A single play, install or debug run of a game inside a container"""
    id: str
    game_id: str
    platform_id: Optional[str] = None
    container_id: Optional[str] = None
    status: SessionStatus = SessionStatus.STARTING
    purpose: SessionPurpose = SessionPurpose.PLAY
    mode: LaunchMode = LaunchMode.LOCAL

    performance: SessionPerformance = Field(default_factory=SessionPerformance)
    resources: SessionResources = Field(default_factory=SessionResources)
    screenshots: List[str] = Field(default_factory=list)
    errors: List[SessionError] = Field(default_factory=list)
    exit_code: Optional[int] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (SessionStatus.STOPPED, SessionStatus.ERROR)

    def can_transition(self, status: SessionStatus) -> bool:
        return status == self.status or status in SESSION_TRANSITIONS[self.status]


class SessionStats(BaseModel):
    """Play time totals for one game"""
    game_id: str
    total_sessions: int = 0
    total_play_time_seconds: int = 0
    average_session_seconds: float = 0.0
    last_played: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Games and platforms
# ---------------------------------------------------------------------------

class InstallStatus(str, Enum):
    NOT_INSTALLED = "not_installed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    FAILED = "failed"


INSTALL_TRANSITIONS: Dict[InstallStatus, frozenset] = {
    InstallStatus.NOT_INSTALLED: frozenset({InstallStatus.INSTALLING}),
    InstallStatus.INSTALLING: frozenset({InstallStatus.INSTALLED, InstallStatus.FAILED}),
    InstallStatus.INSTALLED: frozenset({InstallStatus.INSTALLING}),
    InstallStatus.FAILED: frozenset({InstallStatus.INSTALLING}),
}


class Installation(BaseModel):
    status: InstallStatus = InstallStatus.NOT_INSTALLED
    install_path: Optional[str] = None
    installer_path: Optional[str] = None
    container_id: Optional[str] = None
    installed_at: Optional[datetime] = None
    error: Optional[str] = None


def transition_installation(installation: Installation, status: InstallStatus, **changes) -> Installation:
    """Return a copy of the installation moved to status, rejecting illegal moves"""
    if status not in INSTALL_TRANSITIONS[installation.status]:
        raise InvalidTransitionError(
            f"Installation cannot move from {installation.status.value} to {status.value}"
        )
    return installation.model_copy(update={"status": status, **changes})


class LaunchSettings(BaseModel):
    command: Optional[str] = None
    arguments: List[str] = Field(default_factory=list)
    environment: Dict[str, str] = Field(default_factory=dict)
    working_directory: Optional[str] = None


class ResourceOverrides(BaseModel):
    cpu: Optional[float] = None
    memory: Optional[str] = None


class DeviceToggles(BaseModel):
    gpu: bool = True
    input: bool = True
    audio: bool = True


class DisplayOverrides(BaseModel):
    width: int = 1920
    height: int = 1080


class WineOverrides(BaseModel):
    version: Optional[str] = None
    arch: str = "win64"
    dll_overrides: Dict[str, str] = Field(default_factory=dict)
    debug: str = "-all"


class GameSettings(BaseModel):
    launch: LaunchSettings = Field(default_factory=LaunchSettings)
    resources: ResourceOverrides = Field(default_factory=ResourceOverrides)
    devices: DeviceToggles = Field(default_factory=DeviceToggles)
    display: DisplayOverrides = Field(default_factory=DisplayOverrides)
    wine: WineOverrides = Field(default_factory=WineOverrides)


class Game(BaseModel):
    """A library entry as stored under the 'games' entity kind"""
    id: str
    title: str
    slug: Optional[str] = None
    platform_id: Optional[str] = None
    file_path: Optional[str] = None
    installation: Installation = Field(default_factory=Installation)
    settings: GameSettings = Field(default_factory=GameSettings)

    def __str__(self) -> str:
        return f"{self.title} ({self.id})"


class PlatformType(str, Enum):
    NATIVE = "native"
    WINE = "wine"
    EMULATOR = "emulator"


class Platform(BaseModel):
    id: str
    name: str
    type: PlatformType = PlatformType.NATIVE
    image: Optional[str] = None
    emulator_core: Optional[str] = None
    default_environment: Dict[str, str] = Field(default_factory=dict)
    default_dll_overrides: Dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Host and container specification
# ---------------------------------------------------------------------------

class HostCapabilities(BaseModel):
    """Snapshot of what the host offers for passthrough"""
    display: Optional[str] = None
    wayland_display: Optional[str] = None
    xdg_runtime_dir: Optional[str] = None
    xauthority: Optional[str] = None
    has_gpu: bool = False
    has_sound: bool = False
    has_input: bool = False
    joysticks: List[str] = Field(default_factory=list)
    has_uinput: bool = False
    has_udev: bool = False
    has_proc_input: bool = False
    pulse_socket: Optional[str] = None
    pulse_cookie: Optional[str] = None


class DisplayMethod(str, Enum):
    X11 = "x11"
    WAYLAND = "wayland"
    HEADLESS = "headless"


class DeviceKind(str, Enum):
    GPU = "gpu"
    INPUT = "input"
    AUDIO = "audio"


class DeviceMount(BaseModel):
    host_path: str
    container_path: str
    permissions: str = "rwm"
    kind: DeviceKind

    def to_docker(self) -> str:
        return f"{self.host_path}:{self.container_path}:{self.permissions}"


class VolumeBind(BaseModel):
    source: str
    target: str
    read_only: bool = False

    def to_docker(self) -> str:
        return f"{self.source}:{self.target}:{'ro' if self.read_only else 'rw'}"


class ResourceLimits(BaseModel):
    cpu: float
    memory: str

    @property
    def nano_cpus(self) -> int:
        return int(self.cpu * 1_000_000_000)


class DisplaySettings(BaseModel):
    method: DisplayMethod = DisplayMethod.HEADLESS
    width: int = 1920
    height: int = 1080


class WineSettings(BaseModel):
    version: Optional[str] = None
    prefix_path: str = "/wineprefix"
    dll_overrides: Dict[str, str] = Field(default_factory=dict)
    arch: str = "win64"
    debug: str = "-all"


class ContainerSpec(BaseModel):
    """Everything the runtime needs to create one container"""
    name: str
    image: str
    command: Optional[List[str]] = None
    entrypoint: Optional[List[str]] = None
    working_dir: Optional[str] = None
    display: DisplaySettings = Field(default_factory=DisplaySettings)
    resources: ResourceLimits
    devices: List[DeviceMount] = Field(default_factory=list)
    mounts: List[VolumeBind] = Field(default_factory=list)
    environment: Dict[str, str] = Field(default_factory=dict)
    wine: Optional[WineSettings] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    ipc_mode: Optional[str] = None
    security_opt: List[str] = Field(default_factory=list)
    tty: bool = False
    stdin_open: bool = False
    auto_remove: bool = False

    def device_kinds(self) -> set:
        return {device.kind for device in self.devices}

    def to_docker_kwargs(self) -> Dict[str, Any]:
        """Render as keyword arguments for docker's containers.create"""
        kwargs: Dict[str, Any] = {
            "image": self.image,
            "name": self.name,
            "environment": dict(self.environment),
            "labels": dict(self.labels),
            "volumes": [mount.to_docker() for mount in self.mounts],
            "devices": [device.to_docker() for device in self.devices],
            "nano_cpus": self.resources.nano_cpus,
            "mem_limit": self.resources.memory,
            "tty": self.tty,
            "stdin_open": self.stdin_open,
            "auto_remove": self.auto_remove,
        }
        if self.command is not None:
            kwargs["command"] = list(self.command)
        if self.entrypoint is not None:
            kwargs["entrypoint"] = list(self.entrypoint)
        if self.working_dir:
            kwargs["working_dir"] = self.working_dir
        if self.ipc_mode:
            kwargs["ipc_mode"] = self.ipc_mode
        if self.security_opt:
            kwargs["security_opt"] = list(self.security_opt)
        return kwargs


# ---------------------------------------------------------------------------
# Downloads
# ---------------------------------------------------------------------------

class DownloadStatus(str, Enum):
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_DOWNLOAD_STATUSES = frozenset({DownloadStatus.QUEUED, DownloadStatus.DOWNLOADING})


def sanitize_filename(filename: str) -> str:
    """Strip directory components so a file can never escape its cache directory"""
    name = posixpath.basename(filename.replace("\\", "/")).strip()
    if name in ("", ".", ".."):
        raise ValidationError(f"Invalid download filename: {filename!r}")
    return name


class DownloadFile(BaseModel):
    url: str
    filename: str
    expected_size_bytes: Optional[int] = None

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        try:
            url = httpx.URL(value)
        except httpx.InvalidURL as e:
            raise ValidationError(f"Invalid download URL {value!r}: {e}") from e
        if url.scheme not in ("http", "https") or not url.host:
            raise ValidationError(f"Download URL must be absolute http(s): {value!r}")
        return value

    @field_validator("filename")
    @classmethod
    def _sanitize(cls, value: str) -> str:
        return sanitize_filename(value)


class DownloadTask(BaseModel):
    """A multi-file download for one game"""
    game_id: str
    job_id: str
    cache_directory_name: str
    download_path: str
    title: str
    files: List[DownloadFile]
    status: DownloadStatus = DownloadStatus.QUEUED

    completed_files: int = 0
    total_files: int = 0
    current_file: Optional[str] = None
    current_file_progress_percent: float = 0.0
    total_progress_percent: float = 0.0
    error: Optional[str] = None

    queued_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_DOWNLOAD_STATUSES

    def __str__(self) -> str:
        return f"{self.title}: {self.completed_files}/{self.total_files} ({self.status.value})"


class ProgressEventType(str, Enum):
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


class ProgressEvent(BaseModel):
    """A Server-Sent-Events shaped progress message"""
    type: ProgressEventType
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_sse(self) -> str:
        return f"event: {self.type.value}\ndata: {json.dumps(self.payload, default=str)}\n\n"


# ---------------------------------------------------------------------------
# Orchestrator results
# ---------------------------------------------------------------------------

class LaunchResult(BaseModel):
    container_id: str
    session_id: str


class StopResult(BaseModel):
    container_id: str
    session_id: Optional[str] = None
    forced: bool = False
    already_gone: bool = False


class DebugContainerInfo(BaseModel):
    container_id: str
    session_id: str
    exec_command: str


class CleanupResult(BaseModel):
    removed: int = 0
    items: List[str] = Field(default_factory=list)


class Shortcut(BaseModel):
    """A Windows .lnk file found in an install, with its decoded target"""
    path: str
    target: str = ""
    arguments: str = ""
    working_directory: str = ""
    description: str = ""


# ---------------------------------------------------------------------------
# Pairing
# ---------------------------------------------------------------------------

class PairingOutcome(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class PairingRequest(BaseModel):
    pair_secret: str
    client_ip: Optional[str] = None
    outcome: PairingOutcome = PairingOutcome.PENDING
    attempts: int = 0
    updated_at: datetime = Field(default_factory=utcnow)


class PairedClient(BaseModel):
    id: str
    name: Optional[str] = None
    client_ip: Optional[str] = None
    paired_at: Optional[datetime] = None


class PairingResult(BaseModel):
    success: bool
    outcome: PairingOutcome
    message: str
    pair_secret: Optional[str] = None


class PairingStatus(BaseModel):
    sidecar_reachable: bool = False
    ready: bool = False
    pending: List[PairingRequest] = Field(default_factory=list)
    paired: List[PairedClient] = Field(default_factory=list)
    error: Optional[str] = None


class ClearResult(BaseModel):
    success: bool
    message: str
