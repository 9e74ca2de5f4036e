"""
API Models for FastAPI

Pydantic models for request validation. Responses reuse dillingerCore models.
"""

from pydantic import BaseModel, Field
from typing import Optional, List

from dillingerCore.models import DownloadFile, LaunchMode


class LaunchRequest(BaseModel):
    platform_id: Optional[str] = None
    session_id: Optional[str] = None
    mode: LaunchMode = LaunchMode.LOCAL


class InstallRequest(BaseModel):
    installer_path: str
    install_path: Optional[str] = None
    platform_id: Optional[str] = None
    session_id: Optional[str] = None
    installer_args: List[str] = Field(default_factory=list)
    mode: LaunchMode = LaunchMode.LOCAL


class DownloadRequest(BaseModel):
    game_id: str
    title: str
    cache_dir: Optional[str] = None
    files: List[DownloadFile]


class DownloadSettingsRequest(BaseModel):
    max_concurrent: int = Field(ge=1, le=10)


class PairRequest(BaseModel):
    action: str = "pair"
    pin: Optional[str] = None
    pair_secret: Optional[str] = None
