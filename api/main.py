"""
FastAPI Backend for Dillinger

Provides the REST surface for launching and installing games in containers,
managing downloads, and pairing streaming clients. Progress for downloads
and image pulls is streamed as Server-Sent Events.
"""

from fastapi import FastAPI, HTTPException, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from typing import Optional
from contextlib import asynccontextmanager
from pathlib import Path
import os
import posixpath
import traceback
import logging
import uuid

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from dillingerCore import __version__
from dillingerCore.config import DillingerConfig, load_config
from dillingerCore.database import Database
from dillingerCore.downloader import DownloadManager
from dillingerCore.exceptions import (
    ContainerNotFoundError,
    InvalidTransitionError,
    RuntimeEngineError,
    ValidationError,
)
from dillingerCore.models import Game, Platform, SessionPurpose, SessionStatus
from dillingerCore.orchestrator import Orchestrator
from dillingerCore.pairing import PairingCoordinator, SidecarClient
from dillingerCore.sessions import SessionRegistry
from models import (
    DownloadRequest,
    DownloadSettingsRequest,
    InstallRequest,
    LaunchRequest,
    PairRequest,
)

# Environment variables
CONFIG_PATH = os.getenv("DILLINGER_CONFIG")


class Services:
    config: DillingerConfig
    database: Database
    registry: SessionRegistry
    orchestrator: Orchestrator
    downloads: DownloadManager
    sidecar: SidecarClient
    pairing: PairingCoordinator


services = Services()


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    services.config = load_config(Path(CONFIG_PATH) if CONFIG_PATH else None)
    services.database = Database(services.config.paths.database_path)
    await services.database.init_db()
    services.registry = SessionRegistry(services.database)
    await services.registry.load()
    services.orchestrator = Orchestrator(services.config, services.database, services.registry)
    services.downloads = DownloadManager(services.config, services.database)
    services.sidecar = SidecarClient(services.config.streaming.sidecar_url, services.config.timeouts.sidecar)
    services.pairing = PairingCoordinator(services.database, services.sidecar)
    try:
        await services.downloads.load_state()
        await services.orchestrator.recover_installations()
        logger.info("Services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to restore state: {e}")
        logger.error(traceback.format_exc())
    yield
    # Shutdown
    await services.downloads.aclose()
    await services.orchestrator.aclose()
    await services.sidecar.aclose()


app = FastAPI(
    title="Dillinger Core API",
    description="Container session and download orchestration for Dillinger",
    version=__version__,
    lifespan=lifespan,
)

frontend_url = os.getenv("FRONTEND_URL", "")
allowed_origins = ["http://localhost:3000"]
if frontend_url:
    allowed_origins.append(frontend_url)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_services() -> Services:
    return services


def to_http_error(e: Exception, where: str) -> HTTPException:
    """Map dillingerCore errors onto HTTP status codes"""
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, InvalidTransitionError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (ContainerNotFoundError, KeyError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, RuntimeEngineError):
        logger.error(f"Engine error in {where}: {e}")
        return HTTPException(status_code=502, detail=str(e))
    logger.error(f"Error in {where}: {e}")
    logger.error(traceback.format_exc())
    return HTTPException(status_code=500, detail=str(e))


async def load_game_and_platform(s: Services, game_id: str, platform_id: Optional[str]):
    game = await s.database.get_game(game_id)
    if not game:
        raise HTTPException(status_code=404, detail="Game not found")
    platform_id = platform_id or game.platform_id
    platform = await s.database.get_platform(platform_id) if platform_id else None
    if not platform:
        raise HTTPException(status_code=404, detail="Platform not found")
    return game, platform


def sse_response(events) -> StreamingResponse:
    async def body():
        async for event in events:
            yield event.to_sse()
    return StreamingResponse(body(), media_type="text/event-stream")


# Health check
@app.get("/")
async def root():
    return {
        "status": "ok",
        "service": "Dillinger Core API",
        "version": __version__,
    }


@app.get("/health")
async def health(s: Services = Depends(get_services)):
    return {
        "status": "healthy",
        "sessions_running": len(s.registry.list(status=SessionStatus.RUNNING)),
        "downloads_active": s.downloads.active_count,
    }


# Library records
@app.put("/api/games/{game_id}")
async def save_game(game_id: str, game: Game, s: Services = Depends(get_services)):
    """Create or replace a game record"""
    if game.id != game_id:
        raise HTTPException(status_code=400, detail="Game id does not match path")
    await s.database.save_game(game)
    return game


@app.get("/api/games/{game_id}")
async def get_game(game_id: str, s: Services = Depends(get_services)):
    game = await s.database.get_game(game_id)
    if not game:
        raise HTTPException(status_code=404, detail="Game not found")
    return game


@app.put("/api/platforms/{platform_id}")
async def save_platform(platform_id: str, platform: Platform, s: Services = Depends(get_services)):
    if platform.id != platform_id:
        raise HTTPException(status_code=400, detail="Platform id does not match path")
    await s.database.save_platform(platform)
    return platform


# Launching
@app.post("/api/games/{game_id}/launch")
async def launch_game(game_id: str, request: LaunchRequest, s: Services = Depends(get_services)):
    """Launch a game in a new container"""
    try:
        game, platform = await load_game_and_platform(s, game_id, request.platform_id)
        session_id = request.session_id or uuid.uuid4().hex
        result = await s.orchestrator.launch_game(game, platform, session_id, request.mode)
        return result
    except Exception as e:
        raise to_http_error(e, "launch_game")


@app.post("/api/games/{game_id}/debug")
async def launch_debug(game_id: str, request: LaunchRequest, s: Services = Depends(get_services)):
    """Start an idle container with the game's environment for troubleshooting"""
    try:
        game, platform = await load_game_and_platform(s, game_id, request.platform_id)
        session_id = request.session_id or uuid.uuid4().hex
        return await s.orchestrator.launch_debug_container(game, platform, session_id, request.mode)
    except Exception as e:
        raise to_http_error(e, "launch_debug")


@app.post("/api/games/{game_id}/install")
async def install_game(game_id: str, request: InstallRequest, s: Services = Depends(get_services)):
    """Start an installer container; completion is recorded in the background"""
    try:
        game, platform = await load_game_and_platform(s, game_id, request.platform_id)
        install_path = request.install_path or posixpath.join(
            str(s.config.paths.install_root), game.slug or game.id
        )
        session_id = request.session_id or uuid.uuid4().hex
        result = await s.orchestrator.install_game(
            request.installer_path,
            install_path,
            platform,
            session_id,
            game,
            installer_args=request.installer_args,
            mode=request.mode,
        )
        return {"status": "installing", "install_path": install_path, **result.model_dump()}
    except Exception as e:
        raise to_http_error(e, "install_game")


@app.get("/api/games/{game_id}/install")
async def installation_status(game_id: str, s: Services = Depends(get_services)):
    """Installation state, resolving it if the installer already exited"""
    try:
        game = await s.orchestrator.check_installation(game_id)
        if not game:
            raise HTTPException(status_code=404, detail="Game not found")
        return {"game_id": game.id, "file_path": game.file_path, **game.installation.model_dump()}
    except Exception as e:
        raise to_http_error(e, "installation_status")


# Containers
@app.post("/api/containers/{container_id}/stop")
async def stop_container(container_id: str, s: Services = Depends(get_services)):
    try:
        return await s.orchestrator.stop_game(container_id)
    except Exception as e:
        raise to_http_error(e, "stop_container")


@app.get("/api/containers/{container_id}/logs")
async def container_logs(container_id: str, tail: int = 100, s: Services = Depends(get_services)):
    try:
        logs = await s.orchestrator.get_container_logs(container_id, tail)
        return {"container_id": container_id, "logs": logs}
    except Exception as e:
        raise to_http_error(e, "container_logs")


@app.get("/api/containers/{container_id}")
async def inspect_container(container_id: str, s: Services = Depends(get_services)):
    try:
        return await s.orchestrator.inspect_container(container_id)
    except Exception as e:
        raise to_http_error(e, "inspect_container")


@app.get("/api/images/pull")
async def pull_image(image: str, s: Services = Depends(get_services)):
    """Pull an image, streaming progress as Server-Sent Events"""
    return sse_response(s.orchestrator.pull_image(image))


# Sessions
@app.get("/api/sessions")
async def list_sessions(
    status: Optional[SessionStatus] = None,
    game_id: Optional[str] = None,
    purpose: Optional[SessionPurpose] = None,
    s: Services = Depends(get_services),
):
    return s.registry.list(status=status, game_id=game_id, purpose=purpose)


@app.get("/api/sessions/{session_id}")
async def get_session(session_id: str, s: Services = Depends(get_services)):
    session = s.registry.get(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@app.get("/api/games/{game_id}/stats")
async def get_game_stats(game_id: str, s: Services = Depends(get_services)):
    return s.registry.stats(game_id)


@app.post("/api/sessions/{session_id}/resources")
async def refresh_session_resources(session_id: str, s: Services = Depends(get_services)):
    try:
        return await s.orchestrator.refresh_session_resources(session_id)
    except Exception as e:
        raise to_http_error(e, "refresh_session_resources")


# Maintenance
@app.post("/api/maintenance/cleanup/containers")
async def cleanup_containers(s: Services = Depends(get_services)):
    try:
        return await s.orchestrator.cleanup_stopped_containers()
    except Exception as e:
        raise to_http_error(e, "cleanup_containers")


@app.post("/api/maintenance/cleanup/volumes")
async def cleanup_volumes(s: Services = Depends(get_services)):
    try:
        return await s.orchestrator.cleanup_orphaned_volumes()
    except Exception as e:
        raise to_http_error(e, "cleanup_volumes")


# Downloads
@app.post("/api/downloads")
async def start_download(request: DownloadRequest, s: Services = Depends(get_services)):
    """Queue a download (returns the existing task if one is active)"""
    try:
        return await s.downloads.start_download(
            request.game_id, request.cache_dir or request.game_id, request.title, request.files
        )
    except Exception as e:
        raise to_http_error(e, "start_download")


@app.get("/api/downloads")
async def list_downloads(s: Services = Depends(get_services)):
    return s.downloads.list_downloads()


@app.get("/api/downloads/{game_id}")
async def get_download_status(game_id: str, s: Services = Depends(get_services)):
    task = s.downloads.get_download_status(game_id)
    if not task:
        raise HTTPException(status_code=404, detail="Download not found")
    return task


@app.get("/api/downloads/{game_id}/events")
async def download_events(game_id: str, s: Services = Depends(get_services)):
    """Download progress as Server-Sent Events"""
    if not s.downloads.get_download_status(game_id):
        raise HTTPException(status_code=404, detail="Download not found")
    return sse_response(s.downloads.subscribe(game_id))


@app.delete("/api/downloads/{game_id}")
async def cancel_download(game_id: str, s: Services = Depends(get_services)):
    task = await s.downloads.cancel_download(game_id)
    if not task:
        raise HTTPException(status_code=404, detail="Download not found")
    return task


@app.put("/api/settings/downloads")
async def download_settings(request: DownloadSettingsRequest, s: Services = Depends(get_services)):
    limit = await s.downloads.set_max_concurrent_downloads(request.max_concurrent)
    return {"max_concurrent": limit}


# Streaming
@app.get("/api/streaming/pair")
async def pairing_status(s: Services = Depends(get_services)):
    """Sidecar readiness, pending pairing requests and paired clients"""
    return await s.pairing.status()


@app.post("/api/streaming/pair")
async def pairing_action(request: PairRequest, s: Services = Depends(get_services)):
    try:
        if request.action == "pair":
            if not request.pin:
                raise HTTPException(status_code=400, detail="Missing pin")
            result = await s.pairing.pair(request.pair_secret, request.pin)
            if not result.success:
                raise HTTPException(status_code=400, detail=result.message)
            return result
        if request.action == "status":
            return await s.pairing.status()
        if request.action == "clear":
            return await s.pairing.clear()
        raise HTTPException(status_code=400, detail='Invalid action. Use "pair", "status", or "clear".')
    except Exception as e:
        raise to_http_error(e, "pairing_action")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
