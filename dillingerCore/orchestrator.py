"""
Container orchestration.

Launches play, install and debug containers, supervises install completion
in background tasks, stops and removes containers, and runs maintenance
sweeps. Blocking engine calls run in worker threads so the event loop is
never held by the container engine.
"""

import asyncio
import functools
import logging
import posixpath
from collections import defaultdict
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import anyio
import anyio.to_thread

from .config import DillingerConfig
from .database import Database
from .exceptions import (
    ContainerNotFoundError,
    LaunchError,
    RuntimeEngineError,
)
from .executables import scan_for_game_executables
from .launch_spec import (
    build_debug_spec,
    build_install_spec,
    build_spec,
    detect_host_capabilities,
)
from .models import (
    CleanupResult,
    ContainerSpec,
    DebugContainerInfo,
    DeviceKind,
    DisplayMethod,
    Game,
    GameSession,
    HostCapabilities,
    InstallStatus,
    LaunchMode,
    LaunchResult,
    NetworkStats,
    Platform,
    ProgressEvent,
    ProgressEventType,
    SessionPurpose,
    SessionResources,
    SessionStatus,
    StopResult,
    transition_installation,
)
from .runtime import RuntimeClient
from .sessions import SessionRegistry

logger = logging.getLogger(__name__)

SCREENSHOT_EXTENSIONS = {".png", ".jpg", ".jpeg", ".bmp", ".webp"}


def cpu_percent(stats: Dict[str, Any]) -> float:
    """CPU usage from a single docker stats sample, as docker stats reports it"""
    cpu = stats.get("cpu_stats", {})
    precpu = stats.get("precpu_stats", {})
    cpu_delta = cpu.get("cpu_usage", {}).get("total_usage", 0) - precpu.get("cpu_usage", {}).get("total_usage", 0)
    system_delta = cpu.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)
    online = cpu.get("online_cpus") or len(cpu.get("cpu_usage", {}).get("percpu_usage") or []) or 1
    if cpu_delta <= 0 or system_delta <= 0:
        return 0.0
    return round(cpu_delta / system_delta * online * 100.0, 2)


class Orchestrator:
    """Translates launch and install requests into supervised containers"""

    def __init__(
        self,
        config: DillingerConfig,
        database: Database,
        registry: SessionRegistry,
        runtime: Optional[RuntimeClient] = None,
        host: Optional[HostCapabilities] = None,
    ):
        self.config = config
        self.database = database
        self.registry = registry
        self.runtime = runtime or RuntimeClient(base_url=config.docker.base_url)
        self.host = host

        self._monitors: Dict[str, asyncio.Task] = {}
        self._game_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def _call(self, func, *args, **kwargs):
        return await anyio.to_thread.run_sync(
            functools.partial(func, *args, **kwargs), abandon_on_cancel=True
        )

    async def _diagnostic(self, func, *args, **kwargs):
        try:
            with anyio.fail_after(self.config.timeouts.diagnostic):
                return await self._call(func, *args, **kwargs)
        except TimeoutError as e:
            raise RuntimeEngineError(
                f"{func.__name__} timed out after {self.config.timeouts.diagnostic}s"
            ) from e

    async def _host_capabilities(self) -> HostCapabilities:
        if self.host is not None:
            return self.host
        return await anyio.to_thread.run_sync(detect_host_capabilities)

    def _log_degradations(self, spec: ContainerSpec):
        kinds = spec.device_kinds()
        if DeviceKind.GPU not in kinds:
            logger.warning(f"{spec.name}: no GPU passthrough, software rendering only")
        if spec.display.method == DisplayMethod.HEADLESS:
            logger.info(f"{spec.name}: headless display ({spec.display.width}x{spec.display.height})")

    # ------------------------------------------------------------------
    # Launching
    # ------------------------------------------------------------------

    async def _bring_up(
        self,
        spec: ContainerSpec,
        game: Game,
        platform: Platform,
        session_id: str,
        mode: LaunchMode,
        purpose: SessionPurpose,
    ) -> LaunchResult:
        await self.registry.create(GameSession(
            id=session_id,
            game_id=game.id,
            platform_id=platform.id,
            purpose=purpose,
            mode=mode,
        ))

        container_id = None
        try:
            container_id = await self._call(self.runtime.create_container, spec)
            await self.registry.update(session_id, container_id=container_id)
            await self._call(self.runtime.start, container_id)
        except RuntimeEngineError as e:
            await self.registry.fail(session_id, str(e))
            if container_id:
                await self._discard(container_id)
            raise LaunchError(f"Could not start {purpose.value} container for {game.id}: {e}") from e

        await self.registry.update(session_id, status=SessionStatus.RUNNING)
        logger.info(f"Started {spec.name} ({container_id[:12]}) for game {game.id}")
        return LaunchResult(container_id=container_id, session_id=session_id)

    async def _discard(self, container_id: str):
        try:
            await self._call(self.runtime.remove, container_id, force=True)
        except RuntimeEngineError as e:
            logger.warning(f"Could not remove container {container_id[:12]}: {e}")

    async def launch_game(
        self,
        game: Game,
        platform: Platform,
        session_id: str,
        mode: LaunchMode = LaunchMode.LOCAL,
    ) -> LaunchResult:
        """Build a spec, create and start the container, register the session"""
        host = await self._host_capabilities()
        spec = build_spec(game, platform, mode, host, session_id=session_id, defaults=self.config)
        self._log_degradations(spec)
        return await self._bring_up(spec, game, platform, session_id, LaunchMode(mode), SessionPurpose.PLAY)

    async def launch_debug_container(
        self,
        game: Game,
        platform: Platform,
        session_id: str,
        mode: LaunchMode = LaunchMode.LOCAL,
    ) -> DebugContainerInfo:
        host = await self._host_capabilities()
        spec = build_debug_spec(game, platform, mode, host, session_id=session_id, defaults=self.config)
        result = await self._bring_up(spec, game, platform, session_id, LaunchMode(mode), SessionPurpose.DEBUG)
        return DebugContainerInfo(
            container_id=result.container_id,
            session_id=session_id,
            exec_command=f"docker exec -it {result.container_id[:12]} /bin/bash",
        )

    # ------------------------------------------------------------------
    # Installation
    # ------------------------------------------------------------------

    async def install_game(
        self,
        installer_path: str,
        install_path: str,
        platform: Platform,
        session_id: str,
        game: Game,
        installer_args: Optional[Sequence[str]] = None,
        mode: LaunchMode = LaunchMode.LOCAL,
    ) -> LaunchResult:
        """Start an installer container and return without waiting for it.

        A background monitor records the outcome on the game record once the
        container exits.
        """
        host = await self._host_capabilities()
        spec = build_install_spec(
            game,
            platform,
            installer_path,
            install_path,
            host,
            session_id=session_id,
            installer_args=installer_args,
            mode=mode,
            defaults=self.config,
        )

        async with self._game_locks[game.id]:
            current = await self.database.get_game(game.id) or game
            installation = transition_installation(
                current.installation,
                InstallStatus.INSTALLING,
                install_path=install_path,
                installer_path=installer_path,
                container_id=None,
                error=None,
            )
            await self.database.save_game(current.model_copy(update={"installation": installation}))

        try:
            result = await self._bring_up(spec, game, platform, session_id, LaunchMode(mode), SessionPurpose.INSTALL)
        except Exception as e:
            # Any bring-up failure must release the INSTALLING state
            await self._finish_installation(game.id, InstallStatus.FAILED, error=str(e) or e.__class__.__name__)
            raise

        async with self._game_locks[game.id]:
            current = await self.database.get_game(game.id)
            if current is not None and current.installation.status == InstallStatus.INSTALLING:
                installation = current.installation.model_copy(update={"container_id": result.container_id})
                await self.database.save_game(current.model_copy(update={"installation": installation}))

        self._spawn_monitor(game.id, session_id, result.container_id, install_path)
        return result

    def _spawn_monitor(self, game_id: str, session_id: str, container_id: str, install_path: str):
        task = asyncio.create_task(
            self._monitor_installation(game_id, session_id, container_id, install_path),
            name=f"install-monitor-{session_id}",
        )
        self._monitors[session_id] = task
        task.add_done_callback(lambda _: self._monitors.pop(session_id, None))

    async def _monitor_installation(self, game_id: str, session_id: str, container_id: str, install_path: str):
        exit_code: Optional[int] = None
        try:
            while exit_code is None:
                try:
                    exit_code = await self._call(
                        self.runtime.wait, container_id, self.config.timeouts.install_poll
                    )
                except ContainerNotFoundError:
                    logger.warning(f"Install container {container_id[:12]} vanished before it reported an exit code")
                    exit_code = 1
            logger.info(f"Installer for {game_id} exited with code {exit_code}")
            await self._resolve_installation(game_id, install_path, exit_code)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Install monitor for {game_id} failed")
            await self._finish_installation(game_id, InstallStatus.FAILED, error=f"Install monitor failed: {e}")

        try:
            session = self.registry.get(session_id)
            if session is not None and not session.is_terminal:
                await self.registry.stop(session_id, exit_code=exit_code)
        except Exception:
            logger.exception(f"Could not close install session {session_id}")

    async def _resolve_installation(self, game_id: str, install_path: str, exit_code: int) -> Optional[Game]:
        executables = await self.scan_for_game_executables(install_path)
        if executables:
            return await self._finish_installation(
                game_id,
                InstallStatus.INSTALLED,
                file_path=posixpath.join(install_path, executables[0]),
            )
        if exit_code == 0:
            return await self._finish_installation(game_id, InstallStatus.INSTALLED)
        return await self._finish_installation(
            game_id,
            InstallStatus.FAILED,
            error=f"Installation failed with exit code {exit_code}",
        )

    async def _finish_installation(
        self,
        game_id: str,
        status: InstallStatus,
        file_path: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Optional[Game]:
        """Write the terminal installation state in one record update.

        A record that already left INSTALLING is returned untouched.
        """
        async with self._game_locks[game_id]:
            game = await self.database.get_game(game_id)
            if game is None:
                logger.error(f"Cannot record installation result: game {game_id} not found")
                return None
            if game.installation.status != InstallStatus.INSTALLING:
                return game

            changes: Dict[str, Any] = {"container_id": None, "error": error}
            if status == InstallStatus.INSTALLED:
                changes["installed_at"] = self.registry.clock()
            update: Dict[str, Any] = {
                "installation": transition_installation(game.installation, status, **changes)
            }
            if file_path:
                update["file_path"] = file_path
            game = game.model_copy(update=update)
            await self.database.save_game(game)

        if status == InstallStatus.INSTALLED:
            logger.info(f"Game {game_id} installed ({game.file_path or 'no executable detected'})")
        else:
            logger.error(f"Game {game_id} installation failed: {error}")
        return game

    async def check_installation(self, game_id: str) -> Optional[Game]:
        """Resolve an installation by hand if its container already exited.

        Safe to call while the background monitor is running: whichever
        finishes first writes the result, the other is a no-op.
        """
        game = await self.database.get_game(game_id)
        if game is None or game.installation.status != InstallStatus.INSTALLING:
            return game
        container_id = game.installation.container_id
        if not container_id:
            return game

        try:
            info = await self._diagnostic(self.runtime.inspect, container_id)
        except ContainerNotFoundError:
            exit_code = 1
        else:
            state = info.get("State", {})
            if state.get("Status") not in ("exited", "dead"):
                return game
            exit_code = int(state.get("ExitCode", 1))

        install_path = game.installation.install_path or ""
        return await self._resolve_installation(game_id, install_path, exit_code)

    async def recover_installations(self) -> int:
        """Restart monitors for installs that were in flight when the process stopped"""
        recovered = 0
        for game in await self.database.list_games():
            installation = game.installation
            if installation.status != InstallStatus.INSTALLING or not installation.container_id:
                continue
            session = self.registry.find_by_container(installation.container_id)
            if session is None or session.id in self._monitors:
                continue
            self._spawn_monitor(game.id, session.id, installation.container_id, installation.install_path or "")
            recovered += 1
        if recovered:
            logger.info(f"Resumed {recovered} install monitors")
        return recovered

    async def wait_for_monitors(self):
        tasks = list(self._monitors.values())
        if tasks:
            await asyncio.gather(*tasks)

    # ------------------------------------------------------------------
    # Stopping
    # ------------------------------------------------------------------

    async def stop_game(self, container_id: str) -> StopResult:
        """Stop gracefully, kill after the grace period, then remove"""
        session = self.registry.find_by_container(container_id)
        if session and session.status in (SessionStatus.STARTING, SessionStatus.RUNNING, SessionStatus.PAUSED):
            session = await self.registry.update(session.id, status=SessionStatus.STOPPING)

        grace = self.config.timeouts.stop_grace
        forced = False
        already_gone = False

        try:
            with anyio.fail_after(grace + self.config.timeouts.diagnostic):
                await self._call(self.runtime.stop, container_id, grace)
        except ContainerNotFoundError:
            already_gone = True
        except (TimeoutError, RuntimeEngineError) as e:
            logger.warning(f"Graceful stop of {container_id[:12]} failed ({e}), killing")
            forced = True
            try:
                await self._call(self.runtime.kill, container_id)
            except ContainerNotFoundError:
                already_gone = True
            except RuntimeEngineError as kill_error:
                logger.error(f"Kill of {container_id[:12]} failed: {kill_error}")

        if not already_gone:
            try:
                await self._call(self.runtime.remove, container_id, force=True)
            except ContainerNotFoundError:
                already_gone = True
            except RuntimeEngineError as e:
                if session:
                    await self.registry.fail(session.id, f"Container removal failed: {e}")
                raise

        session_id = None
        if session:
            session_id = session.id
            screenshots = await anyio.to_thread.run_sync(
                self._collect_screenshots, session.game_id, session.id
            )
            await self.registry.stop(session.id, screenshots=screenshots)

        logger.info(f"Stopped container {container_id[:12]}" + (" (already gone)" if already_gone else ""))
        return StopResult(
            container_id=container_id,
            session_id=session_id,
            forced=forced,
            already_gone=already_gone,
        )

    def _collect_screenshots(self, game_id: str, session_id: str) -> List[str]:
        directory = Path(self.config.paths.screenshots_root) / game_id / session_id
        if not directory.is_dir():
            return []
        return sorted(
            str(p) for p in directory.iterdir()
            if p.is_file() and p.suffix.lower() in SCREENSHOT_EXTENSIONS
        )

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def get_container_logs(self, container_id: str, tail_lines: int = 100) -> str:
        return await self._diagnostic(self.runtime.logs, container_id, tail_lines)

    async def inspect_container(self, container_id: str) -> Dict[str, Any]:
        return await self._diagnostic(self.runtime.inspect, container_id)

    async def refresh_session_resources(self, session_id: str) -> GameSession:
        """Sample container stats into the session's resource counters"""
        session = self.registry.get(session_id)
        if session is None:
            raise KeyError(f"Unknown session: {session_id}")
        if not session.container_id:
            return session

        stats = await self._diagnostic(self.runtime.stats, session.container_id)
        networks = stats.get("networks") or {}
        resources = SessionResources(
            cpu_percent=cpu_percent(stats),
            memory_bytes=int(stats.get("memory_stats", {}).get("usage", 0)),
            network=NetworkStats(
                bytes_in=sum(n.get("rx_bytes", 0) for n in networks.values()),
                bytes_out=sum(n.get("tx_bytes", 0) for n in networks.values()),
            ),
        )
        return await self.registry.update(session_id, resources=resources)

    async def scan_for_game_executables(self, path: str) -> List[str]:
        return await anyio.to_thread.run_sync(scan_for_game_executables, path)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def cleanup_stopped_containers(self) -> CleanupResult:
        """Remove exited managed containers whose sessions are finished"""
        docker_config = self.config.docker
        result = CleanupResult()
        for prefix in (docker_config.session_prefix, docker_config.install_prefix, docker_config.debug_prefix):
            containers = await self._call(self.runtime.list_containers, prefix, ("exited", "dead"))
            for container in containers:
                session = self.registry.find_by_container(container["id"])
                if session is not None and not session.is_terminal:
                    continue
                try:
                    await self._call(self.runtime.remove, container["id"], volumes=True)
                except ContainerNotFoundError:
                    continue
                except RuntimeEngineError as e:
                    logger.warning(f"Could not remove {container['name']}: {e}")
                    continue
                result.items.append(container["name"])

        result.removed = len(result.items)
        logger.info(f"Removed {result.removed} stopped containers")
        return result

    async def cleanup_orphaned_volumes(self) -> CleanupResult:
        """Remove managed volumes that no container mounts"""
        docker_config = self.config.docker
        in_use = await self._call(self.runtime.volumes_in_use)
        names = await self._call(self.runtime.list_volumes, docker_config.volume_prefix)

        result = CleanupResult()
        for name in names:
            if name in docker_config.protected_volumes or name in in_use:
                continue
            try:
                await self._call(self.runtime.remove_volume, name)
            except ContainerNotFoundError:
                continue
            except RuntimeEngineError as e:
                logger.warning(f"Could not remove volume {name}: {e}")
                continue
            result.items.append(name)

        result.removed = len(result.items)
        logger.info(f"Removed {result.removed} orphaned volumes")
        return result

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def pull_image(self, image: str) -> AsyncIterator[ProgressEvent]:
        """Pull an image, yielding progress events and one terminal event"""
        done = object()
        layers: Dict[str, Dict[str, int]] = {}
        try:
            messages = await self._call(self.runtime.pull_image, image)
            while True:
                message = await self._call(next, messages, done)
                if message is done:
                    break
                detail = message.get("progressDetail") or {}
                if message.get("id") and detail.get("total"):
                    layers[message["id"]] = {"current": detail.get("current", 0), "total": detail["total"]}
                total = sum(layer["total"] for layer in layers.values())
                current = sum(min(layer["current"], layer["total"]) for layer in layers.values())
                yield ProgressEvent(
                    type=ProgressEventType.PROGRESS,
                    payload={
                        "image": image,
                        "status": message.get("status"),
                        "layer": message.get("id"),
                        "percent": round(current / total * 100, 2) if total else 0.0,
                    },
                )
        except RuntimeEngineError as e:
            logger.error(f"Pull of {image} failed: {e}")
            yield ProgressEvent(type=ProgressEventType.ERROR, payload={"image": image, "error": str(e)})
            return
        logger.info(f"Pulled image {image}")
        yield ProgressEvent(type=ProgressEventType.COMPLETE, payload={"image": image, "percent": 100.0})

    async def aclose(self):
        for task in list(self._monitors.values()):
            task.cancel()
        await asyncio.gather(*self._monitors.values(), return_exceptions=True)
        await anyio.to_thread.run_sync(self.runtime.close)
