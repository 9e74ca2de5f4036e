import asyncio
import logging
import uuid
from collections import defaultdict, deque
from pathlib import Path
from typing import AsyncIterator, Deque, Dict, List, Optional, Sequence, Set, Tuple, Union

import anyio
import anyio.to_thread
import httpx
import pydantic

from .config import DillingerConfig, clamp_concurrency
from .database import Database
from .exceptions import ValidationError
from .models import (
    DownloadFile,
    DownloadStatus,
    DownloadTask,
    ProgressEvent,
    ProgressEventType,
    sanitize_filename,
    utcnow,
)
from .worker import CANCELLED, COMPLETED, FAILED, PROGRESS, DownloadWorker, WorkerMessage

logger = logging.getLogger(__name__)

DOWNLOADS_KIND = "downloads"


class DownloadManager:
    """Schedules multi-file downloads onto worker threads with FIFO admission"""

    def __init__(
        self,
        config: DillingerConfig,
        database: Database,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.database = database
        self.transport = transport
        self.max_concurrent = clamp_concurrency(config.downloads.max_concurrent)

        self.tasks: Dict[str, DownloadTask] = {}
        self.queue: Deque[str] = deque()
        self.workers: Dict[str, DownloadWorker] = {}

        self._admission_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._persist_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._finished: Dict[str, asyncio.Event] = {}
        self._subscribers: List[Tuple[Optional[str], asyncio.Queue]] = []
        self._background: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    @property
    def active_count(self) -> int:
        return len(self.workers)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start_download(
        self,
        game_id: str,
        cache_dir_name: str,
        title: str,
        files: Sequence[Union[DownloadFile, dict]],
    ) -> DownloadTask:
        """Queue a download, or return the task already active for game_id"""
        async with self._admission_locks[game_id]:
            existing = self.tasks.get(game_id)
            if existing is not None and existing.is_active:
                logger.info(f"Download for {game_id} already {existing.status.value}")
                return existing

            if not files:
                raise ValidationError(f"Download for {game_id} has no files")
            try:
                parsed = [f if isinstance(f, DownloadFile) else DownloadFile.model_validate(f) for f in files]
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid file list for {game_id}: {e}") from e
            directory_name = sanitize_filename(cache_dir_name)

            download_path = Path(self.config.paths.cache_root) / directory_name
            await anyio.to_thread.run_sync(lambda: download_path.mkdir(parents=True, exist_ok=True))

            task = DownloadTask(
                game_id=game_id,
                job_id=uuid.uuid4().hex,
                cache_directory_name=directory_name,
                download_path=str(download_path),
                title=title,
                files=parsed,
                total_files=len(parsed),
            )
            self.tasks[game_id] = task
            self._finished[task.job_id] = asyncio.Event()
            self.queue.append(game_id)
            await self._write(game_id)
            logger.info(f"Queued download of {title} ({len(parsed)} files) into {download_path}")

        self._process_queue()
        return self.tasks[game_id]

    def get_download_status(self, game_id: str) -> Optional[DownloadTask]:
        return self.tasks.get(game_id)

    def list_downloads(self) -> List[DownloadTask]:
        return sorted(self.tasks.values(), key=lambda t: t.queued_at)

    async def cancel_download(self, game_id: str) -> Optional[DownloadTask]:
        """Stop a queued or running download. Partial files stay on disk"""
        task = self.tasks.get(game_id)
        if task is None or not task.is_active:
            return task

        if task.status == DownloadStatus.QUEUED:
            if game_id in self.queue:
                self.queue.remove(game_id)
        else:
            worker = self.workers.get(task.job_id)
            if worker is not None:
                worker.cancel()

        task.status = DownloadStatus.CANCELLED
        task.error = "Download cancelled by user"
        task.completed_at = utcnow()
        self._publish(ProgressEventType.ERROR, task)
        self._mark_finished(task.job_id)
        await self._write(game_id)
        logger.info(f"Cancelled download of {task.title}")
        return task

    async def set_max_concurrent_downloads(self, limit: int) -> int:
        """Change the admission limit. Running workers are never pre-empted"""
        self.max_concurrent = clamp_concurrency(limit)
        logger.info(f"Max concurrent downloads set to {self.max_concurrent}")
        self._process_queue()
        return self.max_concurrent

    async def wait_for(self, game_id: str, timeout: Optional[float] = None) -> Optional[DownloadTask]:
        """Wait until the current task for game_id reaches a terminal state"""
        task = self.tasks.get(game_id)
        if task is None:
            return None
        event = self._finished.get(task.job_id)
        if event is not None:
            with anyio.fail_after(timeout):
                await event.wait()
        return self.tasks.get(game_id)

    async def subscribe(self, game_id: Optional[str] = None) -> AsyncIterator[ProgressEvent]:
        """Yield progress events. A per-game stream ends after its terminal event"""
        queue: asyncio.Queue = asyncio.Queue()
        entry = (game_id, queue)
        self._subscribers.append(entry)
        try:
            task = self.tasks.get(game_id) if game_id else None
            if task is not None:
                yield self._event(ProgressEventType.PROGRESS, task)
                if not task.is_active:
                    yield self._event(
                        ProgressEventType.COMPLETE if task.status == DownloadStatus.COMPLETED
                        else ProgressEventType.ERROR,
                        task,
                    )
                    return
            while True:
                event = await queue.get()
                yield event
                if game_id is not None and event.type != ProgressEventType.PROGRESS:
                    return
        finally:
            self._subscribers.remove(entry)

    async def load_state(self) -> int:
        """Restore persisted tasks after a restart"""
        records = await self.database.list_entities(DOWNLOADS_KIND)
        for record in records:
            task = DownloadTask.model_validate(record)
            if task.is_active:
                if self.config.downloads.resume_on_startup:
                    download_path = Path(task.download_path)
                    await anyio.to_thread.run_sync(lambda: download_path.mkdir(parents=True, exist_ok=True))
                    task.status = DownloadStatus.QUEUED
                    task.job_id = uuid.uuid4().hex
                    task.total_progress_percent = 0.0
                    self.queue.append(task.game_id)
                    self._finished[task.job_id] = asyncio.Event()
                else:
                    task.status = DownloadStatus.FAILED
                    task.error = "Interrupted by restart"
            self.tasks[task.game_id] = task
            await self._write(task.game_id)
        logger.info(f"Restored {len(records)} download tasks ({len(self.queue)} queued)")
        self._process_queue()
        return len(records)

    async def aclose(self, timeout: float = 5.0):
        workers = list(self.workers.values())
        for worker in workers:
            worker.cancel()
        for worker in workers:
            await anyio.to_thread.run_sync(worker.join, timeout)
        # Let terminal messages posted by the joined threads run
        await asyncio.sleep(0)
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _process_queue(self):
        for game_id in list(self.queue):
            if len(self.workers) >= self.max_concurrent:
                break
            task = self.tasks.get(game_id)
            if task is None or task.status != DownloadStatus.QUEUED:
                self.queue.remove(game_id)
                continue
            if self._has_worker(game_id):
                # A cancelled attempt still owns the cache directory
                continue
            self.queue.remove(game_id)
            self._start_worker(task)

    def _has_worker(self, game_id: str) -> bool:
        return any(worker.task.game_id == game_id for worker in self.workers.values())

    def _start_worker(self, task: DownloadTask):
        self._loop = asyncio.get_running_loop()
        task.status = DownloadStatus.DOWNLOADING
        task.started_at = utcnow()
        worker = DownloadWorker(
            task.model_copy(deep=True),
            self.config.downloads,
            self.config.timeouts,
            on_message=self._post_from_worker,
            transport=self.transport,
        )
        self.workers[task.job_id] = worker
        worker.start()
        logger.info(f"Started download of {task.title} ({self.active_count}/{self.max_concurrent} slots)")
        self._publish(ProgressEventType.PROGRESS, task)
        self._schedule_write(task.game_id)

    def _post_from_worker(self, message: WorkerMessage):
        """Called on worker threads; hands the message to the event loop"""
        try:
            self._loop.call_soon_threadsafe(self._handle_message, message)
        except RuntimeError:
            logger.debug(f"Dropped {message.type} message for {message.game_id}: event loop closed")

    def _handle_message(self, message: WorkerMessage):
        terminal = message.type != PROGRESS
        if terminal:
            self.workers.pop(message.job_id, None)

        task = self.tasks.get(message.game_id)
        if task is None or task.job_id != message.job_id:
            # A previous attempt finishing after a restart of the same game
            if terminal:
                self._process_queue()
            return

        if task.status == DownloadStatus.CANCELLED:
            if terminal:
                task.completed_files = message.completed_files
                self._schedule_write(task.game_id)
                self._process_queue()
            return

        task.completed_files = message.completed_files
        task.current_file = message.current_file
        task.current_file_progress_percent = message.current_file_progress
        task.total_progress_percent = max(task.total_progress_percent, message.total_progress)

        if message.type == PROGRESS:
            self._publish(ProgressEventType.PROGRESS, task)
            return

        task.completed_at = utcnow()
        if message.type == COMPLETED:
            task.status = DownloadStatus.COMPLETED
            task.total_progress_percent = 100.0
            task.current_file = None
            self._publish(ProgressEventType.COMPLETE, task)
            logger.info(f"Download of {task.title} completed")
        elif message.type == FAILED:
            task.status = DownloadStatus.FAILED
            task.error = message.error
            self._publish(ProgressEventType.ERROR, task)
            logger.error(f"Download of {task.title} failed: {message.error}")
        elif message.type == CANCELLED:
            task.status = DownloadStatus.CANCELLED
            task.error = message.error
            self._publish(ProgressEventType.ERROR, task)

        self._mark_finished(task.job_id)
        self._schedule_write(task.game_id)
        self._process_queue()

    def _mark_finished(self, job_id: str):
        event = self._finished.get(job_id)
        if event is not None:
            event.set()

    # ------------------------------------------------------------------
    # Persistence and events
    # ------------------------------------------------------------------

    async def _write(self, game_id: str):
        # The snapshot is taken under the lock so the newest state is written last
        async with self._persist_locks[game_id]:
            task = self.tasks.get(game_id)
            if task is not None:
                await self.database.write_entity(DOWNLOADS_KIND, game_id, task.model_dump(mode="json"))

    def _schedule_write(self, game_id: str):
        background = asyncio.get_running_loop().create_task(self._write(game_id))
        self._background.add(background)
        background.add_done_callback(self._write_done)

    def _write_done(self, background: asyncio.Task):
        self._background.discard(background)
        if not background.cancelled() and background.exception() is not None:
            logger.error(f"Failed to persist download state: {background.exception()}")

    @staticmethod
    def _event(kind: ProgressEventType, task: DownloadTask) -> ProgressEvent:
        return ProgressEvent(
            type=kind,
            payload={
                "game_id": task.game_id,
                "title": task.title,
                "status": task.status.value,
                "completed_files": task.completed_files,
                "total_files": task.total_files,
                "current_file": task.current_file,
                "current_file_progress_percent": task.current_file_progress_percent,
                "total_progress_percent": task.total_progress_percent,
                "error": task.error,
            },
        )

    def _publish(self, kind: ProgressEventType, task: DownloadTask):
        if not self._subscribers:
            return
        event = self._event(kind, task)
        for game_id, queue in self._subscribers:
            if game_id is None or game_id == task.game_id:
                queue.put_nowait(event)
