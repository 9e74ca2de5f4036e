"""
Download worker.

Runs one DownloadTask on its own OS thread with a private event loop. Files
are fetched strictly in order into the task's cache directory; progress and
the terminal outcome are reported through a callback as WorkerMessage
objects. The worker knows nothing about the manager beyond that callback.
"""

import asyncio
import logging
import math
import os
import threading
import time
from pathlib import Path
from typing import Callable, Optional

import aiofiles
import anyio
import httpx
from pydantic import BaseModel, Field

from .config import DownloadConfig, TimeoutConfig
from .exceptions import DownloadCancelled, DownloadError, TooManyRedirectsError
from .models import DownloadFile, DownloadTask

logger = logging.getLogger(__name__)

PROGRESS = "progress"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

CANCEL_POLL_INTERVAL = 0.05


class WorkerMessage(BaseModel):
    type: str
    game_id: str
    job_id: str
    completed_files: int = 0
    total_files: int = 0
    current_file: Optional[str] = None
    current_file_progress: float = 0.0
    total_progress: float = 0.0
    error: Optional[str] = None
    sent_at: float = Field(default_factory=time.time)


def aggregate_progress(completed_files: int, current_fraction: float, total_files: int) -> float:
    """(completed + current fraction) / total as a percentage, floored to 2 places"""
    if total_files <= 0:
        return 100.0
    fraction = min(max(current_fraction, 0.0), 1.0)
    value = (completed_files + fraction) / total_files * 100.0
    return min(100.0, math.floor(value * 100) / 100)


class DownloadWorker:
    """Downloads the files of one task sequentially on a background thread"""

    def __init__(
        self,
        task: DownloadTask,
        config: DownloadConfig,
        timeouts: TimeoutConfig,
        on_message: Callable[[WorkerMessage], None],
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.task = task
        self.config = config
        self.timeouts = timeouts
        self.on_message = on_message
        self.transport = transport
        self.clock = clock

        self.cancel_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._completed = 0
        self._current_file: Optional[str] = None
        self._last_emit: Optional[float] = None

    @property
    def download_path(self) -> Path:
        return Path(self.task.download_path)

    def start(self):
        self._thread = threading.Thread(
            target=self.run, name=f"download-{self.task.game_id}", daemon=True
        )
        self._thread.start()

    def cancel(self):
        self.cancel_event.set()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def join(self, timeout: Optional[float] = None):
        if self._thread is not None:
            self._thread.join(timeout)

    def run(self) -> WorkerMessage:
        """Thread entry point. Also callable directly for synchronous use.

        Always reports exactly one terminal message, whatever happens inside
        the event loop.
        """
        try:
            message = asyncio.run(self._run())
        except Exception as e:
            logger.exception(f"Download worker for {self.task.title} crashed")
            message = self._message(FAILED, error=str(e) or e.__class__.__name__)
        self.on_message(message)
        return message

    def _message(self, kind: str, fraction: float = 0.0, error: Optional[str] = None) -> WorkerMessage:
        total_files = len(self.task.files)
        return WorkerMessage(
            type=kind,
            game_id=self.task.game_id,
            job_id=self.task.job_id,
            completed_files=self._completed,
            total_files=total_files,
            current_file=self._current_file,
            current_file_progress=round(min(max(fraction, 0.0), 1.0) * 100, 2),
            total_progress=aggregate_progress(self._completed, fraction, total_files),
            error=error,
        )

    def _emit_progress(self, fraction: float):
        now = self.clock()
        if self._last_emit is not None and now - self._last_emit < self.config.progress_interval:
            return
        self._last_emit = now
        self.on_message(self._message(PROGRESS, fraction))

    def _check_cancel(self):
        if self.cancel_event.is_set():
            raise DownloadCancelled(f"Download of {self.task.game_id} cancelled")

    async def _watch_cancel(self, scope: anyio.CancelScope):
        # Interrupts a request that is stalled between chunks
        while not self.cancel_event.is_set():
            await anyio.sleep(CANCEL_POLL_INTERVAL)
        scope.cancel()

    async def _run(self) -> WorkerMessage:
        outcome: Optional[WorkerMessage] = None
        async with anyio.create_task_group() as tg:
            tg.start_soon(self._watch_cancel, tg.cancel_scope)
            outcome = await self._download_all()
            tg.cancel_scope.cancel()

        if outcome is None:
            logger.info(f"Download of {self.task.title} interrupted after {self._completed} files")
            return self._message(CANCELLED, error="Download cancelled by user")
        return outcome

    async def _download_all(self) -> WorkerMessage:
        client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeouts.read, connect=self.timeouts.connect),
            headers={"User-Agent": self.config.user_agent},
            follow_redirects=False,
            transport=self.transport,
        )
        try:
            async with client:
                for file in self.task.files:
                    self._check_cancel()
                    self._current_file = file.filename
                    destination = self.download_path / file.filename

                    if self._already_complete(destination, file):
                        logger.info(f"Skipping {file.filename}, already on disk")
                    else:
                        self._emit_progress(0.0)
                        await self._download_file(client, file, destination)

                    self._completed += 1
                    self._emit_progress(0.0)
        except DownloadCancelled:
            logger.info(f"Download of {self.task.title} cancelled after {self._completed} files")
            return self._message(CANCELLED, error="Download cancelled by user")
        except (DownloadError, httpx.HTTPError, OSError) as e:
            logger.error(f"Download of {self.task.title} failed on {self._current_file}: {e}")
            return self._message(FAILED, error=str(e) or e.__class__.__name__)
        except Exception as e:
            logger.exception(f"Unexpected error downloading {self._current_file} for {self.task.title}")
            return self._message(FAILED, error=str(e) or e.__class__.__name__)

        self._current_file = None
        logger.info(f"Download of {self.task.title} completed ({self._completed} files)")
        return self._message(COMPLETED)

    @staticmethod
    def _already_complete(destination: Path, file: DownloadFile) -> bool:
        if file.expected_size_bytes is None or not destination.exists():
            return False
        return destination.stat().st_size == file.expected_size_bytes

    async def _download_file(self, client: httpx.AsyncClient, file: DownloadFile, destination: Path):
        temp_path = destination.with_name(destination.name + ".part")
        start_pos = 0
        if self.config.resume_partial and temp_path.exists():
            start_pos = temp_path.stat().st_size

        url = file.url
        for _ in range(self.config.max_redirects + 1):
            headers = {}
            if start_pos > 0:
                headers["Range"] = f"bytes={start_pos}-"

            async with client.stream("GET", url, headers=headers) as response:
                if response.is_redirect:
                    url = str(response.url.join(response.headers["location"]))
                    continue

                if response.status_code == 416 and start_pos and start_pos == file.expected_size_bytes:
                    # Range not satisfiable: the partial file is already whole
                    os.replace(temp_path, destination)
                    return

                if response.status_code not in (200, 206):
                    raise DownloadError(
                        f"HTTP {response.status_code} while downloading {file.filename}"
                    )

                if response.status_code == 200:
                    start_pos = 0

                total = file.expected_size_bytes
                content_length = response.headers.get("content-length")
                if total is None and content_length:
                    try:
                        total = start_pos + int(content_length)
                    except ValueError:
                        raise DownloadError(
                            f"Invalid Content-Length {content_length!r} for {file.filename}"
                        ) from None

                self._check_cancel()
                received = start_pos
                async with aiofiles.open(temp_path, "ab" if start_pos > 0 else "wb") as f:
                    async for chunk in response.aiter_bytes(self.config.chunk_size):
                        self._check_cancel()
                        await f.write(chunk)
                        received += len(chunk)
                        if total:
                            self._emit_progress(min(received / total, 1.0))

                if file.expected_size_bytes is not None and received != file.expected_size_bytes:
                    raise DownloadError(
                        f"Size mismatch for {file.filename}: expected {file.expected_size_bytes}, got {received}"
                    )

                os.replace(temp_path, destination)
                return

        raise TooManyRedirectsError(
            f"Too many redirects (more than {self.config.max_redirects}) for {file.url}"
        )
