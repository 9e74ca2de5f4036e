import threading

import anyio
import httpx
import pytest

from dillingerCore.config import DownloadConfig, TimeoutConfig
from dillingerCore.models import DownloadFile, DownloadTask
from dillingerCore.worker import (
    CANCELLED,
    COMPLETED,
    FAILED,
    PROGRESS,
    DownloadWorker,
    aggregate_progress,
)


def make_task(tmp_path, files):
    return DownloadTask(
        game_id="game-1",
        job_id="job-1",
        cache_directory_name="game-1",
        download_path=str(tmp_path),
        title="Test Game",
        files=[DownloadFile(**f) for f in files],
        total_files=len(files),
    )


class TestAggregateProgress:

    def test_floors_to_two_places(self):
        assert aggregate_progress(1, 0.0, 3) == 33.33
        assert aggregate_progress(2, 0.0, 3) == 66.66

    def test_bounds(self):
        assert aggregate_progress(0, 0.0, 0) == 100.0
        assert aggregate_progress(2, 1.5, 2) == 100.0
        assert aggregate_progress(0, -1.0, 2) == 0.0


class TestDownloadWorker:

    @pytest.fixture
    def config(self):
        return DownloadConfig(chunk_size=4, progress_interval=0.0)

    def run_worker(self, task, config, handler):
        messages = []
        worker = DownloadWorker(
            task,
            config,
            TimeoutConfig(),
            on_message=messages.append,
            transport=httpx.MockTransport(handler),
        )
        final = worker.run()
        return final, messages

    def test_downloads_files_in_order(self, tmp_path, config):
        requested = []

        def handler(request):
            requested.append(request.url.path)
            return httpx.Response(200, content=request.url.path.encode() * 3)

        task = make_task(tmp_path, [
            {"url": "https://cdn.example.com/a.bin", "filename": "a.bin"},
            {"url": "https://cdn.example.com/b.bin", "filename": "b.bin"},
        ])
        final, messages = self.run_worker(task, config, handler)

        assert final.type == COMPLETED
        assert requested == ["/a.bin", "/b.bin"]
        assert (tmp_path / "a.bin").read_bytes() == b"/a.bin" * 3
        assert not (tmp_path / "b.bin.part").exists()
        assert messages[-1].total_progress == 100.0

    def test_progress_is_monotonic(self, tmp_path, config):
        """Aggregate progress never decreases and only hits 100 with the last bytes"""
        def handler(request):
            return httpx.Response(200, content=b"x" * 40)

        task = make_task(tmp_path, [
            {"url": "https://cdn.example.com/1", "filename": "one.bin", "expected_size_bytes": 40},
            {"url": "https://cdn.example.com/2", "filename": "two.bin", "expected_size_bytes": 40},
        ])
        final, messages = self.run_worker(task, config, handler)
        values = [m.total_progress for m in messages]

        assert final.type == COMPLETED
        assert values == sorted(values)
        assert values[-1] == 100.0
        for m in messages:
            if m.total_progress == 100.0:
                assert m.completed_files == 2 or (m.current_file == "two.bin" and m.current_file_progress == 100.0)
        assert any(0 < v < 50 for v in values)

    def test_failure_keeps_completed_files(self, tmp_path, config):
        """A 503 on the second file fails the task after one completed file"""
        def handler(request):
            if request.url.path == "/2":
                return httpx.Response(503)
            return httpx.Response(200, content=b"first")

        task = make_task(tmp_path, [
            {"url": "https://cdn.example.com/1", "filename": "one.bin"},
            {"url": "https://cdn.example.com/2", "filename": "two.bin"},
        ])
        final, _ = self.run_worker(task, config, handler)

        assert final.type == FAILED
        assert final.completed_files == 1
        assert "HTTP 503" in final.error
        assert (tmp_path / "one.bin").read_bytes() == b"first"
        assert not (tmp_path / "two.bin").exists()

    def test_skips_complete_file(self, tmp_path, config):
        (tmp_path / "one.bin").write_bytes(b"12345")
        requested = []

        def handler(request):
            requested.append(request.url.path)
            return httpx.Response(200, content=b"abc")

        task = make_task(tmp_path, [
            {"url": "https://cdn.example.com/1", "filename": "one.bin", "expected_size_bytes": 5},
            {"url": "https://cdn.example.com/2", "filename": "two.bin"},
        ])
        final, _ = self.run_worker(task, config, handler)

        assert final.type == COMPLETED
        assert requested == ["/2"]
        assert (tmp_path / "one.bin").read_bytes() == b"12345"

    def test_resumes_partial_file(self, tmp_path, config):
        (tmp_path / "big.bin.part").write_bytes(b"0123")
        ranges = []

        def handler(request):
            ranges.append(request.headers.get("range"))
            return httpx.Response(206, content=b"456789")

        task = make_task(tmp_path, [
            {"url": "https://cdn.example.com/big", "filename": "big.bin", "expected_size_bytes": 10},
        ])
        final, _ = self.run_worker(task, config, handler)

        assert final.type == COMPLETED
        assert ranges == ["bytes=4-"]
        assert (tmp_path / "big.bin").read_bytes() == b"0123456789"

    def test_full_response_restarts_partial(self, tmp_path, config):
        """A server ignoring Range overwrites the partial file"""
        (tmp_path / "big.bin.part").write_bytes(b"junk")

        def handler(request):
            return httpx.Response(200, content=b"0123456789")

        task = make_task(tmp_path, [
            {"url": "https://cdn.example.com/big", "filename": "big.bin", "expected_size_bytes": 10},
        ])
        final, _ = self.run_worker(task, config, handler)

        assert final.type == COMPLETED
        assert (tmp_path / "big.bin").read_bytes() == b"0123456789"

    def test_size_mismatch_fails(self, tmp_path, config):
        def handler(request):
            return httpx.Response(200, content=b"short")

        task = make_task(tmp_path, [
            {"url": "https://cdn.example.com/1", "filename": "one.bin", "expected_size_bytes": 100},
        ])
        final, _ = self.run_worker(task, config, handler)

        assert final.type == FAILED
        assert "Size mismatch" in final.error

    @staticmethod
    def redirect_handler(hops):
        def handler(request):
            step = int(request.url.path.rsplit("/", 1)[-1])
            if step < hops:
                return httpx.Response(302, headers={"location": f"/hop/{step + 1}"})
            return httpx.Response(200, content=b"payload")
        return handler

    def test_follows_five_redirects(self, tmp_path, config):
        task = make_task(tmp_path, [{"url": "https://cdn.example.com/hop/0", "filename": "f.bin"}])
        final, _ = self.run_worker(task, config, self.redirect_handler(5))

        assert final.type == COMPLETED
        assert (tmp_path / "f.bin").read_bytes() == b"payload"

    def test_six_redirects_fail(self, tmp_path, config):
        task = make_task(tmp_path, [{"url": "https://cdn.example.com/hop/0", "filename": "f.bin"}])
        final, _ = self.run_worker(task, config, self.redirect_handler(6))

        assert final.type == FAILED
        assert "Too many redirects" in final.error
        assert not (tmp_path / "f.bin").exists()

    def test_cancel_before_start(self, tmp_path, config):
        def handler(request):
            raise AssertionError("no request expected")

        task = make_task(tmp_path, [{"url": "https://cdn.example.com/1", "filename": "one.bin"}])
        worker = DownloadWorker(
            task, config, TimeoutConfig(), on_message=lambda m: None, transport=httpx.MockTransport(handler)
        )
        worker.cancel()

        final = worker.run()

        assert final.type == CANCELLED
        assert final.error == "Download cancelled by user"

    def test_cancel_mid_file(self, tmp_path, config):
        """Cancelling between chunks leaves the partial file for a later resume"""
        def handler(request):
            return httpx.Response(200, content=b"x" * 40)

        task = make_task(tmp_path, [{"url": "https://cdn.example.com/1", "filename": "one.bin"}])
        worker = None

        def on_message(message):
            if message.type == PROGRESS and message.current_file_progress > 0:
                worker.cancel()

        worker = DownloadWorker(
            task, config, TimeoutConfig(), on_message=on_message, transport=httpx.MockTransport(handler)
        )
        final = worker.run()

        assert final.type == CANCELLED
        assert (tmp_path / "one.bin.part").exists()
        assert not (tmp_path / "one.bin").exists()

    def test_connection_error_fails(self, tmp_path, config):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        task = make_task(tmp_path, [{"url": "https://cdn.example.com/1", "filename": "one.bin"}])
        final, _ = self.run_worker(task, config, handler)

        assert final.type == FAILED
        assert final.completed_files == 0

    def test_malformed_content_length_fails(self, tmp_path, config):
        def handler(request):
            return httpx.Response(200, content=b"abc", headers={"content-length": "abc"})

        task = make_task(tmp_path, [{"url": "https://cdn.example.com/1", "filename": "one.bin"}])
        final, messages = self.run_worker(task, config, handler)

        assert final.type == FAILED
        assert "Invalid Content-Length" in final.error
        assert messages[-1] == final

    def test_unexpected_error_still_reported(self, tmp_path, config):
        """Whatever breaks inside the worker, exactly one terminal message is sent"""
        def handler(request):
            raise RuntimeError("transport exploded")

        task = make_task(tmp_path, [{"url": "https://cdn.example.com/1", "filename": "one.bin"}])
        final, messages = self.run_worker(task, config, handler)

        assert final.type == FAILED
        assert final.error == "transport exploded"
        assert [m.type for m in messages if m.type != PROGRESS] == [FAILED]

    def test_progress_events_throttled(self, tmp_path):
        """Many already-present files do not flood the progress stream"""
        entries = []
        for index in range(5):
            (tmp_path / f"{index}.bin").write_bytes(b"12345")
            entries.append({"url": f"https://cdn.example.com/{index}", "filename": f"{index}.bin", "expected_size_bytes": 5})
        messages = []
        worker = DownloadWorker(
            make_task(tmp_path, entries),
            DownloadConfig(progress_interval=10.0),
            TimeoutConfig(),
            on_message=messages.append,
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
            clock=lambda: 100.0,
        )

        final = worker.run()

        assert final.type == COMPLETED
        assert final.completed_files == 5
        assert [m.type for m in messages].count(PROGRESS) == 1

    def test_cancel_interrupts_stalled_response(self, tmp_path, config):
        started = threading.Event()
        messages = []

        async def handler(request):
            started.set()
            await anyio.sleep(30)
            return httpx.Response(200, content=b"late")

        task = make_task(tmp_path, [{"url": "https://cdn.example.com/1", "filename": "one.bin"}])
        worker = DownloadWorker(
            task, config, TimeoutConfig(), on_message=messages.append, transport=httpx.MockTransport(handler)
        )
        worker.start()
        assert started.wait(timeout=5)
        worker.cancel()
        worker.join(timeout=5)

        assert not worker.is_alive()
        assert messages[-1].type == CANCELLED
        assert not (tmp_path / "one.bin").exists()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
