import itertools
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List

import pytest
import pytest_asyncio

from dillingerCore.config import DillingerConfig
from dillingerCore.database import Database
from dillingerCore.exceptions import ContainerNotFoundError, RuntimeEngineError
from dillingerCore.models import ContainerSpec, HostCapabilities
from dillingerCore.sessions import SessionRegistry


class FakeClock:
    """Settable wall clock for session timing"""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


class FakeRuntime:
    """In-memory stand-in for RuntimeClient with the same method surface"""

    def __init__(self):
        self.containers: Dict[str, dict] = {}
        self.volumes: List[str] = []
        self.mounted_volumes = set()
        self.pull_messages: List[dict] = []
        self.pull_error = None
        self.fail_start = False
        self.stop_error = None
        self.calls: List[tuple] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def add_container(self, name: str, status: str = "exited", exit_code: int = 0) -> str:
        container_id = f"{next(self._ids):064x}"
        self.containers[container_id] = {
            "name": name, "status": status, "exit_code": exit_code, "spec": None,
        }
        return container_id

    def exit(self, container_id: str, code: int = 0):
        with self._lock:
            self.containers[container_id]["status"] = "exited"
            self.containers[container_id]["exit_code"] = code

    def _get(self, container_id: str) -> dict:
        for cid, container in self.containers.items():
            if cid == container_id or cid.startswith(container_id) or container["name"] == container_id:
                return container
        raise ContainerNotFoundError(f"{container_id}: not found")

    def ping(self):
        return True

    def close(self):
        self.calls.append(("close",))

    def create_container(self, spec: ContainerSpec) -> str:
        self.calls.append(("create", spec.name))
        container_id = self.add_container(spec.name, status="created")
        self.containers[container_id]["spec"] = spec
        return container_id

    def start(self, container_id: str):
        self.calls.append(("start", container_id))
        container = self._get(container_id)
        if self.fail_start:
            raise RuntimeEngineError(f"start {container_id} failed: port is already allocated")
        container["status"] = "running"

    def stop(self, container_id: str, timeout: int = 10):
        self.calls.append(("stop", container_id))
        container = self._get(container_id)
        if self.stop_error is not None:
            raise self.stop_error
        container["status"] = "exited"

    def kill(self, container_id: str):
        self.calls.append(("kill", container_id))
        self._get(container_id)["status"] = "exited"

    def remove(self, container_id: str, force: bool = False, volumes: bool = False):
        self.calls.append(("remove", container_id))
        self._get(container_id)
        for cid in list(self.containers):
            if cid == container_id or cid.startswith(container_id):
                del self.containers[cid]

    def inspect(self, container_id: str) -> dict:
        container = self._get(container_id)
        return {
            "Name": "/" + container["name"],
            "State": {"Status": container["status"], "ExitCode": container["exit_code"]},
        }

    def logs(self, container_id: str, tail: int = 100, timestamps: bool = True) -> str:
        self._get(container_id)
        return "wine: starting\nwine: done\n"

    def stats(self, container_id: str) -> dict:
        self._get(container_id)
        return {
            "cpu_stats": {"cpu_usage": {"total_usage": 400}, "system_cpu_usage": 2000, "online_cpus": 2},
            "precpu_stats": {"cpu_usage": {"total_usage": 200}, "system_cpu_usage": 1000},
            "memory_stats": {"usage": 1024},
            "networks": {"eth0": {"rx_bytes": 10, "tx_bytes": 20}},
        }

    def wait(self, container_id: str, timeout: float, poll_interval: float = 1.0):
        with self._lock:
            container = self._get(container_id)
            if container["status"] in ("exited", "dead"):
                return container["exit_code"]
        time.sleep(min(timeout, 0.01))
        return None

    def list_containers(self, name_prefix: str, statuses=()) -> List[dict]:
        return [
            {"id": cid, "name": c["name"], "status": c["status"]}
            for cid, c in self.containers.items()
            if c["name"].startswith(name_prefix) and (not statuses or c["status"] in statuses)
        ]

    def list_volumes(self, name_prefix: str = "") -> List[str]:
        return [v for v in self.volumes if v.startswith(name_prefix)]

    def volumes_in_use(self):
        return set(self.mounted_volumes)

    def remove_volume(self, name: str):
        self.calls.append(("remove_volume", name))
        self.volumes.remove(name)

    def pull_image(self, image: str):
        for message in self.pull_messages:
            yield message
        if self.pull_error is not None:
            raise self.pull_error


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    config = DillingerConfig()
    config.paths.data_root = tmp_path
    config.paths.install_root = tmp_path / "installed"
    config.paths.cache_root = tmp_path / "cache"
    config.paths.screenshots_root = tmp_path / "screenshots"
    config.paths.database_path = tmp_path / "dillinger.db"
    config.timeouts.install_poll = 0.05
    config.timeouts.stop_grace = 1
    config.timeouts.diagnostic = 2.0
    config.downloads.progress_interval = 0.0
    return config


@pytest_asyncio.fixture
async def database(config):
    db = Database(config.paths.database_path)
    await db.init_db()
    return db


@pytest_asyncio.fixture
async def registry(database, clock):
    return SessionRegistry(database, clock=clock)


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def headless_host():
    return HostCapabilities()
