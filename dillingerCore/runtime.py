"""
Container runtime client.

Thin synchronous wrapper over the Docker SDK. Every call addresses containers
by id (or name) and converts docker.errors into the dillingerCore exception
hierarchy. The orchestrator runs these methods in worker threads.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set

import docker
import docker.errors

from .exceptions import ContainerNotFoundError, ImageNotFoundError, RuntimeEngineError
from .models import ContainerSpec

logger = logging.getLogger(__name__)


@contextmanager
def engine_errors(action: str, target: str):
    """Translate docker SDK errors raised inside the block"""
    try:
        yield
    except docker.errors.ImageNotFound as e:
        raise ImageNotFoundError(f"{action} {target}: image not found ({e.explanation})") from e
    except docker.errors.NotFound as e:
        raise ContainerNotFoundError(f"{action} {target}: not found") from e
    except docker.errors.APIError as e:
        raise RuntimeEngineError(f"{action} {target} failed: {e.explanation or e}") from e
    except docker.errors.DockerException as e:
        raise RuntimeEngineError(f"{action} {target} failed: {e}") from e


class RuntimeClient:
    """Docker engine access with lazy client initialization"""

    def __init__(self, base_url: Optional[str] = None, client=None):
        self.base_url = base_url
        self._client = client
        self._lock = threading.Lock()

    @property
    def client(self):
        if self._client is None:
            with self._lock:
                if self._client is None:
                    with engine_errors("connect", self.base_url or "docker"):
                        if self.base_url:
                            self._client = docker.DockerClient(base_url=self.base_url)
                        else:
                            self._client = docker.from_env()
        return self._client

    def ping(self) -> bool:
        with engine_errors("ping", "engine"):
            return bool(self.client.ping())

    def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None

    # Containers

    def create_container(self, spec: ContainerSpec) -> str:
        with engine_errors("create", spec.name):
            container = self.client.containers.create(**spec.to_docker_kwargs())
        logger.info(f"Created container {spec.name} ({container.id[:12]}) from {spec.image}")
        return container.id

    def start(self, container_id: str):
        with engine_errors("start", container_id):
            self.client.containers.get(container_id).start()

    def stop(self, container_id: str, timeout: int = 10):
        with engine_errors("stop", container_id):
            self.client.containers.get(container_id).stop(timeout=timeout)

    def kill(self, container_id: str):
        with engine_errors("kill", container_id):
            self.client.containers.get(container_id).kill()

    def remove(self, container_id: str, force: bool = False, volumes: bool = False):
        with engine_errors("remove", container_id):
            self.client.containers.get(container_id).remove(force=force, v=volumes)

    def inspect(self, container_id: str) -> Dict[str, Any]:
        with engine_errors("inspect", container_id):
            return self.client.containers.get(container_id).attrs

    def logs(self, container_id: str, tail: int = 100, timestamps: bool = True) -> str:
        with engine_errors("logs", container_id):
            output = self.client.containers.get(container_id).logs(
                stdout=True, stderr=True, tail=tail, timestamps=timestamps
            )
        return output.decode("utf-8", errors="replace")

    def stats(self, container_id: str) -> Dict[str, Any]:
        with engine_errors("stats", container_id):
            return self.client.containers.get(container_id).stats(stream=False)

    def wait(self, container_id: str, timeout: float, poll_interval: float = 1.0) -> Optional[int]:
        """Wait up to timeout seconds for the container to exit.

        Returns the exit code, or None if it is still running.
        """
        deadline = time.monotonic() + timeout
        with engine_errors("wait", container_id):
            container = self.client.containers.get(container_id)
            while True:
                container.reload()
                state = container.attrs.get("State", {})
                if state.get("Status") in ("exited", "dead"):
                    return int(state.get("ExitCode", 1))
                if time.monotonic() >= deadline:
                    return None
                time.sleep(min(poll_interval, max(0.0, deadline - time.monotonic())))

    def list_containers(self, name_prefix: str, statuses: Sequence[str] = ()) -> List[Dict[str, str]]:
        with engine_errors("list", name_prefix):
            containers = self.client.containers.list(all=True, filters={"name": name_prefix})
        results = []
        for container in containers:
            if not container.name.startswith(name_prefix):
                continue
            if statuses and container.status not in statuses:
                continue
            results.append({"id": container.id, "name": container.name, "status": container.status})
        return results

    # Volumes

    def list_volumes(self, name_prefix: str = "") -> List[str]:
        with engine_errors("list volumes", name_prefix or "*"):
            volumes = self.client.volumes.list()
        return [v.name for v in volumes if v.name.startswith(name_prefix)]

    def volumes_in_use(self) -> Set[str]:
        """Names of volumes mounted by any container, running or not"""
        in_use = set()
        with engine_errors("list", "containers"):
            for container in self.client.containers.list(all=True):
                for mount in container.attrs.get("Mounts", []):
                    if mount.get("Type") == "volume" and mount.get("Name"):
                        in_use.add(mount["Name"])
        return in_use

    def remove_volume(self, name: str):
        with engine_errors("remove volume", name):
            self.client.volumes.get(name).remove()

    # Images

    def pull_image(self, image: str) -> Iterator[Dict[str, Any]]:
        """Stream decoded pull progress messages from the engine"""
        repository, _, tag = image.rpartition(":")
        if not repository or "/" in tag:
            repository, tag = image, "latest"
        with engine_errors("pull", image):
            for message in self.client.api.pull(repository, tag=tag, stream=True, decode=True):
                if "error" in message:
                    raise RuntimeEngineError(f"pull {image} failed: {message['error']}")
                yield message
