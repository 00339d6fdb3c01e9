"""Container engine adapter.

Thin wrapper over the Docker SDK client. Every engine failure is re-raised
as EngineError naming the operation and the image or container involved.
The underlying client is safe for concurrent use, so one Engine is shared
by all request threads.
"""

import logging
from typing import Iterable, Iterator, Optional, TextIO

import docker
from docker.errors import DockerException, ImageNotFound, NotFound

from project.errors import EngineError

logger = logging.getLogger(__name__)

# Labels used to find containers belonging to the deployment
PROJECT_LABEL = "sh.inertia.project"
COMPOSE_PROJECT_LABEL = "com.docker.compose.project"

DOCKER_SOCKET = "/var/run/docker.sock"


def iter_lines(chunks: Iterable[bytes]) -> Iterator[str]:
    """Re-chunk a byte stream into decoded lines (newline kept)."""
    buffer = ""
    for chunk in chunks:
        if isinstance(chunk, bytes):
            chunk = chunk.decode("utf-8", errors="replace")
        buffer += chunk
        while "\n" in buffer:
            line, buffer = buffer.split("\n", 1)
            yield line + "\n"
    if buffer:
        yield buffer


class Engine:
    """Container engine operations used by the deployer and bootstrap."""

    def __init__(self, client):
        self.client = client

    @classmethod
    def from_env(cls) -> "Engine":
        """Connect to the engine using DOCKER_HOST / the local socket.

        Raises:
            EngineError: If the engine is unreachable
        """
        try:
            return cls(docker.from_env())
        except DockerException as e:
            raise EngineError("connect", str(e)) from e

    def close(self):
        self.client.close()

    # Images

    def pull(self, image: str):
        """Pull an image (repository:tag)."""
        repository, _, tag = image.partition(":")
        logger.info("Pulling %s", image)
        try:
            self.client.images.pull(repository, tag=tag or "latest")
        except DockerException as e:
            raise EngineError(f"pull {image}", str(e)) from e
        logger.info("%s download complete", image)

    def has_image(self, image: str) -> bool:
        try:
            self.client.images.get(image)
            return True
        except ImageNotFound:
            return False
        except DockerException as e:
            raise EngineError(f"inspect image {image}", str(e)) from e

    def ensure_image(self, image: str, out: Optional[TextIO] = None):
        """Pull image unless it is already present locally."""
        if self.has_image(image):
            return
        if out is not None:
            out.write(f"Downloading {image}...\n")
        self.pull(image)

    def remove_image(self, image: str):
        """Remove an image; a missing image is not an error."""
        try:
            self.client.images.remove(image, force=True)
        except ImageNotFound:
            logger.debug("Image %s already removed", image)
        except DockerException as e:
            raise EngineError(f"remove image {image}", str(e)) from e

    # Containers

    def run(
        self,
        image: str,
        command=None,
        name: Optional[str] = None,
        environment: Optional[dict] = None,
        volumes: Optional[dict] = None,
        labels: Optional[dict] = None,
        working_dir: Optional[str] = None,
        ports: Optional[dict] = None,
    ):
        """Start a detached container and return it."""
        try:
            return self.client.containers.run(
                image,
                command=command,
                name=name,
                environment=environment or {},
                volumes=volumes or {},
                labels=labels or {},
                working_dir=working_dir,
                ports=ports or {},
                detach=True,
            )
        except DockerException as e:
            raise EngineError(f"run {image}", str(e)) from e

    def stream_until_exit(self, container, out: Optional[TextIO] = None) -> int:
        """Stream a container's output to out until it exits.

        Returns:
            Container exit code
        """
        try:
            for line in iter_lines(container.logs(stream=True, follow=True)):
                if out is not None:
                    out.write(line)
            result = container.wait()
        except DockerException as e:
            raise EngineError(f"wait for {container.name}", str(e)) from e
        return int(result.get("StatusCode", -1))

    def logs(self, container, follow: bool = False, tail="all"):
        """Return container output as an iterable of byte chunks.

        Followed streams stay open until closed by the caller.
        """
        try:
            if follow:
                return container.logs(stream=True, follow=True, tail=tail)
            return [container.logs(stream=False, tail=tail)]
        except DockerException as e:
            raise EngineError(f"read logs of {container.name}", str(e)) from e

    def commit(self, container, repository: str, tag: str = "latest"):
        try:
            return container.commit(repository=repository, tag=tag)
        except DockerException as e:
            raise EngineError(f"commit {container.name}", str(e)) from e

    def project_containers(self, project: str, all: bool = True) -> list:
        """List containers labelled as belonging to project."""
        found = {}
        try:
            for label in (PROJECT_LABEL, COMPOSE_PROJECT_LABEL):
                for container in self.client.containers.list(
                    all=all, filters={"label": f"{label}={project}"}
                ):
                    found[container.id] = container
        except DockerException as e:
            raise EngineError(f"list containers for {project}", str(e)) from e
        return list(found.values())

    def stop(self, container, out: Optional[TextIO] = None, timeout: int = 10):
        if out is not None:
            out.write(f"Stopping {container.name}...\n")
        try:
            container.stop(timeout=timeout)
        except NotFound:
            logger.debug("Container %s already gone", container.name)
        except DockerException as e:
            raise EngineError(f"stop {container.name}", str(e)) from e

    def remove(self, container, out: Optional[TextIO] = None):
        if out is not None:
            out.write(f"Removing {container.name}...\n")
        try:
            container.remove(force=True)
        except NotFound:
            logger.debug("Container %s already removed", container.name)
        except DockerException as e:
            raise EngineError(f"remove {container.name}", str(e)) from e

    def prune_networks(self, project: str):
        try:
            self.client.networks.prune(filters={"label": f"{COMPOSE_PROJECT_LABEL}={project}"})
        except DockerException as e:
            raise EngineError(f"prune networks for {project}", str(e)) from e
