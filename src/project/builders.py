"""Build profiles.

A build profile turns a checked-out project into running containers. Each
profile runs its build tool as a container (so the host needs nothing but
the engine) and streams the tool's output.
"""

import logging
from pathlib import Path
from typing import TextIO

from project.engine import DOCKER_SOCKET, PROJECT_LABEL, Engine
from project.errors import EngineError

logger = logging.getLogger(__name__)

COMPOSE_IMAGE = "docker/compose:1.29.2"
HEROKUISH_IMAGE = "gliderlabs/herokuish:v0.5.0"

BUILD_COMPOSE = "docker-compose"
BUILD_HEROKUISH = "herokuish"

# Build tool image required by each profile
BUILD_IMAGES = {
    BUILD_COMPOSE: COMPOSE_IMAGE,
    BUILD_HEROKUISH: HEROKUISH_IMAGE,
}

DEFAULT_BUILD_FILE = "docker-compose.yml"
DEFAULT_WEB_PORT = "5000"


def herokuish_image_name(project: str) -> str:
    return f"inertia-build/{project}"


def build_compose(
    engine: Engine,
    project: str,
    project_dir: Path,
    env: dict,
    build_file: str,
    out: TextIO,
):
    """Build and start the project with docker-compose.

    Compose runs inside its own container with the engine socket mounted, so
    the services it starts are siblings labelled with the compose project.
    """
    mount = "/build/project"
    container = engine.run(
        COMPOSE_IMAGE,
        command=["-p", project, "-f", f"{mount}/{build_file}", "up", "--build", "-d"],
        environment=env,
        volumes={
            DOCKER_SOCKET: {"bind": DOCKER_SOCKET, "mode": "rw"},
            str(project_dir): {"bind": mount, "mode": "ro"},
        },
        labels={PROJECT_LABEL: f"{project}-build"},
        working_dir=mount,
    )
    try:
        rc = engine.stream_until_exit(container, out)
    finally:
        engine.remove(container)
    if rc != 0:
        raise EngineError(f"docker-compose build of {project}", f"exit code {rc}")


def build_herokuish(
    engine: Engine,
    project: str,
    project_dir: Path,
    env: dict,
    build_file: str,
    out: TextIO,
):
    """Build the project with a buildpack and start its web process."""
    builder = engine.run(
        HEROKUISH_IMAGE,
        command="/build",
        environment=env,
        volumes={str(project_dir): {"bind": "/tmp/app", "mode": "ro"}},
        labels={PROJECT_LABEL: f"{project}-build"},
    )
    try:
        rc = engine.stream_until_exit(builder, out)
        if rc != 0:
            raise EngineError(f"herokuish build of {project}", f"exit code {rc}")
        image = herokuish_image_name(project)
        engine.commit(builder, repository=image)
    finally:
        engine.remove(builder)

    port = str(env.get("PORT", DEFAULT_WEB_PORT))
    out.write(f"Starting {project} on port {port}...\n")
    engine.run(
        f"{image}:latest",
        command="/start web",
        name=project,
        environment={**env, "PORT": port},
        labels={PROJECT_LABEL: project},
        ports={f"{port}/tcp": int(port)},
    )


BUILDERS = {
    BUILD_COMPOSE: build_compose,
    BUILD_HEROKUISH: build_herokuish,
}
