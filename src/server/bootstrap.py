"""Daemon bootstrap sequence.

Runs once before the listener starts:
1. TLS material: reuse or generate the self-signed pair (fatal on failure)
2. Build-tool images: pulled concurrently, one thread per image, joined by
   a barrier thread. A failed pull is logged and does not affect the other
   pulls or startup; the first deploy needing the image pulls it again.

The listener may start while image pulls are still running.
"""

import logging
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from project.engine import Engine
from project.errors import EngineError
from server.tls import TLSConfig, ensure_certificate

logger = logging.getLogger(__name__)


class BootstrapError(Exception):
    """Fatal startup failure."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


@dataclass
class ImagePrewarm:
    """Tracks concurrent image pulls.

    Attributes:
        images: Images being pulled
        results: Map of image to "ok" or the error message, filled as pulls finish
    """

    images: list
    results: dict = field(default_factory=dict)
    _done: threading.Event = field(default_factory=threading.Event, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def complete(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every pull has finished. Returns False on timeout."""
        return self._done.wait(timeout)

    def failed(self) -> dict:
        with self._lock:
            return {image: result for image, result in self.results.items() if result != "ok"}

    def snapshot(self) -> dict:
        with self._lock:
            return {image: self.results.get(image, "pending") for image in self.images}

    def _record(self, image: str, result: str):
        with self._lock:
            self.results[image] = result


def _pull(engine: Engine, image: str, prewarm: ImagePrewarm):
    logger.info("Downloading %s", image)
    try:
        engine.pull(image)
    except EngineError as e:
        logger.error("Failed to download %s: %s", image, e.message)
        prewarm._record(image, e.message)
        return
    prewarm._record(image, "ok")


def prewarm_images(engine: Engine, images: list) -> ImagePrewarm:
    """Start pulling images concurrently and return immediately.

    Args:
        engine: Container engine
        images: Images to pull (repository:tag)

    Returns:
        ImagePrewarm whose wait() returns once all pulls have finished
    """
    prewarm = ImagePrewarm(images=list(images))
    workers = [
        threading.Thread(
            target=_pull, args=(engine, image, prewarm),
            name=f"pull-{image}", daemon=True,
        )
        for image in prewarm.images
    ]
    for worker in workers:
        worker.start()

    def _join():
        for worker in workers:
            worker.join()
        prewarm._done.set()
        failed = prewarm.failed()
        if failed:
            logger.warning("Build tools incomplete, failed: %s", ", ".join(sorted(failed)))
        else:
            logger.info("Build tools downloaded")

    threading.Thread(target=_join, name="pull-barrier", daemon=True).start()
    return prewarm


@dataclass
class BootstrapResult:
    tls_config: TLSConfig
    prewarm: Optional[ImagePrewarm]


def run_bootstrap(
    cert_dir: Path,
    host: str,
    port: int,
    engine: Optional[Engine],
    images: list,
    key_size: Optional[int] = None,
) -> BootstrapResult:
    """Provision TLS material and start pre-pulling build images.

    Raises:
        BootstrapError: If the certificate pair cannot be provisioned
    """
    prewarm = None
    if engine is not None and images:
        logger.info("Downloading build tools...")
        prewarm = prewarm_images(engine, images)

    logger.info("Checking for existing SSL certificates in %s...", cert_dir)
    try:
        if key_size:
            tls_config = ensure_certificate(cert_dir, host, port, key_size=key_size)
        else:
            tls_config = ensure_certificate(cert_dir, host, port)
    except (subprocess.CalledProcessError, OSError) as e:
        logger.error("Failed to provision TLS certificate: %s", e)
        raise BootstrapError("E500", f"TLS init failed: {e}") from e

    return BootstrapResult(tls_config=tls_config, prewarm=prewarm)
