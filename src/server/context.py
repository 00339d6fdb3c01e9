"""Daemon context.

Everything a request handler needs, constructed once at startup and
handed to the HTTP server.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional

from project.deployment import Deployer, DeployOptions
from project.engine import Engine
from project.errors import DeployerError
from server.auth import Gateway
from server.bootstrap import ImagePrewarm
from server.users import CredentialStore

logger = logging.getLogger(__name__)
webhook_logger = logging.getLogger("webhook")


class LogWriter:
    """Text sink that forwards each complete line to a logger."""

    def __init__(self, log: logging.Logger, prefix: str = ""):
        self.log = log
        self.prefix = prefix
        self._buffer = ""

    def write(self, text: str) -> int:
        self._buffer += text
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            if line.strip():
                self.log.info("%s%s", self.prefix, line)
        return len(text)

    def flush(self):
        if self._buffer.strip():
            self.log.info("%s%s", self.prefix, self._buffer)
        self._buffer = ""


@dataclass
class DaemonContext:
    """Shared daemon state.

    Attributes:
        deployer: The single tracked deployment
        engine: Container engine (None when running with the fake deployer)
        gateway: Route classification and authentication
        credentials: User and API token store
        signing_key: Hex-encoded token signing key
        session_ttl: Session token lifetime in seconds
        webhook_key: Shared secret for webhook verification (None disables webhooks)
        version: Daemon version reported by / and /status
        prewarm: Bootstrap image pulls, if any
    """

    deployer: Deployer
    engine: Optional[Engine]
    gateway: Gateway
    credentials: CredentialStore
    signing_key: str
    session_ttl: int
    webhook_key: Optional[bytes] = None
    version: str = "latest"
    prewarm: Optional[ImagePrewarm] = None
    executor: ThreadPoolExecutor = field(
        default_factory=lambda: ThreadPoolExecutor(max_workers=1, thread_name_prefix="webhook-deploy")
    )

    def submit_deploy(self, options: DeployOptions) -> Future:
        """Run a deploy in the background, logging its output and outcome."""
        return self.executor.submit(self._background_deploy, options)

    def _background_deploy(self, options: DeployOptions):
        out = LogWriter(webhook_logger, prefix="[deploy] ")
        webhook_logger.info("Starting deploy of %s", options.branch)
        try:
            self.deployer.deploy(options, self.engine, out)
        except DeployerError as e:
            webhook_logger.error("Deploy of %s failed: %s %s", options.branch, e.code, e.message)
            return False
        except Exception:
            webhook_logger.exception("Deploy of %s failed unexpectedly", options.branch)
            return False
        finally:
            out.flush()
        webhook_logger.info("Deploy of %s complete", options.branch)
        return True

    def shutdown(self, wait: bool = False):
        self.executor.shutdown(wait=wait)
