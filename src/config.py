"""Daemon configuration management.

Configuration is resolved in three layers, later layers winning:
1. Built-in defaults (DaemonConfig field defaults)
2. Optional YAML file (--config, or $INERTIAD_CONFIG)
3. INERTIAD_* environment variables

CLI flags are applied on top by the caller via DaemonConfig.override().
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from project.builders import COMPOSE_IMAGE, HEROKUISH_IMAGE

ENV_PREFIX = "INERTIAD_"
CONFIG_ENV = "INERTIAD_CONFIG"

DEFAULT_PORT = 4303
DEFAULT_DATA_DIR = Path("/app/host/inertia/data")
DEFAULT_CERT_DIR = Path("/app/host/inertia/config/ssl")
DEFAULT_SESSION_TTL_MINUTES = 120


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class DaemonConfig:
    """Resolved daemon configuration.

    Attributes:
        host: Hostname or IP used in the certificate subject
        bind: Address to listen on
        port: Port to listen on
        data_dir: Root for the user database, deployment store and checkouts
        cert_dir: Directory holding daemon.cert and daemon.key
        session_ttl_minutes: Session token lifetime
        webhook_secret: Path to a file holding the webhook secret
        version: Version string reported by the API
        build_images: Images pre-pulled at startup
        pid_dir: Directory for the daemon PID file
        log_file: Daemon output when running in the background
        key_size: RSA key size for generated certificates
    """

    host: str = "127.0.0.1"
    bind: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    data_dir: Path = DEFAULT_DATA_DIR
    cert_dir: Path = DEFAULT_CERT_DIR
    session_ttl_minutes: int = DEFAULT_SESSION_TTL_MINUTES
    webhook_secret: Optional[Path] = None
    version: str = "latest"
    build_images: list = field(default_factory=lambda: [COMPOSE_IMAGE, HEROKUISH_IMAGE])
    pid_dir: Path = Path("/var/run/inertia")
    log_file: Path = Path("/var/log/inertia/daemon.log")
    key_size: int = 4096

    def __post_init__(self):
        self._coerce()

    def _coerce(self):
        """Convert raw (YAML/env) values to field types and validate."""
        for name in ("data_dir", "cert_dir", "pid_dir", "log_file"):
            setattr(self, name, Path(getattr(self, name)))
        if self.webhook_secret is not None and self.webhook_secret != "":
            self.webhook_secret = Path(self.webhook_secret)
        else:
            self.webhook_secret = None

        for name in ("port", "session_ttl_minutes", "key_size"):
            value = getattr(self, name)
            try:
                setattr(self, name, int(value))
            except (TypeError, ValueError):
                raise ConfigError(f"{name} must be an integer, got {value!r}")

        if not 0 <= self.port <= 65535:
            raise ConfigError(f"port out of range: {self.port}")
        if self.session_ttl_minutes <= 0:
            raise ConfigError("session_ttl_minutes must be positive")
        if self.key_size < 2048:
            raise ConfigError("key_size must be at least 2048")

        if isinstance(self.build_images, str):
            self.build_images = [i.strip() for i in self.build_images.split(",") if i.strip()]
        if not isinstance(self.build_images, list) or not all(
            isinstance(i, str) for i in self.build_images
        ):
            raise ConfigError("build_images must be a list of image names")

    @property
    def session_ttl(self) -> int:
        """Session lifetime in seconds."""
        return self.session_ttl_minutes * 60

    @property
    def users_db(self) -> Path:
        return self.data_dir / "users.db"

    @property
    def deployment_db(self) -> Path:
        return self.data_dir / "deployment.db"

    @property
    def signing_key_file(self) -> Path:
        return self.data_dir / "signing.key"

    @property
    def project_dir(self) -> Path:
        return self.data_dir / "project"

    def override(self, **values) -> "DaemonConfig":
        """Apply non-None overrides (e.g. CLI flags) and revalidate."""
        known = {f.name for f in fields(self)}
        for key, value in values.items():
            if key not in known:
                raise ConfigError(f"Unknown config option: {key}")
            if value is not None:
                setattr(self, key, value)
        self._coerce()
        return self


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def _env_overrides(environ) -> dict:
    """Collect INERTIAD_<FIELD> variables for known fields."""
    values = {}
    for f in fields(DaemonConfig):
        env_name = ENV_PREFIX + f.name.upper()
        if env_name in environ:
            values[f.name] = environ[env_name]
    return values


def load_config(path: Optional[Path] = None, environ=None) -> DaemonConfig:
    """Load daemon configuration.

    Args:
        path: YAML config file. Falls back to $INERTIAD_CONFIG; no file is fine.
        environ: Environment mapping (default: os.environ)

    Raises:
        ConfigError: On unreadable file, unknown keys or invalid values
    """
    if environ is None:
        environ = os.environ

    values = {}
    if path is None and environ.get(CONFIG_ENV):
        path = Path(environ[CONFIG_ENV])
        if not path.exists():
            raise ConfigError(f"{CONFIG_ENV}={path} does not exist")
    if path is not None:
        values.update(_parse_yaml(Path(path)))

    known = {f.name for f in fields(DaemonConfig)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"Unknown config option(s): {', '.join(unknown)}")

    values.update(_env_overrides(environ))
    return DaemonConfig(**values)
