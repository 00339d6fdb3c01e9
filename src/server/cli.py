"""CLI for the daemon command.

Provides the `daemon` noun for daemon management (start/run/stop/status).
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from config import ConfigError, DaemonConfig, load_config
from project.deployment import Deployment
from project.engine import Engine
from project.errors import DeployerError
from project.fake import FakeDeployer
from project.store import DeploymentStore
from server.auth import Gateway
from server.bootstrap import BootstrapError, run_bootstrap
from server.context import DaemonContext
from server.daemon import check_status, daemonize, stop_daemon
from server.handlers import route_tiers
from server.httpd import Server, create_server
from server.tls import TLSConfig
from server.tokens import TokenError, ensure_signing_key, load_external_key
from server.users import CredentialStore

logger = logging.getLogger(__name__)

# Failures that abort startup with a logged message instead of a traceback
STARTUP_ERRORS = (BootstrapError, ConfigError, DeployerError, TokenError, RuntimeError)


def add_config_args(parser: argparse.ArgumentParser):
    """Arguments locating the daemon configuration (shared with user/token CLIs)."""
    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="YAML config file (default: $INERTIAD_CONFIG)",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        help="Directory for users, deployment metadata and the project checkout",
    )


def resolve_config(args) -> DaemonConfig:
    """Load config and apply whichever CLI overrides the parser defined."""
    overrides = {}
    for name in ("host", "bind", "port", "data_dir", "cert_dir", "webhook_secret", "log_file"):
        overrides[name] = getattr(args, name, None)
    return load_config(args.config).override(**overrides)


def _add_common_args(parser: argparse.ArgumentParser):
    """Add arguments shared between start and run."""
    add_config_args(parser)
    parser.add_argument("--port", "-p", type=int, help="Port to listen on")
    parser.add_argument("--bind", "-b", help="Address to bind to")
    parser.add_argument("--host", help="Hostname or IP for the certificate subject")
    parser.add_argument("--cert-dir", type=Path, help="Directory for daemon.cert and daemon.key")
    parser.add_argument(
        "--webhook-secret",
        type=Path,
        help="File containing the webhook secret (webhooks are rejected without one)",
    )
    parser.add_argument(
        "--fake-engine",
        action="store_true",
        help="Serve an in-memory deployer instead of the Docker engine (testing)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")


def build_context(config: DaemonConfig, fake_engine: bool = False) -> tuple[DaemonContext, TLSConfig]:
    """Construct everything the server needs, running the bootstrap sequence.

    Raises:
        EngineError: If the container engine is unreachable
        BootstrapError: If TLS material cannot be provisioned
        TokenError: If the signing key or webhook secret is unusable
    """
    config.data_dir.mkdir(parents=True, exist_ok=True)
    signing_key = ensure_signing_key(config.signing_key_file)
    credentials = CredentialStore(config.users_db)

    if fake_engine:
        logger.warning("Running with the fake deployer; nothing will be deployed")
        engine = None
        deployer = FakeDeployer()
        images = []
    else:
        engine = Engine.from_env()
        deployer = Deployment(config.project_dir, DeploymentStore(config.deployment_db))
        images = config.build_images

    result = run_bootstrap(
        config.cert_dir, config.host, config.port, engine, images, key_size=config.key_size
    )

    if engine is not None:
        deployer.recover(engine)

    webhook_key = None
    if config.webhook_secret:
        webhook_key = load_external_key(config.webhook_secret)
        logger.info("Webhook secret loaded from %s", config.webhook_secret)
    else:
        logger.warning("No webhook secret configured; webhooks will be rejected")

    if not credentials.list_users() and not credentials.list_api_tokens():
        logger.warning("No users or API tokens yet: run 'inertiad token issue' or 'inertiad user add'")

    context = DaemonContext(
        deployer=deployer,
        engine=engine,
        gateway=Gateway(route_tiers(), signing_key, credentials),
        credentials=credentials,
        signing_key=signing_key,
        session_ttl=config.session_ttl,
        webhook_key=webhook_key,
        version=config.version,
        prewarm=result.prewarm,
    )
    return context, result.tls_config


def _create_server(config: DaemonConfig, fake_engine: bool = False) -> Server:
    """Create a Server instance (not yet started)."""
    context, tls_config = build_context(config, fake_engine=fake_engine)
    return create_server(context, tls_config, bind=config.bind, port=config.port)


def _configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load(args) -> Optional[DaemonConfig]:
    try:
        return resolve_config(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return None


def _handle_start(argv):
    """Handle 'daemon start': daemonize the server."""
    parser = argparse.ArgumentParser(
        prog="inertiad daemon start",
        description="Start the daemon (background)",
    )
    _add_common_args(parser)
    parser.add_argument("--log-file", type=Path, help="Log file for daemon output")
    parser.add_argument(
        "--foreground",
        action="store_true",
        help="Run in foreground instead of daemonizing",
    )
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    config = _load(args)
    if config is None:
        return 1

    if args.foreground:
        return _run_foreground(config, args.fake_engine)

    # Bootstrap runs in the daemon process, after the fork
    def server_factory():
        server = _create_server(config, args.fake_engine)
        server.start()
        return server

    return daemonize(
        server_factory=server_factory,
        port=config.port,
        pid_dir=config.pid_dir,
        log_file=config.log_file,
    )


def _handle_run(argv):
    """Handle 'daemon run': serve in the foreground."""
    parser = argparse.ArgumentParser(
        prog="inertiad daemon run",
        description="Run the daemon in the foreground",
    )
    _add_common_args(parser)
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    config = _load(args)
    if config is None:
        return 1
    return _run_foreground(config, args.fake_engine)


def _run_foreground(config: DaemonConfig, fake_engine: bool) -> int:
    try:
        server = _create_server(config, fake_engine)
        server.start()
    except STARTUP_ERRORS as e:
        logger.error("Failed to start daemon: %s", e)
        return 1

    print(f"\nDaemon running at https://{config.bind}:{server.server.server_address[1]}")
    print(f"Certificate fingerprint: {server.tls_config.fingerprint}")
    print("\nPress Ctrl+C to stop...")

    server.serve_forever()
    return 0


def _port_args(parser: argparse.ArgumentParser):
    add_config_args(parser)
    parser.add_argument("--port", "-p", type=int, help="Port of the daemon")


def _handle_stop(argv):
    """Handle 'daemon stop'."""
    parser = argparse.ArgumentParser(
        prog="inertiad daemon stop",
        description="Stop the daemon",
    )
    _port_args(parser)
    args = parser.parse_args(argv)

    config = _load(args)
    if config is None:
        return 1

    status = check_status(config.port, config.pid_dir)
    if not status["running"]:
        print(f"Daemon not running (port {config.port})")
        return 0

    print(f"Stopping daemon (PID {status['pid']}, port {config.port})...")
    if stop_daemon(config.port, config.pid_dir):
        print("Daemon stopped")
        return 0

    print("Error: Failed to stop daemon", file=sys.stderr)
    return 1


def _handle_status(argv):
    """Handle 'daemon status'."""
    parser = argparse.ArgumentParser(
        prog="inertiad daemon status",
        description="Check daemon status",
    )
    _port_args(parser)
    parser.add_argument("--json", action="store_true", help="Output as JSON")
    args = parser.parse_args(argv)

    config = _load(args)
    if config is None:
        return 1

    status = check_status(config.port, config.pid_dir)

    if args.json:
        print(json.dumps(status, indent=2))
    elif status["running"]:
        health = "healthy" if status["healthy"] else "unhealthy"
        print(f"Daemon: running (PID {status['pid']}, port {config.port}, {health})")
    else:
        print(f"Daemon: not running (port {config.port})")

    # Exit codes: 0 = running+healthy, 1 = not running, 2 = running+unhealthy
    if not status["running"]:
        return 1
    if not status["healthy"]:
        return 2
    return 0


SUBCOMMANDS = {
    "start": (_handle_start, "Start the daemon in the background"),
    "run": (_handle_run, "Run the daemon in the foreground"),
    "stop": (_handle_stop, "Stop the daemon"),
    "status": (_handle_status, "Check daemon status"),
}


def main(argv=None):
    """CLI entry point for the daemon noun.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] in ("-h", "--help"):
        print("Usage: inertiad daemon <command> [options]")
        print()
        print("Commands:")
        for name, (_, desc) in SUBCOMMANDS.items():
            print(f"  {name:<8} {desc}")
        print()
        print("Run 'inertiad daemon <command> --help' for command-specific options.")
        return 0

    subcmd = argv[0]
    if subcmd not in SUBCOMMANDS:
        print(f"Error: Unknown daemon command '{subcmd}'")
        print(f"Available commands: {', '.join(SUBCOMMANDS)}")
        return 1

    handler, _ = SUBCOMMANDS[subcmd]
    return handler(argv[1:])
