"""Server package for the inertiad HTTPS daemon.

Serves the deployment API on a single HTTPS port behind a permission-tiered
gateway (public, user, admin) with signed bearer tokens.
"""

from server.httpd import (
    Server,
    create_server,
    DEFAULT_PORT,
    DEFAULT_BIND,
)
from server.tls import (
    TLSConfig,
    ensure_certificate,
    generate_self_signed_cert,
    get_cert_fingerprint,
)
from server.auth import (
    AuthError,
    Gateway,
    Tier,
    issue_api_token,
)
from server.daemon import (
    daemonize,
    stop_daemon,
    check_status,
    get_pid_file,
)

__all__ = [
    # Server
    "Server",
    "create_server",
    "DEFAULT_PORT",
    "DEFAULT_BIND",
    # TLS
    "TLSConfig",
    "ensure_certificate",
    "generate_self_signed_cert",
    "get_cert_fingerprint",
    # Auth
    "AuthError",
    "Gateway",
    "Tier",
    "issue_api_token",
    # Daemon
    "daemonize",
    "stop_daemon",
    "check_status",
    "get_pid_file",
]
