"""TLS certificate management for the daemon.

The daemon serves HTTPS only. On first start a self-signed certificate is
generated for the configured host; clients pin its fingerprint on first use.
"""

import ipaddress
import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

# Certificate defaults
CERT_FILE = "daemon.cert"
KEY_FILE = "daemon.key"
DEFAULT_CERT_DAYS = 365
DEFAULT_KEY_SIZE = 4096


@dataclass
class TLSConfig:
    """TLS configuration for the server."""

    cert_path: Path
    key_path: Path
    fingerprint: str

    @classmethod
    def from_paths(cls, cert_path: Path, key_path: Path) -> "TLSConfig":
        """Create config from existing certificate files.

        Args:
            cert_path: Path to certificate file
            key_path: Path to key file

        Returns:
            TLSConfig with computed fingerprint

        Raises:
            FileNotFoundError: If files don't exist
        """
        if not cert_path.exists():
            raise FileNotFoundError(f"Certificate not found: {cert_path}")
        if not key_path.exists():
            raise FileNotFoundError(f"Key not found: {key_path}")

        fingerprint = get_cert_fingerprint(cert_path)
        return cls(cert_path=cert_path, key_path=key_path, fingerprint=fingerprint)


def cert_paths(cert_dir: Path) -> tuple[Path, Path]:
    """Return (cert_path, key_path) inside cert_dir."""
    return cert_dir / CERT_FILE, cert_dir / KEY_FILE


def get_cert_fingerprint(cert_path: Path) -> str:
    """Get SHA256 fingerprint of a certificate.

    Args:
        cert_path: Path to PEM certificate file

    Returns:
        SHA256 fingerprint as hex string with colons (e.g., "AB:CD:EF:...")

    Raises:
        subprocess.CalledProcessError: If openssl command fails
    """
    result = subprocess.run(
        [
            "openssl", "x509",
            "-in", str(cert_path),
            "-noout",
            "-fingerprint",
            "-sha256"
        ],
        capture_output=True,
        text=True,
        check=True,
    )
    # Output format: "sha256 Fingerprint=AB:CD:EF:..."
    output = result.stdout.strip()
    if "=" in output:
        return output.split("=", 1)[1]
    return output


def _san_entry(host: str) -> str:
    try:
        ipaddress.ip_address(host)
        return f"IP:{host}"
    except ValueError:
        return f"DNS:{host}"


def generate_self_signed_cert(
    cert_dir: Path,
    host: str,
    port: int,
    days: int = DEFAULT_CERT_DAYS,
    key_size: int = DEFAULT_KEY_SIZE,
) -> TLSConfig:
    """Generate a self-signed certificate for host:port.

    Creates a certificate with:
    - CN = host
    - SAN = host (DNS or IP), plus localhost for local health checks
    - OU = daemon address (host:port)

    Existing files in cert_dir are overwritten.

    Args:
        cert_dir: Directory to store certificate files
        host: Hostname or IP address the daemon is reached at
        port: Port the daemon listens on
        days: Certificate validity in days
        key_size: RSA key size in bits

    Returns:
        TLSConfig with paths and fingerprint

    Raises:
        subprocess.CalledProcessError: If openssl command fails
        PermissionError: If cannot write to cert_dir
    """
    cert_dir.mkdir(parents=True, exist_ok=True)
    cert_path, key_path = cert_paths(cert_dir)

    logger.info("Generating self-signed certificate for %s:%d", host, port)

    san_entries = [_san_entry(host)]
    if host != "localhost":
        san_entries.append("DNS:localhost")

    # Create temporary config file for openssl
    with tempfile.NamedTemporaryFile(mode="w", suffix=".cnf", delete=False) as f:
        f.write(f"""
[req]
default_bits = {key_size}
prompt = no
default_md = sha256
distinguished_name = dn
x509_extensions = v3_ext

[dn]
O = inertia
OU = {host}:{port}
CN = {host}

[v3_ext]
basicConstraints = CA:FALSE
keyUsage = digitalSignature, keyEncipherment
extendedKeyUsage = serverAuth
subjectAltName = {",".join(san_entries)}
""")
        config_path = f.name

    try:
        subprocess.run(
            [
                "openssl", "req",
                "-x509",
                "-nodes",
                "-newkey", f"rsa:{key_size}",
                "-keyout", str(key_path),
                "-out", str(cert_path),
                "-days", str(days),
                "-config", config_path,
            ],
            check=True,
            capture_output=True,
        )

        # Set restrictive permissions on key file
        os.chmod(key_path, 0o600)
        os.chmod(cert_path, 0o644)

    finally:
        Path(config_path).unlink(missing_ok=True)

    fingerprint = get_cert_fingerprint(cert_path)
    logger.info("Certificate fingerprint (SHA256): %s", fingerprint)

    return TLSConfig(cert_path=cert_path, key_path=key_path, fingerprint=fingerprint)


def ensure_certificate(
    cert_dir: Path,
    host: str,
    port: int,
    key_size: int = DEFAULT_KEY_SIZE,
) -> TLSConfig:
    """Reuse the certificate pair in cert_dir, or generate one.

    A fresh pair is generated when either file is missing; an existing
    complete pair is left untouched.
    """
    cert_path, key_path = cert_paths(cert_dir)
    if cert_path.exists() and key_path.exists():
        logger.info("Using existing certificate: %s", cert_path)
        return TLSConfig.from_paths(cert_path, key_path)

    logger.info("No complete certificate pair in %s - generating new one", cert_dir)
    return generate_self_signed_cert(cert_dir, host, port, key_size=key_size)


def get_cert_subject(cert_path: Path) -> str:
    """Return the certificate subject as printed by openssl."""
    result = subprocess.run(
        ["openssl", "x509", "-noout", "-subject", "-in", str(cert_path)],
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


def verify_cert_key_match(cert_path: Path, key_path: Path) -> bool:
    """Verify that a certificate and key match.

    Args:
        cert_path: Path to certificate file
        key_path: Path to key file

    Returns:
        True if certificate and key match
    """
    try:
        cert_result = subprocess.run(
            ["openssl", "x509", "-noout", "-modulus", "-in", str(cert_path)],
            capture_output=True,
            text=True,
            check=True,
        )
        cert_modulus = cert_result.stdout.strip()

        key_result = subprocess.run(
            ["openssl", "rsa", "-noout", "-modulus", "-in", str(key_path)],
            capture_output=True,
            text=True,
            check=True,
        )
        key_modulus = key_result.stdout.strip()

        return cert_modulus == key_modulus
    except subprocess.CalledProcessError:
        return False
