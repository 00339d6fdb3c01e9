"""Tests for server/bootstrap.py - TLS provisioning and concurrent image pre-pull."""

import subprocess
import sys
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from project.errors import EngineError
from server.bootstrap import BootstrapError, prewarm_images, run_bootstrap
from server.tls import CERT_FILE, KEY_FILE, verify_cert_key_match

COMPOSE = "docker/compose:1.29.2"
HEROKUISH = "gliderlabs/herokuish:v0.5.0"


class TestPrewarm:
    def test_all_pulls_succeed(self):
        engine = MagicMock()
        prewarm = prewarm_images(engine, [COMPOSE, HEROKUISH])
        assert prewarm.wait(5)
        assert prewarm.complete
        assert prewarm.failed() == {}
        assert prewarm.snapshot() == {COMPOSE: "ok", HEROKUISH: "ok"}
        assert engine.pull.call_count == 2

    def test_one_failure_does_not_block_other(self):
        """A failing pull is recorded; the other pull still completes."""
        engine = MagicMock()

        def pull(image):
            if image == HEROKUISH:
                raise EngineError(f"pull {image}", "manifest unknown")

        engine.pull.side_effect = pull
        prewarm = prewarm_images(engine, [COMPOSE, HEROKUISH])
        assert prewarm.wait(5)
        assert prewarm.results[COMPOSE] == "ok"
        assert list(prewarm.failed()) == [HEROKUISH]

    def test_pulls_run_concurrently(self):
        """Both pulls are in flight at the same time."""
        engine = MagicMock()
        barrier = threading.Barrier(2, timeout=5)
        engine.pull.side_effect = lambda image: barrier.wait()
        prewarm = prewarm_images(engine, [COMPOSE, HEROKUISH])
        assert prewarm.wait(5)
        assert prewarm.failed() == {}

    def test_pending_until_done(self):
        engine = MagicMock()
        release = threading.Event()
        engine.pull.side_effect = lambda image: release.wait(5)
        prewarm = prewarm_images(engine, [COMPOSE])
        assert prewarm.snapshot() == {COMPOSE: "pending"}
        assert not prewarm.complete
        release.set()
        assert prewarm.wait(5)


class TestRunBootstrap:
    def test_existing_pair_untouched(self, tmp_path, tls_config):
        """A complete existing pair is reused byte for byte."""
        cert_dir = tmp_path / "ssl"
        cert_dir.mkdir()
        (cert_dir / CERT_FILE).write_bytes(tls_config.cert_path.read_bytes())
        (cert_dir / KEY_FILE).write_bytes(tls_config.key_path.read_bytes())
        before = (cert_dir / CERT_FILE).read_bytes(), (cert_dir / KEY_FILE).read_bytes()

        result = run_bootstrap(cert_dir, "localhost", 4303, None, [])

        assert ((cert_dir / CERT_FILE).read_bytes(), (cert_dir / KEY_FILE).read_bytes()) == before
        assert result.tls_config.fingerprint == tls_config.fingerprint
        assert result.prewarm is None

    def test_missing_pair_generated(self, tmp_path):
        cert_dir = tmp_path / "ssl"
        result = run_bootstrap(cert_dir, "203.0.113.10", 4303, None, [], key_size=2048)
        assert (cert_dir / CERT_FILE).exists()
        assert (cert_dir / KEY_FILE).exists()
        assert verify_cert_key_match(result.tls_config.cert_path, result.tls_config.key_path)

    def test_half_pair_regenerated(self, tmp_path, tls_config):
        """A lone certificate without its key is replaced by a fresh pair."""
        cert_dir = tmp_path / "ssl"
        cert_dir.mkdir()
        (cert_dir / CERT_FILE).write_bytes(tls_config.cert_path.read_bytes())
        result = run_bootstrap(cert_dir, "localhost", 4303, None, [], key_size=2048)
        assert result.tls_config.fingerprint != tls_config.fingerprint
        assert verify_cert_key_match(result.tls_config.cert_path, result.tls_config.key_path)

    def test_tls_failure_is_fatal(self, tmp_path):
        error = subprocess.CalledProcessError(1, ["openssl"])
        with patch("server.bootstrap.ensure_certificate", side_effect=error):
            with pytest.raises(BootstrapError) as exc_info:
                run_bootstrap(tmp_path / "ssl", "localhost", 4303, None, [])
        assert "TLS init failed" in exc_info.value.message

    def test_starts_prewarm_with_engine(self, tmp_path, tls_config):
        cert_dir = tmp_path / "ssl"
        cert_dir.mkdir()
        (cert_dir / CERT_FILE).write_bytes(tls_config.cert_path.read_bytes())
        (cert_dir / KEY_FILE).write_bytes(tls_config.key_path.read_bytes())
        engine = MagicMock()
        result = run_bootstrap(cert_dir, "localhost", 4303, engine, [COMPOSE])
        assert result.prewarm.wait(5)
        engine.pull.assert_called_once_with(COMPOSE)
