"""Tests for the speedtest runners, mostly with subprocess mocked out."""

import errno
import io
import json
import subprocess
import sys
import tarfile
from unittest.mock import Mock, patch

import pytest

from speedmqtt.errors import ProbeError, ProbeErrorKind
from speedmqtt.measurements import speedtest_runner
from speedmqtt.measurements.models import ProbeReading
from speedmqtt.measurements.speedtest_runner import ensure_ookla_binary, run_speedtest_probe

OOKLA_PAYLOAD = {
    "type": "result",
    "timestamp": "2024-05-01T12:00:00Z",
    "ping": {"jitter": 0.8, "latency": 12.5},
    "download": {"bandwidth": 12_500_000, "bytes": 150_000_000},
    "upload": {"bandwidth": 2_500_000, "bytes": 30_000_000},
    "server": {"name": "Example ISP"},
}

SPEEDTEST_CLI_PAYLOAD = {
    "download": 93_456_000.0,
    "upload": 11_200_000.0,
    "ping": 18.4,
    "server": {"name": "Fallback Server"},
}


def completed(payload):
    return subprocess.CompletedProcess(args=[], returncode=0, stdout=json.dumps(payload), stderr="")


@pytest.fixture
def ookla_binary(app_config):
    app_config.paths.bin_dir.mkdir(parents=True)
    binary = app_config.paths.bin_dir / "speedtest"
    binary.write_text("#!/bin/sh\n")
    return binary


class TestOoklaProbe:
    def test_converts_bytes_per_second_to_mbps(self, app_config, ookla_binary):
        with patch.object(speedtest_runner.subprocess, "run", return_value=completed(OOKLA_PAYLOAD)) as run:
            reading = run_speedtest_probe(app_config)

        assert reading.download_mbps == pytest.approx(100.0)
        assert reading.upload_mbps == pytest.approx(20.0)
        assert reading.ping_ms == 12.5
        assert reading.server == "Example ISP"
        command = run.call_args.args[0]
        assert command[0] == str(ookla_binary)
        assert "--format=json" in command
        assert run.call_args.kwargs["timeout"] == 5

    def test_server_id_and_extra_args(self, app_config, ookla_binary):
        app_config.speedtest.server_id = "4242"
        app_config.speedtest.extra_args = ["--interface=eth0"]

        with patch.object(speedtest_runner.subprocess, "run", return_value=completed(OOKLA_PAYLOAD)) as run:
            run_speedtest_probe(app_config)

        command = run.call_args.args[0]
        assert command[-3:] == ["--server-id", "4242", "--interface=eth0"]

    def test_missing_fields_fall_back(self, app_config, ookla_binary):
        partial = {"ping": {"latency": 10.0}}
        with patch.object(
            speedtest_runner.subprocess,
            "run",
            side_effect=[completed(partial), completed(SPEEDTEST_CLI_PAYLOAD)],
        ):
            reading = run_speedtest_probe(app_config)

        assert reading.server == "Fallback Server"


class TestSpeedtestCliFallback:
    def test_fallback_when_binary_missing(self, app_config):
        with patch.object(speedtest_runner.subprocess, "run", return_value=completed(SPEEDTEST_CLI_PAYLOAD)) as run:
            reading = run_speedtest_probe(app_config)

        assert reading.download_mbps == pytest.approx(93.456)
        assert reading.upload_mbps == pytest.approx(11.2)
        assert reading.ping_ms == 18.4
        command = run.call_args.args[0]
        assert command[:3] == [sys.executable, "-m", "speedtest"]

    def test_preferred_speedtest_cli_skips_ookla(self, app_config, ookla_binary):
        app_config.speedtest.preferred = "speedtest-cli"

        with patch.object(speedtest_runner.subprocess, "run", return_value=completed(SPEEDTEST_CLI_PAYLOAD)) as run:
            run_speedtest_probe(app_config)

        assert run.call_count == 1
        assert run.call_args.args[0][0] == sys.executable


class TestProbeErrors:
    def test_timeout(self, app_config):
        error = subprocess.TimeoutExpired(cmd="speedtest", timeout=5)
        with patch.object(speedtest_runner.subprocess, "run", side_effect=error):
            with pytest.raises(ProbeError) as excinfo:
                run_speedtest_probe(app_config)

        assert excinfo.value.kind is ProbeErrorKind.TIMEOUT

    def test_non_zero_exit(self, app_config):
        error = subprocess.CalledProcessError(1, "speedtest", output="", stderr="Cannot retrieve speedtest configuration")
        with patch.object(speedtest_runner.subprocess, "run", side_effect=error):
            with pytest.raises(ProbeError) as excinfo:
                run_speedtest_probe(app_config)

        assert excinfo.value.kind is ProbeErrorKind.FAILED
        assert "Cannot retrieve speedtest configuration" in excinfo.value.detail

    def test_module_missing_is_unavailable(self, app_config):
        error = subprocess.CalledProcessError(1, "python", output="", stderr="No module named speedtest")
        with patch.object(speedtest_runner.subprocess, "run", side_effect=error):
            with pytest.raises(ProbeError) as excinfo:
                run_speedtest_probe(app_config)

        assert excinfo.value.kind is ProbeErrorKind.UNAVAILABLE

    def test_invalid_json(self, app_config):
        garbage = subprocess.CompletedProcess(args=[], returncode=0, stdout="Retrieving...", stderr="")
        with patch.object(speedtest_runner.subprocess, "run", return_value=garbage):
            with pytest.raises(ProbeError) as excinfo:
                run_speedtest_probe(app_config)

        assert excinfo.value.kind is ProbeErrorKind.INVALID_OUTPUT


class TestEnsureOoklaBinary:
    def test_existing_binary_is_reused(self, app_config, ookla_binary):
        assert ensure_ookla_binary(app_config) == ookla_binary

    def test_missing_without_auto_download(self, app_config):
        with pytest.raises(ProbeError) as excinfo:
            ensure_ookla_binary(app_config)

        assert excinfo.value.kind is ProbeErrorKind.UNAVAILABLE

    def test_downloads_and_extracts_tarball(self, app_config, monkeypatch):
        app_config.ookla.auto_download = True
        monkeypatch.setattr(type(app_config), "ookla_platform_key", property(lambda self: "linux_x86_64"))
        monkeypatch.setattr(speedtest_runner.platform, "system", lambda: "Linux")

        archive = io.BytesIO()
        with tarfile.open(fileobj=archive, mode="w:gz") as tar:
            content = b"#!/bin/sh\necho speedtest\n"
            info = tarfile.TarInfo("speedtest")
            info.size = len(content)
            tar.addfile(info, io.BytesIO(content))
        response = Mock(content=archive.getvalue())

        with patch.object(speedtest_runner.requests, "get", return_value=response) as get:
            binary = ensure_ookla_binary(app_config)

        assert get.call_args.args[0].endswith("linux-x86_64.tgz")
        assert binary.read_bytes() == b"#!/bin/sh\necho speedtest\n"
        assert binary.stat().st_mode & 0o111

    def test_download_failure_is_unavailable(self, app_config, monkeypatch):
        app_config.ookla.auto_download = True
        monkeypatch.setattr(type(app_config), "ookla_platform_key", property(lambda self: "linux_x86_64"))
        monkeypatch.setattr(speedtest_runner.platform, "system", lambda: "Linux")

        error = speedtest_runner.requests.ConnectionError("offline")
        with patch.object(speedtest_runner.requests, "get", side_effect=error):
            with pytest.raises(ProbeError) as excinfo:
                ensure_ookla_binary(app_config)

        assert excinfo.value.kind is ProbeErrorKind.UNAVAILABLE

    def test_corrupt_download_is_unavailable(self, app_config, monkeypatch):
        app_config.ookla.auto_download = True
        monkeypatch.setattr(type(app_config), "ookla_platform_key", property(lambda self: "linux_x86_64"))
        monkeypatch.setattr(speedtest_runner.platform, "system", lambda: "Linux")

        response = Mock(content=b"<html>502 Bad Gateway</html>")
        with patch.object(speedtest_runner.requests, "get", return_value=response):
            with pytest.raises(ProbeError) as excinfo:
                ensure_ookla_binary(app_config)

        assert excinfo.value.kind is ProbeErrorKind.UNAVAILABLE
        assert not (app_config.paths.bin_dir / "speedtest").exists()


class TestOoklaExecutionFailures:
    def test_non_executable_binary_falls_back(self, app_config, ookla_binary):
        fallback = ProbeReading(93.4, 11.2, 18.4, server="Fallback Server")

        with patch.object(speedtest_runner, "_run_speedtest_cli", return_value=fallback) as cli:
            reading = run_speedtest_probe(app_config)

        assert reading is fallback
        cli.assert_called_once_with(app_config)

    def test_exec_format_error_falls_back(self, app_config, ookla_binary):
        wrong_arch = OSError(errno.ENOEXEC, "Exec format error")
        with patch.object(
            speedtest_runner.subprocess,
            "run",
            side_effect=[wrong_arch, completed(SPEEDTEST_CLI_PAYLOAD)],
        ):
            reading = run_speedtest_probe(app_config)

        assert reading.server == "Fallback Server"

    def test_os_error_is_unavailable(self, app_config):
        app_config.speedtest.preferred = "speedtest-cli"
        with patch.object(speedtest_runner.subprocess, "run", side_effect=PermissionError(13, "Permission denied")):
            with pytest.raises(ProbeError) as excinfo:
                run_speedtest_probe(app_config)

        assert excinfo.value.kind is ProbeErrorKind.UNAVAILABLE
        assert "Permission denied" in excinfo.value.detail

    def test_corrupt_download_falls_back(self, app_config, monkeypatch):
        app_config.ookla.auto_download = True
        monkeypatch.setattr(type(app_config), "ookla_platform_key", property(lambda self: "linux_x86_64"))
        monkeypatch.setattr(speedtest_runner.platform, "system", lambda: "Linux")

        response = Mock(content=b"truncated")
        with patch.object(speedtest_runner.requests, "get", return_value=response), \
                patch.object(speedtest_runner.subprocess, "run", return_value=completed(SPEEDTEST_CLI_PAYLOAD)) as run:
            reading = run_speedtest_probe(app_config)

        assert reading.server == "Fallback Server"
        assert run.call_args.args[0][0] == sys.executable
