"""Speedtest probe runners (Ookla CLI + speedtest-cli fallback)."""

from __future__ import annotations

import json
import logging
import platform
import shutil
import subprocess
import sys
import tarfile
import tempfile
import zipfile
from pathlib import Path
from typing import Dict, List, Optional

import requests

from ..config import AppConfig
from ..errors import ProbeError, ProbeErrorKind
from .models import ProbeReading

LOGGER = logging.getLogger(__name__)


def _platform_binary_name(config: AppConfig) -> Path:
    suffix = ".exe" if platform.system().lower().startswith("win") else ""
    binary_name = config.ookla.binary_name
    if suffix and not binary_name.endswith(suffix):
        binary_name = f"{binary_name}{suffix}"
    return config.paths.bin_dir / binary_name


def ensure_ookla_binary(config: AppConfig) -> Path:
    """Return the Ookla CLI path, downloading it first when allowed."""
    binary_path = _platform_binary_name(config)
    if binary_path.exists():
        return binary_path

    if not config.ookla.auto_download:
        raise ProbeError(
            ProbeErrorKind.UNAVAILABLE,
            f"missing Ookla CLI binary at {binary_path} and auto_download is disabled",
        )

    platform_key = config.ookla_platform_key
    url = config.ookla.urls.get(platform_key)
    if not url:
        raise ProbeError(
            ProbeErrorKind.UNAVAILABLE,
            f"no Ookla download URL configured for platform {platform_key}",
        )

    binary_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        temp_path = _download_ookla_artifact(url)
    except requests.RequestException as exc:
        raise ProbeError(ProbeErrorKind.UNAVAILABLE, f"Ookla CLI download failed: {exc}") from exc
    try:
        _install_ookla_artifact(temp_path, url, binary_path)
    except (tarfile.TarError, zipfile.BadZipFile, OSError) as exc:
        if binary_path.exists():
            binary_path.unlink()
        raise ProbeError(ProbeErrorKind.UNAVAILABLE, f"could not install Ookla CLI from {url}: {exc}") from exc
    finally:
        if temp_path.exists():
            temp_path.unlink()

    binary_path.chmod(0o755)
    return binary_path


def _download_ookla_artifact(url: str) -> Path:
    LOGGER.info("Downloading Ookla CLI from %s", url)
    response = requests.get(url, timeout=120)
    response.raise_for_status()

    with tempfile.NamedTemporaryFile(delete=False) as temp_file:
        temp_file.write(response.content)
        return Path(temp_file.name)


def _install_ookla_artifact(temp_path: Path, url: str, destination: Path) -> None:
    if url.endswith(".zip"):
        with zipfile.ZipFile(temp_path, "r") as archive:
            member = next((m for m in archive.namelist() if m.endswith("speedtest.exe")), None)
            if not member:
                raise ProbeError(ProbeErrorKind.UNAVAILABLE, "zip archive did not contain speedtest.exe")
            with archive.open(member) as source, destination.open("wb") as target:
                shutil.copyfileobj(source, target)
        return

    if url.endswith(".tgz"):
        with tarfile.open(temp_path, "r:gz") as archive:
            member = next(
                (m for m in archive.getmembers() if m.isfile() and Path(m.name).name == "speedtest"),
                None,
            )
            source = archive.extractfile(member) if member else None
            if source is None:
                raise ProbeError(ProbeErrorKind.UNAVAILABLE, "tarball did not contain speedtest binary")
            with source, destination.open("wb") as target:
                shutil.copyfileobj(source, target)
        return

    raise ProbeError(ProbeErrorKind.UNAVAILABLE, f"unknown Ookla download artifact: {url}")


def run_speedtest_probe(config: AppConfig) -> ProbeReading:
    """Probe capability used by the scheduler.

    Tries the Ookla CLI when preferred, falls back to the speedtest-cli module.
    Raises ``ProbeError`` when neither produces a reading.
    """
    if config.speedtest.preferred == "ookla":
        try:
            binary_path = ensure_ookla_binary(config)
            return _run_ookla_cli(config, binary_path)
        except ProbeError as exc:
            LOGGER.warning("Ookla CLI failed (%s). Falling back to speedtest-cli", exc)
    return _run_speedtest_cli(config)


def _run_ookla_cli(config: AppConfig, binary_path: Path) -> ProbeReading:
    command = [str(binary_path), "--format=json", "--progress=no", "--accept-license", "--accept-gdpr"]
    if config.speedtest.server_id:
        command += ["--server-id", str(config.speedtest.server_id)]
    if config.speedtest.extra_args:
        command += list(config.speedtest.extra_args)

    data = _run_json_command(command, config.speedtest.timeout_seconds)
    return _convert_ookla_payload(data)


def _run_speedtest_cli(config: AppConfig) -> ProbeReading:
    command = [sys.executable, "-m", config.speedtest.fallback_module, "--json", "--secure"]
    if config.speedtest.server_id:
        command += ["--server", str(config.speedtest.server_id)]
    data = _run_json_command(command, config.speedtest.timeout_seconds)
    return _convert_speedtest_cli_payload(data)


def _run_json_command(command: List[str], timeout: float) -> Dict:
    LOGGER.debug("Running probe command: %s", " ".join(command))
    try:
        completed = subprocess.run(
            command,
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise ProbeError(ProbeErrorKind.UNAVAILABLE, f"{command[0]} not found") from exc
    except OSError as exc:
        # not executable, wrong architecture and the like
        raise ProbeError(ProbeErrorKind.UNAVAILABLE, f"cannot execute {command[0]}: {exc}") from exc
    except subprocess.TimeoutExpired as exc:
        raise ProbeError(ProbeErrorKind.TIMEOUT, f"probe exceeded {timeout:g}s") from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        if "No module named" in stderr:
            raise ProbeError(ProbeErrorKind.UNAVAILABLE, stderr) from exc
        raise ProbeError(
            ProbeErrorKind.FAILED, f"exit status {exc.returncode}: {stderr or 'no output'}"
        ) from exc

    try:
        return json.loads(completed.stdout)
    except json.JSONDecodeError as exc:
        raise ProbeError(ProbeErrorKind.INVALID_OUTPUT, f"unparseable JSON: {exc}") from exc


def _convert_ookla_payload(data: Dict) -> ProbeReading:
    download = data.get("download") or {}
    upload = data.get("upload") or {}
    ping = data.get("ping") or {}
    server = data.get("server") or {}

    download_mbps = _bandwidth_to_mbps(download.get("bandwidth"))
    upload_mbps = _bandwidth_to_mbps(upload.get("bandwidth"))
    ping_ms = ping.get("latency")
    if download_mbps is None or upload_mbps is None or ping_ms is None:
        raise ProbeError(ProbeErrorKind.INVALID_OUTPUT, "Ookla result is missing download, upload or ping")

    return ProbeReading(
        download_mbps=download_mbps,
        upload_mbps=upload_mbps,
        ping_ms=float(ping_ms),
        server=server.get("name"),
    )


def _convert_speedtest_cli_payload(data: Dict) -> ProbeReading:
    download = data.get("download")
    upload = data.get("upload")
    ping_ms = data.get("ping")
    if download is None or upload is None or ping_ms is None:
        raise ProbeError(ProbeErrorKind.INVALID_OUTPUT, "speedtest-cli result is missing download, upload or ping")

    server = data.get("server") or {}
    return ProbeReading(
        download_mbps=float(download) / 1_000_000,
        upload_mbps=float(upload) / 1_000_000,
        ping_ms=float(ping_ms),
        server=server.get("name"),
    )


def _bandwidth_to_mbps(value: Optional[float]) -> Optional[float]:
    # Ookla reports bytes per second
    if value is None:
        return None
    return (value * 8) / 1_000_000
