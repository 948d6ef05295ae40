"""Paths, .env handling and runtime settings for the worker client."""

from __future__ import annotations

import os
import socket
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

DEFAULT_SERVER_URL = "http://127.0.0.1:8080"
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_REFRESH_INTERVAL = 30.0
KEY_NAMESPACE = "computeshare_ed25519"

# Capabilities advertised at registration. The evaluator handles every one of them.
CAPABILITIES = ("math:basic", "math:advanced", "analytics:vector", "script:sandbox")


def resolve_home(environ: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if environ is None else environ
    return Path(env.get("COMPUTESHARE_HOME") or Path.home() / ".computeshare").expanduser()


def load_env_file(path: Path) -> Dict[str, str]:
    env: Dict[str, str] = {}
    if path.exists():
        for line in path.read_text().splitlines():
            if not line or line.strip().startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            env[key.strip()] = value.strip()
    return env


def save_env_file(path: Path, env: Mapping[str, str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [f"{key}={value}" for key, value in env.items()]
    path.write_text("\n".join(lines) + "\n")


def load_version() -> str:
    version_file = Path(__file__).resolve().parent / "VERSION"
    if version_file.exists():
        return version_file.read_text().strip()
    try:
        return (
            subprocess.check_output(
                ["git", "rev-parse", "--short", "HEAD"],
                cwd=Path(__file__).resolve().parent,
                stderr=subprocess.DEVNULL,
            )
            .decode()
            .strip()
        )
    except (OSError, subprocess.CalledProcessError):
        return "dev"


def _float_setting(value: Optional[str], default: Optional[float]) -> Optional[float]:
    if value is None or not str(value).strip():
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


@dataclass(frozen=True)
class Settings:
    """Resolved runtime configuration."""

    home: Path
    server_url: str
    worker_name: str
    poll_interval: float
    refresh_interval: float
    request_timeout: Optional[float]

    @property
    def env_path(self) -> Path:
        return self.home / ".env"

    @property
    def logs_dir(self) -> Path:
        return self.home / "logs"

    @property
    def keys_dir(self) -> Path:
        return self.home / "keys"


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Merge the .env file under the worker home with the process environment.

    Environment variables win over the file so a single run can be pointed at
    another coordinator without editing the file.
    """

    env = os.environ if environ is None else environ
    home = resolve_home(env)
    file_values = load_env_file(home / ".env")

    def pick(key: str) -> Optional[str]:
        return env.get(key) or file_values.get(key)

    server_url = (pick("SERVER_URL") or DEFAULT_SERVER_URL).rstrip("/")
    worker_name = pick("WORKER_NAME") or socket.gethostname()
    return Settings(
        home=home,
        server_url=server_url,
        worker_name=worker_name,
        poll_interval=_float_setting(pick("POLL_INTERVAL"), DEFAULT_POLL_INTERVAL) or DEFAULT_POLL_INTERVAL,
        refresh_interval=_float_setting(pick("REFRESH_INTERVAL"), DEFAULT_REFRESH_INTERVAL)
        or DEFAULT_REFRESH_INTERVAL,
        request_timeout=_float_setting(pick("REQUEST_TIMEOUT"), None),
    )


def persist_settings(settings: Settings) -> None:
    """Write the coordinator URL and worker name back to the .env file."""

    values = load_env_file(settings.env_path)
    values["SERVER_URL"] = settings.server_url
    values["WORKER_NAME"] = settings.worker_name
    save_env_file(settings.env_path, values)


__all__ = [
    "CAPABILITIES",
    "DEFAULT_POLL_INTERVAL",
    "DEFAULT_REFRESH_INTERVAL",
    "DEFAULT_SERVER_URL",
    "KEY_NAMESPACE",
    "Settings",
    "load_env_file",
    "load_settings",
    "load_version",
    "persist_settings",
    "resolve_home",
    "save_env_file",
]
