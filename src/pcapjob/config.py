from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .models import DEFAULT_CONTENT_TYPE


@dataclass(slots=True)
class ServerConfig:
    base_url: str
    upload_path: str = "/upload"
    status_path: str = "/status/{job_id}"
    upload_field: str = "pcap_file"
    content_type: str = DEFAULT_CONTENT_TYPE
    log_http: bool = False

    def upload_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.upload_path.lstrip('/')}"

    def status_url(self, job_id: str) -> str:
        path = self.status_path.format(job_id=job_id)
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"


@dataclass(slots=True)
class TimeoutConfig:
    connect_seconds: float = 30.0
    read_seconds: float = 60.0
    write_seconds: float = 60.0


@dataclass(slots=True)
class PollConfig:
    initial_delay_seconds: float = 3.0
    interval_seconds: float = 5.0
    max_attempts: int = 30


@dataclass(slots=True)
class PathsConfig:
    staging: Path | None = None
    log: Path | None = None


@dataclass(slots=True)
class AppConfig:
    server: ServerConfig
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    poll: PollConfig = field(default_factory=PollConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)


def _require(mapping: dict, key: str, section: str) -> object:
    if key not in mapping:
        raise ValueError(f"Missing `{section}.{key}` in config")
    return mapping[key]


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    server_raw = _require(raw, "server", "root")
    if not isinstance(server_raw, dict):
        raise ValueError("`server` must be a mapping")
    timeouts_raw = _section(raw, "timeouts")
    poll_raw = _section(raw, "poll")
    paths_raw = _section(raw, "paths")

    base_url = str(_require(server_raw, "base_url", "server")).strip()
    if not base_url.startswith(("http://", "https://")):
        raise ValueError("`server.base_url` must be an http(s) URL")

    server = ServerConfig(
        base_url=base_url,
        upload_path=str(server_raw.get("upload_path", "/upload")),
        status_path=str(server_raw.get("status_path", "/status/{job_id}")),
        upload_field=str(server_raw.get("upload_field", "pcap_file")),
        content_type=str(server_raw.get("content_type", DEFAULT_CONTENT_TYPE)),
        log_http=bool(server_raw.get("log_http", False)),
    )
    if "{job_id}" not in server.status_path:
        raise ValueError("`server.status_path` must contain a `{job_id}` placeholder")
    if not server.upload_field:
        raise ValueError("`server.upload_field` must not be empty")

    timeouts = TimeoutConfig(
        connect_seconds=float(timeouts_raw.get("connect_seconds", 30)),
        read_seconds=float(timeouts_raw.get("read_seconds", 60)),
        write_seconds=float(timeouts_raw.get("write_seconds", 60)),
    )
    for key in ("connect_seconds", "read_seconds", "write_seconds"):
        if getattr(timeouts, key) <= 0:
            raise ValueError(f"`timeouts.{key}` must be > 0")

    poll = PollConfig(
        initial_delay_seconds=float(poll_raw.get("initial_delay_seconds", 3)),
        interval_seconds=float(poll_raw.get("interval_seconds", 5)),
        max_attempts=int(poll_raw.get("max_attempts", 30)),
    )
    if poll.initial_delay_seconds < 0:
        raise ValueError("`poll.initial_delay_seconds` must be >= 0")
    if poll.interval_seconds < 0:
        raise ValueError("`poll.interval_seconds` must be >= 0")
    if poll.max_attempts < 1:
        raise ValueError("`poll.max_attempts` must be >= 1")

    def to_path(key: str) -> Path | None:
        value = paths_raw.get(key)
        if value in (None, ""):
            return None
        output = Path(str(value)).expanduser()
        if not output.is_absolute():
            output = config_path.parent / output
        return output

    paths = PathsConfig(staging=to_path("staging"), log=to_path("log"))
    return AppConfig(server=server, timeouts=timeouts, poll=poll, paths=paths)


def ensure_local_paths(config: AppConfig) -> None:
    if config.paths.staging is not None:
        config.paths.staging.mkdir(parents=True, exist_ok=True)
    if config.paths.log is not None:
        config.paths.log.parent.mkdir(parents=True, exist_ok=True)
