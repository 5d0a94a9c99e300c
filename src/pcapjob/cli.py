from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .app_logging import log_with_fields, setup_logger
from .config import AppConfig, ensure_local_paths, load_config
from .models import (
    Downloading,
    Failed,
    Idle,
    JobState,
    Polling,
    Submitted,
    Succeeded,
    UploadSource,
    Uploading,
    is_terminal,
)
from .orchestrator import JobOrchestrator
from .remote import NotFoundError, RemoteClient, RemoteError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pcapjob",
        description="Upload a capture, follow the remote processing job and fetch its result",
    )
    parser.add_argument("--config", required=True, help="Path to pcapjob YAML config")
    parser.add_argument("--verbose", action="store_true", help="Log debug events")
    subparsers = parser.add_subparsers(dest="command", required=True)

    submit = subparsers.add_parser("submit", help="Upload a capture and wait for its result")
    submit.add_argument("capture", help="Path to the capture file")
    submit.add_argument("--output", help="Write the downloaded result here instead of stdout")

    status = subparsers.add_parser("status", help="Check the status of a job once")
    status.add_argument("--job-id", required=True, help="Job id returned by the upload")

    fetch = subparsers.add_parser("fetch", help="Download a result from a known URL")
    fetch.add_argument("--url", required=True, help="Result URL")
    fetch.add_argument("--output", help="Write the downloaded result here instead of stdout")
    return parser


def describe_state(state: JobState) -> str:
    match state:
        case Idle():
            return "idle"
        case Uploading(progress=progress):
            return f"uploading {progress:.0%}"
        case Submitted(job_id=job_id):
            return f"submitted job={job_id}"
        case Polling(job_id=job_id, attempt=attempt):
            return f"polling job={job_id} attempt={attempt}"
        case Downloading(job_id=job_id, url=url):
            return f"downloading job={job_id} url={url}"
        case Succeeded(job_id=job_id, content=content):
            return f"succeeded job={job_id} bytes={len(content)}"
        case Failed(message=message, job_id=job_id):
            suffix = f" job={job_id}" if job_id else ""
            return f"failed{suffix}: {message}"


class ConsoleRenderer:
    """Prints state transitions; upload progress only in 10% steps."""

    def __init__(self, stream=None) -> None:
        self.stream = stream or sys.stdout
        self._last_decile = -1

    def __call__(self, state: JobState) -> None:
        if isinstance(state, Uploading):
            decile = int(state.progress * 10)
            if decile == self._last_decile:
                return
            self._last_decile = decile
        else:
            self._last_decile = -1
        print(describe_state(state), file=self.stream, flush=True)


def _write_result(content: str, output: Path | None) -> None:
    if output is None:
        print(content)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(content, encoding="utf-8")
    print(f"result written to {output}")


def _open_client(config: AppConfig, logger: logging.Logger) -> RemoteClient:
    return RemoteClient(config.server, config.timeouts, logger=logger)


def cmd_submit(config: AppConfig, capture: Path, output: Path | None, logger: logging.Logger) -> int:
    if not capture.is_file():
        print(f"capture not found: {capture}", file=sys.stderr)
        return 2

    client = _open_client(config, logger)
    with JobOrchestrator(client, config.poll, logger, staging_dir=config.paths.staging) as orchestrator:
        unsubscribe = orchestrator.state.subscribe(ConsoleRenderer(), replay=False)
        try:
            orchestrator.start(UploadSource.from_path(capture, config.server.content_type))
            final = orchestrator.state.wait_for(lambda state: is_terminal(state) or isinstance(state, Idle))
        except KeyboardInterrupt:
            orchestrator.cancel()
            log_with_fields(logger, logging.INFO, "shutdown", reason="keyboard_interrupt")
            return 130
        finally:
            unsubscribe()

    match final:
        case Succeeded(content=content):
            _write_result(content, output)
            return 0
        case Failed(message=message):
            print(message, file=sys.stderr)
            return 1
        case _:
            return 1


def cmd_status(config: AppConfig, job_id: str, logger: logging.Logger) -> int:
    client = _open_client(config, logger)
    try:
        response = client.fetch_status(job_id)
    except NotFoundError as exc:
        print(f"{job_id}: {exc}", file=sys.stderr)
        return 2
    except RemoteError as exc:
        print(f"{job_id}: {exc}", file=sys.stderr)
        return 1
    finally:
        client.close()

    print(f"job:    {job_id}")
    print(f"status: {response.status}")
    if response.url:
        print(f"url:    {response.url}")
    if response.error:
        print(f"error:  {response.error}")
    return 0


def cmd_fetch(config: AppConfig, url: str, output: Path | None, logger: logging.Logger) -> int:
    client = _open_client(config, logger)
    try:
        content = client.download(url)
    except RemoteError as exc:
        print(f"Download failed: {exc}", file=sys.stderr)
        return 1
    finally:
        client.close()
    _write_result(content, output)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)
    ensure_local_paths(config)
    logger = setup_logger(config.paths.log, verbose=bool(args.verbose))

    if args.command == "submit":
        output = Path(args.output) if args.output else None
        return cmd_submit(config, Path(args.capture).expanduser(), output, logger)
    if args.command == "status":
        return cmd_status(config, args.job_id, logger)
    if args.command == "fetch":
        output = Path(args.output) if args.output else None
        return cmd_fetch(config, args.url, output, logger)
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
