"""clihub command-line entry point."""
from __future__ import annotations

import asyncio
import logging
import subprocess
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from clihub.engine.config import EngineConfig
from clihub.engine.errors import ConfigError

logger = logging.getLogger(__name__)


def _load_config(config_path: str | None) -> EngineConfig:
    config = EngineConfig.from_env()
    if config_path:
        from clihub.engine.yaml_config import load_yaml_config

        config = load_yaml_config(Path(config_path), base=config)
    return config


def _configure_logging(config: EngineConfig) -> Path:
    """Rotating server log under the data dir, mirrored to stderr."""
    log_dir = config.data_dir / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "clihub-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.log_level, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _reap_stale_processes() -> None:
    from clihub.shared.services.process_cleanup import cleanup_stale_runtime_processes

    try:
        reaped = cleanup_stale_runtime_processes(log=logger.info)
    except (OSError, subprocess.SubprocessError) as exc:
        logger.error("Startup stale-process cleanup failed: %s", exc)
        return
    if reaped:
        logger.warning("Reaped %d stale provider process(es) at startup", reaped)


def _print_history(config: EngineConfig, project_id: str | None, query: str | None) -> None:
    from clihub.shared.services.transcripts.repository import SessionRepository
    from clihub.shared.services.transcripts.sources import default_sources
    from clihub.shared.services.transcripts.store import SessionStateStore

    repo = SessionRepository(
        default_sources(config),
        SessionStateStore(config.data_dir / "state" / "sessions.json"),
    )
    repo.discover()
    if query:
        hits = repo.search(query, project_id=project_id)
        if not hits:
            print("No matches.")
        for hit in hits:
            print(f"  {hit.project_id}/{hit.session_id} [{hit.role}] {hit.snippet}")
        return
    if project_id:
        for label, sessions in repo.group_by_recency(project_id).items():
            print(f"{label}:")
            for session in sessions:
                print(f"  {session.session_id}  {session.title or session.preview}")
        return
    projects = repo.list_projects()
    if not projects:
        print("No sessions found.")
    for project in projects:
        print(f"  {project.project_id}  {project.name} ({project.session_count} sessions)")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="clihub",
        description="Run Claude, OpenCode and Gemini CLIs behind one streaming API",
    )
    parser.add_argument(
        "--server", action="store_true",
        help="Start the HTTP + streaming server",
    )
    parser.add_argument(
        "--host", default="127.0.0.1",
        help="Server bind address (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int, default=0,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file for engine and provider settings",
    )
    parser.add_argument(
        "--list", nargs="?", const="", metavar="PROJECT_ID",
        help="List projects, or the sessions of PROJECT_ID, and exit",
    )
    parser.add_argument(
        "--search", metavar="QUERY",
        help="Search session history and exit",
    )
    args = parser.parse_args()

    try:
        config = _load_config(args.config)
    except (ConfigError, FileNotFoundError) as exc:
        print(f"clihub: {exc}", file=sys.stderr)
        sys.exit(2)

    if args.list is not None or args.search:
        logging.basicConfig(level=getattr(logging, config.log_level, logging.INFO))
        _print_history(config, args.list or None, args.search)
        sys.exit(0)

    if not args.server:
        parser.print_help()
        sys.exit(1)

    from clihub.server.server import ClihubServer

    log_file = _configure_logging(config)
    logger.info(
        "Starting clihub server cwd=%s host=%s port=%s config=%s log=%s",
        Path.cwd(), args.host, args.port, args.config or "<none>", log_file,
    )
    if config.cleanup_stale_processes:
        _reap_stale_processes()

    server = ClihubServer(config, host=args.host, port=args.port)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
