"""API server entry point.

Usage:
    python run_server.py

    # Point the engine at a workspace and pick the target environment:
    python run_server.py --workspace ~/src/app --environment dev-alice

    # Custom host/port:
    python run_server.py --host 0.0.0.0 --port 9000
"""
from __future__ import annotations

import argparse
import logging
import os

logger = logging.getLogger(__name__)

_ENV_PREFIX = "JOBFORGE_API_"


def main() -> None:
    parser = argparse.ArgumentParser(description="Jobforge API Server")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    parser.add_argument("--workspace", default=None, help="Repository root the jobs operate on")
    parser.add_argument("--environment", default=None, help="Deployment environment suffix")
    parser.add_argument("--db", default=None, help="SQLite job database path")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    args = parser.parse_args()

    # Settings are read from the environment by every provider, so CLI
    # flags are exported before the app is built.
    overrides = {
        "HOST": args.host,
        "PORT": str(args.port),
        "LOG_LEVEL": args.log_level.upper(),
        "WORKSPACE_PATH": args.workspace,
        "ENVIRONMENT": args.environment,
        "JOB_DB_PATH": args.db,
    }
    for key, value in overrides.items():
        if value is not None:
            os.environ[_ENV_PREFIX + key] = value

    import uvicorn

    from jobforge.api.deps.providers import get_settings
    from jobforge.api.main import create_app

    settings = get_settings()
    logger.info("Workspace: %s, environment: %s", settings.workspace_path, settings.environment)

    if args.reload:
        uvicorn.run(
            "jobforge.api.main:create_app",
            factory=True,
            host=settings.host,
            port=settings.port,
            reload=True,
            log_level=args.log_level,
        )
    else:
        uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level=args.log_level)


if __name__ == "__main__":
    main()
