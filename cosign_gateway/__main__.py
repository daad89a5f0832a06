# cosign_gateway/__main__.py
"""
Entry point for running the gateway as a module:
    python -m cosign_gateway [--host 0.0.0.0] [--port 8000] [--config cosign_config.yaml]
                             [--log-level INFO]
Env toggles:
  COSIGN_ENV=production        -> attach program clients without fetching their IDL
  COSIGN_ADMIN_PRIVATE_KEY=... -> admin secret (required in production)
  COSIGN_SOCKET_SECRET=...     -> realtime token secret (required in production)
"""

from __future__ import annotations
import os
import argparse
from pathlib import Path

import uvicorn


def parse_args(argv=None):
    p = argparse.ArgumentParser(
        prog="cosign-gateway",
        description="Run the co-sign gateway (prepare, co-sign and realtime endpoints)",
    )
    p.add_argument(
        "--host",
        default=os.environ.get("COSIGN_HOST"),
        help="Bind address (default: settings server.host)",
    )
    p.add_argument(
        "--port",
        type=int,
        default=int(os.environ["COSIGN_PORT"]) if os.environ.get("COSIGN_PORT") else None,
        help="Port (default: settings server.port)",
    )
    p.add_argument(
        "--config",
        default=os.environ.get("COSIGN_CONFIG"),
        help="Path to YAML config",
    )
    p.add_argument(
        "--log-level",
        default=None,
        help="Override logging level",
    )
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    from .settings import load_settings
    from .app import create_app

    settings = load_settings(Path(args.config) if args.config else None)
    if args.log_level:
        settings.logging.level = args.log_level.upper()

    app = create_app(settings)
    uvicorn.run(
        app,
        host=args.host or settings.server.host,
        port=args.port or settings.server.port,
        log_level=settings.logging.level.lower(),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
