"""Module entrypoint to run `python -m psqlweb`."""

from __future__ import annotations

import argparse

import uvicorn

from .app import create_app
from .config import load_settings
from .logs import configure_logging


def main(argv: list[str] | None = None) -> None:
    settings = load_settings()
    parser = argparse.ArgumentParser(prog="psqlweb", description="Serve the psqlweb console API.")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    configure_logging(args.log_level.upper())
    app = create_app(settings)
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
