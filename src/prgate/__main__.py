"""Run the prgate service: ``prgate --repo-root PATH [--host H] [--port P]``."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="prgate",
        description="Review coordinator and merge gate for GitHub pull requests",
    )
    parser.add_argument("--repo-root", type=Path, default=Path.cwd(),
                        help="directory holding .prgate/config.yaml (default: cwd)")
    parser.add_argument("--host", default="0.0.0.0", help="bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="listen port (default: 8000)")
    parser.add_argument("--log-level", default="INFO", choices=LOG_LEVELS)
    return parser


def main(argv: list[str] | None = None):
    args = _parser().parse_args(argv)

    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    override = os.environ.get("PRGATE_CONFIG_DIR", "").strip()
    config_file = (Path(override) if override else args.repo_root / ".prgate") / "config.yaml"
    if not config_file.is_file():
        print(f"prgate: no config at {config_file}", file=sys.stderr)
        print("Create .prgate/config.yaml or point PRGATE_CONFIG_DIR at one", file=sys.stderr)
        sys.exit(1)

    import uvicorn

    from prgate.server import create_app

    uvicorn.run(
        create_app(repo_root=args.repo_root),
        host=args.host,
        port=args.port,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
