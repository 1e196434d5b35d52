#!/usr/bin/env python3
"""JailWatch runtime launcher.

Serves the HTTP API with uvicorn, or with ``--once`` prints a single
reconciled jail view as JSON and exits.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

import uvicorn

from Jail_Control.config import Settings
from Jail_Control.service import JailService


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="JailWatch fail2ban control service")
    parser.add_argument(
        "--host",
        default=os.getenv("JAILWATCH_HOST", "127.0.0.1"),
        help="Bind address for the HTTP API",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("JAILWATCH_PORT", "8000")),
        help="Bind port for the HTTP API",
    )
    parser.add_argument(
        "--config-dir",
        default=None,
        help="fail2ban configuration directory (overrides FAIL2BAN_CONFIG_DIR)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Print the reconciled jail view as JSON and exit",
    )
    return parser.parse_args()


async def _print_once(settings: Settings) -> int:
    service = JailService(settings)
    view = await service.jails()
    print(json.dumps(view, indent=2, sort_keys=True), flush=True)
    return 0 if view["serverStatus"] == "online" else 1


def main() -> int:
    args = parse_args()
    if args.config_dir:
        os.environ["FAIL2BAN_CONFIG_DIR"] = args.config_dir
    settings = Settings.from_env()

    if args.once:
        return asyncio.run(_print_once(settings))

    if os.geteuid() != 0 and not settings.use_sudo:
        print(
            "[main] warning: not root and USE_SUDO=false; fail2ban-client calls will likely fail.",
            file=sys.stderr,
            flush=True,
        )

    print(f"[main] config_dir={settings.config_dir} api=http://{args.host}:{args.port}", flush=True)
    print(f"[main] auth={'token' if settings.api_token else 'none'}", flush=True)

    from app.main import create_app

    uvicorn.run(create_app(settings=settings), host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
