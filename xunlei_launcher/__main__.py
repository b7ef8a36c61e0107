#!/usr/bin/env python3
"""
Xunlei Launcher: command line entry point.

Usage:
    python3 -m xunlei_launcher launcher [options]
    python3 -m xunlei_launcher --debug launcher -U admin -W secret

Options fall back to XUNLEI_* environment variables, then to the YAML file
given with --config-file, then to built-in defaults.
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from . import __version__
from .config import ConfigError, config_summary, load_settings, parse_bool
from .launcher import Launcher
from .mount import MountError
from .supervisor import SupervisorError

logger = logging.getLogger("xunlei_launcher")


def init_log(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if not debug:
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="xunlei-launcher",
        description="Run the Xunlei backend behind a password-protected web panel",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  # Panel on port 5055 with a login:\n"
            "  xunlei-launcher launcher -U admin -W secret\n"
            "\n"
            "  # Settings from a file, verbose output:\n"
            "  xunlei-launcher --debug launcher --config-file launcher.yaml\n"
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--debug", action="store_true",
        default=parse_bool(os.environ.get("XUNLEI_DEBUG", "")),
        help="Enable debug logging and keep child output (env: XUNLEI_DEBUG)",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    launcher = commands.add_parser("launcher", help="Launch the Xunlei backend and panel")

    auth_group = launcher.add_argument_group("authentication")
    auth_group.add_argument("-U", "--auth-user", help="Panel user name (env: XUNLEI_AUTH_USER)")
    auth_group.add_argument("-W", "--auth-password", help="Panel password (env: XUNLEI_AUTH_PASSWORD)")

    panel_group = launcher.add_argument_group("panel")
    panel_group.add_argument("-H", "--host", help="Listen address (default: 0.0.0.0, env: XUNLEI_HOST)")
    panel_group.add_argument("-P", "--port", help="Listen port (default: 5055, env: XUNLEI_PORT)")
    panel_group.add_argument(
        "--cgi-timeout", type=float,
        help="Seconds to wait for output from the web UI program (default: no limit)",
    )
    panel_group.add_argument(
        "--max-connections", type=int,
        help="Maximum concurrent panel connections (default: unbounded)",
    )

    backend_group = launcher.add_argument_group("backend")
    backend_group.add_argument("--uid", help="Run the backend as this uid (env: XUNLEI_UID)")
    backend_group.add_argument("--gid", help="Run the backend as this gid (env: XUNLEI_GID)")
    backend_group.add_argument("-c", "--config-path", type=Path, help="Xunlei config directory")
    backend_group.add_argument("-d", "--download-path", type=Path, help="Xunlei download directory")
    backend_group.add_argument(
        "-m", "--mount-bind-download-path", type=Path,
        help="Where the download directory is bind-mounted for the backend",
    )

    launcher.add_argument("--config-file", type=Path, help="YAML settings file")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    init_log(args.debug)

    overrides = {
        "auth_user": args.auth_user,
        "auth_password": args.auth_password,
        "host": args.host,
        "port": args.port,
        "uid": args.uid,
        "gid": args.gid,
        "config_path": args.config_path,
        "download_path": args.download_path,
        "mount_bind_download_path": args.mount_bind_download_path,
        "cgi_timeout": args.cgi_timeout,
        "max_connections": args.max_connections,
        "debug": args.debug or None,
    }
    try:
        settings = load_settings(args.config_file, overrides)
    except (ConfigError, OSError) as e:
        logger.error("Invalid configuration: %s", e)
        return 1
    logger.debug("Settings: %s", config_summary(settings))

    try:
        Launcher(settings).run()
    except (MountError, SupervisorError) as e:
        logger.error("Launcher error: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
