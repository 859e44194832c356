#!/usr/bin/env python3
"""
DepInstallProxy Server - Main entry point

Usage:
    dep_install_proxy_server <port> \
        [--manager=pip|npm] \
        [--max-body-size=<BYTES>] \
        [--install-timeout=<SECONDS>] \
        [--max-concurrent-installs=<N>] \
        [--workspace-root=<DIR>] \
        [--archive-name=<NAME>.zip] \
        [--installer-arg=<ARG> ...]
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

import uvicorn

from domain.constants import INSTALL_TIMEOUT, MAX_BODY_SIZE, MAX_CONCURRENT_INSTALLS
from domain.installer import InstallerFactory
from interfaces.api import initialize_app


def positive_or_none(value: str) -> Optional[int]:
    """Parse a limit where 0 means unlimited."""
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative: {value}")
    return number or None


def validate_args(args: argparse.Namespace) -> List[str]:
    """Return configuration errors that argparse cannot catch by itself."""
    errors = []

    if args.max_body_size <= 0:
        errors.append("--max-body-size must be positive")

    if args.workspace_root and not os.path.isdir(args.workspace_root):
        errors.append(f"--workspace-root does not exist: {args.workspace_root}")

    if args.archive_name and ('"' in args.archive_name or "/" in args.archive_name):
        errors.append(f"--archive-name must be a plain file name: {args.archive_name}")

    return errors


def main():
    parser = argparse.ArgumentParser(
        description='DepInstallProxy Server - Dependency installation service',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    # Required arguments
    parser.add_argument('port', type=int, help='Port to listen on')

    # Installer selection
    parser.add_argument('--manager', default='pip', choices=sorted(InstallerFactory.installers),
                        help='Package manager used for installs (default: pip)')
    parser.add_argument('--installer-arg', action='append', default=[], dest='installer_args',
                        help='Extra argument passed to the installer, may be repeated')
    parser.add_argument('--archive-name',
                        help='File name of the returned archive (default depends on --manager)')

    # Limits
    parser.add_argument('--max-body-size', type=int, default=MAX_BODY_SIZE,
                        help=f'Largest accepted request body in bytes (default: {MAX_BODY_SIZE})')
    parser.add_argument('--install-timeout', type=positive_or_none, default=INSTALL_TIMEOUT,
                        help=f'Seconds before an install is killed, 0 to disable (default: {INSTALL_TIMEOUT})')
    parser.add_argument('--max-concurrent-installs', type=positive_or_none, default=MAX_CONCURRENT_INSTALLS,
                        help=f'Installs allowed to run at once, 0 for no limit (default: {MAX_CONCURRENT_INSTALLS})')
    parser.add_argument('--workspace-root',
                        help='Directory for per-request workspaces (default: system temp directory)')

    # Server
    parser.add_argument('--host', default='0.0.0.0',
                        help='Host to bind to (default: 0.0.0.0)')
    parser.add_argument('--log-level', default='info',
                        choices=['debug', 'info', 'warning', 'error'],
                        help='Logging level (default: info)')

    args = parser.parse_args()

    errors = validate_args(args)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Initialize the FastAPI app
    app = initialize_app(
        manager=args.manager,
        max_body_size=args.max_body_size,
        install_timeout=args.install_timeout,
        max_concurrent_installs=args.max_concurrent_installs,
        workspace_root=args.workspace_root,
        archive_name=args.archive_name,
        installer_args=args.installer_args
    )

    logging.getLogger(__name__).info(
        "Starting DepInstallProxy server on %s:%s (manager: %s)",
        args.host, args.port, args.manager
    )

    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)


if __name__ == '__main__':
    main()
