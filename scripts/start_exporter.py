#!/usr/bin/env python3
"""
Script to start the metrics exporter.

Usage:
    python scripts/start_exporter.py
    python scripts/start_exporter.py --config config/exporter_config.yaml
    python scripts/start_exporter.py --port 9108 --plugin-dir ./metrics --env-file .env
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
project_dir = Path(__file__).parent.parent
sys.path.insert(0, str(project_dir))

from dotenv import load_dotenv
from loguru import logger

from exporter.config import load_config
from exporter.main import main, setup_logging


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Prometheus exporter with hot-reloadable metric plugins")
    parser.add_argument("--config", help="Path to YAML configuration file")
    parser.add_argument("--env-file", default=".env", help="Environment file to load if present (default: .env)")
    parser.add_argument("--port", type=int, help="HTTP port (overrides config and PORT)")
    parser.add_argument("--host", help="Interface to bind (overrides config and HOST)")
    parser.add_argument("--plugin-dir", help="Plugin directory (overrides config and PLUGIN_DIR)")
    parser.add_argument("--refresh-policy", choices=["interval", "on_request"], help="When plugins are re-run")
    parser.add_argument("--log-level", help="Log level (DEBUG, INFO, WARNING, ...)")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace):
    env_file = Path(args.env_file)
    if env_file.is_file():
        load_dotenv(env_file)

    config = load_config(
        args.config,
        host=args.host,
        port=args.port,
        plugin_dir=args.plugin_dir,
        refresh_policy=args.refresh_policy,
    )
    if args.log_level:
        config.update(logging={**config.logging, "level": args.log_level.upper()})
    return config


if __name__ == "__main__":
    args = parse_args()
    try:
        config = build_config(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(config)
    if args.env_file and Path(args.env_file).is_file():
        logger.info(f"Loaded environment from {args.env_file}")

    try:
        asyncio.run(main(config))
    except KeyboardInterrupt:
        logger.info("Exporter interrupted")
