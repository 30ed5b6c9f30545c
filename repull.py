#!/usr/bin/env python3
"""
repull: keep opted-in containers on the newest version of their image tag.

Containers labelled io.repull.enable=true are checked against the registry;
when the image digest behind their tag changes, they are recreated with the
same configuration on the new image. Compose services are updated as a unit.
"""

__version__ = "1.0.0"

import argparse
import json
import logging
import os
import sys
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

import jsonschema

from docker_client import DockerClient
from notify import NOTIFY_CONFIG_SCHEMA, Notifier
from self_update import detect_self_identity
from updater import Updater

logger = logging.getLogger('repull')

MIN_INTERVAL = 60


def setup_logging(level: str) -> None:
    """Setup logging configuration."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))

    if not root.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        handler.setFormatter(formatter)
        root.addHandler(handler)


def parse_schedule_time(schedule: str) -> Tuple[int, int]:
    """Parse "HH:MM" into (hour, minute)."""
    parts = schedule.split(':')
    if len(parts) != 2:
        raise ValueError("invalid format")
    try:
        hour = int(parts[0])
        minute = int(parts[1])
    except ValueError:
        raise ValueError("invalid time")
    if not 0 <= hour <= 23:
        raise ValueError("invalid hour")
    if not 0 <= minute <= 59:
        raise ValueError("invalid minute")
    return hour, minute


def next_occurrence(hour: int, minute: int, now: Optional[datetime] = None) -> datetime:
    """Next time the clock shows hour:minute; tomorrow if that has passed today."""
    now = now or datetime.now()
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target < now:
        target += timedelta(days=1)
    return target


def load_notify_config(path: str) -> Dict[str, Any]:
    """Load and validate the notification channel config file."""
    try:
        with open(path, 'r') as f:
            config = json.load(f)
        jsonschema.validate(config, NOTIFY_CONFIG_SCHEMA)
        return config
    except FileNotFoundError:
        logger.error(f"Notify config file {path} not found")
        raise
    except json.JSONDecodeError as e:
        logger.error(f"Error parsing notify config file: {e}")
        raise
    except jsonschema.ValidationError as e:
        logger.error(f"Notify config validation failed: {e.message}")
        raise


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name, '')
    try:
        return int(value) if value else default
    except ValueError:
        return default


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Recreate labelled containers when their image changes'
    )
    parser.add_argument(
        '--interval',
        type=int,
        default=_env_int('REPULL_INTERVAL', 0),
        help='Run every N seconds, 0 for a single run (env: REPULL_INTERVAL, default: 0)'
    )
    parser.add_argument(
        '--schedule',
        default=os.environ.get('REPULL_SCHEDULE', ''),
        help='Run daily at HH:MM local time (env: REPULL_SCHEDULE)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        default=os.environ.get('REPULL_DRY_RUN', '').lower() == 'true',
        help='Show what would be updated without making changes (env: REPULL_DRY_RUN)'
    )
    parser.add_argument(
        '--docker-host',
        default=os.environ.get('DOCKER_HOST', ''),
        help='Docker daemon socket (env: DOCKER_HOST, default: unix:///var/run/docker.sock)'
    )
    parser.add_argument(
        '--discord-webhook',
        default=os.environ.get('REPULL_DISCORD_WEBHOOK', ''),
        help='Discord webhook URL for notifications (env: REPULL_DISCORD_WEBHOOK)'
    )
    parser.add_argument(
        '--notify-config',
        default=os.environ.get('REPULL_NOTIFY_CONFIG', ''),
        help='JSON file with discord/ntfy/webhook channels (env: REPULL_NOTIFY_CONFIG)'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.environ.get('LOG_LEVEL', 'INFO').upper(),
        help='Logging level (env: LOG_LEVEL, default: INFO)'
    )
    return parser


def validate_args(args: argparse.Namespace) -> Optional[Tuple[int, int]]:
    """Check flag combinations; returns the parsed schedule, if any."""
    if args.interval and args.schedule:
        raise ValueError("Cannot use --interval and --schedule together")
    if args.interval and args.interval < MIN_INTERVAL:
        raise ValueError(f"--interval must be at least {MIN_INTERVAL} seconds")
    if args.schedule:
        try:
            return parse_schedule_time(args.schedule)
        except ValueError as e:
            raise ValueError(f"Invalid schedule format: {e} (use HH:MM)")
    return None


def run_cycle(updater: Updater) -> None:
    """One run in loop or schedule mode: errors are logged, a self-update exits."""
    try:
        result = updater.run_once()
    except Exception as e:
        logger.error(f"Update failed: {e}")
        return
    if result.terminate:
        logger.info("Replaced by updated container, exiting")
        sys.exit(0)


def main():
    args = build_parser().parse_args()
    setup_logging(args.log_level)

    try:
        schedule = validate_args(args)
        channels = load_notify_config(args.notify_config) if args.notify_config else None
        notifier = Notifier(channels, discord_url=args.discord_webhook or None)
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)

    logger.info("Repull starting...")

    try:
        docker = DockerClient(args.docker_host or None)
        docker.ping()
    except Exception as e:
        logger.error(f"Failed to connect to Docker daemon: {e}")
        sys.exit(1)
    logger.info("Connected to Docker daemon")

    if notifier.enabled:
        logger.info(f"Notifications enabled: {', '.join(sorted(notifier.channels))}")
    if args.dry_run:
        logger.info("Running in DRY-RUN mode - no changes will be made")

    updater = Updater(docker, notifier=notifier if notifier.enabled else None,
                      dry_run=args.dry_run, self_identity=detect_self_identity())

    try:
        if schedule:
            hour, minute = schedule
            logger.info(f"Running in schedule mode (daily at {hour:02d}:{minute:02d})")
            while True:
                target = next_occurrence(hour, minute)
                delay = (target - datetime.now()).total_seconds()
                logger.info(f"Next run scheduled at {target:%Y-%m-%d %H:%M:%S} (in {int(delay)}s)")
                time.sleep(max(delay, 0))
                logger.info("Running scheduled check...")
                run_cycle(updater)
                logger.info("Check complete")
        elif args.interval:
            logger.info(f"Running in loop mode (interval: {args.interval} seconds)")
            logger.info("Running initial check...")
            run_cycle(updater)
            while True:
                logger.info(f"Sleeping for {args.interval} seconds...")
                time.sleep(args.interval)
                logger.info(f"Running scheduled check (interval: {args.interval} seconds)...")
                run_cycle(updater)
        else:
            logger.info("Running in single-run mode")
            try:
                result = updater.run_once()
            except Exception as e:
                logger.error(f"Update failed: {e}")
                sys.exit(1)
            if result.terminate:
                logger.info("Replaced by updated container, exiting")
                sys.exit(0)
            logger.info("Update complete")
    except KeyboardInterrupt:
        logger.info("Exiting...")
    finally:
        docker.close()


if __name__ == '__main__':
    main()
