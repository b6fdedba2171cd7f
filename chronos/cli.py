"""
Command-line interface for the chronos worker.

Commands:
- worker:      run every configured task on its schedule
- healthcheck: query a running worker's health endpoint (exit 0 if healthy)
- validate:    check a configuration file and preview upcoming runs
"""

import argparse
import logging
import sys

from chronos.client import DEFAULT_TIMEOUT, HealthCheckClient, HealthCheckError
from chronos.config import ChronosError, ConfigError, load_config
from chronos.health import HealthServerError
from chronos.log import setup_logging
from chronos.schedule import build_trigger, next_fire_times, resolve_timezone
from chronos.worker import Worker

logger = logging.getLogger(__name__)


def cmd_worker(args) -> int:
    """Start the worker and block until it is stopped."""
    setup_logging(verbose=args.verbose)

    try:
        config = load_config(args.config)
        setup_logging(
            level=config.log_level,
            log_file=args.log_file or config.logging.file,
            verbose=args.verbose
        )
        worker = Worker(config, max_workers=args.workers)
    except ChronosError as e:
        logger.critical(f"failed to start worker: {e}")
        return 1

    worker.install_signal_handlers()
    logger.info("Starting worker. Press Ctrl+C to stop.")

    try:
        worker.run()
    except HealthServerError as e:
        logger.critical(f"failed to run worker: {e}")
        return 1
    return 0


def cmd_healthcheck(args) -> int:
    """Invoke the health-check API of a running worker."""
    setup_logging(level="warn", verbose=args.verbose)

    client = HealthCheckClient()
    try:
        ok = client.check_health(args.url, timeout=args.timeout)
    except HealthCheckError as e:
        print(f"failed to invoke healthcheck endpoint: {e}", file=sys.stderr)
        return 1

    if not ok:
        print("healthcheck API returned failed status", file=sys.stderr)
        return 1
    print("healthcheck OK")
    return 0


def cmd_validate(args) -> int:
    """Validate a configuration file and print upcoming runs."""
    setup_logging(level="warn", verbose=args.verbose)

    try:
        config = load_config(args.config)
        timezone = resolve_timezone(config.time_zone)
        triggers = {}
        for name, task in config.tasks.items():
            try:
                triggers[name] = build_trigger(task.schedule, timezone)
            except ValueError as e:
                raise ConfigError(f"failed to add Task `{name}`. err: {e}") from e
    except ChronosError as e:
        print(f"Configuration is invalid: {e}", file=sys.stderr)
        return 1

    print(f"Configuration OK: {config.config_path}")
    print(f"Time zone: {timezone}")
    if config.healthcheck:
        hc = config.healthcheck
        print(f"Health check: http://{hc.host}:{hc.port}{hc.path}")
    print(f"\n=== Tasks ({len(config.tasks)}) ===\n")

    for name, task in config.tasks.items():
        print(f"  {name}")
        print(f"    Command:  {task.command} {' '.join(task.args)}".rstrip())
        print(f"    Schedule: {task.schedule}")
        if task.description:
            print(f"    Description: {task.description}")
        retries = "forever" if task.is_infinite_retry else task.retry_limit
        print(f"    Retries:  {retries} ({task.retry_type.value}, wait {task.retry_wait}s)")
        for fire_time in next_fire_times(triggers[name], args.count):
            print(f"    Next:     {fire_time.isoformat()}")
        print()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chronos",
        description="chronos - run commands periodically with retries and a health-check endpoint",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Worker command
    worker_parser = subparsers.add_parser('worker', help='Start the worker')
    worker_parser.add_argument(
        'config',
        nargs='?',
        help='Path to configuration file (.json, .yaml, .yml or .toml); '
             'defaults to $CHRONOS_CONFIG_PATH'
    )
    worker_parser.add_argument(
        '--workers',
        type=int,
        default=5,
        help='Scheduler dispatch threads (default: 5)'
    )
    worker_parser.add_argument(
        '--log-file',
        type=str,
        help='Log file path'
    )
    worker_parser.set_defaults(func=cmd_worker)

    # Healthcheck command
    healthcheck_parser = subparsers.add_parser(
        'healthcheck',
        help='Invoke the health-check API of a worker',
        description='Example: chronos healthcheck http://localhost:8080/health'
    )
    healthcheck_parser.add_argument('url', help='URL of the health-check endpoint')
    healthcheck_parser.add_argument(
        '-t', '--timeout',
        type=int,
        default=DEFAULT_TIMEOUT,
        help=f'Timeout to invoke the health-check API in seconds (default: {DEFAULT_TIMEOUT})'
    )
    healthcheck_parser.set_defaults(func=cmd_healthcheck)

    # Validate command
    validate_parser = subparsers.add_parser('validate', help='Validate a configuration file')
    validate_parser.add_argument('config', nargs='?', help='Path to configuration file')
    validate_parser.add_argument(
        '-n', '--count',
        type=int,
        default=3,
        help='Number of upcoming runs to show per task (default: 3)'
    )
    validate_parser.set_defaults(func=cmd_validate)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    sys.exit(args.func(args))


if __name__ == '__main__':
    main()
