"""
certwarden

Keeps TLS certificates for a set of domain groups valid: renews them from
an ACME CA ahead of expiry, falls back to self-signed certificates when
renewal fails, and publishes the result to a local directory read by the
TLS terminator.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from config import (
    ConfigBootstrapped,
    ConfigError,
    build_reconciler_config,
    ensure_config_files,
    ensure_directories,
    get_settings,
    load_app_config,
    load_domains_config,
)
from core.cert_scheduler import CertScheduler
from core.change_notifier import WatchError
from core.expiry_policy import check_renewal_window
from core.storage import create_storage

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="certwarden", description="TLS certificate lifecycle reconciler")
    parser.add_argument("--domains", type=Path, help="Domains file (default: <config_dir>/domains.json)")
    parser.add_argument("--config", type=Path, help="Application config file (default: <config_dir>/config.json)")
    parser.add_argument("--log-level", help="Logging level (default: LOG_LEVEL or INFO)")
    return parser.parse_args(argv)


async def run(scheduler: CertScheduler) -> None:
    """Run the scheduler until SIGINT or SIGTERM."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scheduler.stop)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass
    await scheduler.run()


def main(argv=None) -> int:
    args = parse_args(argv)
    settings = get_settings()

    # Configure logging
    logging.basicConfig(
        level=(args.log_level or settings.log_level).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    domains_file = (args.domains or settings.resolved_domains_file).expanduser()
    config_file = (args.config or settings.resolved_config_file).expanduser()

    try:
        ensure_config_files(domains_file, config_file)
        app_config = load_app_config(config_file)
        domains_config = load_domains_config(domains_file)
    except ConfigBootstrapped as e:
        logger.info(e.message)
        return 1
    except ConfigError as e:
        logger.error(f"{e.message}" + (f" ({e.suggestion})" if e.suggestion else ""))
        return 1

    check_renewal_window(settings.renewal_window_days)

    reconciler_config = build_reconciler_config(settings, app_config)
    try:
        ensure_directories(reconciler_config)
    except OSError as e:
        logger.error(f"Error creating directories: {e}")
        return 1

    storage = create_storage(reconciler_config, s3=app_config.s3)
    scheduler = CertScheduler(
        storage,
        domains_file,
        domains_config.groups,
        interval_hours=settings.check_interval_hours,
        settle_delay=settings.settle_delay_seconds,
    )

    logger.info(f"certwarden starting with {len(domains_config.groups)} domain groups")
    try:
        asyncio.run(run(scheduler))
    except WatchError as e:
        logger.error(f"Error creating watcher: {e.message}")
        return 1
    return 0


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
