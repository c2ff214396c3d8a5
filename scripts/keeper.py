#!/usr/bin/env python3
"""
Headless runner for the channel keeper.
- Periodic channel sweeps feed a bounded pool of yt-dlp workers.
- --once runs a single sweep, waits for the queue to drain and exits.
- --retry-failed requeues every failed video before starting.
- SIGINT/SIGTERM trigger a graceful shutdown with a bounded wait.
"""

import os
import sys

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import argparse
import json
import logging
import signal
import threading

from keeper.config import load_settings
from keeper.errors import PersistenceFailure
from keeper.log import setup_logging
from keeper.paths import build_keeper_paths, ensure_dir
from keeper.service import build_service

_IDLE_POLL_SECONDS = 1.0


def _wait_until_idle(manager, stop_event):
    while not stop_event.is_set():
        if manager.wait_idle(timeout=_IDLE_POLL_SECONDS):
            return True
    return False


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", default=None)
    parser.add_argument("--once", action="store_true", help="Run one sweep over due channels, drain the queue and exit.")
    parser.add_argument("--retry-failed", action="store_true", help="Requeue every failed video before starting.")
    parser.add_argument("--concurrency", type=int, help="Override the number of download workers.")
    parser.add_argument("--interval-days", type=float, help="Override the sweep interval.")
    parser.add_argument("--status", action="store_true", help="Print video counts and exit.")
    args = parser.parse_args()

    paths = build_keeper_paths()
    ensure_dir(paths.data_dir)
    ensure_dir(paths.config_dir)
    ensure_dir(paths.log_dir)
    ensure_dir(paths.downloads_dir)

    try:
        settings = load_settings(args.config, paths=paths)
    except ValueError as exc:
        print(f"Invalid config: {exc}", file=sys.stderr)
        sys.exit(2)
    if args.concurrency is not None:
        if args.concurrency < 1:
            parser.error("--concurrency must be >= 1")
        settings = settings.with_overrides(concurrency=args.concurrency)
    if args.interval_days is not None:
        if args.interval_days <= 0:
            parser.error("--interval-days must be positive")
        settings = settings.with_overrides(scheduler_interval_days=args.interval_days)

    setup_logging(settings.log_dir, settings.log_level)
    service = build_service(settings)

    if args.status:
        print(json.dumps(service.store.status_counts(), indent=2, sort_keys=True))
        return

    stop_event = threading.Event()

    def _handle_signal(signum, _frame):
        stop_event.set()
        logging.warning("Signal %s received; shutting down", signum)

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    exit_code = 0
    try:
        if args.retry_failed:
            retried = service.manager.retry_failed()
            logging.info("Requeued %s failed video(s)", retried)
        service.manager.start()

        if args.once:
            result = service.scheduler.check_and_download()
            logging.info("Sweep triggered %s channel(s), %s failed", len(result["triggered"]), len(result["failed"]))
            _wait_until_idle(service.manager, stop_event)
            if result["failed"]:
                exit_code = 1
        else:
            service.scheduler.start(settings.scheduler_interval_days)
            while not stop_event.wait(_IDLE_POLL_SECONDS):
                pass
    except PersistenceFailure as exc:
        logging.error("Database failure; stopping: %s", exc)
        exit_code = 1
    finally:
        cancelled = service.close()
        if cancelled:
            logging.warning("Cancelled %s in-flight download(s): %s", len(cancelled), ", ".join(cancelled))

    if stop_event.is_set():
        logging.warning("Stopped by signal")
        logging.shutdown()
        sys.exit(130)

    logging.shutdown()
    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
