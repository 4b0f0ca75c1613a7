#!/usr/bin/env python3
"""
Run the download worker outside the API process.

Shares the job store and catalog with the API, so jobs submitted over HTTP
are picked up here. One job runs at a time, and a second worker on the same
data dir exits with status 1. SIGINT/SIGTERM finish the current job and
exit.
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

from fetcher.bootstrap import build_services
from fetcher.config import load_effective_config
from fetcher.paths import DATA_DIR, DOWNLOADS_DIR, LOG_DIR, build_fetcher_paths, ensure_dir, resolve_config_path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def configure_logging(log_dir):
    for path in (DATA_DIR, log_dir, DOWNLOADS_DIR):
        ensure_dir(path)
    logging.basicConfig(
        level=logging.INFO,
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(os.path.join(log_dir, "fetcher.log")),
            logging.StreamHandler(),
        ],
    )


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Music library download worker")
    parser.add_argument("--config", default=None, help="Config file, relative to the config dir.")
    parser.add_argument("--once", action="store_true", help="Process every ready job, then exit.")
    parser.add_argument("--status", action="store_true", help="Print queue counts and exit.")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    configure_logging(LOG_DIR)

    try:
        config_path = resolve_config_path(args.config)
    except ValueError as exc:
        logging.error("Invalid config path: %s", exc)
        return 2

    stop_event = threading.Event()
    services = build_services(load_effective_config(config_path), build_fetcher_paths(), stop_event=stop_event)

    if args.status:
        print(json.dumps(services.store.counts_by_status(), indent=2))
        return 0

    def on_signal(signum, _frame):
        logging.warning("Signal %s received; worker will exit after the current job", signum)
        stop_event.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        signal.signal(signum, on_signal)

    if not services.worker.claim_queue():
        return 1
    try:
        if args.once:
            services.worker.run_until_idle()
        else:
            logging.info("Download worker started")
            services.worker.run_forever()
    finally:
        services.worker.release_queue()

    interrupted = stop_event.is_set()
    if interrupted:
        logging.warning("Download worker stopped by signal")
    logging.shutdown()
    return 130 if interrupted else 0


if __name__ == "__main__":
    sys.exit(main())
