"""Worker process: runs queued conversions, and maintenance commands for the task table.

    python -m converter.worker run [--workers N] [--once]
    python -m converter.worker sweep [--older-than SECONDS]
    python -m converter.worker prune [--keep N]
"""
import argparse
import logging
import signal
import sys
import threading

from converter import config
from converter.conversion.runner import WorkerPool
from converter.conversion.service import get_conversion_service

logger = logging.getLogger("converter.worker")


def run(args) -> int:
    svc = get_conversion_service()
    if args.once:
        handled = svc.make_runner().drain()
        logger.info("Processed %s queued task(s)", handled)
        return 0

    stop = threading.Event()

    def _shutdown(signum, frame):
        logger.info("Received signal %s; finishing current tasks", signum)
        stop.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    pool = WorkerPool(lambda i: svc.make_runner(), size=args.workers)
    pool.start()
    while not stop.wait(config.WORKER_POLL_INTERVAL * 30):
        svc.redispatch_stale(args.sweep_after)
    pool.stop()
    return 0


def sweep(args) -> int:
    svc = get_conversion_service()
    queued = svc.redispatch_stale(args.older_than)
    print(f"Re-dispatched {queued} pending task(s)")
    return 0


def prune(args) -> int:
    svc = get_conversion_service()
    deleted = svc.store.prune(args.keep)
    print(f"Deleted {deleted} finished task record(s)")
    return 0


def non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be 0 or more, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="converter.worker", description="Conversion worker and maintenance")
    sub = parser.add_subparsers(dest="command", required=True)

    p_run = sub.add_parser("run", help="Process queued conversion tasks")
    p_run.add_argument("--workers", type=int, default=config.WORKER_COUNT, help="Concurrent worker threads")
    p_run.add_argument("--once", action="store_true", help="Drain the queue once and exit")
    p_run.add_argument(
        "--sweep-after", type=float, default=300,
        help="Re-dispatch PENDING tasks older than this many seconds while running",
    )
    p_run.set_defaults(func=run)

    p_sweep = sub.add_parser("sweep", help="Re-dispatch PENDING tasks whose dispatch failed")
    p_sweep.add_argument("--older-than", type=float, default=60, help="Minimum task age in seconds")
    p_sweep.set_defaults(func=sweep)

    p_prune = sub.add_parser("prune", help="Delete old finished task records")
    p_prune.add_argument("--keep", type=non_negative_int, default=1000, help="Finished records to keep")
    p_prune.set_defaults(func=prune)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
