import argparse
import logging
import signal
import threading

from settlement.config import configure_logging, load_settings
from settlement.context import AppContext
from settlement.jobs.worker_pool import WorkerPool

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run settlement job workers")
    parser.add_argument(
        "--tasks",
        default="",
        help="Comma-separated task names to run (default: all)",
    )
    parser.add_argument("--grace", type=float, default=None, help="Seconds to let in-flight jobs finish on shutdown")
    parser.add_argument("--sweep-only", action="store_true", help="Run one maintenance sweep and exit")
    return parser.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    settings = load_settings()
    configure_logging(settings.log_level)
    ctx = AppContext.from_settings(settings)
    ctx.open()

    if args.tasks:
        wanted = {name.strip() for name in args.tasks.split(",") if name.strip()}
        unknown = wanted - set(ctx.handlers)
        if unknown:
            raise SystemExit(f"Unknown tasks: {', '.join(sorted(unknown))}")
        ctx.handlers = {name: task for name, task in ctx.handlers.items() if name in wanted}

    pool = WorkerPool(ctx)
    if args.sweep_only:
        logger.info("Sweep result: %s", pool.sweep())
        ctx.close()
        return

    stop_event = threading.Event()

    def handle_signal(signum, frame) -> None:
        logger.info("Received %s, draining", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    pool.start()
    try:
        while not stop_event.wait(1):
            pass
    finally:
        pool.stop(args.grace)
        ctx.close()


if __name__ == "__main__":
    main()
