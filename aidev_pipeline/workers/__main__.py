"""
Pipeline worker entry point.

Usage:
    python -m aidev_pipeline.workers [OPTIONS]

Options:
    --only NAME         Run only this worker (repeatable)
    --once              Run one cycle of each worker and exit
    --init-db           Create missing tables before starting
"""
from __future__ import annotations

import argparse
import sys

from ..config import get_settings
from ..db.base import init_database
from ..log_config import configure_logging
from .supervisor import WORKER_NAMES, build_supervisor


def main() -> int:
    """Main entry point for the worker CLI."""
    parser = argparse.ArgumentParser(
        description="AIDev Pipeline workers - move requests from intake to deployment",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run every enabled worker
    python -m aidev_pipeline.workers

    # Run only the PR monitor and the code reviewer
    python -m aidev_pipeline.workers --only pr_monitor --only code_review

    # Run one cycle of each worker, e.g. from cron
    python -m aidev_pipeline.workers --once
        """,
    )
    parser.add_argument(
        "--only",
        action="append",
        choices=WORKER_NAMES,
        default=None,
        help="Run only the named worker (repeatable)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle of each worker and exit",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create missing database tables before starting",
    )

    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings)

    print("Starting AIDev Pipeline workers...")
    print(f"  Workers: {', '.join(args.only) if args.only else 'all enabled'}")
    print(f"  Mode: {'single cycle' if args.once else 'continuous'}")
    print()

    try:
        if args.init_db:
            init_database()
        supervisor = build_supervisor(settings, only=args.only)
        if args.once:
            for name in supervisor.workers:
                handled = supervisor.tick(name)
                print(f"  {name}: {handled} handled")
            return 0
        supervisor.install_signal_handlers()
        supervisor.start()
        supervisor.wait()
        return 0
    except KeyboardInterrupt:
        print("\nWorkers stopped by user")
        return 0
    except Exception as e:
        print(f"Worker error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
