"""Embedding worker process.

Usage:
  python -m kb_agent.worker [--once] [--log-level DEBUG]
"""
import argparse
import logging

from kb_agent.config import get_settings
from kb_agent.db import init_db
from kb_agent.obs import configure_logging, configure_observability
from kb_agent.services import build_services

logger = logging.getLogger(__name__)


def main():
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Compute embeddings for queued articles.")
    parser.add_argument("--once", action="store_true", help="Drain the queue once and exit")
    parser.add_argument(
        "--log-level",
        default=settings.LOG_LEVEL,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    args = parser.parse_args()

    configure_logging(args.log_level)
    configure_observability(settings)
    services = build_services(settings)
    init_db(services.session_factory.kw["bind"])

    if args.once:
        handled = 0
        while services.worker.run_once():
            handled += 1
        logger.info("Processed %d embedding jobs", handled)
        return
    services.worker.run_forever()


if __name__ == "__main__":
    main()
