"""Run the collection pipeline until interrupted."""

import argparse
import asyncio
import logging

from .collector import CollectionOrchestrator
from .config import Config

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="chainsight", description=__doc__)
    parser.add_argument("--config", help="JSON configuration file; environment variables otherwise")
    return parser.parse_args(argv)


async def run(config: Config):
    orchestrator = CollectionOrchestrator.from_config(config)
    await orchestrator.start()
    try:
        await orchestrator.scheduler.join()
    finally:
        await orchestrator.stop()


def main(argv=None):
    args = parse_args(argv)
    config = Config.from_file(args.config) if args.config else Config.from_env()
    config.setup_logging()
    config.validate()

    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()
