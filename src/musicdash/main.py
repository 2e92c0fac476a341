import sys
import os

if "-t" in sys.argv or "--test" in sys.argv:
    os.environ["TEST_MODE"] = "true"


import logging
from musicdash.logger import setup_logging, parse_level

LOGGER = logging.getLogger(__name__)

import asyncio
import traceback

from musicdash.aggregator import Aggregator
from musicdash.config import Settings
from musicdash.db import DatabaseManager
from musicdash.preserve import Preserver
from musicdash.providers.spotify import SpotifyAuth
from musicdash.users import UserStore


def log_level_from_argv(argv: list[str]) -> int:
    if "-ll" not in argv: return logging.INFO

    idx = argv.index("-ll") + 1
    if idx >= len(argv):
        raise ValueError("Expected log level value after -ll, one of ([d]ebug, [i]nfo, [w]arning, [e]rror).")
    return parse_level(argv[idx])


async def main(settings: Settings):
    LOGGER.info("=== Musicdash Aggregator Starting ===")
    LOGGER.info(f"Python PID: {os.getpid()}")
    LOGGER.debug(f"Current working directory: {os.getcwd()}")

    db = DatabaseManager(settings.database_url)
    try:
        await db.initialize()
        if "--setup-db" in sys.argv:
            await db.setup_tables()

        users = UserStore(db)
        auth = SpotifyAuth(settings.spotify_client_id,
                           settings.spotify_client_secret,
                           settings.spotify_redirect_uri,
                           timeout=settings.request_timeout_s)

        aggregator = Aggregator(users, auth,
                                preserver=Preserver(db),
                                interval_s=settings.aggregator_interval_s)
        await aggregator.run()
    except Exception:
        LOGGER.error(f"Main loop error: {traceback.format_exc()}")
        raise
    finally:
        await db.cleanup()


def cli():
    setup_logging(console_level=log_level_from_argv(sys.argv))

    settings = Settings.from_env()
    if settings.test_mode:
        LOGGER.info("Test mode initiated, using test DB.")

    try:
        asyncio.run(main(settings))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted, shutting down.")

if __name__ == "__main__":
    cli()
