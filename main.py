from __future__ import annotations

import os
import sys
import signal
import asyncio
import logging
import argparse
import warnings

import truststore
from dotenv import load_dotenv

from settings import Settings
from version import __version__
from utils import lock_file, format_traceback
from exceptions import ExitRequest
from constants import (
    LOG_PATH,
    ENV_PATH,
    LOCK_PATH,
    AUTH_TOKEN_ENV,
    LOGGING_LEVELS,
    FILE_FORMATTER,
    OUTPUT_FORMATTER,
)


EXIT_OK = 0
EXIT_ERROR = 1
EXIT_RUNNING = 3
EXIT_BAD_SETTINGS = 4


class ParsedArgs(argparse.Namespace):
    verbose: int
    log: bool
    dump_settings: bool
    trace_ws: bool
    trace_gql: bool

    @property
    def logging_level(self) -> int:
        return LOGGING_LEVELS[min(self.verbose, len(LOGGING_LEVELS) - 1)]

    def _transport_level(self, traced: bool) -> int:
        # raw transport traffic is only shown when asked for explicitly,
        # at the highest verbosity the transport loggers stay at INFO
        if traced:
            return logging.DEBUG
        if self.logging_level <= logging.DEBUG:
            return logging.INFO
        return logging.NOTSET

    @property
    def debug_ws(self) -> int:
        return self._transport_level(self.trace_ws)

    @property
    def debug_gql(self) -> int:
        return self._transport_level(self.trace_gql)


def parse_args(argv: list[str] | None = None) -> ParsedArgs:
    parser = argparse.ArgumentParser(
        "drops-bot", description="Watches live streams to earn drops from prioritized campaigns."
    )
    parser.add_argument("--version", action="version", version=f"v{__version__}")
    parser.add_argument(
        "-v", dest="verbose", action="count", default=0, help="more output, can be repeated"
    )
    parser.add_argument("--log", action="store_true", help=f"also log into {LOG_PATH.name}")
    parser.add_argument(
        "--dump-settings", action="store_true", help="write out the settings file and exit"
    )
    parser.add_argument("--debug-ws", dest="trace_ws", action="store_true", help=argparse.SUPPRESS)
    parser.add_argument("--debug-gql", dest="trace_gql", action="store_true", help=argparse.SUPPRESS)
    return parser.parse_args(argv, namespace=ParsedArgs())


def setup_logging(settings: Settings) -> logging.Logger:
    if settings.logging_level > logging.DEBUG:
        # silence third party loggers
        logging.getLogger().addHandler(logging.NullHandler())
    logger = logging.getLogger("DropsBot")
    logger.setLevel(settings.logging_level)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    handlers[0].setFormatter(OUTPUT_FORMATTER)
    if settings.log:
        handlers.append(logging.FileHandler(LOG_PATH, encoding="utf8"))
        handlers[1].setFormatter(FILE_FORMATTER)
    for handler in handlers:
        logger.addHandler(handler)
    logging.getLogger("DropsBot.gql").setLevel(settings.debug_gql)
    logging.getLogger("DropsBot.websocket").setLevel(settings.debug_ws)
    return logger


async def run(settings: Settings) -> int:
    from client import RemoteClient
    from driver import HeadlessDriver
    from scheduler import Scheduler
    from renderer import ConsoleRenderer
    from websocket import PubSubEventSource

    logger = setup_logging(settings)
    client = RemoteClient(settings, access_token=os.environ.get(AUTH_TOKEN_ENV) or None)
    driver = HeadlessDriver(client)
    events = PubSubEventSource(client)
    scheduler = Scheduler(settings, client, driver, ConsoleRenderer(), events)
    loop = asyncio.get_running_loop()
    stop_signals = (signal.SIGINT, signal.SIGTERM) if sys.platform == "linux" else ()
    for signum in stop_signals:
        loop.add_signal_handler(signum, scheduler.close)
    status = EXIT_OK
    try:
        await events.start()
        await scheduler.run()
    except ExitRequest:
        pass
    except Exception as exc:
        logger.critical(f"Fatal error:\n{format_traceback(exc)}")
        status = EXIT_ERROR
    finally:
        for signum in stop_signals:
            loop.remove_signal_handler(signum)
        logger.info("Shutting down")
        scheduler.close()
        await events.stop()
        await driver.close()
        await client.shutdown()
        settings.save()
    return status


def main(argv: list[str] | None = None) -> int:
    if sys.version_info < (3, 10):
        raise RuntimeError("Python 3.10 or newer is required")
    warnings.simplefilter("default", ResourceWarning)
    truststore.inject_into_ssl()
    load_dotenv(ENV_PATH)
    args = parse_args(argv)
    try:
        settings = Settings(args)
    except Exception as exc:
        print(f"Unable to load the settings file:\n\n{format_traceback(exc)}", file=sys.stderr)
        return EXIT_BAD_SETTINGS
    if args.dump_settings:
        settings.save(force=True)
        return EXIT_OK
    locked, lock = lock_file(LOCK_PATH)
    try:
        if not locked:
            print("Another instance is running already", file=sys.stderr)
            return EXIT_RUNNING
        return asyncio.run(run(settings))
    finally:
        lock.close()


if __name__ == "__main__":
    sys.exit(main())
