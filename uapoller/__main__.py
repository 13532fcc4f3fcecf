import argparse
import asyncio
import logging
import sys

from uapoller._UAConfig_ import load_config
from uapoller._UAEmitter_ import LoggingAccumulator
from uapoller._UAErrors_ import ConfigurationError
from uapoller._UALogger_ import setup_logging
from uapoller._UAPoller_ import _OPCUAPoller_


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="uapoller", description="Poll OPC UA nodes and log them as metrics")
    parser.add_argument("config", help="JSON configuration file")
    parser.add_argument("--interval", type=float, default=10.0, help="seconds between collections (default 10)")
    parser.add_argument("--log-file", default=None, help="write the log to this file instead of stderr")
    parser.add_argument("--log-level", type=int, default=1, choices=range(5),
                        help="0=DEBUG 1=INFO 2=WARNING 3=ERROR 4=CRITICAL")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_file, args.log_level)
    try:
        poller = _OPCUAPoller_(load_config(args.config))
        poller.init()
    except ConfigurationError as e:
        logging.error(f"main: Invalid configuration: {str(e)}")
        print(f"uapoller: invalid configuration: {e}", file=sys.stderr)
        return 2
    try:
        asyncio.run(poller.run(LoggingAccumulator(), args.interval))
    except KeyboardInterrupt:
        logging.info("main: Interrupted, shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
