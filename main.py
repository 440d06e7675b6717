"""Entry point for running the speedtest MQTT agent."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from typing import List, Optional

from speedmqtt import ApplicationContext, bootstrap
from speedmqtt.errors import ConnectError

LOGGER = logging.getLogger("speedmqtt.main")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Periodic speedtest publisher for MQTT")
    parser.add_argument("--config", help="Path to config.yaml", default=None)
    parser.add_argument("--interval", type=float, default=None, help="Override probe interval in seconds")
    parser.add_argument("--host", default=None, help="Override MQTT broker host")
    parser.add_argument("--port", type=int, default=None, help="Override MQTT broker port")
    return parser.parse_args(argv)


def install_signal_handlers(context: ApplicationContext) -> None:
    def _handle(signum, _frame) -> None:
        LOGGER.info("Received signal %s, stopping after the current tick", signal.Signals(signum).name)
        context.stop()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if args.interval is not None and args.interval <= 0:
        print("Invalid configuration: --interval must be positive", file=sys.stderr)
        return 2
    if args.port is not None and not 0 < args.port < 65536:
        print(f"Invalid configuration: --port out of range: {args.port}", file=sys.stderr)
        return 2
    try:
        context = bootstrap(args.config)
    except (FileNotFoundError, ValueError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    if args.host:
        context.config.mqtt.host = args.host
    if args.port is not None:
        context.config.mqtt.port = args.port
    if args.interval is not None:
        context.scheduler.interval_seconds = args.interval

    install_signal_handlers(context)
    try:
        context.run()
    except ConnectError as exc:
        LOGGER.error(
            "Cannot reach MQTT broker %s:%s [%s]: %s",
            context.config.mqtt.host,
            context.config.mqtt.port,
            exc.kind.value,
            exc.detail,
        )
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
