"""
MQTT OSC Bridge - Application

Loads the configuration, starts one Relay per configured relay and blocks
until SIGINT/SIGTERM.

Usage:
    python -m mqtt_osc_bridge -c config.yaml
"""

import argparse
import logging
import signal
import sys
import threading
from typing import Callable, List, Optional, Sequence

from . import SERVICE_DESCRIPTION, SERVICE_NAME, __version__
from .config import ConfigError, find_config_file, load_config
from .models import RelayConfig
from .relay import BrokerConnectError, Relay
from .transport import TransportError

logger = logging.getLogger(__name__)

RelayFactory = Callable[[RelayConfig], Relay]


class BridgeApp:
    """
    Runs every relay of a validated configuration.

    Relays share nothing; the app only starts them, waits, and stops them.
    """

    def __init__(self, relays: Sequence[RelayConfig], relay_factory: RelayFactory = Relay):
        self._configs = list(relays)
        self._relay_factory = relay_factory
        self._relays: List[Relay] = []
        self._stop_event = threading.Event()

    @property
    def relays(self) -> List[Relay]:
        return list(self._relays)

    def start(self) -> None:
        """
        Start all relays in configuration order.

        Raises:
            BrokerConnectError / TransportError: a relay could not start
        """
        for config in self._configs:
            relay = self._relay_factory(config)
            relay.start()
            self._relays.append(relay)
            logger.info(f"[{relay.name}] Relay started")

    def stop(self) -> None:
        """Stop every started relay and release wait()."""
        self._stop_event.set()
        relays, self._relays = self._relays, []
        for relay in relays:
            try:
                relay.stop()
            except Exception as exc:
                logger.error(f"[{relay.name}] Stop error: {exc}")

    def request_stop(self) -> None:
        self._stop_event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until request_stop() or stop(). Returns True if stopped."""
        return self._stop_event.wait(timeout)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=SERVICE_NAME,
        description=f"{SERVICE_NAME}: {SERVICE_DESCRIPTION}.",
    )
    parser.add_argument(
        "-c", "--config", metavar="FILE",
        help="Load configuration from FILE",
    )
    parser.add_argument(
        "-V", "--version", action="version",
        version=f"{SERVICE_NAME}: {__version__}",
        help="Print version",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable verbose logging",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s"
    )

    try:
        config = load_config(find_config_file(args.config))
    except ConfigError as exc:
        logger.error(str(exc))
        return 1

    app = BridgeApp(config.relays)

    # Handle Ctrl+C
    def signal_handler(signum, frame):
        logger.info("Shutting down...")
        app.request_stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        app.start()
    except (BrokerConnectError, TransportError) as exc:
        logger.error(str(exc))
        app.stop()
        return 1

    try:
        app.wait()
    finally:
        app.stop()
    logger.info("Stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
