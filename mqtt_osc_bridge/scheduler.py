"""
Subscription Scheduler

Re-sends configured OSC commands at fixed intervals. Useful for OSC
servers that only push data to clients that keep renewing a subscription
(e.g. /xremote on mixing consoles).
"""

import logging
import threading
from typing import Callable, List, Optional, Sequence

from .bundle import ControlMessage
from .models import ScheduledPush

logger = logging.getLogger(__name__)

# Called once per tick; exceptions are logged and the timer keeps going
Sender = Callable[[ControlMessage], None]

STOP_TIMEOUT = 2.0


class SubscriptionScheduler:
    """One daemon thread per ScheduledPush, each on its own interval."""

    def __init__(self, pushes: Sequence[ScheduledPush], send: Sender, name: str = "relay"):
        self._pushes = list(pushes)
        self._send = send
        self.name = name
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for index, push in enumerate(self._pushes):
            thread = threading.Thread(
                target=self._run,
                args=(push,),
                name=f"Subscription[{self.name}:{index}]",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()

    def stop(self, timeout: Optional[float] = STOP_TIMEOUT) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []

    def tick(self, push: ScheduledPush) -> None:
        """Send one subscription message."""
        logger.debug(f"[{self.name}] Running subscription: {push.command}")
        message = ControlMessage(push.command, tuple(push.arguments))
        try:
            self._send(message)
        except Exception as exc:
            logger.error(f"[{self.name}] Send Error: {exc}")

    def _run(self, push: ScheduledPush) -> None:
        logger.debug(f"[{self.name}] Started subscription: {push.command}")
        interval = push.interval.total_seconds()
        while not self._stop.wait(interval):
            self.tick(push)
