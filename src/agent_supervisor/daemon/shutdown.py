"""Signal-driven cooperative shutdown.

The signal handler only flips a module-level flag. A watcher thread copies
that flag into a ShutdownToken which every blocking loop samples.
"""

import logging
import signal
import threading
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

WATCH_INTERVAL = 0.2
DEFAULT_SIGNALS = (signal.SIGTERM, signal.SIGINT)

_signal_received = False


def _handle_signal(signum, frame):
    global _signal_received
    _signal_received = True


def signal_received() -> bool:
    return _signal_received


def reset_signal_flag() -> None:
    """Clear the process-wide flag."""
    global _signal_received
    _signal_received = False


class ShutdownToken:
    """Shared cancellation flag passed to every component that can block."""

    def __init__(self):
        self._event = threading.Event()

    def set(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to ``timeout`` seconds; returns True as soon as shutdown is requested."""
        return self._event.wait(timeout)

    def sleep(self, seconds: int) -> None:
        """Sleep in one-second ticks, returning early on shutdown."""
        for _ in range(max(0, int(seconds))):
            if self.wait(1.0):
                return


def _watch(token: ShutdownToken, interval: float) -> None:
    while not token.is_set():
        if _signal_received:
            logger.info("Received shutdown signal")
            token.set()
            return
        token.wait(interval)


def install_signal_handlers(
    token: ShutdownToken,
    signals: Iterable[int] = DEFAULT_SIGNALS,
    interval: float = WATCH_INTERVAL,
) -> threading.Thread:
    """
    Install termination handlers and start the flag watcher thread.

    Must be called from the main thread.

    Returns:
        The started watcher thread (daemonic; exits once the token is set)
    """
    reset_signal_flag()
    for sig in signals:
        signal.signal(sig, _handle_signal)

    watcher = threading.Thread(
        target=_watch, args=(token, interval), name="shutdown-watcher", daemon=True
    )
    watcher.start()
    return watcher
