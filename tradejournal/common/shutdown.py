from __future__ import annotations

"""
Graceful stop for the relay consumer.

SIGTERM/SIGINT set `SHUTDOWN_EVENT`. The consumer's read loop checks it
between envelopes, so an envelope that is being applied (including its apply
retries) always runs to completion and is acked or nacked before the process
exits.

`chain=True` keeps the previous handler running after the event is set (the
HTTP service leaves signals to uvicorn, which installs its own). A previous
SIG_DFL handler is emulated with `SystemExit(128+signal)`.
"""

import logging
import signal
import threading
from types import FrameType
from typing import Any, Callable

from tradejournal.common.logging import log_event

logger = logging.getLogger(__name__)

SHUTDOWN_EVENT = threading.Event()

_INSTALLED = False
_LOCK = threading.Lock()


def request_shutdown(*, reason: str) -> None:
    if not SHUTDOWN_EVENT.is_set():
        log_event(logger, "shutdown.requested", severity="WARNING", reason=reason)
    SHUTDOWN_EVENT.set()


def reset_shutdown() -> None:
    """Clear the stop flag (tests, in-process restarts)."""
    SHUTDOWN_EVENT.clear()


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


def _make_handler(prev: Any, *, chain: bool) -> Callable[[int, FrameType | None], Any]:
    def _handler(signum: int, frame: FrameType | None) -> Any:
        request_shutdown(reason=f"signal:{_signal_name(signum)}")
        if not chain or prev == signal.SIG_IGN:
            return None
        if prev == signal.SIG_DFL:
            raise SystemExit(128 + int(signum))
        if callable(prev):
            return prev(signum, frame)
        return None

    return _handler


def install_signal_handlers_once(*, chain: bool = True) -> bool:
    """
    Route SIGTERM/SIGINT to `SHUTDOWN_EVENT`.

    Returns True when handlers are in place. Off the main thread signal
    handlers cannot be installed; the call is then a no-op returning False.
    """
    global _INSTALLED
    if threading.current_thread() is not threading.main_thread():
        return False
    with _LOCK:
        if not _INSTALLED:
            for s in (signal.SIGTERM, signal.SIGINT):
                signal.signal(s, _make_handler(signal.getsignal(s), chain=chain))
            _INSTALLED = True
    return True
