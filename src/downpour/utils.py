import asyncio
import logging
import signal
import time
from collections.abc import Callable

from .models import OperationKind

logger = logging.getLogger(__name__)

# ────────────────────────────────
# Time Helpers
# ────────────────────────────────


def now() -> float:
    return time.perf_counter()


# ────────────────────────────────
# Error & Size Formatting
# ────────────────────────────────

MAX_ERROR_DETAIL = 50


def simplify_error(exc: BaseException) -> str:
    """Collapse a transport exception into a short, groupable detail string."""
    if isinstance(exc, asyncio.TimeoutError):
        return "timeout"
    msg = str(exc) or type(exc).__name__
    lowered = msg.lower()
    if "timeout" in lowered or "timed out" in lowered:
        return "timeout"
    if "connection refused" in lowered or "connect call failed" in lowered:
        return "connection refused"
    if (
        "name or service not known" in lowered
        or "nodename nor servname" in lowered
        or "getaddrinfo" in lowered
        or "no such host" in lowered
        or "temporary failure in name resolution" in lowered
    ):
        return "dns error"
    if len(msg) > MAX_ERROR_DETAIL:
        return msg[:MAX_ERROR_DETAIL] + "..."
    return msg


def format_bytes(n: int | float) -> str:
    unit = 1024
    if n < unit:
        return f"{int(n)} B"
    value = float(n)
    for suffix in "KMGTPE":
        value /= unit
        if value < unit:
            break
    return f"{value:.1f} {suffix}B"


def size_class_label(kind: OperationKind, size_bytes: int) -> str:
    if kind is OperationKind.LIST:
        return kind.value
    return f"{kind.value} {format_bytes(size_bytes)}"


# ────────────────────────────────
# Signal Handling
# ────────────────────────────────


class GracefulKiller:
    """Route SIGINT/SIGTERM to a stop callback on the running event loop."""

    def __init__(self, on_signal: Callable[[str], None]):
        self._on_signal = on_signal
        self._installed: list[signal.Signals] = []

    def install(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.exit_gracefully, sig)
                self._installed.append(sig)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Cannot install handler for {sig.name} on this platform")

    def uninstall(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in self._installed:
            loop.remove_signal_handler(sig)
        self._installed.clear()

    def exit_gracefully(self, sig: signal.Signals) -> None:
        print("\n[!] Received shutdown signal. Stopping workers...")
        self._on_signal(f"received {sig.name}")
