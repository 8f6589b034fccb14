import atexit
import signal
import sys
import threading
from collections import OrderedDict
from functools import lru_cache
from typing import Callable, Dict, List, Tuple

from flightsign.logger import get_console


class InterruptRegistry:
    """Cleanup callbacks that must run even if the process is interrupted.

    Callbacks are registered under a key when a resource is acquired and
    unregistered once it has been released normally. Whatever is still
    registered runs on SIGINT/SIGTERM or at interpreter exit.
    """

    def __init__(
        self,
        signals: Tuple[int, ...] = (signal.SIGINT, signal.SIGTERM),
        install_handlers: bool = True,
    ):
        self.console = get_console()
        self.signals = signals
        self.install_handlers = install_handlers
        self._callbacks: "OrderedDict[str, Callable[[], None]]" = OrderedDict()
        self._previous_handlers: Dict[int, object] = {}
        self._installed = False
        self._lock = threading.RLock()

    def register(self, key: str, callback: Callable[[], None]) -> None:
        with self._lock:
            self._callbacks[key] = callback
            if self.install_handlers and not self._installed:
                self._install()

    def unregister(self, key: str) -> None:
        with self._lock:
            self._callbacks.pop(key, None)

    def pending(self) -> List[str]:
        with self._lock:
            return list(self._callbacks)

    def run_all(self) -> None:
        """Run pending callbacks, most recent first; one failure does not stop the rest"""
        while True:
            with self._lock:
                if not self._callbacks:
                    return
                key, callback = self._callbacks.popitem(last=True)
            try:
                callback()
            except Exception as e:
                self.console.log(f"[red]Cleanup for {key} failed:[/] {e}")

    def _install(self) -> None:
        atexit.register(self.run_all)
        # signal.signal only works from the main thread
        if threading.current_thread() is threading.main_thread():
            for signum in self.signals:
                self._previous_handlers[signum] = signal.signal(signum, self._handle)
        self._installed = True

    def uninstall(self) -> None:
        with self._lock:
            for signum, handler in self._previous_handlers.items():
                signal.signal(signum, handler)
            self._previous_handlers.clear()
            if self._installed:
                atexit.unregister(self.run_all)
            self._installed = False

    def _handle(self, signum, frame) -> None:
        self.console.log(f"[yellow]Received signal {signum}, cleaning up...")
        self.run_all()
        if signum == signal.SIGINT:
            raise KeyboardInterrupt
        sys.exit(128 + signum)


@lru_cache(maxsize=1)
def get_interrupt_registry() -> InterruptRegistry:
    """Get or create the process-wide registry"""
    return InterruptRegistry()
