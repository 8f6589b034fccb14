import threading
import time
from dataclasses import dataclass
from typing import Optional

import requests

from flightsign.logger import get_console
from flightsign.src.apple.app_store_connect_api import AppStoreConnectError, BuildRef
from flightsign.src.core.audit_log import AuditLog
from flightsign.src.core.errors import ProcessingMonitoringError
from flightsign.src.core.models import ProcessingState

DEFAULT_MAX_WAIT = 300
DEFAULT_POLL_INTERVAL = 30
MAX_CONSECUTIVE_ERRORS = 3


class Clock:
    """Wall clock; tests pass a fake with the same two methods"""

    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


@dataclass
class FinalState:
    state: ProcessingState
    timed_out: bool
    polls: int
    elapsed: float

    @property
    def label(self) -> str:
        if self.timed_out:
            return f"TIMED_OUT_WHILE_{self.state.value}"
        return self.state.value


class MonitorSession:
    """One watch over one build; advance it with step() until it returns a result"""

    def __init__(
        self,
        monitor: "ProcessingMonitor",
        build: BuildRef,
        max_wait: float,
        poll_interval: float,
    ):
        self.monitor = monitor
        self.build = build
        self.max_wait = max_wait
        self.poll_interval = poll_interval
        self.started = monitor.clock.now()
        self.last_state = ProcessingState.PROCESSING
        self.polls = 0
        self.consecutive_errors = 0
        self.result: Optional[FinalState] = None

    @property
    def elapsed(self) -> float:
        return self.monitor.clock.now() - self.started

    def _finish(self, timed_out: bool) -> FinalState:
        self.result = FinalState(self.last_state, timed_out, self.polls, self.elapsed)
        return self.result

    def _audit(self, status: str, level: str = "info") -> None:
        self.monitor.audit.record(
            "PROCESSING_POLL",
            self.build.app_identifier,
            self.build.version,
            self.build.build_number,
            status,
            level,
        )

    def step(self) -> Optional[FinalState]:
        """Poll once; returns the final state when the watch is over"""
        if self.result is not None:
            return self.result
        if self.monitor.cancelled:
            self._audit(f"CANCELLED while {self.last_state.value}", "warning")
            return self._finish(timed_out=True)

        self.polls += 1
        try:
            state = self.monitor.fetch_state(self.build)
        except (AppStoreConnectError, requests.RequestException) as e:
            self.consecutive_errors += 1
            self._audit(f"ERROR {e}", "warning")
            if self.consecutive_errors >= self.monitor.max_consecutive_errors:
                raise ProcessingMonitoringError(
                    f"Could not read processing state for build {self.build.build_number} "
                    f"after {self.consecutive_errors} attempts: {e}"
                )
        else:
            self.consecutive_errors = 0
            self.last_state = state
            self._audit(state.value)
            if state.is_terminal:
                return self._finish(timed_out=False)

        if self.elapsed >= self.max_wait:
            self._audit(f"TIMED_OUT_WHILE_{self.last_state.value}", "warning")
            return self._finish(timed_out=True)
        return None

    def next_delay(self) -> float:
        return max(0.0, min(self.poll_interval, self.max_wait - self.elapsed))


class ProcessingMonitor:
    """Waits for App Store Connect to finish processing an uploaded build"""

    def __init__(
        self,
        api,
        audit: AuditLog,
        clock: Optional[Clock] = None,
        max_consecutive_errors: int = MAX_CONSECUTIVE_ERRORS,
    ):
        self.console = get_console()
        self.api = api
        self.audit = audit
        self.clock = clock or Clock()
        self.max_consecutive_errors = max_consecutive_errors
        self._cancel = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        self._cancel.set()

    def fetch_state(self, build: BuildRef) -> ProcessingState:
        return self.api.get_build_processing_state(build)

    def start(
        self,
        build: BuildRef,
        max_wait: float = DEFAULT_MAX_WAIT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> MonitorSession:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        return MonitorSession(self, build, max_wait, poll_interval)

    def watch(
        self,
        app_identifier: str,
        build: BuildRef,
        max_wait: float = DEFAULT_MAX_WAIT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> FinalState:
        if build.app_identifier != app_identifier:
            raise ValueError(f"Build belongs to {build.app_identifier}, not {app_identifier}")

        self.console.log(
            f"[blue]Waiting for App Store Connect to process {build.version} ({build.build_number})..."
        )
        session = self.start(build, max_wait, poll_interval)
        with self.console.status("[bold blue]Processing...") as status:
            while True:
                result = session.step()
                if result is not None:
                    break
                status.update(
                    f"[bold blue]{session.last_state.value} after {session.elapsed:.0f}s "
                    f"(poll {session.polls})"
                )
                self.clock.sleep(session.next_delay())

        if result.timed_out:
            self.console.log(
                f"[yellow]Stopped waiting after {result.elapsed:.0f}s; build is still {result.state.value}"
            )
        elif result.state is ProcessingState.VALID:
            self.console.log("[green]Build processed and ready for testing[/]")
        else:
            self.console.log("[red]App Store Connect marked the build as invalid[/]")
        return result
