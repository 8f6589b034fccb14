import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from flightsign.logger import get_console
from flightsign.src.core.models import DeploymentRecord, utc_now

LINE_PATTERN = re.compile(
    r"^(?P<timestamp>\S+): (?P<event>[A-Z_]+) - (?P<app>\S+) "
    r"v(?P<version>\S+) \((?P<build>[^)]*)\) - (?P<status>.*)$"
)

LEVEL_STYLES = {"info": "blue", "warning": "yellow", "error": "red"}


@dataclass(frozen=True)
class AuditEntry:
    timestamp: str
    event: str
    app_identifier: str
    version: str
    build: str
    status: str


class AuditLog:
    """Append-only, one line per lifecycle event, one file per team"""

    def __init__(self, path: Path, clock: Callable[[], datetime] = utc_now, echo: bool = True):
        self.path = Path(path)
        self.clock = clock
        self.echo = echo
        self.console = get_console()

    def record(
        self,
        event: str,
        app_identifier: str,
        version: Optional[str],
        build: Optional[object],
        status: str,
        level: str = "info",
    ) -> str:
        timestamp = self.clock().isoformat(timespec="seconds")
        # Keep each entry on one line whatever the status text contains
        status = " ".join(str(status).split())
        line = (
            f"{timestamp}: {event} - {app_identifier} "
            f"v{version or '-'} ({build if build is not None else '-'}) - {status}"
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

        if self.echo and level != "info":
            style = LEVEL_STYLES.get(level, "white")
            self.console.log(f"[{style}]{event}: {status}")
        return line

    def record_deployment(self, record: DeploymentRecord) -> str:
        origin = " [locally resolved]" if record.locally_resolved else ""
        status = (
            f"{record.processing_status} via {record.upload_strategy or 'none'} "
            f"in {record.duration_seconds:.1f}s{origin}"
        )
        return self.record(
            "DEPLOYMENT",
            record.app_identifier,
            record.version,
            record.build_number,
            status,
        )

    def entries(self) -> List[AuditEntry]:
        if not self.path.exists():
            return []
        entries = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            match = LINE_PATTERN.match(line)
            if match:
                entries.append(
                    AuditEntry(
                        timestamp=match["timestamp"],
                        event=match["event"],
                        app_identifier=match["app"],
                        version=match["version"],
                        build=match["build"],
                        status=match["status"],
                    )
                )
        return entries

    def events(self, event: str) -> List[AuditEntry]:
        return [e for e in self.entries() if e.event == event]
