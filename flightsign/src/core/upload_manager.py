import json
import os
import re
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from flightsign.logger import get_console
from flightsign.src.core.audit_log import AuditLog
from flightsign.src.core.errors import UploadFailedError
from flightsign.src.ipa.ipa_validator import IpaInfo, validate_ipa
from flightsign.src.utils.config_loader import TeamEnv
from flightsign.src.utils.retry import backoff_delay

UPLOAD_TIMEOUT = 1800
PREFERRED_STRATEGY_KEY = "PREFERRED_UPLOAD_STRATEGY"
AUTH_FAILURE = re.compile(r"(401|unauthori[sz]ed|authentication|NOT_AUTHORIZED)", re.IGNORECASE)


@dataclass
class UploadCredentials:
    api_key_id: str
    api_issuer_id: str
    api_key_path: Path


@dataclass
class UploadAttempt:
    strategy: str
    attempt: int
    succeeded: bool
    error: Optional[str] = None


@dataclass
class UploadOutcome:
    strategy: str
    attempts: List[UploadAttempt] = field(default_factory=list)
    duration_seconds: float = 0.0
    ipa: Optional[IpaInfo] = None


class UploadStrategyError(Exception):
    """One uploader failed; `retryable` says whether trying it again could help"""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class UploadStrategy:
    name = "strategy"

    def upload(self, ipa_path: Path, credentials: UploadCredentials, timeout: float) -> None:
        raise NotImplementedError


class CommandUploadStrategy(UploadStrategy):
    """Uploads by shelling out to an Apple or fastlane tool"""

    def __init__(self, runner: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.runner = runner

    def command(self, ipa_path: Path, credentials: UploadCredentials, workdir: Path) -> List[str]:
        raise NotImplementedError

    def environment(self, credentials: UploadCredentials) -> Dict[str, str]:
        # altool and Transporter look for AuthKey_<id>.p8 in this directory
        return {**os.environ, "API_PRIVATE_KEYS_DIR": str(credentials.api_key_path.parent)}

    def output_failed(self, output: str) -> bool:
        return False

    def upload(self, ipa_path: Path, credentials: UploadCredentials, timeout: float) -> None:
        with tempfile.TemporaryDirectory(prefix="flightsign-upload-") as workdir:
            cmd = self.command(ipa_path, credentials, Path(workdir))
            try:
                result = self.runner(
                    cmd,
                    capture_output=True,
                    text=True,
                    timeout=timeout,
                    env=self.environment(credentials),
                )
            except subprocess.TimeoutExpired:
                raise UploadStrategyError(f"{self.name} timed out after {timeout:.0f}s")
            except FileNotFoundError:
                raise UploadStrategyError(f"{cmd[0]} is not installed", retryable=False)

        output = f"{result.stdout or ''}\n{result.stderr or ''}".strip()
        if result.returncode != 0 or self.output_failed(output):
            tail = "\n".join(output.splitlines()[-5:])
            raise UploadStrategyError(
                f"{self.name} failed (status {result.returncode}): {tail}",
                retryable=not AUTH_FAILURE.search(output),
            )


class AltoolStrategy(CommandUploadStrategy):
    name = "altool"

    def command(self, ipa_path, credentials, workdir):
        return [
            "xcrun",
            "altool",
            "--upload-app",
            "--type",
            "ios",
            "--file",
            str(ipa_path),
            "--apiKey",
            credentials.api_key_id,
            "--apiIssuer",
            credentials.api_issuer_id,
        ]


class TransporterStrategy(CommandUploadStrategy):
    name = "transporter"

    def command(self, ipa_path, credentials, workdir):
        return [
            "xcrun",
            "iTMSTransporter",
            "-m",
            "upload",
            "-assetFile",
            str(ipa_path),
            "-apiKey",
            credentials.api_key_id,
            "-apiIssuer",
            credentials.api_issuer_id,
        ]

    def output_failed(self, output: str) -> bool:
        # Transporter exits 0 on some rejected uploads
        return bool(re.search(r"\bERROR\b", output))


class PilotStrategy(CommandUploadStrategy):
    name = "pilot"

    def command(self, ipa_path, credentials, workdir):
        key_file = workdir / "api_key.json"
        key_file.write_text(
            json.dumps(
                {
                    "key_id": credentials.api_key_id,
                    "issuer_id": credentials.api_issuer_id,
                    "key": credentials.api_key_path.read_text(),
                }
            )
        )
        os.chmod(key_file, 0o600)
        return [
            "fastlane",
            "pilot",
            "upload",
            "--ipa",
            str(ipa_path),
            "--api_key_path",
            str(key_file),
            "--skip_waiting_for_build_processing",
            "true",
        ]


STRATEGIES = {s.name: s for s in (AltoolStrategy, TransporterStrategy, PilotStrategy)}
DEFAULT_ORDER = ("altool", "transporter", "pilot")


def default_strategies(
    order: Optional[Sequence[str]] = None,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> List[UploadStrategy]:
    names = list(order or DEFAULT_ORDER)
    unknown = [n for n in names if n not in STRATEGIES]
    if unknown:
        raise ValueError(f"Unknown upload strategies: {', '.join(unknown)}")
    return [STRATEGIES[n](runner=runner) for n in names]


class UploadManager:
    """Tries each uploader in turn until one gets the IPA to App Store Connect"""

    def __init__(
        self,
        strategies: Sequence[UploadStrategy],
        audit: AuditLog,
        env: Optional[TeamEnv] = None,
        attempts_per_strategy: int = 2,
        base_delay: float = 5.0,
        timeout: float = UPLOAD_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
        strict_privacy: bool = False,
    ):
        if not strategies:
            raise ValueError("At least one upload strategy is required")
        self.console = get_console()
        self.strategies = list(strategies)
        self.audit = audit
        self.env = env
        self.attempts_per_strategy = attempts_per_strategy
        self.base_delay = base_delay
        self.timeout = timeout
        self.sleep = sleep
        self.strict_privacy = strict_privacy

    def ordered_strategies(self) -> List[UploadStrategy]:
        """Last run's successful strategy goes first"""
        preferred = self.env.get(PREFERRED_STRATEGY_KEY) if self.env else None
        return sorted(self.strategies, key=lambda s: s.name != preferred)

    def upload(
        self,
        artifact_path: Path,
        credentials: UploadCredentials,
        app_identifier: str,
        version: Optional[str] = None,
        build_number: Optional[int] = None,
    ) -> UploadOutcome:
        ipa = validate_ipa(artifact_path, app_identifier, strict_privacy=self.strict_privacy)
        started = time.monotonic()
        attempts: List[UploadAttempt] = []
        last_error: Optional[UploadStrategyError] = None

        for strategy in self.ordered_strategies():
            for attempt in range(1, self.attempts_per_strategy + 1):
                self.console.log(f"[blue]Uploading with {strategy.name} (attempt {attempt})...")
                try:
                    strategy.upload(Path(artifact_path), credentials, self.timeout)
                except UploadStrategyError as e:
                    last_error = e
                    attempts.append(UploadAttempt(strategy.name, attempt, False, str(e)))
                    self.audit.record(
                        "UPLOAD_ATTEMPT",
                        app_identifier,
                        version,
                        build_number,
                        f"{strategy.name} attempt {attempt} FAILED: {e}",
                        level="warning",
                    )
                    if not e.retryable or attempt == self.attempts_per_strategy:
                        break
                    self.sleep(backoff_delay(attempt, self.base_delay, 60.0))
                    continue

                attempts.append(UploadAttempt(strategy.name, attempt, True))
                self.audit.record(
                    "UPLOAD_ATTEMPT",
                    app_identifier,
                    version,
                    build_number,
                    f"{strategy.name} attempt {attempt} SUCCEEDED",
                )
                if self.env:
                    self.env.set(PREFERRED_STRATEGY_KEY, strategy.name)
                self.console.log(f"[green]Upload succeeded with {strategy.name}[/]")
                return UploadOutcome(
                    strategy=strategy.name,
                    attempts=attempts,
                    duration_seconds=time.monotonic() - started,
                    ipa=ipa,
                )

            self.console.log(f"[yellow]{strategy.name} gave up, trying the next uploader")

        self.audit.record(
            "UPLOAD_FAILED",
            app_identifier,
            version,
            build_number,
            f"all {len(self.strategies)} strategies failed",
            level="error",
        )
        raise UploadFailedError(
            f"Upload failed with every strategy; last error: {last_error}",
            last_error=last_error,
        )
