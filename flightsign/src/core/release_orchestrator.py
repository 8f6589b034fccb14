import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import requests

from flightsign.logger import get_console
from flightsign.src.apple.app_store_connect_api import AppStoreConnectAPI, BuildRef
from flightsign.src.core.audit_log import AuditLog
from flightsign.src.core.build_orchestrator import (
    BuildOrchestrator,
    BuildRequest,
    BuildTool,
)
from flightsign.src.core.certificate_manager import CertificateLifecycleManager
from flightsign.src.core.credential_store import CredentialStore
from flightsign.src.core.errors import (
    BuildConflictError,
    FlightSignError,
    ProvisioningProfileCreationError,
    RemoteServiceError,
)
from flightsign.src.core.keychain import EphemeralKeychainManager
from flightsign.src.core.models import (
    Certificate,
    CertificateKind,
    DeploymentRecord,
    MarketingVersion,
    ProfileKind,
    ProvisioningProfile,
    utc_now,
)
from flightsign.src.core.processing_monitor import Clock, FinalState, ProcessingMonitor
from flightsign.src.core.profile_manager import ProvisioningProfileManager
from flightsign.src.core.upload_manager import (
    UploadCredentials,
    UploadManager,
    UploadOutcome,
    UploadStrategy,
)
from flightsign.src.core.version_resolver import Resolution, VersionConflictResolver
from flightsign.src.ipa.ipa_validator import validate_ipa
from flightsign.src.utils.config_loader import TeamConfig, TeamEnv, TeamPaths

ENHANCED_MAX_WAIT = 900


@dataclass
class ReleaseRequest:
    team_id: str
    app_identifier: str
    scheme: str
    configuration: str = "Release"
    version_bump: str = "auto"
    enhanced_monitoring: bool = False
    keychain_password: Optional[str] = None
    output_dir: Optional[Path] = None
    project_dir: Path = Path(".")
    allow_renumber: bool = False
    build_number: Optional[int] = None
    local_version: Optional[str] = None
    local_build: Optional[int] = None
    strict_privacy: bool = False


@dataclass
class ReleaseOutcome:
    certificates: Dict[CertificateKind, Certificate]
    profiles: Dict[ProfileKind, ProvisioningProfile]
    resolution: Resolution
    build_number: int
    upload: UploadOutcome
    processing: FinalState
    record: DeploymentRecord
    import_failures: List[Path] = field(default_factory=list)


class ReleaseOrchestrator:
    """Runs one release end to end inside a keychain that is always cleaned up"""

    def __init__(
        self,
        config: TeamConfig,
        paths: TeamPaths,
        api: AppStoreConnectAPI,
        keychains: EphemeralKeychainManager,
        build_tool: BuildTool,
        upload_strategies: Sequence[UploadStrategy],
        audit: Optional[AuditLog] = None,
        monitor_clock: Optional[Clock] = None,
        now: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        max_wait: float = 300,
        poll_interval: float = 30,
    ):
        self.console = get_console()
        self.config = config
        self.paths = paths
        self.api = api
        self.keychains = keychains
        self.build_tool = build_tool
        self.upload_strategies = list(upload_strategies)
        self.audit = audit or AuditLog(paths.audit_log, clock=now)
        self.monitor_clock = monitor_clock
        self.now = now
        self.sleep = sleep
        self.max_wait = max_wait
        self.poll_interval = poll_interval
        self.env = TeamEnv(paths.config_env)

    def _local_version(self, request: ReleaseRequest) -> MarketingVersion:
        text = request.local_version or self.env.get("LAST_DEPLOYMENT_VERSION") or "1.0.0"
        return MarketingVersion.parse(text)

    def _local_build(self, request: ReleaseRequest) -> int:
        if request.local_build is not None:
            return request.local_build
        return self.env.get_int("LAST_DEPLOYMENT_BUILD")

    def _record(
        self,
        request: ReleaseRequest,
        started: float,
        version: Optional[str],
        build_number: Optional[int],
        strategy: Optional[str],
        status: str,
        locally_resolved: bool = False,
    ) -> DeploymentRecord:
        record = DeploymentRecord(
            timestamp=self.now(),
            app_identifier=request.app_identifier,
            team_id=request.team_id,
            version=version or "-",
            build_number=build_number or 0,
            upload_strategy=strategy,
            processing_status=status,
            duration_seconds=time.monotonic() - started,
            locally_resolved=locally_resolved,
        )
        self.audit.record_deployment(record)

        self.env.backup(self.paths.backups_dir)
        values = {
            "APP_IDENTIFIER": request.app_identifier,
            "STATUS": "completed" if status != "FAILED" else "failed",
            "TESTFLIGHT_STATUS": status,
        }
        if status != "FAILED":
            values.update(
                {
                    "LAST_DEPLOYMENT_DATE": record.timestamp.isoformat(timespec="seconds"),
                    "LAST_DEPLOYMENT_VERSION": record.version,
                    "LAST_DEPLOYMENT_BUILD": record.build_number,
                }
            )
        self.env.update(values)
        return record

    def _record_failure(
        self,
        request: ReleaseRequest,
        started: float,
        resolution: Optional[Resolution],
        build_number: Optional[int],
        error: FlightSignError,
    ) -> None:
        self.audit.record(
            "DEPLOYMENT_FAILED",
            request.app_identifier,
            resolution.version if resolution else None,
            build_number,
            f"{type(error).__name__}: {error}",
            level="error",
        )
        self._record(
            request,
            started,
            str(resolution.version) if resolution else None,
            build_number,
            None,
            "FAILED",
            resolution.locally_resolved if resolution else False,
        )

    def _development_profile(
        self,
        profile_manager: ProvisioningProfileManager,
        request: ReleaseRequest,
        certificate: Certificate,
    ) -> Optional[ProvisioningProfile]:
        """Keep a development profile around for local debugging; the release never signs with it"""
        try:
            return profile_manager.ensure_valid(
                request.team_id, request.app_identifier, ProfileKind.DEVELOPMENT, [certificate]
            )
        except ProvisioningProfileCreationError as e:
            self.console.log(f"[yellow]Continuing without a development profile: {e}")
            self.audit.record(
                "PROFILE_SKIPPED",
                request.app_identifier,
                None,
                None,
                f"development {e}",
                level="warning",
            )
            return None

    def run(self, request: ReleaseRequest) -> ReleaseOutcome:
        if request.team_id != self.config.team_id:
            raise ValueError(f"Config is for team {self.config.team_id}, not {request.team_id}")
        started = time.monotonic()
        app = request.app_identifier
        release_kind = ProfileKind.for_configuration(request.configuration)

        store = CredentialStore.load(
            self.paths.team_dir, request.team_id, self.config.p12_password, clock=self.now
        )
        certificate_manager = CertificateLifecycleManager(
            store,
            self.api,
            self.keychains,
            self.paths,
            self.audit,
            p12_password=self.config.p12_password,
            app_identifier=app,
            sleep=self.sleep,
        )
        profile_manager = ProvisioningProfileManager(
            store, self.api, self.paths, self.audit, app_identifier=app
        )
        resolver = VersionConflictResolver(self.api, self.env, self.audit)
        builder = BuildOrchestrator(self.build_tool, self.audit)
        uploader = UploadManager(
            self.upload_strategies,
            self.audit,
            env=self.env,
            sleep=self.sleep,
            strict_privacy=request.strict_privacy,
        )
        monitor = ProcessingMonitor(self.api, self.audit, clock=self.monitor_clock)

        resolution: Optional[Resolution] = None
        build_number: Optional[int] = None
        try:
            self.keychains.cleanup_stale()
            with self.keychains.session(f"{request.team_id}-{app}", request.keychain_password) as handle:
                existing = sorted(
                    p
                    for p in self.paths.certificates_dir.glob("*")
                    if p.suffix.lower() in (".p12", ".cer")
                ) if self.paths.certificates_dir.exists() else []
                report = self.keychains.import_existing(handle, existing, self.config.p12_password)
                certificate_manager.attach(handle)

                certificate_manager.refresh_remote()
                profile_manager.refresh_remote()
                certificates = {
                    kind: certificate_manager.ensure_valid(request.team_id, kind)
                    for kind in CertificateKind
                }
                profiles = {
                    release_kind: profile_manager.ensure_valid(
                        request.team_id,
                        app,
                        release_kind,
                        [certificates[release_kind.required_certificate_kind]],
                    )
                }
                if release_kind is not ProfileKind.DEVELOPMENT:
                    development = self._development_profile(
                        profile_manager, request, certificates[CertificateKind.DEVELOPMENT]
                    )
                    if development is not None:
                        profiles[ProfileKind.DEVELOPMENT] = development

                resolution = resolver.resolve(
                    app,
                    request.team_id,
                    self._local_version(request),
                    self._local_build(request),
                    request.version_bump,
                )
                build_number = resolver.check_requested(
                    app, request.build_number, resolution, request.allow_renumber
                )

                self.keychains.mark_in_use(handle)
                output_dir = request.output_dir or (self.paths.team_dir / "build")
                build = builder.build(
                    BuildRequest(
                        app_identifier=app,
                        team_id=request.team_id,
                        scheme=request.scheme,
                        configuration=request.configuration,
                        version=resolution.version,
                        build_number=build_number,
                        profile=profiles[release_kind],
                        certificate=certificates[release_kind.required_certificate_kind],
                        keychain=handle,
                        output_dir=Path(output_dir),
                        project_dir=Path(request.project_dir),
                    )
                )

                # Purpose strings are checked by the uploader
                ipa = validate_ipa(build.ipa_path, app, check_privacy=False)
                if ipa.build_number and ipa.build_number != str(build_number):
                    raise BuildConflictError(
                        f"The IPA carries build {ipa.build_number} but {build_number} was resolved"
                    )

                upload = uploader.upload(
                    build.ipa_path,
                    UploadCredentials(
                        self.config.api_key_id,
                        self.config.api_issuer_id,
                        self.config.api_key_path,
                    ),
                    app,
                    str(resolution.version),
                    build_number,
                )

            max_wait = ENHANCED_MAX_WAIT if request.enhanced_monitoring else self.max_wait
            processing = monitor.watch(
                app,
                BuildRef(app, str(resolution.version), build_number),
                max_wait=max_wait,
                poll_interval=self.poll_interval,
            )
        except requests.RequestException as e:
            error = RemoteServiceError(f"Could not reach App Store Connect: {e}")
            self._record_failure(request, started, resolution, build_number, error)
            raise error from e
        except FlightSignError as e:
            self._record_failure(request, started, resolution, build_number, e)
            raise

        record = self._record(
            request,
            started,
            str(resolution.version),
            build_number,
            upload.strategy,
            processing.label,
            resolution.locally_resolved,
        )
        return ReleaseOutcome(
            certificates=certificates,
            profiles=profiles,
            resolution=resolution,
            build_number=build_number,
            upload=upload,
            processing=processing,
            record=record,
            import_failures=list(report.failed),
        )
