import plistlib
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List

from flightsign.logger import get_console
from flightsign.src.core.audit_log import AuditLog
from flightsign.src.core.errors import BuildError
from flightsign.src.core.keychain import KeychainHandle
from flightsign.src.core.models import (
    Certificate,
    CertificateKind,
    MarketingVersion,
    ProfileKind,
    ProvisioningProfile,
)
from flightsign.src.ipa.provisioning_profile_analyser import dump_prov

EXPORT_METHODS = {
    ProfileKind.DEVELOPMENT: "development",
    ProfileKind.ADHOC: "ad-hoc",
    ProfileKind.APPSTORE: "app-store",
}

PROFILES_DIR = Path.home() / "Library" / "MobileDevice" / "Provisioning Profiles"


@dataclass
class BuildRequest:
    app_identifier: str
    team_id: str
    scheme: str
    configuration: str
    version: MarketingVersion
    build_number: int
    profile: ProvisioningProfile
    certificate: Certificate
    keychain: KeychainHandle
    output_dir: Path
    project_dir: Path = Path(".")


@dataclass
class BuildResult:
    ipa_path: Path
    duration_seconds: float


class BuildTool:
    """Turns a fully prepared BuildRequest into a signed IPA"""

    name = "build-tool"

    def build(self, request: BuildRequest) -> Path:
        raise NotImplementedError


class XcodeBuildTool(BuildTool):
    """Archive and export with xcodebuild using the run's keychain and profile"""

    name = "xcodebuild"

    def __init__(
        self,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        profiles_dir: Path = PROFILES_DIR,
    ):
        self.console = get_console()
        self.runner = runner
        self.profiles_dir = profiles_dir

    def _project_args(self, project_dir: Path) -> List[str]:
        workspaces = sorted(project_dir.glob("*.xcworkspace"))
        if workspaces:
            return ["-workspace", str(workspaces[0])]
        projects = sorted(project_dir.glob("*.xcodeproj"))
        if projects:
            return ["-project", str(projects[0])]
        raise BuildError(f"No Xcode workspace or project found in {project_dir}")

    def _install_profile(self, profile: ProvisioningProfile) -> str:
        """xcodebuild only looks for profiles in the user's MobileDevice folder"""
        if not profile.path or not profile.path.exists():
            raise BuildError(f"Profile {profile.name} is not on disk")
        uuid = dump_prov(profile.path).get("UUID", profile.id)
        self.profiles_dir.mkdir(parents=True, exist_ok=True)
        shutil.copy2(profile.path, self.profiles_dir / f"{uuid}.mobileprovision")
        return uuid

    def _run(self, cmd: List[str], step: str) -> None:
        self.console.log(f"[cyan]Running {step}:[/] {' '.join(cmd[:6])} ...")
        result = self.runner(cmd, capture_output=True, text=True)
        if result.returncode != 0:
            tail = "\n".join((result.stdout or "").splitlines()[-20:])
            raise BuildError(f"{step} failed with status {result.returncode}\n{tail}\n{result.stderr or ''}")

    def _export_options(self, request: BuildRequest, path: Path) -> Path:
        identity = (
            "Apple Development"
            if request.certificate.kind is CertificateKind.DEVELOPMENT
            else "Apple Distribution"
        )
        options = {
            "method": EXPORT_METHODS[request.profile.kind],
            "teamID": request.team_id,
            "signingStyle": "manual",
            "signingCertificate": identity,
            "provisioningProfiles": {request.app_identifier: request.profile.name},
            "uploadSymbols": True,
        }
        with open(path, "wb") as f:
            plistlib.dump(options, f)
        return path

    def build(self, request: BuildRequest) -> Path:
        output_dir = Path(request.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        archive_path = output_dir / f"{request.scheme}.xcarchive"
        # The output folder is reused between runs
        for stale in output_dir.glob("*.ipa"):
            self.console.log(f"[dim]Removing previous export {stale.name}")
            stale.unlink()
        self._install_profile(request.profile)

        self._run(
            [
                "xcodebuild",
                *self._project_args(Path(request.project_dir)),
                "-scheme",
                request.scheme,
                "-configuration",
                request.configuration,
                "-destination",
                "generic/platform=iOS",
                "-archivePath",
                str(archive_path),
                "archive",
                "CODE_SIGN_STYLE=Manual",
                f"DEVELOPMENT_TEAM={request.team_id}",
                f"PROVISIONING_PROFILE_SPECIFIER={request.profile.name}",
                f"OTHER_CODE_SIGN_FLAGS=--keychain {request.keychain.path}",
                f"MARKETING_VERSION={request.version}",
                f"CURRENT_PROJECT_VERSION={request.build_number}",
            ],
            "xcodebuild archive",
        )

        self._run(
            [
                "xcodebuild",
                "-exportArchive",
                "-archivePath",
                str(archive_path),
                "-exportPath",
                str(output_dir),
                "-exportOptionsPlist",
                str(self._export_options(request, output_dir / "ExportOptions.plist")),
            ],
            "xcodebuild -exportArchive",
        )

        ipas = list(output_dir.glob("*.ipa"))
        if not ipas:
            raise BuildError(f"Export finished but no IPA was written to {output_dir}")
        return max(ipas, key=lambda p: p.stat().st_mtime)


class BuildOrchestrator:
    """Hands finished signing material and version numbers to the build tool"""

    def __init__(self, tool: BuildTool, audit: AuditLog):
        self.console = get_console()
        self.tool = tool
        self.audit = audit

    def build(self, request: BuildRequest) -> BuildResult:
        self.audit.record(
            "BUILD_STARTED",
            request.app_identifier,
            request.version,
            request.build_number,
            f"{request.scheme} ({request.configuration}) with {self.tool.name}",
        )
        started = time.monotonic()
        try:
            ipa_path = Path(self.tool.build(request))
        except BuildError as e:
            self.audit.record(
                "BUILD_FAILED", request.app_identifier, request.version, request.build_number, str(e), "error"
            )
            raise
        if not ipa_path.exists():
            raise BuildError(f"Build tool reported {ipa_path} but the file does not exist")

        duration = time.monotonic() - started
        self.audit.record(
            "BUILD_SUCCEEDED",
            request.app_identifier,
            request.version,
            request.build_number,
            f"{ipa_path.name} in {duration:.1f}s",
        )
        self.console.log(f"[green]Built {ipa_path.name}[/] in {duration:.1f}s")
        return BuildResult(ipa_path=ipa_path, duration_seconds=duration)
