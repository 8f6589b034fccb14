import plistlib
import subprocess
from pathlib import Path

import pytest

from fakes import (
    APP_ID,
    TEAM_ID,
    FakeBuildTool,
    make_certificate,
    make_profile,
    write_ipa,
    write_mobileprovision,
)
from flightsign.src.core.build_orchestrator import (
    BuildOrchestrator,
    BuildRequest,
    XcodeBuildTool,
)
from flightsign.src.core.errors import BuildError
from flightsign.src.core.keychain import KeychainHandle
from flightsign.src.core.models import CertificateKind, MarketingVersion


class FakeXcodebuild:
    """Records xcodebuild calls and writes an IPA when asked to export"""

    def __init__(self, fail_step=None):
        self.calls = []
        self.fail_step = fail_step

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        step = "export" if "-exportArchive" in cmd else "archive"
        if step == self.fail_step:
            return subprocess.CompletedProcess(cmd, 65, "** ARCHIVE FAILED **", "signing error")
        if step == "export":
            write_ipa(Path(cmd[cmd.index("-exportPath") + 1]) / "App.ipa")
        return subprocess.CompletedProcess(cmd, 0, "", "")


@pytest.fixture
def build_request(tmp_path) -> BuildRequest:
    project = tmp_path / "project"
    (project / "App.xcworkspace").mkdir(parents=True)
    (project / "App.xcodeproj").mkdir()
    profile_path = write_mobileprovision(
        tmp_path / "profiles" / "P1.mobileprovision", {"UUID": "UUID-1", "Name": "Profile P1"}
    )
    return BuildRequest(
        app_identifier=APP_ID,
        team_id=TEAM_ID,
        scheme="App",
        configuration="Release",
        version=MarketingVersion.parse("1.2.3"),
        build_number=7,
        profile=make_profile("P1", path=profile_path),
        certificate=make_certificate("CERT1", CertificateKind.DISTRIBUTION),
        keychain=KeychainHandle("flightsign-run", tmp_path / "keychains" / "flightsign-run.keychain-db", "pw"),
        output_dir=tmp_path / "out",
        project_dir=project,
    )


def test_archive_signs_with_the_run_keychain(tmp_path, build_request) -> None:
    xcodebuild = FakeXcodebuild()
    tool = XcodeBuildTool(runner=xcodebuild, profiles_dir=tmp_path / "MobileDevice")

    ipa = tool.build(build_request)

    archive, export = xcodebuild.calls
    assert archive[:3] == ["xcodebuild", "-workspace", str(build_request.project_dir / "App.xcworkspace")]
    assert archive[archive.index("-configuration") + 1] == "Release"
    assert f"OTHER_CODE_SIGN_FLAGS=--keychain {build_request.keychain.path}" in archive
    assert "CURRENT_PROJECT_VERSION=7" in archive
    assert "MARKETING_VERSION=1.2.3" in archive
    assert "PROVISIONING_PROFILE_SPECIFIER=Profile P1" in archive
    assert f"DEVELOPMENT_TEAM={TEAM_ID}" in archive
    assert export[export.index("-archivePath") + 1] == str(build_request.output_dir / "App.xcarchive")
    assert ipa == build_request.output_dir / "App.ipa"
    assert (tmp_path / "MobileDevice" / "UUID-1.mobileprovision").exists()


def test_export_options(tmp_path, build_request) -> None:
    xcodebuild = FakeXcodebuild()
    XcodeBuildTool(runner=xcodebuild, profiles_dir=tmp_path / "MobileDevice").build(build_request)

    export = xcodebuild.calls[1]
    with open(export[export.index("-exportOptionsPlist") + 1], "rb") as f:
        options = plistlib.load(f)
    assert options["method"] == "app-store"
    assert options["teamID"] == TEAM_ID
    assert options["signingStyle"] == "manual"
    assert options["signingCertificate"] == "Apple Distribution"
    assert options["provisioningProfiles"] == {APP_ID: "Profile P1"}


def test_previous_exports_are_removed(tmp_path, build_request) -> None:
    stale = write_ipa(build_request.output_dir / "Older.ipa", build="3")
    tool = XcodeBuildTool(runner=FakeXcodebuild(), profiles_dir=tmp_path / "MobileDevice")

    ipa = tool.build(build_request)

    assert ipa.name == "App.ipa"
    assert not stale.exists()


def test_failed_archive_stops_before_export(tmp_path, build_request) -> None:
    xcodebuild = FakeXcodebuild(fail_step="archive")
    tool = XcodeBuildTool(runner=xcodebuild, profiles_dir=tmp_path / "MobileDevice")
    with pytest.raises(BuildError, match="xcodebuild archive failed with status 65"):
        tool.build(build_request)
    assert len(xcodebuild.calls) == 1


def test_project_is_required(tmp_path, build_request) -> None:
    build_request.project_dir = tmp_path / "empty"
    build_request.project_dir.mkdir()
    with pytest.raises(BuildError, match="No Xcode workspace or project"):
        XcodeBuildTool(runner=FakeXcodebuild(), profiles_dir=tmp_path / "MobileDevice").build(build_request)


def test_orchestrator_audits_the_build(build_request, audit) -> None:
    result = BuildOrchestrator(FakeBuildTool(), audit).build(build_request)
    assert result.ipa_path.exists()
    assert [e.event for e in audit.entries()] == ["BUILD_STARTED", "BUILD_SUCCEEDED"]
    assert audit.entries()[0].build == "7"


def test_orchestrator_records_build_failures(build_request, audit) -> None:
    tool = FakeBuildTool(error=BuildError("archive failed"))
    with pytest.raises(BuildError):
        BuildOrchestrator(tool, audit).build(build_request)
    assert [e.event for e in audit.entries()] == ["BUILD_STARTED", "BUILD_FAILED"]
