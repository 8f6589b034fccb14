import plistlib
import subprocess
import zipfile
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from asn1crypto import cms
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from flightsign.src.apple.app_store_connect_api import RemoteBuildInfo
from flightsign.src.core.build_orchestrator import BuildRequest, BuildTool
from flightsign.src.core.errors import CertificateLimitExceededError
from flightsign.src.core.models import (
    Certificate,
    CertificateKind,
    CertificateOrigin,
    ProcessingState,
    ProvisioningProfile,
)
from flightsign.src.core.upload_manager import UploadStrategy, UploadStrategyError
from flightsign.src.utils.crypto import export_p12

TEAM_ID = "ABCDE12345"
OTHER_TEAM_ID = "ZZZZZ99999"
APP_ID = "com.acme.app"
KEY_ID = "KEY1234567"
ISSUER_ID = "69a6de70-03db-47e3-e053-5b8c7c11a4d1"


def now() -> datetime:
    return datetime.now(timezone.utc)


@lru_cache(maxsize=1)
def ca_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def issue_x509(
    public_key,
    common_name: str,
    team_id: str = TEAM_ID,
    days: int = 365,
    serial: Optional[int] = None,
) -> x509.Certificate:
    """A certificate shaped like Apple's: CN names the kind, OU holds the team"""
    subject = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, team_id),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Acme Inc"),
        ]
    )
    issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test WWDR CA")])
    if days > 0:
        start, end = now() - timedelta(days=1), now() + timedelta(days=days)
    else:
        start, end = now() - timedelta(days=400), now() + timedelta(days=days)
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(public_key)
        .serial_number(serial or x509.random_serial_number())
        .not_valid_before(start)
        .not_valid_after(end)
        .sign(ca_key(), hashes.SHA256())
    )


def common_name_for(kind: CertificateKind, team_id: str = TEAM_ID) -> str:
    label = "Development" if kind is CertificateKind.DEVELOPMENT else "Distribution"
    return f"Apple {label}: Acme Inc ({team_id})"


def write_p12(
    path: Path,
    kind: CertificateKind = CertificateKind.DEVELOPMENT,
    team_id: str = TEAM_ID,
    days: int = 365,
    password: str = "secret",
) -> str:
    """Write a key + certificate bundle and return the certificate's serial"""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    cert = issue_x509(key.public_key(), common_name_for(kind, team_id), team_id, days)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(export_p12(key, cert, password, "test"))
    return format(cert.serial_number, "X")


def write_cer(path: Path, kind: CertificateKind = CertificateKind.DISTRIBUTION, team_id: str = TEAM_ID) -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    cert = issue_x509(key.public_key(), common_name_for(kind, team_id), team_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(cert.public_bytes(serialization.Encoding.DER))
    return format(cert.serial_number, "X")


def make_certificate(
    cert_id: str,
    kind: CertificateKind = CertificateKind.DISTRIBUTION,
    days: int = 365,
    origin: CertificateOrigin = CertificateOrigin.MANUAL,
    team_id: str = TEAM_ID,
    private_key_path: Optional[Path] = None,
    created_days_ago: Optional[int] = None,
) -> Certificate:
    return Certificate(
        id=cert_id,
        kind=kind,
        team_id=team_id,
        expires_at=now() + timedelta(days=days),
        origin=origin,
        private_key_path=private_key_path,
        name=f"{kind.value} {cert_id}",
        serial_number=cert_id.encode().hex().upper(),
        created_at=(now() - timedelta(days=created_days_ago)) if created_days_ago is not None else None,
    )


def make_profile(
    profile_id: str,
    app_identifier: str = APP_ID,
    kind: str = "appstore",
    certificate_ids=("CERT1",),
    days: int = 300,
    team_id: str = TEAM_ID,
    path: Optional[Path] = None,
) -> ProvisioningProfile:
    return ProvisioningProfile(
        id=profile_id,
        name=f"Profile {profile_id}",
        kind=kind,
        app_identifier=app_identifier,
        team_id=team_id,
        expires_at=now() + timedelta(days=days),
        certificate_ids=frozenset(certificate_ids),
        device_ids=frozenset(["DEVICE1"]) if kind != "appstore" else frozenset(),
        path=path,
    )


def write_ipa(
    path: Path,
    bundle_id: str = APP_ID,
    version: str = "1.0.0",
    build: str = "1",
    signed: bool = True,
    extra_info: Optional[dict] = None,
) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    info = {
        "CFBundleIdentifier": bundle_id,
        "CFBundleShortVersionString": version,
        "CFBundleVersion": build,
        "CFBundleName": "App",
    }
    info.update(extra_info or {})
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("Payload/App.app/Info.plist", plistlib.dumps(info))
        zf.writestr("Payload/App.app/App", b"\xcf\xfa\xed\xfe" + b"\x00" * 64)
        if signed:
            zf.writestr("Payload/App.app/_CodeSignature/CodeResources", b"<plist/>")
    return path


def write_mobileprovision(path: Path, plist: dict) -> Path:
    signed = cms.SignedData(
        {
            "version": "v1",
            "digest_algorithms": [],
            "encap_content_info": {
                "content_type": "data",
                "content": plistlib.dumps(plist),
            },
            "signer_infos": [],
        }
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(cms.ContentInfo({"content_type": "signed_data", "content": signed}).dump())
    return path


class FakeSecurity:
    """Stands in for subprocess.run when the command is `security ...`"""

    def __init__(self, fail_on=(), fail_import=(), identities: str = ""):
        self.calls: List[List[str]] = []
        self.fail_on = set(fail_on)
        self.fail_import = set(fail_import)
        self.identities = identities

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        action = cmd[1]
        if action in self.fail_on:
            return subprocess.CompletedProcess(cmd, 1, "", f"{action} failed")
        if action == "import" and Path(cmd[2]).name in self.fail_import:
            return subprocess.CompletedProcess(cmd, 1, "", "MAC verification failed")
        if action == "create-keychain":
            Path(cmd[-1]).write_bytes(b"keychain")
        elif action == "delete-keychain":
            path = Path(cmd[-1])
            if path.exists():
                path.unlink()
        elif action == "find-identity":
            return subprocess.CompletedProcess(cmd, 0, self.identities, "")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def actions(self) -> List[str]:
        return [c[1] for c in self.calls]

    def commands(self, action: str) -> List[List[str]]:
        return [c for c in self.calls if c[1] == action]


class FakeAPI:
    """In-memory App Store Connect for one team"""

    def __init__(self, team_id: str = TEAM_ID):
        self.team_id = team_id
        self.certificates: Dict[str, Certificate] = {}
        self.profiles: Dict[str, ProvisioningProfile] = {}
        self.profile_contents: Dict[str, bytes] = {}
        self.bundle_ids: Dict[str, str] = {}
        self.devices = ["DEVICE1"]
        self.latest: Optional[RemoteBuildInfo] = RemoteBuildInfo("APP1", 0, None)
        self.latest_error: Optional[Exception] = None
        self.create_errors: List[Exception] = []
        self.revoke_error: Optional[Exception] = None
        self.states: List[object] = [ProcessingState.VALID]
        self.created: List[Certificate] = []
        self.created_profiles: List[ProvisioningProfile] = []
        self.revoked: List[str] = []
        self.polls = 0

    def add(self, certificate: Certificate) -> Certificate:
        self.certificates[certificate.id] = certificate
        return certificate

    def live(self, kind: CertificateKind) -> List[Certificate]:
        return [c for c in self.certificates.values() if c.kind is kind and not c.is_expired()]

    # Certificates

    def list_certificates(self) -> List[Certificate]:
        return list(self.certificates.values())

    def create_certificate(self, kind: CertificateKind, csr_pem: str):
        if self.create_errors:
            raise self.create_errors.pop(0)
        if len(self.live(kind)) >= kind.quota:
            raise CertificateLimitExceededError(
                f"You already have a current {kind.value} certificate or a pending request"
            )
        csr = x509.load_pem_x509_csr(csr_pem.encode())
        cert = issue_x509(csr.public_key(), common_name_for(kind, self.team_id), self.team_id)
        certificate = Certificate(
            id=f"NEW{len(self.created) + 1}",
            kind=kind,
            team_id=self.team_id,
            expires_at=cert.not_valid_after_utc,
            name=common_name_for(kind, self.team_id),
            serial_number=format(cert.serial_number, "X"),
        )
        self.certificates[certificate.id] = certificate
        self.created.append(certificate)
        return certificate, cert.public_bytes(serialization.Encoding.DER)

    def revoke_certificate(self, certificate_id: str) -> None:
        if self.revoke_error:
            raise self.revoke_error
        self.revoked.append(certificate_id)
        self.certificates.pop(certificate_id, None)

    # Bundle ids, devices, profiles

    def find_bundle_id(self, identifier: str) -> Optional[str]:
        return self.bundle_ids.get(identifier)

    def register_bundle_id(self, identifier: str, name: str) -> str:
        ref = f"BUNDLE{len(self.bundle_ids) + 1}"
        self.bundle_ids[identifier] = ref
        return ref

    def list_devices(self) -> List[str]:
        return list(self.devices)

    def list_profiles(self) -> List[ProvisioningProfile]:
        return list(self.profiles.values())

    def create_profile(self, name, kind, bundle_id_ref, app_identifier, certificate_ids, device_ids):
        profile_id = f"PROFILE{len(self.created_profiles) + 1}"
        profile = ProvisioningProfile(
            id=profile_id,
            name=name,
            kind=kind,
            app_identifier=app_identifier,
            team_id=self.team_id,
            expires_at=now() + timedelta(days=365),
            certificate_ids=frozenset(certificate_ids),
            device_ids=frozenset(device_ids) if kind.uses_devices else frozenset(),
        )
        content = f"profile {profile_id}".encode()
        self.profiles[profile_id] = profile
        self.profile_contents[profile_id] = content
        self.created_profiles.append(profile)
        return profile, content

    def download_profile(self, profile_id: str) -> bytes:
        return self.profile_contents.get(profile_id, f"profile {profile_id}".encode())

    # Builds

    def latest_build(self, app_identifier: str) -> Optional[RemoteBuildInfo]:
        if self.latest_error:
            raise self.latest_error
        return self.latest

    def get_build_processing_state(self, build) -> ProcessingState:
        self.polls += 1
        item = self.states.pop(0) if len(self.states) > 1 else self.states[0]
        if isinstance(item, Exception):
            raise item
        return item


class FakeClock:
    def __init__(self):
        self.t = 0.0
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.t

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += seconds


class FakeStrategy(UploadStrategy):
    def __init__(self, name: str, failures: int = 0, retryable: bool = True):
        self.name = name
        self.failures = failures
        self.retryable = retryable
        self.calls = 0

    def upload(self, ipa_path, credentials, timeout) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise UploadStrategyError(f"{self.name} lost the connection", retryable=self.retryable)


class FakeBuildTool(BuildTool):
    name = "fake-xcodebuild"

    def __init__(
        self,
        error: Optional[BaseException] = None,
        bundle_id: Optional[str] = None,
        extra_info: Optional[dict] = None,
    ):
        self.error = error
        self.bundle_id = bundle_id
        self.extra_info = extra_info
        self.requests: List[BuildRequest] = []

    def build(self, request: BuildRequest) -> Path:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return write_ipa(
            Path(request.output_dir) / f"{request.scheme}.ipa",
            self.bundle_id or request.app_identifier,
            str(request.version),
            str(request.build_number),
            extra_info=self.extra_info,
        )
