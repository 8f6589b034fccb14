from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from flightsign.logger import get_console
from flightsign.src.core.errors import CertificateLimitExceededError
from flightsign.src.core.models import (
    Certificate,
    CertificateKind,
    CertificateOrigin,
    ProfileKind,
    ProvisioningProfile,
    utc_now,
)
from flightsign.src.ipa.provisioning_profile_analyser import load_profile
from flightsign.src.utils.crypto import describe_certificate, load_certificate_file


class CredentialStore:
    """Certificates and provisioning profiles known for a single team"""

    def __init__(self, team_id: str, clock: Callable[[], datetime] = utc_now):
        self.team_id = team_id
        self.clock = clock
        self.console = get_console()
        self._certificates: Dict[str, Certificate] = {}
        self._profiles: Dict[str, ProvisioningProfile] = {}

    # Certificates

    def add_certificate(self, certificate: Certificate) -> None:
        if certificate.team_id != self.team_id:
            raise ValueError(
                f"Certificate {certificate.id} belongs to team {certificate.team_id}, "
                f"not {self.team_id}"
            )
        if not certificate.is_expired(self.clock()):
            live = [
                c
                for c in self.valid_certificates(certificate.kind)
                if c.id != certificate.id
            ]
            if len(live) >= certificate.kind.quota:
                raise CertificateLimitExceededError(
                    f"Team {self.team_id} already has {len(live)} valid "
                    f"{certificate.kind.value} certificates "
                    f"(limit {certificate.kind.quota})"
                )
        self._certificates[certificate.id] = certificate

    def remove_certificate(self, certificate_id: str) -> Optional[Certificate]:
        return self._certificates.pop(certificate_id, None)

    def get_certificate(self, certificate_id: str) -> Optional[Certificate]:
        return self._certificates.get(certificate_id)

    def certificates(self, kind: Optional[CertificateKind] = None) -> List[Certificate]:
        return [
            c for c in self._certificates.values() if kind is None or c.kind is kind
        ]

    def valid_certificates(self, kind: CertificateKind) -> List[Certificate]:
        """Non-expired certificates of `kind`, most recently issued first"""
        now = self.clock()
        valid = [c for c in self.certificates(kind) if not c.is_expired(now)]
        return sorted(valid, key=lambda c: c.issue_order_key, reverse=True)

    def expired_certificates(self) -> List[Certificate]:
        now = self.clock()
        return [c for c in self._certificates.values() if c.is_expired(now)]

    def is_at_quota(self, kind: CertificateKind) -> bool:
        return len(self.valid_certificates(kind)) >= kind.quota

    # Profiles

    def add_profile(self, profile: ProvisioningProfile) -> None:
        if profile.team_id != self.team_id:
            raise ValueError(
                f"Profile {profile.name} belongs to team {profile.team_id}, "
                f"not {self.team_id}"
            )
        self._profiles[profile.id] = profile

    def profiles(self, kind: Optional[ProfileKind] = None) -> List[ProvisioningProfile]:
        return [p for p in self._profiles.values() if kind is None or p.kind is kind]

    # Remote state

    def merge_remote(
        self,
        certificates: Iterable[Certificate],
        profiles: Iterable[ProvisioningProfile] = (),
    ) -> None:
        """Adopt App Store Connect's view of the team.

        The remote certificate list is authoritative: local certificates the
        remote no longer knows about (revoked elsewhere) are dropped. Key
        material found locally is carried over to the matching remote entry.
        """
        local_by_serial = {
            c.serial_number.upper(): c
            for c in self._certificates.values()
            if c.serial_number
        }
        merged: Dict[str, Certificate] = {}
        for remote in certificates:
            if remote.team_id != self.team_id:
                continue
            local = local_by_serial.pop(remote.serial_number.upper(), None)
            if local is None:
                local = self._certificates.get(remote.id)
            if local and local.private_key_path and not remote.private_key_path:
                origin = (
                    remote.origin
                    if remote.origin is CertificateOrigin.API_CREATED
                    else local.origin
                )
                remote = Certificate(
                    id=remote.id,
                    kind=remote.kind,
                    team_id=remote.team_id,
                    expires_at=remote.expires_at,
                    origin=origin,
                    private_key_path=local.private_key_path,
                    name=remote.name or local.name,
                    serial_number=remote.serial_number,
                    created_at=remote.created_at or local.created_at,
                )
            merged[remote.id] = remote

        for stale in local_by_serial.values():
            if stale.id not in merged:
                self.console.log(
                    f"[yellow]Ignoring local certificate {stale.name or stale.id}: "
                    f"not present in App Store Connect"
                )
        self._certificates = merged

        for profile in profiles:
            if profile.team_id == self.team_id:
                self._profiles[profile.id] = profile

    # Disk

    @classmethod
    def load(
        cls,
        team_dir: Path,
        team_id: str,
        p12_password: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "CredentialStore":
        """Build a store from `{team_dir}/certificates` and `{team_dir}/profiles`"""
        store = cls(team_id, clock=clock)
        cert_dir = Path(team_dir) / "certificates"
        profile_dir = Path(team_dir) / "profiles"

        if cert_dir.exists():
            for path in sorted(cert_dir.iterdir()):
                if path.suffix.lower() not in (".p12", ".cer"):
                    continue
                certificate = store._certificate_from_file(path, p12_password)
                if certificate is None:
                    continue
                try:
                    store.add_certificate(certificate)
                except CertificateLimitExceededError:
                    store.console.log(
                        f"[yellow]Skipping {path.name}: more local "
                        f"{certificate.kind.value} certificates than Apple allows"
                    )

        if profile_dir.exists():
            for path in sorted(profile_dir.glob("*.mobileprovision")):
                try:
                    profile = load_profile(path)
                except Exception as e:
                    store.console.log(f"[yellow]Could not read profile {path.name}: {e}")
                    continue
                if profile.team_id != team_id:
                    store.console.log(
                        f"[yellow]Skipping profile {path.name} from team {profile.team_id}"
                    )
                    continue
                store.add_profile(profile)

        store.console.log(
            f"[blue]Loaded {len(store.certificates())} certificates and "
            f"{len(store.profiles())} profiles for team {team_id}"
        )
        return store

    def _certificate_from_file(
        self, path: Path, p12_password: Optional[str]
    ) -> Optional[Certificate]:
        try:
            x509_cert, has_key = load_certificate_file(path, p12_password)
            info = describe_certificate(x509_cert, has_key)
            kind = CertificateKind.parse(info.common_name or path.stem)
        except Exception as e:
            self.console.log(f"[yellow]Could not read certificate {path.name}: {e}")
            return None

        if info.team_id and info.team_id != self.team_id:
            self.console.log(
                f"[yellow]Skipping {path.name}: issued to team {info.team_id}"
            )
            return None

        return Certificate(
            id=info.serial_number,
            kind=kind,
            team_id=self.team_id,
            expires_at=info.not_after,
            origin=CertificateOrigin.IMPORTED,
            private_key_path=path if info.has_private_key else None,
            name=info.common_name,
            serial_number=info.serial_number,
            created_at=info.not_before,
        )
