from dataclasses import replace
from pathlib import Path
from typing import Iterable, List, Optional

import requests

from flightsign.logger import get_console
from flightsign.src.apple.app_store_connect_api import (
    AppStoreConnectAPI,
    AppStoreConnectError,
)
from flightsign.src.core.audit_log import AuditLog
from flightsign.src.core.credential_store import CredentialStore
from flightsign.src.core.errors import ProvisioningProfileCreationError
from flightsign.src.core.models import (
    Certificate,
    ProfileKind,
    ProvisioningProfile,
)
from flightsign.src.core.result import Err, Ok, Result
from flightsign.src.utils.config_loader import TeamPaths


def kind_for_configuration(configuration: str) -> ProfileKind:
    """debug -> development, release -> appstore, ad-hoc -> adhoc"""
    return ProfileKind.for_configuration(configuration)


def certificate_keys(certificates: Iterable[Certificate]) -> set:
    """Ids and serial numbers; local profiles reference certificates by serial"""
    keys = set()
    for certificate in certificates:
        keys.add(certificate.id)
        if certificate.serial_number:
            keys.add(certificate.serial_number.upper())
    return keys


class ProvisioningProfileManager:
    """Reuses a matching profile when one exists, creates one when it does not"""

    def __init__(
        self,
        store: CredentialStore,
        api: AppStoreConnectAPI,
        paths: TeamPaths,
        audit: AuditLog,
        app_identifier: str = "-",
    ):
        self.console = get_console()
        self.store = store
        self.api = api
        self.paths = paths
        self.audit = audit
        self.app_identifier = app_identifier

    def refresh_remote(self) -> None:
        for profile in self.api.list_profiles():
            self.store.add_profile(profile)

    def covering_profiles(
        self, team_id: str, app_identifier: str, kind: Optional[ProfileKind] = None
    ) -> List[ProvisioningProfile]:
        return [
            p
            for p in self.store.profiles(kind)
            if p.team_id == team_id and p.covers(app_identifier)
        ]

    def find_reusable(
        self,
        team_id: str,
        app_identifier: str,
        kind: ProfileKind,
        certificates: Iterable[Certificate],
    ) -> Result[ProvisioningProfile, str]:
        covering = self.covering_profiles(team_id, app_identifier, kind)
        if not covering:
            return Err(f"no {kind.value} profile covers {app_identifier}")

        available = certificate_keys(certificates)
        now = self.store.clock()
        usable = [p for p in covering if p.is_usable_for(team_id, available, now)]
        if not usable:
            return Err(
                f"{len(covering)} {kind.value} profiles cover {app_identifier} but none "
                "is current and signed by an available certificate"
            )

        # Exact identifiers beat wildcards, then the longest remaining validity wins
        usable.sort(key=lambda p: (not p.is_wildcard, p.expires_at), reverse=True)
        return Ok(usable[0])

    def ensure_valid(
        self,
        team_id: str,
        app_identifier: str,
        kind: ProfileKind,
        certificates: Iterable[Certificate],
    ) -> ProvisioningProfile:
        kind = ProfileKind.parse(kind)
        certificates = list(certificates)

        lookup = self.find_reusable(team_id, app_identifier, kind, certificates)
        if lookup.is_ok():
            profile = self.install(lookup.unwrap())
            self.console.log(f"[green]Reusing {kind.value} profile:[/] {profile.name}")
            self.audit.record("PROFILE_REUSED", app_identifier, None, None, f"{kind.value} {profile.name}")
            return profile

        self.console.log(f"[yellow]{lookup.error}, creating a new profile")
        return self._create(team_id, app_identifier, kind, certificates)

    def _create(
        self,
        team_id: str,
        app_identifier: str,
        kind: ProfileKind,
        certificates: List[Certificate],
    ) -> ProvisioningProfile:
        required = kind.required_certificate_kind
        now = self.store.clock()
        matching = sorted(
            (
                c
                for c in certificates
                if c.kind is required and c.team_id == team_id and not c.is_expired(now)
            ),
            key=lambda c: c.issue_order_key,
            reverse=True,
        )
        if not matching:
            self.audit.record("PROFILE_FAILED", app_identifier, None, None, f"{kind.value} no {required.value} certificate", "error")
            raise ProvisioningProfileCreationError(
                f"No valid {required.value} certificate to build a {kind.value} profile for {app_identifier}"
            )
        certificate = matching[0]

        name = f"FlightSign {app_identifier} {kind.value} {now:%Y%m%d%H%M%S}"
        try:
            bundle_ref = self.api.find_bundle_id(app_identifier)
            if bundle_ref is None:
                bundle_ref = self.api.register_bundle_id(
                    app_identifier, app_identifier.replace(".", " ")
                )
            devices = self.api.list_devices() if kind.uses_devices else []
            if kind.uses_devices and not devices:
                raise ProvisioningProfileCreationError(
                    f"A {kind.value} profile needs at least one registered device",
                    "Register a device in the Apple Developer portal and try again.",
                )
            profile, content = self.api.create_profile(
                name, kind, bundle_ref, app_identifier, [certificate.id], devices
            )
        except (AppStoreConnectError, requests.RequestException) as e:
            self.audit.record("PROFILE_FAILED", app_identifier, None, None, f"{kind.value} {e}", "error")
            raise ProvisioningProfileCreationError(
                f"Could not create {kind.value} profile for {app_identifier}: {e}"
            )

        profile = replace(profile, path=self._write(profile, content))
        self.store.add_profile(profile)
        self.console.log(f"[green]Created {kind.value} profile:[/] {profile.name}")
        self.audit.record("PROFILE_CREATED", app_identifier, None, None, f"{kind.value} {profile.name} freshly created")
        return profile

    def _write(self, profile: ProvisioningProfile, content: bytes) -> Path:
        self.paths.profiles_dir.mkdir(parents=True, exist_ok=True)
        path = self.paths.profiles_dir / profile.expected_filename()
        path.write_bytes(content)
        return path

    def install(self, profile: ProvisioningProfile) -> ProvisioningProfile:
        """Make sure the profile exists on disk for the build tool"""
        if profile.path and profile.path.exists():
            return profile
        try:
            content = self.api.download_profile(profile.id)
        except (AppStoreConnectError, requests.RequestException) as e:
            raise ProvisioningProfileCreationError(
                f"Could not download profile {profile.name}: {e}"
            )
        installed = replace(profile, path=self._write(profile, content))
        self.store.add_profile(installed)
        return installed
