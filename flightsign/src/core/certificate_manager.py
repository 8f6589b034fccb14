import os
import time
from dataclasses import replace
from typing import Callable, List, Optional, Set, Tuple

import requests

from flightsign.logger import get_console
from flightsign.src.apple.app_store_connect_api import (
    AppStoreConnectAPI,
    AppStoreConnectError,
)
from flightsign.src.core.audit_log import AuditLog
from flightsign.src.core.credential_store import CredentialStore
from flightsign.src.core.errors import (
    CertificateLimitExceededError,
    InvalidCertificateError,
)
from flightsign.src.core.keychain import EphemeralKeychainManager, KeychainHandle
from flightsign.src.core.models import (
    Certificate,
    CertificateKind,
    CertificateOrigin,
    HealthStatus,
)
from flightsign.src.utils.config_loader import TeamEnv, TeamPaths
from flightsign.src.utils.crypto import (
    build_csr,
    export_p12,
    generate_private_key,
    load_der_or_pem,
)
from flightsign.src.utils.retry import retry_call

CREATED_IDS_KEY = "API_CREATED_CERTIFICATES"


class CertificateLifecycleManager:
    """Keeps one usable certificate per kind without breaching Apple's quota"""

    def __init__(
        self,
        store: CredentialStore,
        api: AppStoreConnectAPI,
        keychains: EphemeralKeychainManager,
        paths: TeamPaths,
        audit: AuditLog,
        p12_password: str = "",
        app_identifier: str = "-",
        retry_delay: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.console = get_console()
        self.store = store
        self.api = api
        self.keychains = keychains
        self.paths = paths
        self.env = TeamEnv(paths.config_env)
        self.audit = audit
        self.p12_password = p12_password
        self.app_identifier = app_identifier
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.handle: Optional[KeychainHandle] = None

    def attach(self, handle: KeychainHandle) -> None:
        """New certificates get imported into this keychain"""
        self.handle = handle

    def _audit(self, event: str, status: str, level: str = "info") -> None:
        self.audit.record(event, self.app_identifier, None, None, status, level)

    def _created_ids(self) -> Set[str]:
        raw = self.env.get(CREATED_IDS_KEY, "") or ""
        return {i for i in raw.split(",") if i}

    def _remember_created(self, certificate_id: str) -> None:
        ids = self._created_ids() | {certificate_id}
        self.env.set(CREATED_IDS_KEY, ",".join(sorted(ids)))

    def refresh_remote(self) -> None:
        """Replace the store's certificates with App Store Connect's list"""
        created = self._created_ids()
        remote = [
            replace(c, origin=CertificateOrigin.API_CREATED) if c.id in created else c
            for c in self.api.list_certificates()
        ]
        self.store.merge_remote(remote)

    def cleanup_candidates(self, kind: CertificateKind) -> List[Certificate]:
        """Certificates we would revoke first: ours before anyone else's, oldest first"""
        valid = self.store.valid_certificates(kind)
        return sorted(
            valid,
            key=lambda c: (c.origin is not CertificateOrigin.API_CREATED, c.expires_at),
        )

    def _cleanup_one(self, kind: CertificateKind) -> Optional[Certificate]:
        candidates = self.cleanup_candidates(kind)
        if not candidates:
            return None
        victim = candidates[0]
        self.console.log(
            f"[yellow]Team is at the {kind.value} limit ({kind.quota}), revoking "
            f"{victim.name or victim.id} ({victim.origin.value}, expires {victim.expires_at:%Y-%m-%d})"
        )
        try:
            self.api.revoke_certificate(victim.id)
        except (AppStoreConnectError, requests.RequestException) as e:
            # Creation is still attempted; Apple will refuse it if we really are full
            self.console.log(f"[red]Could not revoke {victim.id}:[/] {e}")
            self._audit("CERTIFICATE_CLEANUP", f"FAILED {victim.id}: {e}", "warning")
            return None

        self.store.remove_certificate(victim.id)
        self._remove_local_file(victim)
        self._audit("CERTIFICATE_CLEANUP", f"REVOKED {kind.value} {victim.id} ({victim.origin.value})")
        return victim

    def _remove_local_file(self, certificate: Certificate) -> None:
        path = certificate.private_key_path
        if path and path.parent == self.paths.certificates_dir and path.exists():
            path.unlink()

    def _create_remote(self, kind: CertificateKind, team_id: str) -> Tuple[object, Certificate, bytes]:
        def attempt():
            key = generate_private_key()
            csr = build_csr(key, f"FlightSign {kind.value} {team_id}")
            certificate, der = self.api.create_certificate(kind, csr)
            return key, certificate, der

        try:
            return retry_call(
                attempt,
                attempts=2,
                base_delay=self.retry_delay,
                retry_on=(AppStoreConnectError, requests.RequestException),
                sleep=self.sleep,
                description=f"Create {kind.value} certificate",
            )
        except (AppStoreConnectError, requests.RequestException) as e:
            raise InvalidCertificateError(
                f"Could not create a {kind.value} certificate: {e}"
            )

    def _persist(self, key, certificate: Certificate, der: bytes) -> Certificate:
        self.paths.certificates_dir.mkdir(parents=True, exist_ok=True)
        p12_path = self.paths.certificates_dir / f"{certificate.kind.value}_{certificate.id}.p12"
        p12_path.write_bytes(
            export_p12(key, load_der_or_pem(der), self.p12_password, certificate.name or certificate.id)
        )
        os.chmod(p12_path, 0o600)
        return replace(
            certificate,
            origin=CertificateOrigin.API_CREATED,
            private_key_path=p12_path,
            created_at=self.store.clock(),
        )

    def ensure_valid(
        self, team_id: str, kind: CertificateKind, require_private_key: bool = True
    ) -> Certificate:
        """Return a usable certificate of `kind`, creating one if needed.

        With `require_private_key` only certificates whose key we hold count as
        usable, since a certificate without its key cannot sign anything.
        """
        if team_id != self.store.team_id:
            raise ValueError(f"Store holds team {self.store.team_id}, not {team_id}")
        kind = CertificateKind.parse(kind)

        valid = self.store.valid_certificates(kind)
        usable = [c for c in valid if c.private_key_path or not require_private_key]
        if usable:
            chosen = usable[0]
            self.console.log(f"[green]Using existing {kind.value} certificate:[/] {chosen.name or chosen.id}")
            self._audit("CERTIFICATE_REUSED", f"{kind.value} {chosen.id}")
            return chosen

        cleaned = False
        if self.store.is_at_quota(kind):
            self._cleanup_one(kind)
            cleaned = True

        try:
            key, certificate, der = self._create_remote(kind, team_id)
        except CertificateLimitExceededError:
            if cleaned:
                self._audit("CERTIFICATE_LIMIT", f"{kind.value} still at limit after cleanup", "error")
                raise
            # Someone else filled the quota since we last looked
            self.refresh_remote()
            self._cleanup_one(kind)
            try:
                key, certificate, der = self._create_remote(kind, team_id)
            except CertificateLimitExceededError:
                self._audit("CERTIFICATE_LIMIT", f"{kind.value} still at limit after cleanup", "error")
                raise

        certificate = self._persist(key, certificate, der)
        self._remember_created(certificate.id)
        if self.store.is_at_quota(kind):
            # Apple accepted the new certificate, so our view of the team is stale
            self.refresh_remote()
        self.store.add_certificate(certificate)

        if self.handle is not None:
            self.keychains.import_certificate(self.handle, certificate.private_key_path, self.p12_password)

        self.console.log(f"[green]Created {kind.value} certificate:[/] {certificate.id}")
        self._audit("CERTIFICATE_CREATED", f"{kind.value} {certificate.id}")
        return certificate

    def sweep_expired(self) -> List[Certificate]:
        """Drop expired certificates from the store and the certificates directory"""
        expired = self.store.expired_certificates()
        for certificate in expired:
            self.store.remove_certificate(certificate.id)
            self._remove_local_file(certificate)
            self._audit("CERTIFICATE_EXPIRED", f"{certificate.kind.value} {certificate.id}", "warning")
        return expired

    def health_report(self) -> List[Tuple[Certificate, HealthStatus]]:
        now = self.store.clock()
        return [
            (c, c.health_status(now))
            for c in sorted(self.store.certificates(), key=lambda c: (c.kind.value, c.expires_at))
        ]
