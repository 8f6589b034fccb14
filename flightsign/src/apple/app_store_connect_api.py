import base64
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

import requests

from flightsign.logger import get_console
from flightsign.src.core.errors import (
    AuthenticationError,
    CertificateLimitExceededError,
    RemoteServiceError,
)
from flightsign.src.core.models import (
    Certificate,
    CertificateKind,
    CertificateOrigin,
    MarketingVersion,
    ProcessingState,
    ProfileKind,
    ProvisioningProfile,
    parse_timestamp,
)
from flightsign.src.utils.retry import TransientHTTPError, retry_call

console = get_console()

BASE_URL = "https://api.appstoreconnect.apple.com/v1"
REQUEST_TIMEOUT = 30

CERTIFICATE_TYPES = {
    "IOS_DEVELOPMENT": CertificateKind.DEVELOPMENT,
    "DEVELOPMENT": CertificateKind.DEVELOPMENT,
    "IOS_DISTRIBUTION": CertificateKind.DISTRIBUTION,
    "DISTRIBUTION": CertificateKind.DISTRIBUTION,
}

PROFILE_TYPES = {
    "IOS_APP_DEVELOPMENT": ProfileKind.DEVELOPMENT,
    "IOS_APP_ADHOC": ProfileKind.ADHOC,
    "IOS_APP_STORE": ProfileKind.APPSTORE,
}


class AppStoreConnectError(RemoteServiceError):
    """Non-success response from App Store Connect, or no response at all (status 0)"""

    def __init__(self, status_code: int, message: str):
        if status_code:
            super().__init__(f"App Store Connect returned {status_code}: {message}")
        else:
            super().__init__(f"Could not reach App Store Connect: {message}")
        self.status_code = status_code
        self.detail = message


@dataclass
class RemoteBuildInfo:
    """Highest build number and marketing version App Store Connect knows for an app"""

    app_id: str
    latest_build_number: int
    latest_version: Optional[str]


@dataclass(frozen=True)
class BuildRef:
    app_identifier: str
    version: str
    build_number: int


def _error_detail(response: requests.Response) -> str:
    try:
        errors = response.json().get("errors", [])
    except ValueError:
        return response.text[:300]
    return "; ".join(e.get("detail") or e.get("title", "") for e in errors) or response.reason


class AppStoreConnectAPI:
    """App Store Connect API client for one team"""

    def __init__(self, auth, team_id: str, attempts: int = 3, sleep=None):
        """Initialize with an ApiKeyAuth; the key already scopes calls to one team"""
        self.auth = auth
        self.session = auth.session
        self.team_id = team_id
        self.attempts = attempts
        self._retry_kwargs = {"sleep": sleep} if sleep else {}
        self._profile_contents: Dict[str, bytes] = {}
        self._app_ids: Dict[str, str] = {}

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
    ) -> requests.Response:
        url = path if path.startswith("http") else f"{BASE_URL}{path}"

        def send() -> requests.Response:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json,
                headers=self.auth.headers(),
                timeout=REQUEST_TIMEOUT,
            )
            if response.status_code == 429 or response.status_code >= 500:
                raise TransientHTTPError(response.status_code, response.text)
            return response

        try:
            response = retry_call(
                send,
                attempts=self.attempts,
                description=f"{method} {path}",
                **self._retry_kwargs,
            )
        except TransientHTTPError as e:
            raise AppStoreConnectError(e.status_code, str(e))
        except requests.RequestException as e:
            raise AppStoreConnectError(0, str(e))

        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"App Store Connect rejected the API key ({response.status_code}): "
                f"{_error_detail(response)}"
            )
        if response.status_code >= 400:
            raise AppStoreConnectError(response.status_code, _error_detail(response))
        return response

    def _paginate(self, path: str, params: Optional[dict] = None) -> Iterator[Tuple[dict, List[dict]]]:
        """Yield (resource, included) for every item across all pages"""
        next_url: Optional[str] = path
        while next_url:
            response = self._request("GET", next_url, params=params)
            body = response.json()
            included = body.get("included", [])
            for item in body.get("data", []):
                yield item, included
            next_url = body.get("links", {}).get("next")
            # The next link already carries the query string
            params = None

    # Certificates

    def _certificate_from_resource(self, item: dict) -> Optional[Certificate]:
        attrs = item["attributes"]
        kind = CERTIFICATE_TYPES.get(attrs.get("certificateType", ""))
        if kind is None or not attrs.get("expirationDate"):
            return None
        return Certificate(
            id=item["id"],
            kind=kind,
            team_id=self.team_id,
            expires_at=parse_timestamp(attrs["expirationDate"]),
            origin=CertificateOrigin.MANUAL,
            name=attrs.get("displayName") or attrs.get("name", ""),
            serial_number=(attrs.get("serialNumber") or "").upper(),
        )

    def list_certificates(self) -> List[Certificate]:
        """List iOS signing certificates for the team"""
        console.log(f"[blue]Fetching certificates for team {self.team_id}...")
        certificates = []
        for item, _ in self._paginate("/certificates", {"limit": 200}):
            certificate = self._certificate_from_resource(item)
            if certificate:
                certificates.append(certificate)
        console.log(f"[green]Found {len(certificates)} iOS certificates")
        return certificates

    def create_certificate(self, kind: CertificateKind, csr_pem: str) -> Tuple[Certificate, bytes]:
        """Submit a CSR; returns the new certificate and its DER content"""
        console.log(f"[blue]Requesting new {kind.value} certificate...")
        payload = {
            "data": {
                "type": "certificates",
                "attributes": {"certificateType": kind.api_type, "csrContent": csr_pem},
            }
        }
        try:
            response = self._request("POST", "/certificates", json=payload)
        except AppStoreConnectError as e:
            detail = e.detail.lower()
            if e.status_code == 409 and ("limit" in detail or "maximum" in detail or "already have" in detail):
                raise CertificateLimitExceededError(
                    f"Apple refused a new {kind.value} certificate: {e.detail}"
                )
            raise

        item = response.json()["data"]
        certificate = self._certificate_from_resource(item)
        if certificate is None:
            raise AppStoreConnectError(response.status_code, "Unexpected certificate payload")
        content = base64.b64decode(item["attributes"]["certificateContent"])
        return certificate, content

    def revoke_certificate(self, certificate_id: str) -> None:
        console.log(f"[yellow]Revoking certificate {certificate_id}")
        self._request("DELETE", f"/certificates/{certificate_id}")

    # Bundle ids and devices

    def find_bundle_id(self, identifier: str) -> Optional[str]:
        for item, _ in self._paginate(
            "/bundleIds", {"filter[identifier]": identifier, "limit": 200}
        ):
            if item["attributes"].get("identifier") == identifier:
                return item["id"]
        return None

    def register_bundle_id(self, identifier: str, name: str) -> str:
        console.log(f"[blue]Registering bundle id {identifier}")
        payload = {
            "data": {
                "type": "bundleIds",
                "attributes": {"identifier": identifier, "name": name, "platform": "IOS"},
            }
        }
        return self._request("POST", "/bundleIds", json=payload).json()["data"]["id"]

    def list_devices(self) -> List[str]:
        return [
            item["id"]
            for item, _ in self._paginate(
                "/devices", {"filter[status]": "ENABLED", "limit": 200}
            )
        ]

    # Profiles

    def _profile_from_resource(self, item: dict, bundle_identifiers: Dict[str, str]) -> Optional[ProvisioningProfile]:
        attrs = item["attributes"]
        kind = PROFILE_TYPES.get(attrs.get("profileType", ""))
        if kind is None or attrs.get("profileState") != "ACTIVE":
            return None

        relationships = item.get("relationships", {})
        bundle_ref = (relationships.get("bundleId", {}).get("data") or {}).get("id")
        app_identifier = bundle_identifiers.get(bundle_ref)
        if not app_identifier:
            return None

        def related_ids(name: str) -> frozenset:
            return frozenset(r["id"] for r in relationships.get(name, {}).get("data") or [])

        if attrs.get("profileContent"):
            self._profile_contents[item["id"]] = base64.b64decode(attrs["profileContent"])

        return ProvisioningProfile(
            id=item["id"],
            name=attrs.get("name", ""),
            kind=kind,
            app_identifier=app_identifier,
            team_id=self.team_id,
            expires_at=parse_timestamp(attrs["expirationDate"]),
            certificate_ids=related_ids("certificates"),
            device_ids=related_ids("devices"),
        )

    def list_profiles(self) -> List[ProvisioningProfile]:
        """List active iOS app profiles with their bundle id and certificates"""
        console.log(f"[blue]Fetching profiles for team {self.team_id}...")
        params = {
            "include": "bundleId,certificates,devices",
            "limit": 200,
            "limit[certificates]": 50,
            "limit[devices]": 50,
        }
        profiles = []
        for item, included in self._paginate("/profiles", params):
            bundle_identifiers = {
                inc["id"]: inc["attributes"].get("identifier")
                for inc in included
                if inc.get("type") == "bundleIds"
            }
            profile = self._profile_from_resource(item, bundle_identifiers)
            if profile:
                profiles.append(profile)
        console.log(f"[green]Found {len(profiles)} active iOS profiles")
        return profiles

    def create_profile(
        self,
        name: str,
        kind: ProfileKind,
        bundle_id_ref: str,
        app_identifier: str,
        certificate_ids: List[str],
        device_ids: List[str],
    ) -> Tuple[ProvisioningProfile, bytes]:
        console.log(f"[blue]Creating {kind.value} profile {name}")
        relationships = {
            "bundleId": {"data": {"type": "bundleIds", "id": bundle_id_ref}},
            "certificates": {
                "data": [{"type": "certificates", "id": c} for c in certificate_ids]
            },
        }
        if kind.uses_devices:
            relationships["devices"] = {
                "data": [{"type": "devices", "id": d} for d in device_ids]
            }
        payload = {
            "data": {
                "type": "profiles",
                "attributes": {"name": name, "profileType": kind.api_type},
                "relationships": relationships,
            }
        }
        item = self._request("POST", "/profiles", json=payload).json()["data"]
        attrs = item["attributes"]
        content = base64.b64decode(attrs["profileContent"])
        self._profile_contents[item["id"]] = content
        profile = ProvisioningProfile(
            id=item["id"],
            name=attrs.get("name", name),
            kind=kind,
            app_identifier=app_identifier,
            team_id=self.team_id,
            expires_at=parse_timestamp(attrs["expirationDate"]),
            certificate_ids=frozenset(certificate_ids),
            device_ids=frozenset(device_ids) if kind.uses_devices else frozenset(),
        )
        return profile, content

    def download_profile(self, profile_id: str) -> bytes:
        if profile_id not in self._profile_contents:
            attrs = self._request("GET", f"/profiles/{profile_id}").json()["data"]["attributes"]
            self._profile_contents[profile_id] = base64.b64decode(attrs["profileContent"])
        return self._profile_contents[profile_id]

    # Apps and builds

    def find_app_id(self, app_identifier: str) -> Optional[str]:
        if app_identifier not in self._app_ids:
            response = self._request(
                "GET", "/apps", params={"filter[bundleId]": app_identifier, "limit": 10}
            )
            for item in response.json().get("data", []):
                if item["attributes"].get("bundleId") == app_identifier:
                    self._app_ids[app_identifier] = item["id"]
                    break
        return self._app_ids.get(app_identifier)

    def latest_build(self, app_identifier: str) -> Optional[RemoteBuildInfo]:
        """Highest build number across recent uploads, or None if nothing was uploaded"""
        app_id = self.find_app_id(app_identifier)
        if app_id is None:
            console.log(f"[yellow]No App Store Connect record for {app_identifier}")
            return None

        response = self._request(
            "GET",
            "/builds",
            params={
                "filter[app]": app_id,
                "sort": "-uploadedDate",
                "include": "preReleaseVersion",
                "fields[builds]": "version,uploadedDate,processingState,preReleaseVersion",
                "limit": 200,
            },
        )
        body = response.json()
        versions = {
            inc["id"]: inc["attributes"].get("version")
            for inc in body.get("included", [])
            if inc.get("type") == "preReleaseVersions"
        }

        best_build = 0
        marketing_versions = []
        for item in body.get("data", []):
            try:
                best_build = max(best_build, int(item["attributes"].get("version", "0")))
            except ValueError:
                # Non-integer build strings such as "1.2.3" are compared on their last part
                tail = str(item["attributes"].get("version", "")).split(".")[-1]
                if tail.isdigit():
                    best_build = max(best_build, int(tail))
            ref = (item.get("relationships", {}).get("preReleaseVersion", {}).get("data") or {}).get("id")
            if versions.get(ref):
                marketing_versions.append(versions[ref])

        if not body.get("data"):
            return RemoteBuildInfo(app_id=app_id, latest_build_number=0, latest_version=None)

        return RemoteBuildInfo(
            app_id=app_id,
            latest_build_number=best_build,
            latest_version=_highest_version(marketing_versions),
        )

    def get_build_processing_state(self, build: BuildRef) -> ProcessingState:
        app_id = self.find_app_id(build.app_identifier)
        if app_id is None:
            return ProcessingState.PROCESSING
        response = self._request(
            "GET",
            "/builds",
            params={
                "filter[app]": app_id,
                "filter[version]": str(build.build_number),
                "filter[preReleaseVersion.version]": build.version,
                "fields[builds]": "version,processingState",
                "limit": 1,
            },
        )
        data = response.json().get("data", [])
        if not data:
            # Builds take a few minutes to show up after upload
            return ProcessingState.PROCESSING
        return ProcessingState.parse(data[0]["attributes"].get("processingState"))


def _highest_version(versions: List[str]) -> Optional[str]:
    parsed = []
    for text in versions:
        try:
            parsed.append(MarketingVersion.parse(text))
        except ValueError:
            continue
    if not parsed:
        return None
    return str(max(parsed, key=lambda v: v.sort_key))
