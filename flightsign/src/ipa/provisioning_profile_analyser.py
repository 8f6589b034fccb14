import plistlib
from pathlib import Path
from typing import Optional

from asn1crypto.cms import ContentInfo

from flightsign.src.core.models import ProvisioningProfile, as_utc
from flightsign.src.utils.crypto import describe_certificate, load_der_or_pem


def dump_prov(prov_file: Path) -> dict:
    """Read a provisioning profile without using macOS security command"""
    with open(prov_file, "rb") as f:
        content_info = ContentInfo.load(f.read())
    signed_data = content_info["content"]
    plist_data = signed_data["encap_content_info"]["content"].native
    return plistlib.loads(plist_data)


def profile_kind_from_plist(plist: dict) -> str:
    """Work out development/adhoc/appstore the way Xcode does"""
    entitlements = plist.get("Entitlements", {})
    if entitlements.get("get-task-allow"):
        return "development"
    if plist.get("ProvisionedDevices"):
        return "adhoc"
    return "appstore"


def strip_team_prefix(application_identifier: str, team_id: Optional[str]) -> str:
    """'ABC1234567.com.acme.*' -> 'com.acme.*'"""
    if team_id and application_identifier.startswith(team_id + "."):
        return application_identifier[len(team_id) + 1 :]
    prefix, _, rest = application_identifier.partition(".")
    if rest and len(prefix) == 10 and prefix.isalnum() and prefix.isupper():
        return rest
    return application_identifier


def profile_from_plist(plist: dict, path: Optional[Path] = None) -> ProvisioningProfile:
    team_ids = plist.get("TeamIdentifier") or []
    team_id = team_ids[0] if team_ids else ""
    entitlements = plist.get("Entitlements", {})
    app_identifier = strip_team_prefix(
        entitlements.get("application-identifier", ""), team_id
    )

    certificate_serials = set()
    for der in plist.get("DeveloperCertificates", []):
        try:
            certificate_serials.add(describe_certificate(load_der_or_pem(der)).serial_number)
        except ValueError:
            continue

    return ProvisioningProfile(
        id=plist.get("UUID", ""),
        name=plist.get("Name", ""),
        kind=profile_kind_from_plist(plist),
        app_identifier=app_identifier,
        team_id=team_id,
        expires_at=as_utc(plist["ExpirationDate"]),
        certificate_ids=frozenset(certificate_serials),
        device_ids=frozenset(plist.get("ProvisionedDevices", [])),
        path=path,
    )


def load_profile(prov_file: Path) -> ProvisioningProfile:
    return profile_from_plist(dump_prov(prov_file), path=prov_file)
