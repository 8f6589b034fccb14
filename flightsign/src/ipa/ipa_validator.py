import plistlib
import re
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from flightsign.logger import get_console
from flightsign.src.core.errors import InvalidIpaError
from flightsign.src.ipa.privacy_usage import check_privacy_usage

MAX_IPA_SIZE = 4 * 1024 * 1024 * 1024
MIN_EXPECTED_SIZE = 1024 * 1024
APP_INFO_PLIST = re.compile(r"^Payload/([^/]+\.app)/Info\.plist$")

console = get_console()


@dataclass
class IpaInfo:
    """What we need to know about an IPA before handing it to an uploader"""

    path: Path
    app_name: str
    bundle_id: str
    version: Optional[str]
    build_number: Optional[str]
    has_code_signature: bool
    has_embedded_profile: bool
    size: int
    info_plist: dict = field(default_factory=dict, repr=False)

    @property
    def is_signed(self) -> bool:
        return self.has_code_signature or self.has_embedded_profile


def inspect_ipa(ipa_path: Path) -> IpaInfo:
    """Read the main app's Info.plist and signing markers straight from the zip"""
    ipa_path = Path(ipa_path)
    try:
        with zipfile.ZipFile(ipa_path) as zf:
            names = zf.namelist()
            plist_name = next((n for n in names if APP_INFO_PLIST.match(n)), None)
            if plist_name is None:
                raise InvalidIpaError(f"{ipa_path.name} has no Payload/*.app/Info.plist")
            app_dir = plist_name.rsplit("/", 1)[0]
            try:
                info = plistlib.loads(zf.read(plist_name))
            except plistlib.InvalidFileException as e:
                raise InvalidIpaError(f"Unreadable Info.plist in {ipa_path.name}: {e}")
    except zipfile.BadZipFile as e:
        raise InvalidIpaError(f"{ipa_path.name} is not a valid IPA archive: {e}")

    return IpaInfo(
        path=ipa_path,
        app_name=APP_INFO_PLIST.match(plist_name).group(1),
        bundle_id=info.get("CFBundleIdentifier", ""),
        version=info.get("CFBundleShortVersionString"),
        build_number=info.get("CFBundleVersion"),
        has_code_signature=any(n.startswith(f"{app_dir}/_CodeSignature/") for n in names),
        has_embedded_profile=f"{app_dir}/embedded.mobileprovision" in names,
        size=ipa_path.stat().st_size,
        info_plist=info,
    )


def validate_ipa(
    ipa_path: Path,
    app_identifier: str,
    check_privacy: bool = True,
    strict_privacy: bool = False,
) -> IpaInfo:
    """Reject artifacts that would fail upload anyway; no network involved.

    With `strict_privacy` every purpose-string warning is fatal, otherwise only
    empty purpose strings are.
    """
    ipa_path = Path(ipa_path)
    if not ipa_path.is_file():
        raise InvalidIpaError(f"IPA not found: {ipa_path}")

    size = ipa_path.stat().st_size
    if size > MAX_IPA_SIZE:
        raise InvalidIpaError(f"{ipa_path.name} is {size / 1024**3:.1f} GB, above the 4 GB limit")
    if size < MIN_EXPECTED_SIZE:
        console.log(f"[yellow]{ipa_path.name} is only {size / 1024:.0f} KB, is it complete?")
    if ipa_path.suffix.lower() != ".ipa":
        console.log(f"[yellow]{ipa_path.name} does not have an .ipa extension")

    info = inspect_ipa(ipa_path)
    if info.bundle_id != app_identifier:
        raise InvalidIpaError(
            f"{ipa_path.name} contains {info.bundle_id or 'no bundle id'}, expected {app_identifier}"
        )
    if not info.is_signed:
        raise InvalidIpaError(f"{ipa_path.name} is not code signed")
    if check_privacy:
        _check_privacy(info, strict_privacy)
    return info


def _check_privacy(info: IpaInfo, strict: bool) -> None:
    issues = check_privacy_usage(info.info_plist)
    blocking = [i for i in issues if strict or i.is_blocking]
    for issue in issues:
        if issue not in blocking:
            console.log(f"[yellow]Privacy: {issue.message}")
    if blocking:
        raise InvalidIpaError(
            f"{info.path.name} would be rejected for its privacy purpose strings: "
            + "; ".join(i.message for i in blocking),
            "Fill in the NS*UsageDescription entries in the app's Info.plist with "
            "a sentence explaining why the app needs each permission, then rebuild.",
        )
