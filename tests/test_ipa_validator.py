import zipfile

import pytest

from fakes import APP_ID, write_ipa
from flightsign.src.core.errors import InvalidIpaError
from flightsign.src.ipa.ipa_validator import inspect_ipa, validate_ipa


def test_valid_ipa_reports_bundle_details(tmp_path) -> None:
    ipa = write_ipa(tmp_path / "App.ipa", version="2.1.0", build="42")
    info = validate_ipa(ipa, APP_ID)
    assert info.app_name == "App.app"
    assert info.bundle_id == APP_ID
    assert (info.version, info.build_number) == ("2.1.0", "42")
    assert info.is_signed
    assert not info.has_embedded_profile


def test_missing_file(tmp_path) -> None:
    with pytest.raises(InvalidIpaError, match="not found"):
        validate_ipa(tmp_path / "nowhere.ipa", APP_ID)


def test_not_a_zip(tmp_path) -> None:
    bogus = tmp_path / "App.ipa"
    bogus.write_bytes(b"definitely not a zip")
    with pytest.raises(InvalidIpaError, match="not a valid IPA"):
        validate_ipa(bogus, APP_ID)


def test_zip_without_payload(tmp_path) -> None:
    ipa = tmp_path / "App.ipa"
    with zipfile.ZipFile(ipa, "w") as zf:
        zf.writestr("README.txt", "hello")
    with pytest.raises(InvalidIpaError, match="Info.plist"):
        inspect_ipa(ipa)


def test_wrong_bundle_id(tmp_path) -> None:
    ipa = write_ipa(tmp_path / "App.ipa", bundle_id="com.acme.other")
    with pytest.raises(InvalidIpaError, match="com.acme.other"):
        validate_ipa(ipa, APP_ID)


def test_unsigned_ipa(tmp_path) -> None:
    ipa = write_ipa(tmp_path / "App.ipa", signed=False)
    with pytest.raises(InvalidIpaError, match="not code signed"):
        validate_ipa(ipa, APP_ID)


def test_embedded_profile_counts_as_signed(tmp_path) -> None:
    ipa = write_ipa(tmp_path / "App.ipa", signed=False)
    with zipfile.ZipFile(ipa, "a") as zf:
        zf.writestr("Payload/App.app/embedded.mobileprovision", b"profile")
    assert validate_ipa(ipa, APP_ID).has_embedded_profile


def test_empty_purpose_string_is_rejected(tmp_path) -> None:
    ipa = write_ipa(tmp_path / "App.ipa", extra_info={"NSCameraUsageDescription": "  "})
    with pytest.raises(InvalidIpaError, match="NSCameraUsageDescription") as excinfo:
        validate_ipa(ipa, APP_ID)
    assert "Info.plist" in excinfo.value.recovery_suggestion


def test_weak_purpose_strings_only_warn_unless_strict(tmp_path) -> None:
    ipa = write_ipa(
        tmp_path / "App.ipa",
        extra_info={
            "NSLocationWhenInUseUsageDescription": "TODO",
            "NSCameraUsageDescription": "Scans receipts so expenses fill themselves in.",
        },
    )
    assert validate_ipa(ipa, APP_ID).bundle_id == APP_ID

    with pytest.raises(InvalidIpaError, match="NSLocationWhenInUseUsageDescription"):
        validate_ipa(ipa, APP_ID, strict_privacy=True)


def test_privacy_check_can_be_skipped(tmp_path) -> None:
    ipa = write_ipa(tmp_path / "App.ipa", extra_info={"NSMicrophoneUsageDescription": ""})
    assert validate_ipa(ipa, APP_ID, check_privacy=False).info_plist["NSMicrophoneUsageDescription"] == ""
