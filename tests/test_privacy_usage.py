from flightsign.src.ipa.privacy_usage import check_privacy_usage


def test_undeclared_keys_are_not_required() -> None:
    assert check_privacy_usage({"CFBundleIdentifier": "com.acme.app"}) == []


def test_good_purpose_string_passes() -> None:
    info = {"NSFaceIDUsageDescription": "Unlock your saved documents without typing a password."}
    assert check_privacy_usage(info) == []


def test_issue_kinds() -> None:
    info = {
        "NSCameraUsageDescription": "",
        "NSContactsUsageDescription": 42,
        "NSMotionUsageDescription": "Counts steps",
        "NSPhotoLibraryUsageDescription": "Your app needs photos to share them with friends",
        "NSMicrophoneUsageDescription": "TODO",
    }
    problems = {(i.key, i.problem) for i in check_privacy_usage(info)}
    assert problems == {
        ("NSCameraUsageDescription", "missing"),
        ("NSContactsUsageDescription", "missing"),
        ("NSMotionUsageDescription", "too-short"),
        ("NSPhotoLibraryUsageDescription", "placeholder"),
        ("NSMicrophoneUsageDescription", "placeholder"),
        ("NSMicrophoneUsageDescription", "too-short"),
    }
    blocking = {i.key for i in check_privacy_usage(info) if i.is_blocking}
    assert blocking == {"NSCameraUsageDescription", "NSContactsUsageDescription"}
