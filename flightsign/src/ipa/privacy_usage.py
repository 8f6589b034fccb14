import re
from dataclasses import dataclass
from typing import Dict, List

# Purpose-string keys App Store Connect checks (ITMS-90683), with a readable name
PRIVACY_USAGE_KEYS: Dict[str, str] = {
    "NSCameraUsageDescription": "Camera access",
    "NSMicrophoneUsageDescription": "Microphone access",
    "NSPhotoLibraryUsageDescription": "Photo library access",
    "NSPhotoLibraryAddUsageDescription": "Photo library additions",
    "NSLocationWhenInUseUsageDescription": "Location while in use",
    "NSLocationAlwaysAndWhenInUseUsageDescription": "Location always",
    "NSLocationAlwaysUsageDescription": "Location always (legacy)",
    "NSContactsUsageDescription": "Contacts access",
    "NSCalendarsUsageDescription": "Calendar access",
    "NSRemindersUsageDescription": "Reminders access",
    "NSSpeechRecognitionUsageDescription": "Speech recognition",
    "NSMotionUsageDescription": "Motion and fitness",
    "NSFaceIDUsageDescription": "Face ID",
    "NSHealthShareUsageDescription": "Health data reading",
    "NSHealthUpdateUsageDescription": "Health data writing",
    "NSBluetoothAlwaysUsageDescription": "Bluetooth",
    "NSBluetoothPeripheralUsageDescription": "Bluetooth peripherals (legacy)",
    "NSLocalNetworkUsageDescription": "Local network",
    "NSUserTrackingUsageDescription": "App tracking",
    "NSAppleMusicUsageDescription": "Media library",
    "NSHomeKitUsageDescription": "HomeKit",
    "NFCReaderUsageDescription": "NFC reading",
}

PLACEHOLDER_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^TODO",
        r"^CHANGEME",
        r"^PLACEHOLDER",
        r"^This app uses",
        r"^App uses",
        r"^Your app",
        r"^Replace this",
        r"^Add description",
        r"^Purpose string",
    )
]

MIN_PURPOSE_LENGTH = 20


@dataclass(frozen=True)
class PrivacyIssue:
    key: str
    problem: str  # "missing", "placeholder" or "too-short"
    message: str

    @property
    def is_blocking(self) -> bool:
        """Empty purpose strings are rejected by Apple; the rest only read badly"""
        return self.problem == "missing"


def check_privacy_usage(info: dict) -> List[PrivacyIssue]:
    """Inspect the purpose strings declared in a parsed Info.plist.

    Only keys the app actually declares are checked: an empty value is a
    blocking issue, a placeholder or very short text is a warning.
    """
    issues = []
    for key, label in PRIVACY_USAGE_KEYS.items():
        if key not in info:
            continue
        value = info[key]
        text = value.strip() if isinstance(value, str) else ""
        if not text:
            issues.append(PrivacyIssue(key, "missing", f"{label} ({key}) has an empty purpose string"))
            continue
        if any(p.search(text) for p in PLACEHOLDER_PATTERNS):
            issues.append(
                PrivacyIssue(key, "placeholder", f"{label} ({key}) looks like placeholder text: {text!r}")
            )
        if len(text) < MIN_PURPOSE_LENGTH:
            issues.append(
                PrivacyIssue(
                    key,
                    "too-short",
                    f"{label} ({key}) is only {len(text)} characters, "
                    f"explain the use in at least {MIN_PURPOSE_LENGTH}",
                )
            )
    return issues
