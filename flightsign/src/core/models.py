import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import FrozenSet, Iterable, Optional, Tuple

TEAM_ID_PATTERN = re.compile(r"^[A-Z0-9]{10}$")
APP_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)+$")
SEMANTIC_VERSION_PATTERN = re.compile(
    r"^(\d+)\.(\d+)(?:\.(\d+))?"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)
MAX_VERSION_LENGTH = 18
EXPIRATION_WARNING_DAYS = 30


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so comparisons never mix the two"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse the ISO8601 timestamps App Store Connect returns (with or without 'Z')"""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Apple sometimes sends "+0000" without the colon
    match = re.match(r"^(.*[+-]\d{2})(\d{2})$", text)
    if match and "T" in text:
        text = f"{match.group(1)}:{match.group(2)}"
    return as_utc(datetime.fromisoformat(text))


def is_valid_team_id(team_id: str) -> bool:
    return bool(team_id) and bool(TEAM_ID_PATTERN.match(team_id))


def is_valid_app_identifier(app_identifier: str) -> bool:
    return bool(app_identifier) and bool(APP_IDENTIFIER_PATTERN.match(app_identifier))


class CertificateKind(Enum):
    DEVELOPMENT = "development"
    DISTRIBUTION = "distribution"

    @property
    def quota(self) -> int:
        """Maximum number of live certificates Apple allows per team"""
        return 2 if self is CertificateKind.DEVELOPMENT else 3

    @property
    def api_type(self) -> str:
        return (
            "IOS_DEVELOPMENT"
            if self is CertificateKind.DEVELOPMENT
            else "IOS_DISTRIBUTION"
        )

    @classmethod
    def parse(cls, value) -> "CertificateKind":
        """Normalise labels such as 'IOS_DEVELOPMENT' or 'Apple Distribution'"""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        if "develop" in text:
            return cls.DEVELOPMENT
        if "distribution" in text:
            return cls.DISTRIBUTION
        raise ValueError(f"Unknown certificate kind: {value!r}")


class ProfileKind(Enum):
    DEVELOPMENT = "development"
    ADHOC = "adhoc"
    APPSTORE = "appstore"

    @property
    def required_certificate_kind(self) -> CertificateKind:
        if self is ProfileKind.DEVELOPMENT:
            return CertificateKind.DEVELOPMENT
        return CertificateKind.DISTRIBUTION

    @property
    def api_type(self) -> str:
        return {
            ProfileKind.DEVELOPMENT: "IOS_APP_DEVELOPMENT",
            ProfileKind.ADHOC: "IOS_APP_ADHOC",
            ProfileKind.APPSTORE: "IOS_APP_STORE",
        }[self]

    @property
    def uses_devices(self) -> bool:
        return self is not ProfileKind.APPSTORE

    @classmethod
    def parse(cls, value) -> "ProfileKind":
        if isinstance(value, cls):
            return value
        text = re.sub(r"[\s_-]", "", str(value or "").strip().lower())
        if text.startswith("iosapp"):
            text = text[len("iosapp") :]
        if text in ("development", "dev", "debug"):
            return cls.DEVELOPMENT
        if text in ("adhoc",):
            return cls.ADHOC
        if text in ("appstore", "store", "release", "production", "distribution"):
            return cls.APPSTORE
        raise ValueError(f"Unknown provisioning profile kind: {value!r}")

    @classmethod
    def for_configuration(cls, configuration: str) -> "ProfileKind":
        """Map a build configuration name to the profile kind it needs"""
        text = (configuration or "").strip().lower()
        if text in ("debug", "development"):
            return cls.DEVELOPMENT
        if text in ("release", "production", "appstore", "app-store", "app_store"):
            return cls.APPSTORE
        if text in ("adhoc", "ad-hoc", "ad_hoc"):
            return cls.ADHOC
        raise ValueError(
            f"Cannot map build configuration {configuration!r} to a profile kind"
        )


class CertificateOrigin(Enum):
    API_CREATED = "api-created"
    IMPORTED = "imported"
    MANUAL = "manual"

    @classmethod
    def parse(cls, value) -> "CertificateOrigin":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower().replace("_", "-")
        for origin in cls:
            if origin.value == text:
                return origin
        raise ValueError(f"Unknown certificate origin: {value!r}")


class HealthStatus(Enum):
    HEALTHY = "healthy"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"


class ProcessingState(Enum):
    PROCESSING = "PROCESSING"
    VALID = "VALID"
    INVALID = "INVALID"

    @property
    def is_terminal(self) -> bool:
        return self is not ProcessingState.PROCESSING

    @classmethod
    def parse(cls, value) -> "ProcessingState":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().upper()
        if text == "VALID":
            return cls.VALID
        if text in ("INVALID", "FAILED"):
            return cls.INVALID
        # Anything else (PROCESSING, missing builds, unknown values) keeps us waiting
        return cls.PROCESSING


class ContainerState(Enum):
    CREATED = "created"
    UNLOCKED = "unlocked"
    POPULATED = "populated"
    IN_USE = "in_use"
    FAILED = "failed"
    CLEANED = "cleaned"


@dataclass(frozen=True)
class Certificate:
    """A signing certificate owned by a team"""

    id: str
    kind: CertificateKind
    team_id: str
    expires_at: datetime
    origin: CertificateOrigin = CertificateOrigin.MANUAL
    private_key_path: Optional[Path] = None
    name: str = ""
    serial_number: str = ""
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("Certificate id must not be empty")
        if not self.team_id:
            raise ValueError("Certificate team id must not be empty")
        object.__setattr__(self, "kind", CertificateKind.parse(self.kind))
        object.__setattr__(self, "origin", CertificateOrigin.parse(self.origin))
        object.__setattr__(self, "expires_at", as_utc(self.expires_at))
        if self.created_at is not None:
            object.__setattr__(self, "created_at", as_utc(self.created_at))
        if self.private_key_path is not None:
            object.__setattr__(self, "private_key_path", Path(self.private_key_path))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= as_utc(now or utc_now())

    def days_until_expiry(self, now: Optional[datetime] = None) -> int:
        return (self.expires_at - as_utc(now or utc_now())).days

    def health_status(self, now: Optional[datetime] = None) -> HealthStatus:
        if self.is_expired(now):
            return HealthStatus.EXPIRED
        if self.days_until_expiry(now) <= EXPIRATION_WARNING_DAYS:
            return HealthStatus.EXPIRING_SOON
        return HealthStatus.HEALTHY

    @property
    def issue_order_key(self) -> Tuple[datetime, datetime]:
        """Sort key approximating issue order when creation dates are missing"""
        return (self.created_at or self.expires_at, self.expires_at)


@dataclass(frozen=True)
class ProvisioningProfile:
    """A provisioning profile; replaced, never edited"""

    id: str
    name: str
    kind: ProfileKind
    app_identifier: str
    team_id: str
    expires_at: datetime
    certificate_ids: FrozenSet[str] = field(default_factory=frozenset)
    device_ids: FrozenSet[str] = field(default_factory=frozenset)
    path: Optional[Path] = None

    def __post_init__(self):
        if not self.app_identifier:
            raise ValueError("Profile app identifier must not be empty")
        object.__setattr__(self, "kind", ProfileKind.parse(self.kind))
        object.__setattr__(self, "expires_at", as_utc(self.expires_at))
        object.__setattr__(self, "certificate_ids", frozenset(self.certificate_ids))
        object.__setattr__(self, "device_ids", frozenset(self.device_ids))
        if self.path is not None:
            object.__setattr__(self, "path", Path(self.path))

    @property
    def is_wildcard(self) -> bool:
        return self.app_identifier == "*" or self.app_identifier.endswith(".*")

    @property
    def required_certificate_kind(self) -> CertificateKind:
        return self.kind.required_certificate_kind

    def covers(self, app_identifier: str) -> bool:
        """Exact match, or wildcard whose base is a strict dotted prefix"""
        if not self.is_wildcard:
            return self.app_identifier == app_identifier
        if self.app_identifier == "*":
            return True
        base = self.app_identifier[:-2]
        return app_identifier.startswith(base + ".") and len(app_identifier) > len(
            base
        ) + 1

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= as_utc(now or utc_now())

    def is_usable_for(
        self,
        team_id: str,
        certificate_ids: Iterable[str],
        now: Optional[datetime] = None,
    ) -> bool:
        return (
            self.team_id == team_id
            and not self.is_expired(now)
            and bool(self.certificate_ids & set(certificate_ids))
        )

    def supports_device(self, device_id: str) -> bool:
        if not self.kind.uses_devices:
            return True
        return device_id in self.device_ids

    def expected_filename(self) -> str:
        safe = re.sub(r"[^A-Za-z0-9._-]", "_", self.name or self.id)
        return f"{safe}.mobileprovision"


@dataclass(frozen=True)
class MarketingVersion:
    major: int
    minor: int
    patch: int = 0
    prerelease: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> "MarketingVersion":
        text = (text or "").strip()
        if len(text) > MAX_VERSION_LENGTH:
            raise ValueError(f"Version {text!r} is longer than {MAX_VERSION_LENGTH}")
        match = SEMANTIC_VERSION_PATTERN.match(text)
        if not match:
            raise ValueError(f"Invalid marketing version: {text!r}")
        major, minor, patch, prerelease = match.groups()
        return cls(int(major), int(minor), int(patch or 0), prerelease)

    def bump(self, mode: str) -> "MarketingVersion":
        if mode == "major":
            return MarketingVersion(self.major + 1, 0, 0)
        if mode == "minor":
            return MarketingVersion(self.major, self.minor + 1, 0)
        if mode == "patch":
            return MarketingVersion(self.major, self.minor, self.patch + 1)
        raise ValueError(f"Unknown version bump: {mode!r}")

    @property
    def sort_key(self) -> Tuple[int, int, int, int, str]:
        # A release sorts after any of its prereleases
        return (
            self.major,
            self.minor,
            self.patch,
            0 if self.prerelease else 1,
            self.prerelease or "",
        )

    def __lt__(self, other: "MarketingVersion") -> bool:
        return self.sort_key < other.sort_key

    def __le__(self, other: "MarketingVersion") -> bool:
        return self.sort_key <= other.sort_key

    def __str__(self) -> str:
        base = f"{self.major}.{self.minor}.{self.patch}"
        return f"{base}-{self.prerelease}" if self.prerelease else base


@dataclass(frozen=True)
class Application:
    app_identifier: str
    team_id: str
    marketing_version: MarketingVersion
    build_number: int = 0

    def __post_init__(self):
        if not is_valid_app_identifier(self.app_identifier):
            raise ValueError(f"Invalid app identifier: {self.app_identifier!r}")
        if isinstance(self.marketing_version, str):
            object.__setattr__(
                self, "marketing_version", MarketingVersion.parse(self.marketing_version)
            )
        if not isinstance(self.build_number, int) or self.build_number < 0:
            raise ValueError(f"Invalid build number: {self.build_number!r}")

    def with_release(
        self, version: MarketingVersion, build_number: int
    ) -> "Application":
        """Return the application at a newly resolved version; builds never go down"""
        if build_number <= self.build_number:
            raise ValueError(
                f"Build number {build_number} does not advance past {self.build_number}"
            )
        return replace(self, marketing_version=version, build_number=build_number)


@dataclass(frozen=True)
class DeploymentRecord:
    timestamp: datetime
    app_identifier: str
    team_id: str
    version: str
    build_number: int
    upload_strategy: Optional[str]
    processing_status: str
    duration_seconds: float
    locally_resolved: bool = False
