import argparse
from pathlib import Path

from flightsign.src.core.models import is_valid_app_identifier, is_valid_team_id
from flightsign.src.core.version_resolver import VERSION_BUMP_MODES
from flightsign.src.utils.config_loader import API_KEY_ID_PATTERN, ISSUER_ID_PATTERN


def team_id_type(value: str) -> str:
    if not is_valid_team_id(value):
        raise argparse.ArgumentTypeError(
            f"{value!r} is not a team id (10 uppercase letters or digits)"
        )
    return value


def app_identifier_type(value: str) -> str:
    if not is_valid_app_identifier(value):
        raise argparse.ArgumentTypeError(
            f"{value!r} is not a reverse-DNS app identifier (e.g. com.example.app)"
        )
    return value


def api_key_id_type(value: str) -> str:
    if not API_KEY_ID_PATTERN.match(value):
        raise argparse.ArgumentTypeError(f"{value!r} is not an API key id")
    return value


def issuer_id_type(value: str) -> str:
    if not ISSUER_ID_PATTERN.match(value):
        raise argparse.ArgumentTypeError(f"{value!r} is not an issuer id (UUID)")
    return value


def positive_int_type(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{value!r} is not a whole number")
    if number < 1:
        raise argparse.ArgumentTypeError(f"{value!r} must be at least 1")
    return number


def email_type(value: str) -> str:
    if "@" not in value or value.startswith("@") or value.endswith("@"):
        raise argparse.ArgumentTypeError(f"{value!r} is not an email address")
    return value


def add_team_arguments(parser, require_app: bool = False):
    """Arguments every command needs to find the team directory."""
    parser.add_argument(
        "--team-id",
        "-t",
        type=team_id_type,
        required=True,
        help="Apple Developer team id, 10 characters",
    )
    parser.add_argument(
        "--app-identifier",
        "-a",
        type=app_identifier_type,
        required=require_app,
        help="Bundle identifier, e.g. com.example.app [default: APP_IDENTIFIER in config.env]",
    )
    parser.add_argument(
        "--apple-info-dir",
        type=Path,
        help="Directory holding one folder per team [default: ./apple_info]",
    )


def add_api_arguments(parser):
    """App Store Connect API credentials; config.env values are used when omitted."""
    parser.add_argument("--apple-id", type=email_type, help="Apple account email")
    parser.add_argument("--api-key-id", type=api_key_id_type, help="App Store Connect API key id")
    parser.add_argument("--api-issuer-id", type=issuer_id_type, help="App Store Connect issuer id")
    parser.add_argument("--api-key-path", type=Path, help="Path to AuthKey_<KEYID>.p8")


def add_deploy_arguments(parser):
    add_team_arguments(parser)
    add_api_arguments(parser)
    parser.add_argument("--scheme", "-s", help="Xcode scheme to build [default: SCHEME in config.env]")
    parser.add_argument(
        "--configuration",
        default="Release",
        help="Build configuration; Debug, Release or AdHoc [default: Release]",
    )
    parser.add_argument(
        "--version-bump",
        choices=VERSION_BUMP_MODES,
        default="auto",
        help="How to pick the marketing version [default: auto]",
    )
    parser.add_argument("--version", dest="marketing_version", help="Local marketing version [default: last deployed]")
    parser.add_argument("--build-number", type=positive_int_type, help="Pin a build number instead of resolving one")
    parser.add_argument(
        "--allow-renumber",
        action="store_true",
        help="Use the resolved build number if the pinned one is taken [default: disabled]",
    )
    parser.add_argument(
        "--enhanced-monitoring",
        action="store_true",
        help="Wait up to 15 minutes for TestFlight processing [default: 5 minutes]",
    )
    parser.add_argument(
        "--strict-privacy",
        action="store_true",
        help="Fail on placeholder or very short privacy purpose strings [default: warn]",
    )
    parser.add_argument(
        "--keychain-password",
        help="Password for the temporary keychain [default: random]",
    )
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Directory with the .xcworkspace or .xcodeproj [default: current directory]",
    )
    parser.add_argument("--output-dir", type=Path, help="Where the IPA is exported [default: <team>/build]")
