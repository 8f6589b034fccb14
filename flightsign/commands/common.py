from typing import Tuple

from rich.markup import escape

from flightsign.logger import get_console, get_error_console
from flightsign.src.apple.app_store_connect_api import AppStoreConnectAPI
from flightsign.src.apple.authentication_helper import ApiKeyAuth
from flightsign.src.core.errors import FlightSignError
from flightsign.src.utils.config_loader import TeamConfig, TeamPaths, get_apple_info_dir

console = get_console()


def load_team(args) -> Tuple[TeamPaths, TeamConfig]:
    """Find the team directory and merge its config.env with command-line values."""
    paths = TeamPaths.for_team(get_apple_info_dir(args.apple_info_dir), args.team_id)
    overrides = {
        "TEAM_ID": args.team_id,
        "APP_IDENTIFIER": getattr(args, "app_identifier", None),
        "APPLE_ID": getattr(args, "apple_id", None),
        "API_KEY_ID": getattr(args, "api_key_id", None),
        "API_ISSUER_ID": getattr(args, "api_issuer_id", None),
        "API_KEY_PATH": str(args.api_key_path) if getattr(args, "api_key_path", None) else None,
        "SCHEME": getattr(args, "scheme", None),
    }
    return paths, TeamConfig.load(paths, overrides)


def build_api(config: TeamConfig) -> AppStoreConnectAPI:
    return AppStoreConnectAPI(ApiKeyAuth.from_team_config(config), config.team_id)


def report_error(error: FlightSignError) -> int:
    """Print a typed error and its recovery suggestion to stderr."""
    err = get_error_console()
    err.print(f"[red]Error:[/] {escape(error.message)}")
    err.print(f"[yellow]Suggestion:[/] {escape(error.recovery_suggestion)}")
    return 1
