import os
import re
import shutil
import stat
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import toml
from dotenv import dotenv_values, set_key

from flightsign.logger import get_console
from flightsign.src.core.errors import ConfigurationError
from flightsign.src.core.models import is_valid_app_identifier, is_valid_team_id

API_KEY_ID_PATTERN = re.compile(r"^[A-Z0-9]{10}$")
ISSUER_ID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)
API_KEY_FILE_PATTERN = re.compile(r"^AuthKey_([A-Za-z0-9]+)\.p8$")
MAX_API_KEY_SIZE = 10 * 1024

console = get_console()


def get_config_path() -> Path:
    """Return the path to the configuration file."""
    env_path = os.environ.get("FLIGHTSIGN_CONFIG")
    if env_path:
        return Path(env_path)
    return Path.home() / ".flightsign" / "config.toml"


def load_config() -> Dict[str, Any]:
    """Load configuration from TOML file."""
    config_path = get_config_path()
    if not config_path.exists():
        return {}

    try:
        return toml.load(config_path)
    except Exception as e:
        raise ConfigurationError(f"Failed to load config {config_path}: {e}")


def get_apple_info_dir(override: Optional[Path] = None) -> Path:
    """Directory holding one sub-directory per team."""
    if override:
        return Path(override)

    env_dir = os.environ.get("FLIGHTSIGN_APPLE_INFO_DIR")
    if env_dir:
        return Path(env_dir)

    config_dir = load_config().get("paths", {}).get("apple_info_dir")
    if config_dir:
        return Path(config_dir).expanduser()

    return Path.cwd() / "apple_info"


def get_upload_strategy_order() -> Optional[List[str]]:
    return load_config().get("upload", {}).get("strategies")


def get_monitoring_settings() -> Dict[str, int]:
    monitoring = load_config().get("monitoring", {})
    return {
        "max_wait": int(monitoring.get("max_wait", 300)),
        "poll_interval": int(monitoring.get("poll_interval", 30)),
    }


@dataclass(frozen=True)
class TeamPaths:
    """On-disk layout for one team"""

    team_dir: Path

    @classmethod
    def for_team(cls, apple_info_dir: Path, team_id: str) -> "TeamPaths":
        return cls(Path(apple_info_dir) / team_id)

    @property
    def certificates_dir(self) -> Path:
        return self.team_dir / "certificates"

    @property
    def profiles_dir(self) -> Path:
        return self.team_dir / "profiles"

    @property
    def config_env(self) -> Path:
        return self.team_dir / "config.env"

    @property
    def audit_log(self) -> Path:
        return self.team_dir / "deployment.log"

    @property
    def backups_dir(self) -> Path:
        return self.team_dir / "backups"

    def ensure(self) -> None:
        for directory in (self.team_dir, self.certificates_dir, self.profiles_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def api_key_path(self) -> Optional[Path]:
        """The single AuthKey_<KEYID>.p8 kept in the team directory"""
        if not self.team_dir.exists():
            return None
        keys = sorted(
            p for p in self.team_dir.iterdir() if API_KEY_FILE_PATTERN.match(p.name)
        )
        if len(keys) > 1:
            raise ConfigurationError(
                f"Found {len(keys)} API key files in {self.team_dir}, expected one",
                "Keep only the AuthKey_<KEYID>.p8 that matches API_KEY_ID.",
            )
        return keys[0] if keys else None


class TeamEnv:
    """Read and update a team's config.env"""

    def __init__(self, path: Path):
        self.path = Path(path)

    def read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        return {k: v for k, v in dotenv_values(self.path).items() if v is not None}

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.read().get(key, default)

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.get(key)
        try:
            return int(value) if value not in (None, "") else default
        except ValueError:
            console.log(f"[yellow]Ignoring non-numeric {key}={value!r} in {self.path}")
            return default

    def set(self, key: str, value: Any) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.touch(mode=0o600)
        set_key(str(self.path), key, str(value), quote_mode="never")

    def update(self, values: Dict[str, Any]) -> None:
        for key, value in values.items():
            if value is not None:
                self.set(key, value)

    def backup(self, backups_dir: Path) -> Optional[Path]:
        if not self.path.exists():
            return None
        backups_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        target = backups_dir / f"config.env.backup.{timestamp}"
        shutil.copy2(self.path, target)
        return target


def validate_api_key_file(path: Path) -> Path:
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"API key file not found: {path}")
    if path.suffix != ".p8":
        raise ConfigurationError(f"API key file must be a .p8 file: {path}")
    if path.stat().st_size > MAX_API_KEY_SIZE:
        raise ConfigurationError(f"API key file is suspiciously large: {path}")
    mode = stat.S_IMODE(path.stat().st_mode)
    if mode & 0o077:
        console.log(
            f"[yellow]API key {path.name} is readable by other users "
            f"({oct(mode)}), consider chmod 600"
        )
    return path


@dataclass
class TeamConfig:
    """Everything a release needs to know about a team, validated up front"""

    team_id: str
    api_key_id: str
    api_issuer_id: str
    api_key_path: Path
    apple_id: str = ""
    team_name: str = ""
    app_identifier: str = ""
    app_name: str = ""
    scheme: str = ""
    p12_password: str = ""

    def __post_init__(self):
        if not is_valid_team_id(self.team_id):
            raise ConfigurationError(
                f"Invalid team id {self.team_id!r}: expected 10 uppercase letters or digits"
            )
        if not API_KEY_ID_PATTERN.match(self.api_key_id or ""):
            raise ConfigurationError(f"Invalid API key id {self.api_key_id!r}")
        if not ISSUER_ID_PATTERN.match(self.api_issuer_id or ""):
            raise ConfigurationError(
                f"Invalid API issuer id {self.api_issuer_id!r}: expected a UUID"
            )
        if self.app_identifier and not is_valid_app_identifier(self.app_identifier):
            raise ConfigurationError(
                f"Invalid app identifier {self.app_identifier!r}: expected reverse-DNS"
            )
        if self.apple_id and "@" not in self.apple_id:
            raise ConfigurationError(f"Invalid Apple ID {self.apple_id!r}")
        self.api_key_path = Path(self.api_key_path)

    @classmethod
    def load(
        cls, paths: TeamPaths, overrides: Optional[Dict[str, Optional[str]]] = None
    ) -> "TeamConfig":
        """Merge config.env with command-line overrides (which win)"""
        values = TeamEnv(paths.config_env).read()
        for key, value in (overrides or {}).items():
            if value:
                values[key] = value

        key_path = values.get("API_KEY_PATH")
        if key_path:
            key_path = Path(key_path)
            if not key_path.is_absolute():
                key_path = paths.team_dir / key_path
        else:
            key_path = paths.api_key_path()
        if key_path is None:
            raise ConfigurationError(
                f"No AuthKey_<KEYID>.p8 found in {paths.team_dir}",
                "Copy your App Store Connect API key into the team directory or run 'flightsign init'.",
            )

        return cls(
            team_id=values.get("TEAM_ID", paths.team_dir.name),
            api_key_id=values.get("API_KEY_ID", ""),
            api_issuer_id=values.get("API_ISSUER_ID", ""),
            api_key_path=validate_api_key_file(key_path),
            apple_id=values.get("APPLE_ID", ""),
            team_name=values.get("TEAM_NAME", ""),
            app_identifier=values.get("APP_IDENTIFIER", ""),
            app_name=values.get("APP_NAME", ""),
            scheme=values.get("SCHEME", ""),
            p12_password=values.get("P12_PASSWORD", ""),
        )
