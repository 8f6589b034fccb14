import re
from dataclasses import dataclass
from typing import Optional, Union

import requests

from flightsign.logger import get_console
from flightsign.src.apple.app_store_connect_api import (
    AppStoreConnectAPI,
    AppStoreConnectError,
)
from flightsign.src.core.audit_log import AuditLog
from flightsign.src.core.errors import AuthenticationError, BuildConflictError
from flightsign.src.core.models import MarketingVersion
from flightsign.src.utils.config_loader import TeamEnv

VERSION_BUMP_MODES = ("patch", "minor", "major", "auto", "sync")


@dataclass(frozen=True)
class Resolution:
    version: MarketingVersion
    build_number: int
    locally_resolved: bool = False
    remote_build: Optional[int] = None
    remote_version: Optional[str] = None


def high_water_key(app_identifier: str) -> str:
    return "BUILD_HIGH_WATER_MARK_" + re.sub(r"[^A-Z0-9]", "_", app_identifier.upper())


class VersionConflictResolver:
    """Picks the next version/build so App Store Connect never sees a duplicate"""

    def __init__(self, api: AppStoreConnectAPI, env: TeamEnv, audit: AuditLog):
        self.console = get_console()
        self.api = api
        self.env = env
        self.audit = audit

    def high_water_mark(self, app_identifier: str) -> int:
        """Highest build number this machine has ever handed out for the app"""
        mark = self.env.get_int(high_water_key(app_identifier))
        if self.env.get("APP_IDENTIFIER") == app_identifier:
            mark = max(mark, self.env.get_int("LAST_DEPLOYMENT_BUILD"))
        return mark

    def _bump(self, version: MarketingVersion, mode: str) -> MarketingVersion:
        if mode in ("patch", "minor", "major"):
            return version.bump(mode)
        return version

    def resolve(
        self,
        app_identifier: str,
        team_id: str,
        local_version: Union[str, MarketingVersion],
        local_build: int,
        mode: str = "auto",
    ) -> Resolution:
        if mode not in VERSION_BUMP_MODES:
            raise ValueError(f"Unknown version bump mode {mode!r}")
        if isinstance(local_version, str):
            local_version = MarketingVersion.parse(local_version)
        floor = self.high_water_mark(app_identifier)

        try:
            remote = self.api.latest_build(app_identifier)
        except (AppStoreConnectError, AuthenticationError, requests.RequestException) as e:
            build = max(local_build, floor) + 1
            resolution = Resolution(
                version=self._bump(local_version, mode),
                build_number=build,
                locally_resolved=True,
            )
            self.audit.record(
                "VERSION_FALLBACK",
                app_identifier,
                resolution.version,
                build,
                f"remote build query failed for team {team_id}, resolved locally: {e}",
                level="warning",
            )
        else:
            remote_build = remote.latest_build_number if remote else 0
            remote_version = remote.latest_version if remote else None
            version = self._bump(local_version, mode)
            if mode == "sync" and remote_version:
                candidate = MarketingVersion.parse(remote_version).bump("patch")
                version = max(version, candidate, key=lambda v: v.sort_key)
            resolution = Resolution(
                version=version,
                build_number=max(local_build, remote_build, floor) + 1,
                remote_build=remote_build,
                remote_version=remote_version,
            )
            self.audit.record(
                "VERSION_RESOLVED",
                app_identifier,
                resolution.version,
                resolution.build_number,
                f"local {local_build}, remote {remote_build}, high-water {floor}",
            )

        self.env.set(high_water_key(app_identifier), resolution.build_number)
        self.console.log(
            f"[green]Resolved version:[/] {resolution.version} ({resolution.build_number})"
            + (" [yellow](locally)" if resolution.locally_resolved else "")
        )
        return resolution

    def check_requested(
        self,
        app_identifier: str,
        requested_build: Optional[int],
        resolution: Resolution,
        allow_renumber: bool = False,
    ) -> int:
        """Validate a build number pinned by the user against the resolved one"""
        if requested_build is None or requested_build == resolution.build_number:
            return resolution.build_number
        if requested_build > resolution.build_number:
            self.env.set(high_water_key(app_identifier), requested_build)
            return requested_build
        if allow_renumber:
            self.console.log(
                f"[yellow]Build {requested_build} is taken, using {resolution.build_number}"
            )
            return resolution.build_number
        self.audit.record(
            "BUILD_CONFLICT",
            app_identifier,
            resolution.version,
            requested_build,
            f"requested build is not above {resolution.build_number - 1}",
            level="error",
        )
        raise BuildConflictError(
            f"Build {requested_build} of {app_identifier} conflicts with existing "
            f"builds; the next free number is {resolution.build_number}"
        )
