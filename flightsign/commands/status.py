import sys

from rich.table import Table

from flightsign.commands.common import build_api, load_team, report_error
from flightsign.logger import get_console
from flightsign.src.core.audit_log import AuditLog
from flightsign.src.core.credential_store import CredentialStore
from flightsign.src.core.errors import FlightSignError
from flightsign.src.utils.config_loader import TeamEnv

console = get_console()


def main(parsed_args=None) -> int:
    """Show certificate health, profiles and the last deployments for a team."""
    args = parsed_args

    try:
        paths, config = load_team(args)
        store = CredentialStore.load(paths.team_dir, config.team_id, config.p12_password)
        if args.remote:
            api = build_api(config)
            store.merge_remote(api.list_certificates(), api.list_profiles())
    except FlightSignError as e:
        return report_error(e)

    now = store.clock()
    certificates = Table(title=f"Certificates ({config.team_id})")
    certificates.add_column("Kind", style="cyan")
    certificates.add_column("Name")
    certificates.add_column("Origin")
    certificates.add_column("Days left", justify="right")
    certificates.add_column("Status")
    for certificate in sorted(store.certificates(), key=lambda c: (c.kind.value, c.expires_at)):
        certificates.add_row(
            certificate.kind.value,
            certificate.name or certificate.id,
            certificate.origin.value,
            str(certificate.days_until_expiry(now)),
            certificate.health_status(now).value,
        )
    console.print(certificates)

    profiles = Table(title="Provisioning profiles")
    profiles.add_column("Kind", style="cyan")
    profiles.add_column("Name")
    profiles.add_column("App identifier")
    profiles.add_column("Expires")
    for profile in sorted(store.profiles(), key=lambda p: (p.kind.value, p.name)):
        if args.app_identifier and not profile.covers(args.app_identifier):
            continue
        expired = " [red](expired)[/]" if profile.is_expired(now) else ""
        profiles.add_row(
            profile.kind.value,
            profile.name,
            profile.app_identifier,
            f"{profile.expires_at:%Y-%m-%d}{expired}",
        )
    console.print(profiles)

    env = TeamEnv(paths.config_env).read()
    if env.get("LAST_DEPLOYMENT_DATE"):
        console.print(
            f"[blue]Last deployment:[/] {env.get('APP_IDENTIFIER', '-')} "
            f"v{env.get('LAST_DEPLOYMENT_VERSION', '-')} ({env.get('LAST_DEPLOYMENT_BUILD', '-')}) "
            f"on {env['LAST_DEPLOYMENT_DATE']}, TestFlight: {env.get('TESTFLIGHT_STATUS', 'unknown')}"
        )
    else:
        console.print("[dim]No deployments recorded yet.[/dim]")

    entries = AuditLog(paths.audit_log, echo=False).entries()[-args.history :]
    if entries:
        history = Table(title="Recent events")
        history.add_column("When")
        history.add_column("Event", style="cyan")
        history.add_column("Version")
        history.add_column("Status")
        for entry in entries:
            history.add_row(entry.timestamp, entry.event, f"{entry.version} ({entry.build})", entry.status)
        console.print(history)
    return 0


def run_status_command(args):
    """Entry point for the status command from CLI"""
    return main(parsed_args=args)


if __name__ == "__main__":
    from flightsign.cli import main as cli_main

    sys.exit(cli_main())
