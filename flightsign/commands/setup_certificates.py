import sys

from rich.table import Table

from flightsign.commands.common import build_api, load_team, report_error
from flightsign.logger import get_console
from flightsign.src.core.audit_log import AuditLog
from flightsign.src.core.certificate_manager import CertificateLifecycleManager
from flightsign.src.core.credential_store import CredentialStore
from flightsign.src.core.errors import FlightSignError
from flightsign.src.core.keychain import EphemeralKeychainManager
from flightsign.src.core.models import CertificateKind, HealthStatus

console = get_console()

HEALTH_STYLES = {
    HealthStatus.HEALTHY: "green",
    HealthStatus.EXPIRING_SOON: "yellow",
    HealthStatus.EXPIRED: "red",
}


def main(parsed_args=None) -> int:
    """Make sure the team has a development and a distribution certificate."""
    args = parsed_args
    console.print("[bold blue]FlightSign certificate setup[/]")

    try:
        paths, config = load_team(args)
        paths.ensure()
        store = CredentialStore.load(paths.team_dir, config.team_id, config.p12_password)
        keychains = EphemeralKeychainManager(paths.certificates_dir)
        manager = CertificateLifecycleManager(
            store,
            build_api(config),
            keychains,
            paths,
            AuditLog(paths.audit_log),
            p12_password=config.p12_password,
            app_identifier=args.app_identifier or config.app_identifier or "-",
        )
        keychains.cleanup_stale()

        with keychains.session(f"{config.team_id}-setup", args.keychain_password) as handle:
            manager.attach(handle)
            manager.refresh_remote()
            manager.sweep_expired()
            for kind in CertificateKind:
                manager.ensure_valid(config.team_id, kind)
    except FlightSignError as e:
        return report_error(e)

    table = Table(title=f"Certificates for {config.team_id}")
    table.add_column("Kind", style="cyan")
    table.add_column("Name")
    table.add_column("Origin")
    table.add_column("Expires")
    table.add_column("Status")
    for certificate, health in manager.health_report():
        style = HEALTH_STYLES[health]
        table.add_row(
            certificate.kind.value,
            certificate.name or certificate.id,
            certificate.origin.value,
            f"{certificate.expires_at:%Y-%m-%d}",
            f"[{style}]{health.value}[/]",
        )
    console.print(table)
    console.print("[bold green]✓ Certificates ready[/]")
    return 0


def run_setup_certificates_command(args):
    """Entry point for the setup_certificates command from CLI"""
    return main(parsed_args=args)


if __name__ == "__main__":
    from flightsign.cli import main as cli_main

    sys.exit(cli_main())
