import sys

from rich.table import Table

from flightsign.commands.common import build_api, load_team, report_error
from flightsign.logger import get_console
from flightsign.src.core.build_orchestrator import XcodeBuildTool
from flightsign.src.core.errors import ConfigurationError, FlightSignError
from flightsign.src.core.keychain import EphemeralKeychainManager
from flightsign.src.core.release_orchestrator import (
    ReleaseOrchestrator,
    ReleaseRequest,
)
from flightsign.src.core.upload_manager import default_strategies
from flightsign.src.utils.config_loader import (
    get_monitoring_settings,
    get_upload_strategy_order,
)

console = get_console()


def print_summary(outcome) -> None:
    table = Table(title="Deployment")
    table.add_column("Step", style="cyan")
    table.add_column("Result")
    for kind, certificate in outcome.certificates.items():
        table.add_row(f"{kind.value} certificate", f"{certificate.name or certificate.id} ({certificate.origin.value})")
    for kind, profile in outcome.profiles.items():
        table.add_row(f"{kind.value} profile", profile.name)
    resolved = f"{outcome.resolution.version} ({outcome.build_number})"
    if outcome.resolution.locally_resolved:
        resolved += " [yellow]resolved locally[/]"
    table.add_row("Version", resolved)
    table.add_row("Upload", outcome.upload.strategy)
    table.add_row("TestFlight", outcome.processing.label)
    console.print(table)


def main(parsed_args=None) -> int:
    """Certificates, profiles, version, build, upload and TestFlight processing."""
    args = parsed_args
    console.print("[bold blue]FlightSign deploy[/]")

    try:
        paths, config = load_team(args)
        app_identifier = args.app_identifier or config.app_identifier
        scheme = args.scheme or config.scheme
        if not app_identifier:
            raise ConfigurationError("No app identifier given and none in config.env")
        if not scheme:
            raise ConfigurationError("No scheme given and none in config.env")

        monitoring = get_monitoring_settings()
        orchestrator = ReleaseOrchestrator(
            config,
            paths,
            build_api(config),
            EphemeralKeychainManager(paths.certificates_dir),
            XcodeBuildTool(),
            default_strategies(get_upload_strategy_order()),
            max_wait=monitoring["max_wait"],
            poll_interval=monitoring["poll_interval"],
        )
        outcome = orchestrator.run(
            ReleaseRequest(
                team_id=config.team_id,
                app_identifier=app_identifier,
                scheme=scheme,
                configuration=args.configuration,
                version_bump=args.version_bump,
                enhanced_monitoring=args.enhanced_monitoring,
                keychain_password=args.keychain_password,
                output_dir=args.output_dir,
                project_dir=args.project_dir,
                allow_renumber=args.allow_renumber,
                build_number=args.build_number,
                local_version=args.marketing_version,
                strict_privacy=args.strict_privacy,
            )
        )
    except FlightSignError as e:
        return report_error(e)
    except ValueError as e:
        return report_error(ConfigurationError(str(e)))

    print_summary(outcome)
    if outcome.processing.state.value == "INVALID":
        console.print("[red]❌ App Store Connect rejected the build during processing[/]")
        return 1
    console.print("[bold green]✓ Deployment complete![/]")
    return 0


def run_deploy_command(args):
    """Entry point for the deploy command from CLI"""
    return main(parsed_args=args)


if __name__ == "__main__":
    from flightsign.cli import main as cli_main

    sys.exit(cli_main())
