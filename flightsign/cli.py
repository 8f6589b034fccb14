import argparse
import sys

from rich.console import Console
from rich.panel import Panel
from rich.text import Text
from rich.theme import Theme
from rich_argparse import RichHelpFormatter

from flightsign.arguments import (
    add_api_arguments,
    add_deploy_arguments,
    add_team_arguments,
    positive_int_type,
)
from flightsign.src.constants.cli_constants import (
    APP_DESCRIPTION,
    __version__,
    get_banner_text,
)


class FlightSignHelpFormatter(RichHelpFormatter):
    """Custom formatter for FlightSign CLI that enhances the output with rich styling."""

    def __init__(self, prog):
        super().__init__(prog, max_help_position=30, width=100)
        self.console = Console(
            theme=Theme(
                {
                    "command": "bold cyan",
                    "argument": "green",
                    "option": "yellow",
                    "version": "blue",
                    "title": "bold magenta",
                }
            )
        )

    def start_section(self, heading):
        heading_text = Text(heading, style="title")
        super().start_section(str(heading_text))


def display_banner():
    """Display a stylish banner for FlightSign."""
    console = Console()
    version_info = Text(f"v{__version__}", style="version")
    tagline = Text(APP_DESCRIPTION, style="italic")

    panel = Panel.fit(
        Text.assemble(get_banner_text(), "\n", tagline, "\n", version_info),
        border_style="green",
        padding=(1, 2),
    )
    console.print(panel)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flightsign",
        description=f"FlightSign: {APP_DESCRIPTION}",
        formatter_class=FlightSignHelpFormatter,
        add_help=True,
    )
    parser.add_argument(
        "--version", action="version", version=f"FlightSign {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command")

    deploy_parser = subparsers.add_parser(
        "deploy",
        help="Build and ship a TestFlight release",
        formatter_class=FlightSignHelpFormatter,
        description="Prepare certificates and profiles, resolve the build number, build, upload and wait for TestFlight processing.",
    )
    add_deploy_arguments(deploy_parser)

    certificates_parser = subparsers.add_parser(
        "setup_certificates",
        help="Create or repair signing certificates",
        formatter_class=FlightSignHelpFormatter,
        description="Ensure the team has a usable development and distribution certificate, cleaning up within Apple's limits.",
    )
    add_team_arguments(certificates_parser)
    add_api_arguments(certificates_parser)
    certificates_parser.add_argument("--keychain-password", help="Password for the temporary keychain [default: random]")

    status_parser = subparsers.add_parser(
        "status",
        help="Show certificates, profiles and deployments",
        formatter_class=FlightSignHelpFormatter,
        description="Summarise certificate health, provisioning profiles and recent deployments for a team.",
    )
    add_team_arguments(status_parser)
    add_api_arguments(status_parser)
    status_parser.add_argument(
        "--remote",
        action="store_true",
        help="Also fetch certificates and profiles from App Store Connect [default: local only]",
    )
    status_parser.add_argument("--history", type=positive_int_type, default=10, help="Number of audit events to show [default: 10]")

    init_parser = subparsers.add_parser(
        "init",
        help="Set up a team directory",
        formatter_class=FlightSignHelpFormatter,
        description="Create the apple_info/<team> layout, config.env and install the API key.",
    )
    add_team_arguments(init_parser)
    add_api_arguments(init_parser)
    init_parser.add_argument("--team-name", help="Team display name")
    init_parser.add_argument("--app-name", help="App display name")
    init_parser.add_argument("--scheme", help="Xcode scheme to build")
    init_parser.add_argument("--save-default", action="store_true", help="Remember --apple-info-dir in config.toml")
    init_parser.add_argument("--non-interactive", action="store_true", help="Never prompt; use arguments and defaults only")
    return parser


def main(argv=None):
    # Display the banner before the help text
    argv = sys.argv[1:] if argv is None else argv
    if not argv or "-h" in argv or "--help" in argv:
        display_banner()

    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "deploy":
            from flightsign.commands.deploy import run_deploy_command

            return run_deploy_command(args)
        elif args.command == "setup_certificates":
            from flightsign.commands.setup_certificates import (
                run_setup_certificates_command,
            )

            return run_setup_certificates_command(args)
        elif args.command == "status":
            from flightsign.commands.status import run_status_command

            return run_status_command(args)
        elif args.command == "init":
            from flightsign.commands.init import run_init_command

            return run_init_command(args)
        else:
            parser.print_help()
            return 1
    except KeyboardInterrupt:
        Console(stderr=True).print("[yellow]Interrupted, temporary keychains were removed[/]")
        return 130


if __name__ == "__main__":
    sys.exit(main())
