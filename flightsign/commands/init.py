import os
import secrets
import shutil
import sys
from pathlib import Path

import toml
from rich import box
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from flightsign.commands.common import report_error
from flightsign.logger import get_console
from flightsign.src.core.errors import ConfigurationError, FlightSignError
from flightsign.src.utils.config_loader import (
    API_KEY_FILE_PATTERN,
    TeamConfig,
    TeamEnv,
    TeamPaths,
    get_apple_info_dir,
    get_config_path,
    validate_api_key_file,
)

console = get_console()


def ask(value, prompt: str, default: str = "", interactive: bool = True, password: bool = False) -> str:
    """Use the command-line value if given, otherwise prompt (or fall back to default)."""
    if value:
        return str(value)
    if not interactive:
        return default
    return Prompt.ask(prompt, default=default or None, password=password) or ""


def install_api_key(source: Path, paths: TeamPaths, key_id: str) -> Path:
    """Copy the .p8 into the team directory under Apple's naming scheme."""
    validate_api_key_file(source)
    target = paths.team_dir / f"AuthKey_{key_id}.p8"
    for existing in paths.team_dir.iterdir():
        if API_KEY_FILE_PATTERN.match(existing.name) and existing != target:
            console.print(f"[yellow]Removing old API key {existing.name}[/yellow]")
            existing.unlink()
    if source.resolve() != target.resolve():
        shutil.copy2(source, target)
    os.chmod(target, 0o600)
    return target


def save_default_apple_info_dir(apple_info_dir: Path) -> None:
    config_path = get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    data = toml.load(config_path) if config_path.exists() else {}
    data.setdefault("paths", {})["apple_info_dir"] = str(apple_info_dir.resolve())
    with open(config_path, "w") as f:
        toml.dump(data, f)


def main(parsed_args=None) -> int:
    """Create the team directory layout and its config.env."""
    args = parsed_args
    interactive = not args.non_interactive and sys.stdin.isatty()

    console.print(
        Panel(f"Setting up FlightSign for team {args.team_id}", style="bold green", box=box.ROUNDED)
    )

    apple_info_dir = get_apple_info_dir(args.apple_info_dir)
    paths = TeamPaths.for_team(apple_info_dir, args.team_id)
    env = TeamEnv(paths.config_env)
    current = env.read()

    table = Table(title="Directory Structure", box=box.ROUNDED)
    table.add_column("Directory", style="cyan")
    table.add_column("Status", style="green")
    for directory in (paths.team_dir, paths.certificates_dir, paths.profiles_dir):
        table.add_row(str(directory), "✓ Already exists" if directory.exists() else "✓ Created")
    paths.ensure()
    console.print(table)

    try:
        key_id = ask(args.api_key_id, "API key id", current.get("API_KEY_ID", ""), interactive)
        values = {
            "TEAM_ID": args.team_id,
            "TEAM_NAME": ask(args.team_name, "Team name", current.get("TEAM_NAME", ""), interactive),
            "APPLE_ID": ask(args.apple_id, "Apple ID (email)", current.get("APPLE_ID", ""), interactive),
            "API_KEY_ID": key_id,
            "API_ISSUER_ID": ask(args.api_issuer_id, "API issuer id", current.get("API_ISSUER_ID", ""), interactive),
            "APP_IDENTIFIER": ask(args.app_identifier, "App identifier", current.get("APP_IDENTIFIER", ""), interactive),
            "APP_NAME": ask(args.app_name, "App name", current.get("APP_NAME", ""), interactive),
            "SCHEME": ask(args.scheme, "Xcode scheme", current.get("SCHEME", ""), interactive),
            "P12_PASSWORD": current.get("P12_PASSWORD") or secrets.token_urlsafe(18),
        }

        key_source = args.api_key_path
        if key_source is None and interactive:
            entered = Prompt.ask("Path to AuthKey_<KEYID>.p8 (leave empty to keep current)", default="")
            key_source = Path(entered).expanduser() if entered else None
        if key_source is not None:
            values["API_KEY_PATH"] = install_api_key(Path(key_source), paths, key_id).name
        elif paths.api_key_path() is None:
            raise ConfigurationError(
                f"No API key in {paths.team_dir}",
                "Pass --api-key-path with the .p8 downloaded from App Store Connect.",
            )

        if env.path.exists():
            backup = env.backup(paths.backups_dir)
            console.print(f"[dim]Previous config saved to {backup}[/dim]")
        env.update({k: v for k, v in values.items() if v})
        TeamConfig.load(paths)
    except FlightSignError as e:
        return report_error(e)

    if args.save_default or (
        interactive and Confirm.ask(f"Use {apple_info_dir} as the default apple_info directory?", default=False)
    ):
        save_default_apple_info_dir(apple_info_dir)
        console.print(f"[green]Saved default to {get_config_path()}[/green]")

    console.print(f"[bold green]✓ Team {args.team_id} is ready:[/bold green] {paths.config_env}")
    return 0


def run_init_command(args):
    """Entry point for the init command from CLI"""
    return main(parsed_args=args)


if __name__ == "__main__":
    from flightsign.cli import main as cli_main

    sys.exit(cli_main())
