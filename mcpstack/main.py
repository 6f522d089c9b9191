# -----------------------------------------------------------------------------
# MCPSTACK - COMMAND LINE INTERFACE
# -----------------------------------------------------------------------------
# Responsibility: The entry point for humans and CI.
#
# Commands:
# - rebuild:      full backup -> install -> merge -> validate procedure
# - check:        preflight + archive resolution, writes nothing
# - validate:     handshake the servers already in the Desktop config
# - config-path:  print the Claude Desktop config location
#
# Exit codes: 0 success (handshake failures included for rebuild),
#             1 fatal error, 2 usage error.
# -----------------------------------------------------------------------------

import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.tree import Tree

from mcpstack import __version__
from mcpstack.core.rebuild import StackRebuilder, check_stack, validate_configured_servers
from mcpstack.core.settings import StackSettings, default_desktop_config_path, load_settings
from mcpstack.domain.errors import StackError
from mcpstack.domain.models import RebuildLog, ValidationOutcome

console = Console()

SYSTEM_NAME = "MCPSTACK"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcpstack",
        description="Deterministically rebuild a local MCP server stack from offline npm archives.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--settings", type=Path, help="stack.yaml location")
    common.add_argument("--root", type=Path, dest="stack_root", help="stack root directory")
    common.add_argument("--packages-dir", type=Path, help="directory holding the .tgz archives")
    common.add_argument("--config", type=Path, dest="config_path", help="claude_desktop_config.json")
    common.add_argument("--runtime", help="runtime interpreter (default: node on PATH)")
    common.add_argument(
        "--timeout", type=float, dest="handshake_timeout_seconds", help="handshake timeout (seconds)"
    )

    sub = parser.add_subparsers(dest="command", required=True)

    rebuild = sub.add_parser("rebuild", parents=[common], help="run the full rebuild")
    rebuild.add_argument(
        "--prune-unmanaged",
        action="store_true",
        default=None,
        dest="prune_unmanaged_servers",
        help="drop mcpServers entries that this tool does not manage",
    )
    rebuild.add_argument(
        "--skip-validation",
        action="store_true",
        default=None,
        help="do not handshake the servers after merging",
    )
    rebuild.set_defaults(func=cmd_rebuild)

    check = sub.add_parser("check", parents=[common], help="preflight and archive resolution only")
    check.set_defaults(func=cmd_check)

    validate = sub.add_parser("validate", parents=[common], help="handshake configured servers")
    validate.set_defaults(func=cmd_validate)

    config_path = sub.add_parser("config-path", help="print the Claude Desktop config path")
    config_path.set_defaults(func=cmd_config_path)

    return parser


OVERRIDE_FIELDS = (
    "stack_root",
    "packages_dir",
    "config_path",
    "runtime",
    "handshake_timeout_seconds",
    "prune_unmanaged_servers",
    "skip_validation",
)


def settings_from_args(args: argparse.Namespace) -> StackSettings:
    overrides = {field: getattr(args, field, None) for field in OVERRIDE_FIELDS}
    return load_settings(args.settings, overrides=overrides)


def _outcome_label(outcome: ValidationOutcome) -> str:
    if outcome.passed:
        tools = f", {outcome.tool_count} tools" if outcome.tool_count is not None else ""
        return f"[green]PASS[/green] {outcome.name}{tools}"
    return f"[red]FAIL[/red] {outcome.name}: {outcome.reason}"


def print_summary(log: RebuildLog, log_path: Path | None) -> None:
    """Render the run as a tree, the way the HUD shows a finished build."""
    tree = Tree(f"[bold cyan]{log.stack_root}[/bold cyan]")
    tree.add(f"backup: {log.backup_archive}")
    if log.quarantine_dir:
        tree.add(f"quarantine: {log.quarantine_dir}")
    packages = tree.add("packages")
    for package in log.packages:
        packages.add(f"{package.name}: {package.package_name} {package.version or ''}".rstrip())
    tree.add(f"config: {log.config_path}")
    validation = tree.add("validation")
    if log.validation_skipped:
        validation.add("[yellow]skipped[/yellow]")
    for outcome in log.validation:
        validation.add(_outcome_label(outcome))
    tree.add(f"snapshot: {log.snapshot_archive}")
    if log_path:
        tree.add(f"log: {log_path}")

    console.print(Panel(tree, title="Rebuild", border_style="cyan"))
    if log.validation_skipped or log.all_servers_passed:
        console.print(Panel("[bold green]REBUILD COMPLETE[/bold green]", style="on black"))
    else:
        console.print(
            Panel(
                "[bold yellow]REBUILD COMPLETE - some servers failed validation[/bold yellow]",
                style="on black",
            )
        )


def cmd_rebuild(args: argparse.Namespace) -> int:
    settings = settings_from_args(args)
    rebuilder = StackRebuilder(settings)
    log = rebuilder.run()
    print_summary(log, rebuilder.last_log_path)
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    settings = settings_from_args(args)
    report, archives = check_stack(settings)
    tree = Tree(f"[bold cyan]{report.platform}[/bold cyan] (Python {report.python_version})")
    tree.add(f"runtime: {report.runtime} {report.runtime_version}")
    tree.add(f"npm: {report.npm}")
    for name, archive in archives.items():
        tree.add(f"[green]{name}[/green]: {archive}")
    for tool in report.missing_optional:
        tree.add(f"[yellow]optional tool missing: {tool}[/yellow]")
    console.print(Panel(tree, title="Check", border_style="cyan"))
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    settings = settings_from_args(args)
    outcomes = validate_configured_servers(settings)
    for outcome in outcomes:
        console.print(_outcome_label(outcome))
    if not outcomes:
        return 1
    return 0 if all(o.passed for o in outcomes) else 1


def cmd_config_path(args: argparse.Namespace) -> int:
    print(default_desktop_config_path())
    return 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv(Path.cwd() / ".env")
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        return args.func(args)
    except StackError as e:
        console.print(
            Panel(
                f"[bold red]{type(e).__name__}[/bold red]\n\n{e}\n\n"
                "Fix the cause above and re-run; every phase is safe to repeat.",
                title=f"{SYSTEM_NAME} HALT",
                border_style="red",
            )
        )
        return 1


if __name__ == "__main__":
    sys.exit(main())
