import argparse
import asyncio
import logging
import sys

from rich.console import Console

from vulntree.__version__ import __version__
from vulntree.app import Workspace
from vulntree.config import settings
from vulntree.core.filters import with_issues
from vulntree.report import print_report

NOTICE_STYLES = {"information": "green", "warning": "yellow", "error": "bold red"}


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="vulntree",
        description="Build the dependency trees of a workspace and annotate them with known issues.",
    )
    parser.add_argument("path", nargs="?", default=".", help="Workspace directory (default: current directory)")
    parser.add_argument("--full", action="store_true", help="Ignore cached results and rescan every component")
    parser.add_argument("--vuln-only", action="store_true", help="Show only dependencies with issues")
    parser.add_argument("--graph", action="store_true", help="Send one dependency graph per project")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """ Entrypoint when is installed via pip """
    args = parse_args(argv)

    # Log Configuration
    logging.basicConfig(
        filename=settings.LOG_FILE,
        level=settings.LOG_LEVEL,
        filemode="w",
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    active_settings = settings.model_copy(update={"SCAN_MODE": "graph"}) if args.graph else settings
    console = Console()

    def notify(message: str, severity: str = "information") -> None:
        console.print(f"[{NOTICE_STYLES.get(severity, 'white')}]{message}[/]")

    def update_progress(current: int, total: int) -> None:
        console.print(f"[dim]Scanning security... (Batch {current} of {total})[/]")

    workspace = Workspace(args.path, settings=active_settings, notify=notify, on_progress=update_progress)

    try:
        with console.status("Building dependency trees..."):
            report = asyncio.run(workspace.refresh(quick_scan=not args.full))
    except KeyboardInterrupt:
        workspace.cancel()
        console.print("[yellow]Scan cancelled.[/]")
        return 130

    if report is None:
        return 1

    print_report(console, workspace.get_tree(), workspace.path, with_issues() if args.vuln_only else None)
    return 2 if report.partial else 0


# Development mode
if __name__ == "__main__":
    sys.exit(main())
