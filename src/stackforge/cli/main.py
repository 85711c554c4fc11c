#!/usr/bin/env python3
"""
STACKFORGE CLI
--------------
validate | plan | apply a stack configuration. Exit status: 0 when every
instance applied, 1 on partial failure, 2 on configuration errors.

Author: Stackforge Team
Date: 2026-10-18
"""

import argparse
import logging
import sys
from typing import Dict, List, Optional

from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from stackforge.cli.formatter import StackFormatter, console
from stackforge.config.settings import EngineSettings
from stackforge.core.engine import ProvisioningEngine
from stackforge.core.errors import ConfigurationError
from stackforge.core.models import InstanceResult

VERSION = "0.1.0"

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_CONFIG = 2


def _parse_var(text: str) -> List[str]:
    name, sep, value = text.partition("=")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(f"expected NAME=VALUE, got {text!r}")
    return [name.strip(), value]


class StackforgeCLI:
    """
    CLI wrapper that translates user commands into engine stages and
    renders their results.
    """

    def __init__(self, engine_factory=ProvisioningEngine):
        self.engine_factory = engine_factory
        self.formatter = StackFormatter()
        self.parser = argparse.ArgumentParser(
            prog="stackforge",
            description="Stackforge - declarative infrastructure provisioning orchestrator",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self._setup_args()

    def _setup_args(self):
        self.parser.add_argument("--version", action="version", version=f"stackforge v{VERSION}")
        subparsers = self.parser.add_subparsers(dest="command", metavar="Command")

        common = argparse.ArgumentParser(add_help=False)
        common.add_argument("config", help="Path to the stack configuration (YAML)")
        common.add_argument("--var", action="append", type=_parse_var, default=[], metavar="NAME=VALUE",
                            help="Set a variable (repeatable, highest precedence)")
        common.add_argument("--var-file", help="YAML mapping of variable values")
        common.add_argument("--json", action="store_true", help="Print a machine-readable report")
        common.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)")

        subparsers.add_parser("validate", parents=[common], help="🔍 Check a configuration without planning")
        subparsers.add_parser("plan", parents=[common], help="🗺  Show instances and apply order")
        apply_parser = subparsers.add_parser("apply", parents=[common], help="🚀 Create instances and bootstrap them")
        apply_parser.add_argument("--parallelism", type=int, default=EngineSettings.parallelism,
                                  help="Concurrent workers (default: %(default)s)")
        apply_parser.add_argument("--connect-attempts", type=int, default=EngineSettings.connect_attempts,
                                  help="Remote connection attempts before giving up (default: %(default)s)")
        apply_parser.add_argument("--show-sensitive", action="store_true",
                                  help="Include sensitive outputs in --json reports")

    def print_header(self, subtitle: str):
        console.print(Panel.fit(
            f"[bold cyan]Stackforge v{VERSION}[/bold cyan]\n"
            "══════════════════════════════════════════════════════════════════",
            title=f"[bold white]{subtitle}[/bold white]",
            border_style="cyan"
        ))

    def _configure_logging(self, verbosity: int):
        level = logging.WARNING
        if verbosity == 1:
            level = logging.INFO
        elif verbosity > 1:
            level = logging.DEBUG
        logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    def _settings(self, args: argparse.Namespace) -> EngineSettings:
        return EngineSettings(
            parallelism=getattr(args, "parallelism", EngineSettings.parallelism),
            connect_attempts=getattr(args, "connect_attempts", EngineSettings.connect_attempts),
        )

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Primary routing entry point. Returns the process exit status."""
        argv = sys.argv[1:] if argv is None else argv
        if not argv:
            self.print_header("Infrastructure Orchestrator")
            self.parser.print_help()
            return EXIT_OK

        args = self.parser.parse_args(argv)
        if args.command is None:
            self.parser.print_help()
            return EXIT_OK
        self._configure_logging(args.verbose)

        try:
            engine = self.engine_factory(settings=self._settings(args))
        except ValueError as e:
            self.formatter.print_error(e)
            return EXIT_CONFIG

        overrides: Dict[str, str] = dict(args.var)
        try:
            config, variables = engine.load(args.config, overrides, args.var_file)
            if args.command == "validate":
                return self._validate(engine, config, variables, args)
            plan = engine.plan(config, variables)
        except ConfigurationError as e:
            if args.json:
                self.formatter.print_json({"error": str(e), "path": e.path})
            else:
                self.formatter.print_error(e)
            return EXIT_CONFIG

        if args.command == "plan":
            if args.json:
                self.formatter.print_json(engine.plan_report(plan))
            else:
                self.print_header("Execution Plan")
                self.formatter.print_plan(plan)
            return EXIT_OK
        return self._apply(engine, plan, args)

    def _validate(self, engine, config, variables, args) -> int:
        # Validation is the first planning phase; running the planner proves counts and graph too
        plan = engine.plan(config, variables)
        if args.json:
            self.formatter.print_json({"valid": True, "warnings": plan.warnings})
        else:
            console.print(f"[bold green]✅ Configuration valid:[/bold green] {config.source} "
                          f"({len(plan.instances)} instance(s))")
            self.formatter.show_warnings(plan.warnings)
        return EXIT_OK

    def _apply(self, engine, plan, args) -> int:
        if args.json:
            result = engine.apply(plan)
            self.formatter.print_json(engine.to_report(result, show_sensitive=args.show_sensitive))
        else:
            self.print_header("Apply")
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(bar_width=40),
                TaskProgressColumn(),
                TimeElapsedColumn(),
                console=console
            ) as progress:
                task_id = progress.add_task("Applying instances...", total=len(plan.instances))

                def advance(update: InstanceResult):
                    progress.update(task_id, advance=1,
                                    description=f"{update.status.value}: {update.address}")

                result = engine.apply(plan, on_update=advance)
            self.formatter.print_apply(result, engine.generate_summary(result))
        return EXIT_OK if result.success else EXIT_PARTIAL


def main():
    """Application entry point with interrupt handling."""
    try:
        sys.exit(StackforgeCLI().run())
    except KeyboardInterrupt:
        console.print("\n[bold red]Terminated by user.[/bold red]")
        sys.exit(130)


if __name__ == "__main__":
    main()
