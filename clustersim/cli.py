"""Command-line interface for clustersim.

Provides subcommands for:
- exec: Run one command line against the simulated cluster
- shell: Line-oriented shell over stdin
- scenario run: Replay a command script against a scenario and report progress
- explain: Explain a tool, flag or subcommand
- tools: List the simulated tools by simulator
"""

import argparse
import logging
import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version

from clustersim.configs import ConfigManager
from clustersim.definitions.registry import CommandDefinitionRegistry
from clustersim.errors import ClusterSimError
from clustersim.router import build_default_router
from clustersim.scenario.context import ScenarioContextManager
from clustersim.scenario.loader import load_scenario
from clustersim.scenario.session import ScenarioSession
from clustersim.shell import ShellSession
from clustersim.state.metrics import WORKLOAD_UTILIZATION, MetricsSimulator
from clustersim.state.store import ClusterStateStore

try:
    CLUSTERSIM_CLI_VERSION = package_version("clustersim")
except PackageNotFoundError:
    CLUSTERSIM_CLI_VERSION = "0.1.0"

EXIT_WORDS = {"exit", "logout", "quit"}


def _add_environment_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        default=None,
        help="YAML or JSON config file (cluster size, system type, shell user)",
    )
    parser.add_argument(
        "--workload",
        choices=sorted(WORKLOAD_UTILIZATION),
        default=None,
        help="Apply a GPU workload pattern to every node before running",
    )


def setup_exec_parser(subparsers):
    """Setup 'clustersim exec' subcommand."""
    parser = subparsers.add_parser(
        "exec",
        help="Run one command line",
        description="Run one command line against the simulated cluster and exit with its exit code",
    )
    parser.add_argument("line", help='Command line, e.g. "nvidia-smi -L"')
    parser.add_argument("--scenario", default=None, help="Scenario YAML file to run the command in")
    parser.add_argument("--user", default=None, help="Session user (default from config: root)")
    parser.add_argument("--node", default=None, help="Node to run on (default from config: dgx-00)")
    _add_environment_arguments(parser)
    parser.set_defaults(func=cmd_exec)


def setup_shell_parser(subparsers):
    """Setup 'clustersim shell' subcommand."""
    parser = subparsers.add_parser(
        "shell",
        help="Interactive shell over stdin",
        description="Read command lines from stdin and run them, honoring cmsh/nvsm interactive modes",
    )
    parser.add_argument("--scenario", default=None, help="Scenario YAML file to practice")
    parser.add_argument("--user", default=None, help="Session user (default from config: root)")
    _add_environment_arguments(parser)
    parser.set_defaults(func=cmd_shell)


def setup_scenario_parser(subparsers):
    """Setup 'clustersim scenario' subcommands."""
    parser = subparsers.add_parser(
        "scenario",
        help="Scenario tools",
        description="Run scenario files",
    )
    scenario_sub = parser.add_subparsers(dest="scenario_command", help="Scenario subcommand")

    run_parser = scenario_sub.add_parser(
        "run",
        help="Replay a command script against a scenario",
        description="Execute each line of a command script inside the scenario and report step progress",
    )
    run_parser.add_argument("scenario_file", help="Scenario YAML file")
    run_parser.add_argument("--commands", required=True, help="Text file with one command per line")
    run_parser.add_argument("--report", default=None, help="Write step results to this CSV file")
    run_parser.add_argument("--fault-report", default=None, help="Write applied and skipped faults to this JSON file")
    run_parser.add_argument("--show-output", action="store_true", help="Print each command's output")
    _add_environment_arguments(run_parser)
    parser.set_defaults(func=cmd_scenario, scenario_parser=parser)


def setup_explain_parser(subparsers):
    """Setup 'clustersim explain' subcommand."""
    parser = subparsers.add_parser(
        "explain",
        help="Explain a tool, flag or subcommand",
        description="Explain a command from the command definitions, e.g. 'explain nvidia-smi -L'",
    )
    parser.add_argument("text", nargs=argparse.REMAINDER, help="Tool name, optionally with a flag or subcommand")
    parser.set_defaults(func=cmd_explain)


def setup_tools_parser(subparsers):
    """Setup 'clustersim tools' subcommand."""
    parser = subparsers.add_parser(
        "tools",
        help="List simulated tools",
        description="List every command name the router answers, grouped by simulator",
    )
    parser.set_defaults(func=cmd_tools)


def _build_shell(args, scenario_file=None):
    """Create store, context manager, shell and (optionally) a scenario session."""
    config = ConfigManager.load_or_default(getattr(args, "config", None))
    store = ClusterStateStore.from_config(config)
    manager = ScenarioContextManager(store)
    user = getattr(args, "user", None) or config.get("shell.user", "root")
    node = getattr(args, "node", None) or config.get("shell.current_node", "dgx-00")
    scenario = load_scenario(scenario_file) if scenario_file else None
    if scenario is not None and scenario.node and not getattr(args, "node", None):
        node = scenario.node
    shell = ShellSession(
        manager,
        router=build_default_router(),
        registry=CommandDefinitionRegistry(),
        user=user,
        current_node=node,
        cwd=config.get("shell.cwd", "/root"),
    )
    session = ScenarioSession(store, manager, scenario, shell=shell) if scenario is not None else None
    workload = getattr(args, "workload", None)
    if workload:
        metrics = MetricsSimulator({"seed": config.get("metrics.seed", 42)})
        view = manager.resolve_view()
        for cluster_node in view.get_cluster().nodes:
            metrics.simulate_workload(view, cluster_node.id, workload)
    return shell, session


def _write_output(text: str) -> None:
    if text:
        sys.stdout.write(text if text.endswith("\n") else text + "\n")


def cmd_exec(args):
    """Run one line and exit with its exit code."""
    try:
        shell, session = _build_shell(args, args.scenario)
    except ClusterSimError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        sys.exit(2)
    result = shell.execute(args.line)
    _write_output(result.output)
    if session is not None:
        session.end()
    sys.exit(result.exit_code)


def cmd_shell(args):
    """Read lines from stdin until EOF or exit."""
    try:
        shell, session = _build_shell(args, args.scenario)
    except ClusterSimError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        sys.exit(2)
    interactive = sys.stdin.isatty()
    if session is not None:
        print(f"Scenario: {session.scenario.title or session.scenario.id}")
        step = session.validator.current_step
        if step is not None:
            print(f"Objective: {step.objective}")

    exit_code = 0
    while True:
        if interactive:
            sys.stdout.write(shell.prompt)
            sys.stdout.flush()
        line = sys.stdin.readline()
        if not line:
            break
        line = line.rstrip("\n")
        if shell.interactive is None and line.strip() in EXIT_WORDS:
            break
        result = shell.execute(line)
        exit_code = result.exit_code
        _write_output(result.output)
        if session is not None and session.last_validation is not None and session.last_validation.passed:
            print(f"[OK] Step {session.last_validation.step_id} complete ({session.progress * 100:.0f}%)")
            step = session.validator.current_step
            if step is not None:
                print(f"Objective: {step.objective}")
            else:
                print("[OK] Scenario complete!")
            session.last_validation = None

    if session is not None:
        session.end()
    sys.exit(exit_code)


def cmd_scenario(args):
    """Dispatch 'clustersim scenario' subcommands."""
    if args.scenario_command == "run":
        cmd_scenario_run(args)
        return
    args.scenario_parser.print_help()
    sys.exit(2)


def cmd_scenario_run(args):
    """Replay a command script inside a scenario."""
    try:
        shell, session = _build_shell(args, args.scenario_file)
        with open(args.commands, encoding="utf-8") as f:
            lines = [line.rstrip("\n") for line in f]
    except ClusterSimError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        sys.exit(2)
    except OSError as e:
        print(f"[ERROR] Could not read commands file: {e}", file=sys.stderr)
        sys.exit(2)

    report = session.fault_report
    print(f"Running scenario {session.scenario.id}: {report.num_applied}/{report.num_faults} faults applied")
    if args.show_output:
        session.injector.print_report(report)
    if args.fault_report:
        try:
            session.injector.save_report(report, args.fault_report)
        except OSError as e:
            print(f"[ERROR] Could not write fault report: {e}", file=sys.stderr)
            sys.exit(2)
        print(f"Fault report saved to: {args.fault_report}")
    for line in lines:
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        if args.show_output:
            print(f"{shell.prompt}{line}")
        result = shell.execute(line)
        if args.show_output:
            _write_output(result.output)
        validation = session.last_validation
        if validation is not None and validation.passed:
            print(f"[OK] {validation.step_id} completed by: {line}")

    validator = session.validator
    validator.print_report(verbose=True)
    if args.report:
        try:
            validator.to_dataframe().to_csv(args.report, index=False)
        except OSError as e:
            print(f"[ERROR] Could not write report: {e}", file=sys.stderr)
            sys.exit(2)
        print(f"Report saved to: {args.report}")
    complete = validator.is_complete
    session.end()
    sys.exit(0 if complete else 1)


def cmd_explain(args):
    """Print a registry-backed explanation."""
    text = " ".join(args.text).strip()
    if not text:
        print("[ERROR] Nothing to explain; try 'clustersim explain nvidia-smi -L'", file=sys.stderr)
        sys.exit(2)
    try:
        explanation = CommandDefinitionRegistry().explain(text)
    except ClusterSimError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        sys.exit(2)
    if explanation is None:
        print(f"[ERROR] No documentation for: {text}", file=sys.stderr)
        sys.exit(1)
    _write_output(explanation)


def cmd_tools(args):
    """List command names grouped by simulator."""
    router = build_default_router()
    for simulator, names in sorted(router.by_simulator().items()):
        print(f"{simulator}:")
        print("  " + ", ".join(names))


def setup_main_parser() -> argparse.ArgumentParser:
    """Build the top-level parser with every subcommand."""
    parser = argparse.ArgumentParser(
        prog="clustersim",
        description="clustersim - simulated GPU cluster administration tools for hands-on training",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run one command on the default 8-node DGX-A100 cluster
  clustersim exec "nvidia-smi -L"

  # Run it inside a scenario with injected faults
  clustersim exec "nvidia-smi" --scenario examples/scenarios/xid79-gpu-lost.yaml

  # Replay a command script and write a CSV report
  clustersim scenario run examples/scenarios/xid79-gpu-lost.yaml --commands examples/scenarios/xid79-gpu-lost.commands --report progress.csv

  # Explain a flag
  clustersim explain nvidia-smi --gpu-reset
        """,
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"clustersim {CLUSTERSIM_CLI_VERSION}",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")
    setup_exec_parser(subparsers)
    setup_shell_parser(subparsers)
    setup_scenario_parser(subparsers)
    setup_explain_parser(subparsers)
    setup_tools_parser(subparsers)
    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = setup_main_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(2)

    args.func(args)


if __name__ == "__main__":
    main()
