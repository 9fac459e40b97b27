"""Shell session: the caller side of command execution.

A :class:`ShellSession` owns what the simulators deliberately do not: the
working directory, the current node, history, and the mode state of an
interactive tool (``cmsh``, ``nvsm``). Each line is parsed, checked for root
requirements, routed, and its output fed through any ``|`` filters. The
cluster view is resolved per line, so activating a scenario context takes
effect on the next command.
"""

from __future__ import annotations

import logging
import posixpath
from typing import Callable, Optional

from clustersim.definitions.registry import CommandDefinitionRegistry
from clustersim.parser import ParsedCommand, parse, split_pipeline
from clustersim.pipeline import apply_pipeline
from clustersim.router import CommandRouter, build_default_router
from clustersim.scenario.context import ScenarioContextManager
from clustersim.simulators.base import (
    CommandContext,
    CommandResult,
    InteractiveSimulator,
    InteractiveState,
    error,
    run_nested,
    success,
)
from clustersim.simulators.linux_utils import list_directory, virtual_files

LOGGER = logging.getLogger(__name__)

CommandObserver = Callable[[str, ParsedCommand, CommandResult], None]


class ShellSession:
    """One learner's terminal session against the cluster.

    Args:
        manager: Scenario context manager; its active context (or the
            canonical store) is the cluster view for every command
        router: Command router, defaults to :func:`build_default_router`
        registry: Command definitions for help text and root checks
        user: Session user; non-root users cannot run root-only flags
        current_node: Node the session starts on
        cwd: Starting working directory
    """

    def __init__(
        self,
        manager: ScenarioContextManager,
        router: Optional[CommandRouter] = None,
        registry: Optional[CommandDefinitionRegistry] = None,
        user: str = "root",
        current_node: str = "dgx-00",
        cwd: str = "/root",
        environment: Optional[dict[str, str]] = None,
    ):
        self.manager = manager
        self.router = router or build_default_router()
        self.registry = registry if registry is not None else CommandDefinitionRegistry()
        self.user = user
        self.current_node = current_node
        self.cwd = cwd
        self.environment = dict(environment or {})
        self.history: list[str] = []
        self.interactive: Optional[InteractiveState] = None
        self._observers: list[CommandObserver] = []
        self._builtins: dict[str, Callable[[ParsedCommand], CommandResult]] = {
            "cd": self._cd,
            "ssh": self._ssh,
            "history": self._history,
        }

    @property
    def prompt(self) -> str:
        if self.interactive is not None:
            return self.interactive.prompt
        marker = "#" if self.user == "root" else "$"
        return f"{self.user}@{self.current_node}:{self.cwd}{marker} "

    def add_observer(self, observer: CommandObserver) -> None:
        """Call ``observer(line, parsed, result)`` after every shell command line.

        Lines typed inside an interactive cmsh or nvsm session are not observed.
        """
        self._observers.append(observer)

    def context(self, user: Optional[str] = None) -> CommandContext:
        return CommandContext(
            cluster=self.manager.resolve_view(),
            current_node=self.current_node,
            cwd=self.cwd,
            user=user or self.user,
            environment=self.environment,
            history=list(self.history),
            registry=self.registry,
            dispatch=self.router.dispatch,
        )

    def execute(self, line: str) -> CommandResult:
        """Run one input line and return its result."""
        if line.strip():
            self.history.append(line)
        if self.interactive is not None:
            # lines typed inside cmsh/nvsm are not shell commands
            return self._execute_interactive(line)
        parsed = self.router.bind(parse(line))
        result = self._execute(parsed, self.user)
        for observer in self._observers:
            observer(line, parsed, result)
        return result

    def _execute_interactive(self, line: str) -> CommandResult:
        state = self.interactive
        simulator = self.router.get(state.tool)
        if not isinstance(simulator, InteractiveSimulator):
            self.interactive = None
            return error(f"{state.tool}: interactive session lost", 1)
        result, next_state = simulator.execute_interactive(line, state, self.context())
        self.interactive = next_state
        if next_state is None:
            LOGGER.debug("Left interactive %s session", state.tool)
            result.prompt = None
        return result

    def _execute(self, parsed: ParsedCommand, user: str) -> CommandResult:
        if parsed.is_empty:
            return success()
        if parsed.base_command == "sudo":
            # the inner line carries its own pipes
            return self._sudo(parsed)
        builtin = self._builtins.get(parsed.base_command)
        if builtin is not None:
            result = builtin(parsed)
        elif user != "root" and self.registry.requires_root(parsed.base_command, parsed.flags, parsed.subcommands):
            return error(f"{parsed.base_command}: this operation requires root privileges (try sudo)", 1)
        else:
            result = self.router.dispatch(parsed, self.context(user))
            if result is None:
                return error(f"{parsed.base_command}: command not found", 127)
            if result.prompt is not None:
                simulator = self.router.get(parsed.base_command)
                if isinstance(simulator, InteractiveSimulator):
                    self.interactive = InteractiveState(parsed.base_command, prompt=result.prompt)
                    LOGGER.debug("Entered interactive %s session", parsed.base_command)

        if parsed.pipe_segments:
            output, exit_code, unsupported = apply_pipeline(parsed.pipe_segments, result.output, result.exit_code)
            if unsupported is not None:
                return error(f"{unsupported}: command not found", 127)
            return CommandResult(output=output, exit_code=exit_code, prompt=result.prompt)
        return result

    def _cd(self, parsed: ParsedCommand) -> CommandResult:
        target = parsed.args[0] if parsed.args else "/root"
        if target == "~" or target.startswith("~/"):
            target = "/root" + target[1:]
        path = posixpath.normpath(posixpath.join(self.cwd, target))
        context = self.context()
        node = context.node()
        if node is None:
            return error(f"cd: node {self.current_node} not found", 1)
        files = virtual_files(node, context)
        if path in files:
            return error(f"cd: {target}: Not a directory", 1)
        if path != "/" and list_directory(files, path) is None:
            return error(f"cd: {target}: No such file or directory", 1)
        self.cwd = path
        return success()

    def _ssh(self, parsed: ParsedCommand) -> CommandResult:
        if not parsed.args:
            return error("usage: ssh destination [command [argument ...]]", 255)
        host = parsed.args[0].split("@")[-1]
        node = self.manager.resolve_view().get_node(host)
        if node is None:
            return error(f"ssh: Could not resolve hostname {host}: Name or service not known", 255)
        if node.bmc is not None and node.bmc.power_state != "On":
            return error(f"ssh: connect to host {host} port 22: No route to host", 255)
        remote = split_pipeline(parsed.raw)[0].split(None, 2)
        if len(remote) > 2:
            return run_nested(self.context(), remote[2], node.id)
        self.current_node = node.id
        self.cwd = "/root"
        return success(f"Welcome to {node.os_version} ({node.kernel_version})\n")

    def _sudo(self, parsed: ParsedCommand) -> CommandResult:
        inner = parsed.raw.strip()[len("sudo"):].strip()
        if not inner:
            return error("usage: sudo command", 1)
        return self._execute(parse(inner), "root")

    def _history(self, parsed: ParsedCommand) -> CommandResult:
        entries = list(enumerate(self.history, 1))
        if parsed.args and parsed.args[0].isdigit():
            entries = entries[-int(parsed.args[0]):]
        return success("".join(f"{index:5d}  {line}\n" for index, line in entries))
